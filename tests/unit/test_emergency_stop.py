# tests/unit/test_emergency_stop.py
import pytest

from marketops.common.errors import OrganizationNotFoundError
from marketops.orchestrator.emergency import disable_sandbox_mode, execute_emergency_stop, is_sandbox_mode
from tests.conftest import FIXED_NOW


def _seed_activity(store):
    store.add_campaign(id="camp-2", product_id="prod-1", status="planned")
    store.add_campaign(id="camp-done", product_id="prod-1", status="completed")
    queued = store.add_task(campaign_id="camp-1", type="email_single", title="a")
    drafting = store.add_task(campaign_id="camp-2", type="blog_post", title="b", status="drafting")
    pending = store.add_task(campaign_id="camp-1", type="social_post", title="c", status="pending_approval")
    approval = store._put("approvals", {"task_id": pending["id"], "status": "pending"})
    done = store.add_task(campaign_id="camp-1", type="email_single", title="d", status="completed")
    return queued, drafting, pending, approval, done


@pytest.mark.asyncio
async def test_stop_halts_everything_outbound(world, services):
    queued, drafting, pending, approval, done = _seed_activity(world.store)

    result = await execute_emergency_stop(services, "org-1", "user-7", "bad copy went out", now=FIXED_NOW)

    assert sorted(result.campaigns_paused) == ["camp-1", "camp-2"]
    assert sorted(result.tasks_cancelled) == sorted([queued["id"], drafting["id"], pending["id"]])
    assert result.approvals_expired == [approval["id"]]
    assert result.sandbox_mode is True

    assert world.store.row("campaigns", "camp-done")["status"] == "completed"
    assert world.store.row("tasks", done["id"])["status"] == "completed"
    for task in (queued, drafting, pending):
        row = world.store.row("tasks", task["id"])
        assert row["status"] == "cancelled"
        assert row["error_log"][-1]["type"] == "emergency_stop"
        assert row["error_log"][-1]["reason"] == "bad copy went out"
    assert world.store.row("approvals", approval["id"])["status"] == "expired"

    settings = world.store.row("organizations", "org-1")["settings"]
    assert settings["sandbox_mode"] is True
    assert settings["sandbox_enabled_by"] == "user-7"
    assert settings["brand"] == "acme"

    audit = world.store.rows("audit_logs", action="emergency_stop")[0]
    assert audit["metadata"]["tasks_cancelled"] == 3
    assert {s[1] for s in services.trigger.signals} == {"cancelled"}
    assert len(services.trigger.signals) == 3


@pytest.mark.asyncio
async def test_second_stop_finds_nothing_left(world, services):
    _seed_activity(world.store)
    await execute_emergency_stop(services, "org-1", "user-7")

    again = await execute_emergency_stop(services, "org-1", "user-7")

    assert again.campaigns_paused == []
    assert again.tasks_cancelled == []
    assert again.approvals_expired == []
    assert await is_sandbox_mode(world.store, "org-1") is True


@pytest.mark.asyncio
async def test_other_organizations_untouched(world, services):
    world.store.add_organization(id="org-2")
    world.store.add_product(id="prod-2", organization_id="org-2")
    world.store.add_campaign(id="camp-other", product_id="prod-2")
    other = world.store.add_task(campaign_id="camp-other", type="email_single", title="x")

    await execute_emergency_stop(services, "org-1", "user-7")

    assert world.store.row("campaigns", "camp-other")["status"] == "active"
    assert world.store.row("tasks", other["id"])["status"] == "queued"
    assert await is_sandbox_mode(world.store, "org-2") is False


@pytest.mark.asyncio
async def test_unknown_organization(world, services):
    with pytest.raises(OrganizationNotFoundError):
        await execute_emergency_stop(services, "org-404", "user-7")


@pytest.mark.asyncio
async def test_disable_sandbox_mode(world, services):
    await execute_emergency_stop(services, "org-1", "user-7")

    org = await disable_sandbox_mode(services, "org-1", "user-8", now=FIXED_NOW)

    assert org.sandbox_mode is False
    assert org.settings["sandbox_disabled_by"] == "user-8"
    assert await is_sandbox_mode(world.store, "org-1") is False
    assert world.store.rows("audit_logs", action="sandbox_mode.disabled")[0]["actor_id"] == "user-8"

    with pytest.raises(OrganizationNotFoundError):
        await disable_sandbox_mode(services, "org-404", "user-8")
