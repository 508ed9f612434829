# tests/unit/test_policy_engine.py
import pytest

from marketops.common.errors import PolicyLoadError
from marketops.data.inmemory_store import InMemoryStore
from marketops.policy.engine import (
    STAGES,
    applies_at,
    can_draft_task,
    can_execute_task,
    requires_escalation,
    validate_content,
    validate_policies,
)
from marketops.policy.loader import load_policies
from marketops.policy.models import Checkpoint, PolicyKind
from tests.conftest import FIXED_NOW, add_policy


def _task(**fields):
    base = {
        "id": "t-1",
        "campaign_id": "camp-1",
        "type": "email_single",
        "title": "Launch email",
        "draft_content": {"subject": "Hi", "body": "This offer is guaranteed to work"},
    }
    base.update(fields)
    return base


def test_stage_table():
    assert STAGES[Checkpoint.PRE_DRAFT] == {PolicyKind.RATE_LIMIT, PolicyKind.TIME_WINDOW, PolicyKind.BUDGET_LIMIT}
    assert PolicyKind.SUPPRESSION not in STAGES[Checkpoint.CONTENT]
    assert all(applies_at(kind, Checkpoint.PRE_EXECUTE) for kind in PolicyKind)


@pytest.mark.asyncio
async def test_block_violation_denies(world):
    add_policy(world.store, "banned_phrase", {"phrases": ["guaranteed"]}, name="No guarantees")
    result = await validate_content(_task(), "org-1", world.store, now=FIXED_NOW)

    assert result.allowed is False
    assert [v.policy_name for v in result.violations] == ["No guarantees"]
    assert result.feedback == "Policy validation found 1 blocking violation(s). Task cannot proceed."

    payload = result.to_payload()
    assert payload["violations"][0]["policyType"] == "banned_phrase"
    assert payload["violations"][0]["details"] == {"foundPhrases": ["guaranteed"]}


@pytest.mark.asyncio
async def test_content_policies_are_skipped_before_drafting(world):
    add_policy(world.store, "banned_phrase", {"phrases": ["guaranteed"]})
    result = await can_draft_task(_task(), "org-1", world.store, now=FIXED_NOW)
    assert result.allowed is True
    assert result.violations == [] and result.feedback is None


@pytest.mark.asyncio
async def test_escalate_and_warn_never_deny(world):
    add_policy(world.store, "banned_phrase", {"phrases": ["guaranteed"]}, severity="escalate")
    add_policy(world.store, "content_rule", {"maxLength": 10}, severity="warn")
    result = await validate_content(_task(), "org-1", world.store, now=FIXED_NOW)

    assert result.allowed is True
    assert requires_escalation(result) is True
    assert result.feedback == (
        "Policy validation found 1 requiring escalation, 1 warning(s). Manual approval required."
    )


@pytest.mark.asyncio
async def test_validation_is_idempotent(world):
    add_policy(world.store, "banned_phrase", {"phrases": ["guaranteed"]})
    add_policy(world.store, "claim_lock", {"requireVerified": True}, severity="warn")
    first = await validate_policies(_task(), "org-1", "content", world.store, now=FIXED_NOW)
    second = await validate_policies(_task(), "org-1", "content", world.store, now=FIXED_NOW)
    assert first.to_payload() == second.to_payload()
    assert len(first.warnings) == 1


@pytest.mark.asyncio
async def test_faulty_checker_fails_open(world):
    # payload missing required "phrases"
    add_policy(world.store, "banned_phrase", {"wholeWord": True})
    result = await validate_content(_task(), "org-1", world.store, now=FIXED_NOW)
    assert result.allowed is True
    assert result.violations == []


@pytest.mark.asyncio
async def test_product_scoped_policies(world):
    add_policy(world.store, "banned_phrase", {"phrases": ["guaranteed"]}, product_id="prod-other")
    add_policy(world.store, "content_rule", {"forbiddenElements": ["offer"]}, product_id="prod-1")
    result = await validate_content(_task(), "org-1", world.store, now=FIXED_NOW)
    assert [v.policy_type for v in result.violations] == [PolicyKind.CONTENT_RULE]


@pytest.mark.asyncio
async def test_inactive_and_foreign_policies_ignored(world):
    add_policy(world.store, "banned_phrase", {"phrases": ["guaranteed"]}, active=False)
    add_policy(world.store, "banned_phrase", {"phrases": ["guaranteed"]}, organization_id="org-2")
    result = await validate_content(_task(), "org-1", world.store, now=FIXED_NOW)
    assert result.allowed is True


@pytest.mark.asyncio
async def test_pre_execute_reads_final_content(world):
    add_policy(world.store, "banned_phrase", {"phrases": ["guaranteed"]})
    clean = _task(final_content={"body": "An honest offer"})
    result = await can_execute_task(clean, "org-1", world.store, now=FIXED_NOW)
    assert result.allowed is True


@pytest.mark.asyncio
async def test_loader_orders_by_severity_and_skips_unknown_kinds(world):
    add_policy(world.store, "content_rule", {}, severity="warn", id="p-warn")
    add_policy(world.store, "content_rule", {}, severity="escalate", id="p-esc")
    add_policy(world.store, "content_rule", {}, severity="block", id="p-block")
    add_policy(world.store, "frequency_cap", {}, severity="block", id="p-unknown")
    policies = await load_policies(world.store, "org-1", "prod-1")
    assert [p.id for p in policies] == ["p-block", "p-esc", "p-warn"]


class _BrokenStore(InMemoryStore):
    async def list_policies(self, organization_id, product_id):
        raise ConnectionError("database unreachable")


@pytest.mark.asyncio
async def test_policy_load_failure_propagates():
    store = _BrokenStore()
    with pytest.raises(PolicyLoadError):
        await validate_content(_task(campaign_id=None), "org-1", store, now=FIXED_NOW)
