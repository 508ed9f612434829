# tests/web/test_routes.py
import pytest
from fastapi.testclient import TestClient

from marketops.web.server import create_app
from tests.conftest import add_policy


@pytest.fixture
def client(world, services):
    return TestClient(create_app(services))


def _pending_task(store):
    task = store.add_task(
        campaign_id="camp-1",
        type="social_post",
        title="Teaser",
        connector_id="conn-gated",
        status="pending_approval",
        draft_content={"text": "Ship faster"},
    )
    store._put("approvals", {"task_id": task["id"], "status": "pending", "content_snapshot": {"text": "Ship faster"}})
    return task


# ---- tasks --------------------------------------------------------------------

def test_queue_task_starts_workflow(client, world, services):
    task = world.store.add_task(campaign_id="camp-1", type="email_single", title="Digest")
    r = client.post(f"/api/v1/tasks/{task['id']}/queue")
    assert r.status_code == 200
    assert r.json() == {"task_id": task["id"], "organization_id": "org-1", "started": True}
    assert services.trigger.queued == [(task["id"], "org-1")]


def test_queue_unknown_task(client):
    assert client.post("/api/v1/tasks/nope/queue").status_code == 404


def test_queue_task_without_organization(client, world):
    task = world.store.add_task(campaign_id="camp-gone", type="email_single", title="Orphan")
    assert client.post(f"/api/v1/tasks/{task['id']}/queue").status_code == 422


def test_queue_without_trigger(client, world, services):
    services.trigger = None
    task = world.store.add_task(campaign_id="camp-1", type="email_single", title="Digest")
    assert client.post(f"/api/v1/tasks/{task['id']}/queue").status_code == 503


def test_approve_then_conflict(client, world, services):
    task = _pending_task(world.store)

    r = client.post(f"/api/v1/tasks/{task['id']}/approve", json={"approver_id": "user-1"})
    assert r.status_code == 200
    assert r.json() == {"task_id": task["id"], "status": "approved"}
    assert world.store.row("tasks", task["id"])["final_content"] == {"text": "Ship faster"}
    assert services.trigger.signals[0][1] == "approved"

    again = client.post(f"/api/v1/tasks/{task['id']}/reject", json={"approver_id": "user-2"})
    assert again.status_code == 409


def test_reject_records_notes(client, world):
    task = _pending_task(world.store)
    r = client.post(f"/api/v1/tasks/{task['id']}/reject", json={"approver_id": "user-1", "notes": "Off brand"})
    assert r.status_code == 200
    row = world.store.row("tasks", task["id"])
    assert row["status"] == "cancelled"
    assert row["error_log"][-1]["notes"] == "Off brand"


def test_approve_requires_approver(client, world):
    task = _pending_task(world.store)
    assert client.post(f"/api/v1/tasks/{task['id']}/approve", json={}).status_code == 422


def test_validate_reports_violations_without_writing(client, world):
    add_policy(world.store, "banned_phrase", {"phrases": ["free"]}, name="No freebies")
    task = world.store.add_task(
        campaign_id="camp-1",
        type="email_single",
        title="Promo",
        status="drafted",
        draft_content={"body": "Get it free today"},
    )

    r = client.post(f"/api/v1/tasks/{task['id']}/validate", params={"checkpoint": "content"})

    assert r.status_code == 200
    body = r.json()
    assert body["allowed"] is False
    assert body["violations"][0]["policyName"] == "No freebies"
    assert world.store.row("tasks", task["id"])["status"] == "drafted"
    assert world.store.row("tasks", task["id"])["error_log"] == []


def test_validate_rejects_unknown_checkpoint(client, world):
    task = world.store.add_task(campaign_id="camp-1", type="email_single", title="Promo")
    r = client.post(f"/api/v1/tasks/{task['id']}/validate", params={"checkpoint": "whenever"})
    assert r.status_code == 422


# ---- organizations --------------------------------------------------------------

def test_emergency_stop_and_sandbox_cycle(client, world, services):
    queued = world.store.add_task(campaign_id="camp-1", type="email_single", title="Digest")

    r = client.post("/api/v1/organizations/org-1/emergency-stop", json={"triggered_by": "user-1", "reason": "typo"})
    assert r.status_code == 200
    body = r.json()
    assert body["campaigns_paused"] == ["camp-1"]
    assert body["tasks_cancelled"] == [queued["id"]]
    assert body["sandbox_mode"] is True

    assert client.get("/api/v1/organizations/org-1/sandbox").json() == {"organization_id": "org-1", "sandbox_mode": True}

    assert client.delete("/api/v1/organizations/org-1/sandbox").status_code == 401
    r = client.delete("/api/v1/organizations/org-1/sandbox", headers={"X-User-Id": "user-2"})
    assert r.status_code == 200
    assert r.json() == {"organization_id": "org-1", "sandbox_mode": False}


def test_emergency_stop_unknown_organization(client):
    r = client.post("/api/v1/organizations/org-404/emergency-stop", json={"triggered_by": "user-1"})
    assert r.status_code == 404
    r = client.delete("/api/v1/organizations/org-404/sandbox", headers={"X-User-Id": "user-2"})
    assert r.status_code == 404
