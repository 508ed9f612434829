# tests/unit/test_task_workflow.py
"""
TaskWorkflow in local mode: activities are awaited directly against the
in-memory store, approval waits only see signals that already arrived.
"""
from datetime import datetime, timezone

import pytest

from marketops.common.errors import ChannelExecutionError
from marketops.data.inmemory_store import InMemoryStore
from marketops.data.models import to_iso
from marketops.orchestrator.approvals import approve_task, reject_task
from marketops.orchestrator.emergency import execute_emergency_stop
from marketops.orchestrator.temporal.workflows.task_workflow import TaskWorkflow, TaskWorkflowInput
from marketops.services import Services, configure_services, get_services
from tests.conftest import FIXED_NOW, add_completed_tasks, add_policy, seed_world
from tests.fake_providers import FakeDrafter, RecordingExecutor, RecordingTrigger


def _queue(store, **fields):
    fields.setdefault("campaign_id", "camp-1")
    fields.setdefault("type", "email_single")
    fields.setdefault("title", "Launch announcement")
    fields.setdefault("connector_id", "conn-auto")
    fields.setdefault("scheduled_for", to_iso(FIXED_NOW))
    return store.add_task(**fields)


async def _run(task_id: str, wf=None):
    wf = wf or TaskWorkflow()
    return await wf.run(TaskWorkflowInput(task_id=task_id, organization_id="org-1", metrics_delay_seconds=0))


@pytest.mark.asyncio
async def test_round_trip_to_evaluated(world, services):
    task = _queue(world.store)
    out = await _run(task["id"])

    assert out["outcome"] == "evaluated"
    row = world.store.row("tasks", task["id"])
    assert row["status"] == "evaluated"
    assert row["final_content"] == row["draft_content"] == services.drafter.content
    assert "metrics" in row["execution_result"]
    assert [h["status"] for h in row["status_history"]] == [
        "drafting", "drafted", "approved", "executing", "completed", "evaluated",
    ]

    assert world.store.rows("approvals", task_id=task["id"])[0]["status"] == "auto_approved"
    assert world.store.rows("events", name="metrics/collected")[0]["data"]["taskId"] == task["id"]
    assert world.store.rows("audit_logs", action="task.evaluated")
    assert world.store.row("connectors", "conn-auto")["last_used_at"] is not None
    assert len(services.executor.calls) == 1


@pytest.mark.asyncio
async def test_banned_phrase_in_draft_fails_task(world, services):
    add_policy(world.store, "banned_phrase", {"phrases": ["guaranteed"]})
    services.drafter = FakeDrafter({"body": "Results guaranteed!"})
    task = _queue(world.store)

    out = await _run(task["id"])

    assert out["outcome"] == "content_blocked"
    row = world.store.row("tasks", task["id"])
    assert row["status"] == "failed"
    assert row["draft_content"] == {"body": "Results guaranteed!"}
    assert row.get("final_content") is None
    entry = row["error_log"][-1]
    assert entry["type"] == "content_policy_violation"
    assert entry["feedback"] == "Policy validation found 1 blocking violation(s). Task cannot proceed."
    assert entry["violations"][0]["details"]["foundPhrases"] == ["guaranteed"]
    assert services.executor.calls == []


@pytest.mark.asyncio
async def test_pre_draft_block_cancels_without_drafting(world, services):
    add_policy(world.store, "rate_limit", {"limit": 1, "window": "day"})
    add_completed_tasks(world.store, 1, at=datetime.now(timezone.utc))
    task = _queue(world.store)

    out = await _run(task["id"])

    assert out["outcome"] == "blocked"
    row = world.store.row("tasks", task["id"])
    assert row["status"] == "cancelled"
    assert row["error_log"][-1]["type"] == "policy_violation"
    assert services.drafter.calls == []


@pytest.mark.asyncio
async def test_approval_timeout_then_late_approval_is_noop(world, services):
    task = _queue(world.store, connector_id="conn-gated")

    out = await _run(task["id"])

    assert out["outcome"] == "expired"
    row = world.store.row("tasks", task["id"])
    assert row["status"] == "cancelled"
    assert row["error_log"][-1]["type"] == "approval_timeout"
    assert world.store.rows("approvals", task_id=task["id"])[0]["status"] == "expired"

    assert await approve_task(services, task["id"], "user-1") is False
    assert world.store.row("tasks", task["id"])["status"] == "cancelled"
    assert services.executor.calls == []


class _DecidingStore(InMemoryStore):
    """Lets a reviewer answer as soon as the pending approval exists."""

    def __init__(self, decide):
        super().__init__()
        self.decide = decide

    async def insert_approval(self, row):
        created = await super().insert_approval(row)
        if row["status"] == "pending":
            await self.decide(row["task_id"])
        return created


class _ForwardingTrigger(RecordingTrigger):
    def __init__(self, wf: TaskWorkflow):
        super().__init__()
        self.wf = wf

    async def signal_task(self, task_id, signal, payload):
        await super().signal_task(task_id, signal, payload)
        getattr(self.wf, signal)(payload)
        return True


def _services_with(store, trigger):
    seed_world(store)
    return configure_services(
        Services(store=store, drafter=FakeDrafter(), executor=RecordingExecutor(), trigger=trigger, metrics_delay_seconds=0)
    )


@pytest.mark.asyncio
async def test_approved_signal_resumes_to_execution(services):
    wf = TaskWorkflow()
    store = _DecidingStore(lambda task_id: approve_task(get_services(), task_id, "user-9"))
    svc = _services_with(store, _ForwardingTrigger(wf))
    task = _queue(store, connector_id="conn-gated")

    out = await _run(task["id"], wf)

    assert out["outcome"] == "evaluated"
    approval = store.rows("approvals", task_id=task["id"])[0]
    assert approval["status"] == "approved" and approval["resolved_by"] == "user-9"
    assert store.row("tasks", task["id"])["final_content"] == svc.drafter.content
    assert svc.trigger.signals[0][1] == "approved"


@pytest.mark.asyncio
async def test_rejected_signal_cancels(services):
    wf = TaskWorkflow()
    store = _DecidingStore(lambda task_id: reject_task(get_services(), task_id, "user-9", "off brand"))
    svc = _services_with(store, _ForwardingTrigger(wf))
    task = _queue(store, connector_id="conn-gated")

    out = await _run(task["id"], wf)

    assert out["outcome"] == "rejected"
    row = store.row("tasks", task["id"])
    assert row["status"] == "cancelled"
    assert row["error_log"][-1]["type"] == "approval_rejected"
    assert svc.executor.calls == []


@pytest.mark.asyncio
async def test_approval_that_beats_the_timeout_wins(services):
    # reviewer approves but the signal never reaches the workflow
    store = _DecidingStore(lambda task_id: approve_task(get_services(), task_id, "user-9"))
    svc = _services_with(store, RecordingTrigger())
    task = _queue(store, connector_id="conn-gated")

    out = await _run(task["id"])

    assert out["outcome"] == "evaluated"
    assert store.rows("approvals", task_id=task["id"])[0]["status"] == "approved"
    assert len(svc.executor.calls) == 1


@pytest.mark.asyncio
async def test_dry_run_never_executes(world, services):
    task = _queue(world.store, dry_run=True)

    out = await _run(task["id"])

    assert out["outcome"] == "dry_run_completed"
    row = world.store.row("tasks", task["id"])
    assert row["status"] == "completed"
    assert row["execution_result"] == {
        "dry_run": True,
        "would_execute": "email_single",
        "content_preview": services.drafter.content,
    }
    assert services.executor.calls == []


@pytest.mark.asyncio
async def test_connector_hourly_limit_fails_before_sending(world, services):
    world.store.tables["connectors"]["conn-auto"]["rate_limit_per_hour"] = 2
    add_completed_tasks(world.store, 2, at=datetime.now(timezone.utc), connector_id="conn-auto")
    task = _queue(world.store)

    out = await _run(task["id"])

    assert out["outcome"] == "rate_limited"
    row = world.store.row("tasks", task["id"])
    assert row["status"] == "failed"
    assert row["error_log"][-1]["type"] == "rate_limit_exceeded"
    assert world.store.row("connectors", "conn-auto")["last_error"] == "Rate limit exceeded: 2 tasks per hour"
    assert services.executor.calls == []


@pytest.mark.asyncio
async def test_sandbox_organization_gets_preview_only(world, services):
    world.store.tables["organizations"]["org-1"]["settings"]["sandbox_mode"] = True
    task = _queue(world.store)

    out = await _run(task["id"])

    assert out["outcome"] == "evaluated"
    assert world.store.row("tasks", task["id"])["execution_result"]["sandbox"] is True
    assert services.executor.calls == []
    assert services.drafter.calls[0][1].sandbox_mode is True


@pytest.mark.asyncio
async def test_executor_error_marks_task_failed(world, services):
    services.executor = RecordingExecutor(error=ChannelExecutionError("smtp down"))
    task = _queue(world.store)

    out = await _run(task["id"])

    assert out["outcome"] == "failed"
    row = world.store.row("tasks", task["id"])
    assert row["status"] == "failed"
    assert row["error_log"][-1] == {
        "type": "workflow_failure",
        "step": "execute_task",
        "error": "smtp down",
        "code": "channel_failed",
        "retryable": True,
        "timestamp": row["error_log"][-1]["timestamp"],
    }
    assert world.store.row("connectors", "conn-auto")["last_error"] == "smtp down"
    assert world.store.rows("audit_logs", action="task.failed")


@pytest.mark.asyncio
async def test_task_not_queued_is_skipped(world, services):
    task = _queue(world.store, status="drafting")
    out = await _run(task["id"])
    assert out["outcome"] == "skipped"
    assert services.drafter.calls == []


@pytest.mark.asyncio
async def test_missing_task(world, services):
    out = await _run("does-not-exist")
    assert out["outcome"] == "not_found"


@pytest.mark.asyncio
async def test_task_without_connector_is_auto_approved(world, services):
    task = _queue(world.store, type="blog_post", connector_id=None)

    out = await _run(task["id"])

    assert out["outcome"] == "evaluated"
    assert world.store.row("tasks", task["id"])["status"] == "evaluated"
    assert [a["status"] for a in world.store.rows("approvals", task_id=task["id"])] == ["auto_approved"]
    assert len(services.executor.calls) == 1


class _StoppedWhileSending(RecordingExecutor):
    """The organization is halted while the channel call is in flight."""

    async def execute(self, task, connector, content):
        result = await super().execute(task, connector, content)
        await execute_emergency_stop(get_services(), "org-1", "user-ops")
        return result


@pytest.mark.asyncio
async def test_emergency_stop_during_send_keeps_delivery_result(world, services):
    services.executor = _StoppedWhileSending(result={"status": "sent", "costCents": 500})
    task = _queue(world.store)

    out = await _run(task["id"])

    assert out["outcome"] == "cancelled"
    assert out["status"] == "cancelled"
    assert out["execution_result"] == {"status": "sent", "costCents": 500}
    row = world.store.row("tasks", task["id"])
    assert row["status"] == "cancelled"
    assert row["execution_result"] == {"status": "sent", "costCents": 500}
    entry = row["error_log"][-1]
    assert entry["type"] == "execution_interrupted"
    assert entry["status"] == "cancelled"
    assert entry["execution_result"]["costCents"] == 500
    assert world.store.rows("events", name="metrics/collected") == []

    spent = await world.store.list_execution_results(campaign_ids=["camp-1"])
    assert {"status": "sent", "costCents": 500} in spent


class _CancellingMetrics:
    """An operator cancels the task while its metrics are being gathered."""

    async def collect(self, task, execution_result):
        await get_services().store.update_task(task["id"], {"status": "cancelled"})
        return {"opens": 0}


@pytest.mark.asyncio
async def test_task_moved_before_evaluation_is_not_reported_evaluated(world, services):
    services.metrics = _CancellingMetrics()
    task = _queue(world.store)

    out = await _run(task["id"])

    assert out["outcome"] == "cancelled"
    assert out["status"] == "cancelled"
    row = world.store.row("tasks", task["id"])
    assert row["status"] == "cancelled"
    assert row["execution_result"]["status"] == "sent"
    assert world.store.rows("audit_logs", action="task.evaluated") == []
