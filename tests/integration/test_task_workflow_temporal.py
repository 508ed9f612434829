# tests/integration/test_task_workflow_temporal.py
"""
TaskWorkflow on a real (time-skipping) Temporal test server.

Downloads the test server on first use, so it only runs with
TEMPORAL_INTEGRATION=1.
"""
import asyncio
import os

import pytest
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import Worker

from marketops.orchestrator.approvals import approve_task
from marketops.orchestrator.temporal.activities.task_steps import ALL_ACTIVITIES
from marketops.orchestrator.temporal.trigger import TemporalTaskTrigger
from marketops.orchestrator.temporal.worker import ACTIVITIES, WORKFLOWS
from marketops.orchestrator.temporal.workflows.emergency_stop import EmergencyStopInput, EmergencyStopWorkflow
from marketops.orchestrator.temporal.workflows.heartbeat import HeartbeatWorkflow
from marketops.orchestrator.temporal.workflows.task_workflow import TaskWorkflow, TaskWorkflowInput

pytestmark = [
    pytest.mark.asyncio,
    pytest.mark.skipif(os.getenv("TEMPORAL_INTEGRATION") != "1", reason="set TEMPORAL_INTEGRATION=1"),
]

QUEUE = "marketops-tasks-test"


def _queue(store, connector_id):
    return store.add_task(campaign_id="camp-1", type="email_single", title="Launch", connector_id=connector_id)


async def test_auto_approved_task_runs_to_evaluated(world, services):
    task = _queue(world.store, "conn-auto")

    async with await WorkflowEnvironment.start_time_skipping() as env:
        async with Worker(env.client, task_queue=QUEUE, workflows=[TaskWorkflow], activities=ALL_ACTIVITIES):
            result = await env.client.execute_workflow(
                TaskWorkflow.run,
                TaskWorkflowInput(task_id=task["id"], organization_id="org-1", metrics_delay_seconds=3600),
                id=f"task-{task['id']}",
                task_queue=QUEUE,
            )

    assert result["outcome"] == "evaluated"
    assert world.store.row("tasks", task["id"])["status"] == "evaluated"


async def test_approval_signal_resumes_workflow(world, services):
    task = _queue(world.store, "conn-gated")

    async with await WorkflowEnvironment.start_time_skipping() as env:
        services.trigger = TemporalTaskTrigger(env.client, task_queue=QUEUE, metrics_delay_seconds=60)
        async with Worker(env.client, task_queue=QUEUE, workflows=[TaskWorkflow], activities=ALL_ACTIVITIES):
            assert await services.trigger.queue_task(task["id"], "org-1") is True
            assert await services.trigger.queue_task(task["id"], "org-1") is False

            # wait until the approval row exists
            for _ in range(100):
                if world.store.rows("approvals", task_id=task["id"]):
                    break
                await asyncio.sleep(0.05)

            assert await approve_task(services, task["id"], "user-1") is True
            handle = env.client.get_workflow_handle(f"task-{task['id']}")
            result = await asyncio.wait_for(handle.result(), timeout=30)

    assert result["outcome"] == "evaluated"
    assert world.store.rows("approvals", task_id=task["id"])[0]["status"] == "approved"


async def test_unanswered_approval_expires(world, services):
    task = _queue(world.store, "conn-gated")

    async with await WorkflowEnvironment.start_time_skipping() as env:
        async with Worker(env.client, task_queue=QUEUE, workflows=[TaskWorkflow], activities=ALL_ACTIVITIES):
            result = await env.client.execute_workflow(
                TaskWorkflow.run,
                TaskWorkflowInput(task_id=task["id"], organization_id="org-1", approval_timeout_seconds=3600),
                id=f"task-{task['id']}",
                task_queue=QUEUE,
            )

    assert result["outcome"] == "expired"
    assert world.store.row("tasks", task["id"])["status"] == "cancelled"


async def test_maintenance_workflows(world, services):
    async with await WorkflowEnvironment.start_time_skipping() as env:
        async with Worker(env.client, task_queue=QUEUE, workflows=WORKFLOWS, activities=ACTIVITIES):
            tick = await env.client.execute_workflow(HeartbeatWorkflow.run, id="heartbeat-test", task_queue=QUEUE)
            stop = await env.client.execute_workflow(
                EmergencyStopWorkflow.run,
                EmergencyStopInput(organization_id="org-1", triggered_by="user-1"),
                id="emergency-test",
                task_queue=QUEUE,
            )

    assert tick["approvals_expired"] == []
    assert stop["campaigns_paused"] == ["camp-1"]
