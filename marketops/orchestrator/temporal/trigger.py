# marketops/orchestrator/temporal/trigger.py
from __future__ import annotations

import logging
from typing import Any, Dict

from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError

from marketops.orchestrator.temporal.config import TASK_QUEUE, task_workflow_id
from marketops.orchestrator.temporal.workflows.task_workflow import TaskWorkflow, TaskWorkflowInput

logger = logging.getLogger("marketops.trigger")


class TemporalTaskTrigger:
    """
    Starts one TaskWorkflow per task (workflow id ``task-<id>``) and relays
    approval/cancellation signals to it.
    """

    def __init__(
        self,
        client: Client,
        *,
        task_queue: str = TASK_QUEUE,
        approval_timeout_seconds: int = 72 * 3600,
        metrics_delay_seconds: int = 3600,
    ):
        self.client = client
        self.task_queue = task_queue
        self.approval_timeout_seconds = approval_timeout_seconds
        self.metrics_delay_seconds = metrics_delay_seconds

    async def queue_task(self, task_id: str, organization_id: str) -> bool:
        """True when a new workflow was started; a running one for the task makes this a no-op."""
        workflow_id = task_workflow_id(task_id)
        try:
            await self.client.start_workflow(
                TaskWorkflow.run,
                TaskWorkflowInput(
                    task_id=task_id,
                    organization_id=organization_id,
                    approval_timeout_seconds=self.approval_timeout_seconds,
                    metrics_delay_seconds=self.metrics_delay_seconds,
                ),
                id=workflow_id,
                task_queue=self.task_queue,
            )
        except WorkflowAlreadyStartedError:
            logger.info("Workflow %s already running; trigger ignored", workflow_id)
            return False
        logger.info("Started %s | org=%s queue=%s", workflow_id, organization_id, self.task_queue)
        return True

    async def signal_task(self, task_id: str, signal: str, payload: Dict[str, Any]) -> bool:
        workflow_id = task_workflow_id(task_id)
        try:
            handle = self.client.get_workflow_handle(workflow_id)
            await handle.signal(signal, payload)
        except Exception as e:  # noqa: BLE001
            logger.exception("Failed to send signal '%s' to %s: %s", signal, workflow_id, e)
            return False
        logger.info("Signal dispatched | workflow=%s | signal=%s", workflow_id, signal)
        return True
