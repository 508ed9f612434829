# marketops/orchestrator/temporal/workflows/task_workflow.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    from marketops.common.errors import RateLimitExceededError, classify_exception, error_message
    from marketops.data.models import approval_required
    from marketops.orchestrator.temporal.activities import task_steps as steps
    from marketops.orchestrator.temporal.common.retry_policies import activity_options_for


@dataclass
class TaskWorkflowInput:
    task_id: str
    organization_id: str
    approval_timeout_seconds: int = 72 * 3600
    metrics_delay_seconds: int = 3600
    dry_run: bool = False


def in_workflow_env() -> bool:
    """Detect if running inside Temporal workflow environment."""
    try:
        return workflow.in_workflow()
    except Exception:
        return False


@workflow.defn
class TaskWorkflow:
    """
    Drives one marketing task from ``queued`` to ``evaluated``.

    load -> pre-draft policies -> draft -> content policies -> approval
    (human or automatic) -> [dry run stops here] -> pre-execute policies ->
    execute -> wait -> collect metrics -> evaluate.

    Outside a Temporal worker (pytest) activities are awaited directly, the
    approval wait only sees signals already delivered and sleeps are skipped.
    """

    def __init__(self) -> None:
        self._decision: Optional[str] = None
        self._decision_payload: Dict[str, Any] = {}
        self._step: str = "init"
        self.history: List[Dict[str, Any]] = []
        self._log = workflow.logger if in_workflow_env() else logging.getLogger("marketops.workflow")

    # -------------------
    # Signal handlers
    # -------------------
    def _decide(self, decision: str, payload: Optional[Dict[str, Any]]) -> None:
        if self._decision is None:
            self._decision = decision
            self._decision_payload = payload or {}
            self._log.info("Signal '%s' received: %s", decision, self._decision_payload)
        else:
            self._log.info("Signal '%s' received after '%s'; ignoring.", decision, self._decision)

    @workflow.signal
    def approved(self, payload: Optional[Dict[str, Any]] = None) -> None:
        self._decide("approved", payload)

    @workflow.signal
    def rejected(self, payload: Optional[Dict[str, Any]] = None) -> None:
        self._decide("rejected", payload)

    @workflow.signal
    def cancelled(self, payload: Optional[Dict[str, Any]] = None) -> None:
        self._decide("cancelled", payload)

    @workflow.signal
    def expired(self, payload: Optional[Dict[str, Any]] = None) -> None:
        self._decide("expired", payload)

    @workflow.query
    def decision(self) -> Optional[str]:
        return self._decision

    # -------------------
    # Step helpers
    # -------------------
    async def _act(self, step: str, fn: Callable, *args: Any, kind: str = "store") -> Any:
        self._step = step
        if in_workflow_env():
            opts, rp = activity_options_for(kind)
            result = await workflow.execute_activity(fn, args=list(args), retry_policy=rp, **opts)
        else:
            # Local mode (pytest)
            result = await fn(*args)
        self.history.append({"step": step})
        return result

    async def _wait_for_decision(self, timeout_seconds: int) -> bool:
        if not in_workflow_env():
            return self._decision is not None
        try:
            await workflow.wait_condition(
                lambda: self._decision is not None, timeout=timedelta(seconds=timeout_seconds)
            )
        except asyncio.TimeoutError:
            return self._decision is not None
        return True

    async def _sleep(self, seconds: int) -> None:
        if seconds > 0 and in_workflow_env():
            await workflow.sleep(timedelta(seconds=seconds))

    async def _check(self, task_id: str, organization_id: str, checkpoint: str) -> Optional[Dict[str, Any]]:
        """Validation payload when ``checkpoint`` blocks the task, else None."""
        validation = await self._act(
            f"validate:{checkpoint}", steps.validate_task, task_id, organization_id, checkpoint, kind="policy"
        )
        if validation.get("allowed", True):
            return None
        await self._act(f"block:{checkpoint}", steps.record_policy_block, task_id, checkpoint, validation)
        return validation

    @staticmethod
    def _stopped(status: Optional[str], detail: Dict[str, Any]) -> str:
        # moved elsewhere while the step ran, e.g. by an emergency stop
        detail["status"] = status
        return "cancelled" if status == "cancelled" else "skipped"

    # -------------------
    # Workflow main logic
    # -------------------
    @workflow.run
    async def run(self, data: TaskWorkflowInput) -> Dict[str, Any]:
        self._log.info("TaskWorkflow start | task=%s org=%s", data.task_id, data.organization_id)
        detail: Dict[str, Any] = {}
        try:
            outcome = await self._lifecycle(data, detail)
        except Exception as e:
            error = error_message(e)
            detail["error"] = error
            code, retryable = classify_exception(e)
            if code == RateLimitExceededError.code:
                # already recorded on the task and connector by execute_task
                outcome = "rate_limited"
            else:
                self._log.error("TaskWorkflow failed at %s: %s", self._step, error)
                await self._act(
                    "mark_failed", steps.mark_task_failed, data.task_id, self._step, error, code, retryable
                )
                outcome = "failed"

        await self._act("record_outcome", steps.record_outcome, data.task_id, outcome)
        return {"task_id": data.task_id, "outcome": outcome, "history": self.history, **detail}

    async def _lifecycle(self, data: TaskWorkflowInput, detail: Dict[str, Any]) -> str:
        task_id, org_id = data.task_id, data.organization_id

        # 1. load
        task = await self._act("load_task", steps.load_task, task_id)
        if task is None:
            return "not_found"
        if task.get("status") != "queued":
            detail["status"] = task.get("status")
            return "skipped"
        dry_run = bool(task.get("dry_run")) or data.dry_run

        # 2. pre-draft policies
        blocked = await self._check(task_id, org_id, "pre-draft")
        if blocked is not None:
            detail["feedback"] = blocked.get("feedback")
            return "blocked"

        # 3-4. draft
        if not await self._act("start_drafting", steps.start_drafting, task_id):
            return "skipped"
        draft = await self._act("generate_draft", steps.generate_draft, task_id, org_id, kind="draft")
        if draft is None:
            return "skipped"

        # 5. content policies; a blocked draft is terminal
        blocked = await self._check(task_id, org_id, "content")
        if blocked is not None:
            detail["feedback"] = blocked.get("feedback")
            return "content_blocked"

        # 6. approval
        if approval_required(task.get("connector"), task.get("type") or ""):
            approval = await self._act(
                "request_approval", steps.request_approval, task_id, data.approval_timeout_seconds
            )
            if approval is None:
                return "skipped"
            if not await self._wait_for_decision(data.approval_timeout_seconds):
                decided = await self._act("expire_approval", steps.expire_approval, task_id)
                self._log.info("Approval wait timed out; standing decision=%s", decided)
                if decided != "approved":
                    return decided if decided in ("rejected", "expired") else "cancelled"
            elif self._decision != "approved":
                detail.update(self._decision_payload)
                return self._decision or "cancelled"
        elif not await self._act("auto_approve", steps.auto_approve, task_id):
            return "skipped"

        # 7. dry run
        if dry_run:
            preview = await self._act("complete_dry_run", steps.complete_dry_run, task_id)
            if preview is None:
                return "skipped"
            detail["execution_result"] = preview
            return "dry_run_completed"

        # 8. pre-execute policies
        blocked = await self._check(task_id, org_id, "pre-execute")
        if blocked is not None:
            detail["feedback"] = blocked.get("feedback")
            return "execution_blocked"

        # 9. execute
        report = await self._act("execute_task", steps.execute_task, task_id, org_id, kind="execute")
        if report is None:
            return "skipped"
        detail["execution_result"] = report["execution_result"]
        if not report["completed"]:
            return self._stopped(report["status"], detail)

        # 10. metrics
        await self._sleep(data.metrics_delay_seconds)
        metrics = await self._act("collect_metrics", steps.collect_metrics, task_id, kind="metrics")
        detail["metrics"] = metrics
        status = await self._act("evaluate_task", steps.evaluate_task, task_id, metrics)
        if status != "evaluated":
            return self._stopped(status, detail)
        return "evaluated"
