# marketops/orchestrator/temporal/activities/task_steps.py
"""
Task lifecycle activities.

One activity per workflow step. Each one looks its collaborators up through
``get_services()`` and moves the task with a conditional status update, so a
retried or duplicated step observes the transition it lost instead of
overwriting it.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from temporalio import activity

from marketops.channels.executor import enforce_connector_rate_limits
from marketops.common.errors import RateLimitExceededError, TaskNotFoundError
from marketops.common.metrics import TASK_OUTCOMES
from marketops.common.tracing import trace_scope
from marketops.data.audit import organization_id_of, write_audit
from marketops.data.models import (
    NON_TERMINAL_STATUSES,
    ApprovalStatus,
    Organization,
    TaskStatus,
    to_iso,
    utcnow,
)
from marketops.data.store import Row
from marketops.orchestrator import approvals
from marketops.policy.engine import validate_policies
from marketops.services import get_services

logger = logging.getLogger("marketops.activities")

# checkpoint -> (error_log type, status on block, status the task must be in)
_BLOCK_OUTCOMES = {
    "pre-draft": ("policy_violation", TaskStatus.CANCELLED.value, TaskStatus.QUEUED.value),
    "content": ("content_policy_violation", TaskStatus.FAILED.value, TaskStatus.DRAFTED.value),
    "pre-execute": ("execution_policy_violation", TaskStatus.FAILED.value, TaskStatus.APPROVED.value),
}


def _attempt() -> int:
    return activity.info().attempt if activity.in_activity() else 1


async def _require_task(task_id: str) -> Row:
    task = await get_services().store.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(f"Task {task_id} not found")
    return task


@activity.defn
async def load_task(task_id: str) -> Optional[Dict[str, Any]]:
    with trace_scope(task_id):
        task = await get_services().store.get_task(task_id)
        if task is None:
            logger.warning("Task %s not found", task_id)
        return task


@activity.defn
async def validate_task(task_id: str, organization_id: str, checkpoint: str) -> Dict[str, Any]:
    """Run the policy engine at ``checkpoint`` against the task's current row."""
    with trace_scope(task_id):
        svc = get_services()
        task = await _require_task(task_id)
        result = await validate_policies(
            task, organization_id, checkpoint, svc.store, budget_warning_ratio=svc.budget_warning_ratio
        )
        return result.to_payload()


@activity.defn
async def record_policy_block(task_id: str, checkpoint: str, validation: Dict[str, Any]) -> bool:
    with trace_scope(task_id):
        store = get_services().store
        entry_type, status, expected = _BLOCK_OUTCOMES[checkpoint]
        ok = await store.append_task_error(
            task_id,
            {
                "type": entry_type,
                "checkpoint": checkpoint,
                "violations": validation.get("violations") or [],
                "feedback": validation.get("feedback"),
                "timestamp": to_iso(utcnow()),
            },
            fields={"status": status},
            expected_status=expected,
        )
        if ok:
            task = await store.get_task(task_id) or {}
            await write_audit(
                store,
                organization_id=organization_id_of(task),
                action="task.policy_blocked",
                resource_type="task",
                resource_id=task_id,
                metadata={
                    "checkpoint": checkpoint,
                    "policies": [v.get("policyId") for v in validation.get("violations") or []],
                },
            )
        logger.info("Task %s blocked at %s -> %s (recorded=%s)", task_id, checkpoint, status, ok)
        return ok


@activity.defn
async def start_drafting(task_id: str) -> bool:
    with trace_scope(task_id):
        return await get_services().store.update_task(
            task_id,
            {"status": TaskStatus.DRAFTING.value, "started_at": to_iso(utcnow())},
            expected_status=TaskStatus.QUEUED.value,
        )


@activity.defn
async def generate_draft(task_id: str, organization_id: str) -> Optional[Dict[str, Any]]:
    """Draft content and store it; ``None`` when the task left ``drafting`` meanwhile."""
    with trace_scope(task_id):
        svc = get_services()
        task = await _require_task(task_id)
        org_row = await svc.store.get_organization(organization_id)
        org = Organization.model_validate(org_row) if org_row else None

        draft = await svc.drafter.draft(task, org)
        stored = await svc.store.update_task(
            task_id,
            {"draft_content": draft, "status": TaskStatus.DRAFTED.value},
            expected_status=TaskStatus.DRAFTING.value,
        )
        if not stored:
            logger.info("Draft for task %s discarded: task no longer drafting", task_id)
            return None
        return draft


@activity.defn
async def request_approval(task_id: str, timeout_seconds: int) -> Optional[Dict[str, Any]]:
    """Move the task to ``pending_approval`` and open its approval row (idempotent)."""
    with trace_scope(task_id):
        store = get_services().store
        moved = await store.update_task(
            task_id,
            {"status": TaskStatus.PENDING_APPROVAL.value},
            expected_status=TaskStatus.DRAFTED.value,
        )
        task = await _require_task(task_id)
        if not moved and task.get("status") != TaskStatus.PENDING_APPROVAL.value:
            return None

        existing = await store.get_pending_approval(task_id)
        if existing is not None:
            return existing

        now = utcnow()
        approval = await store.insert_approval(
            {
                "task_id": task_id,
                "status": ApprovalStatus.PENDING.value,
                "content_snapshot": task.get("draft_content"),
                "requested_at": to_iso(now),
                "expires_at": to_iso(now + timedelta(seconds=timeout_seconds)),
            }
        )
        logger.info("Approval %s requested for task %s (expires %s)", approval.get("id"), task_id, approval.get("expires_at"))
        return approval


@activity.defn
async def expire_approval(task_id: str) -> str:
    with trace_scope(task_id):
        return await approvals.expire_approval(get_services(), task_id, reason="approval_timeout")


@activity.defn
async def auto_approve(task_id: str) -> bool:
    with trace_scope(task_id):
        store = get_services().store
        task = await _require_task(task_id)
        ok = await store.update_task(
            task_id,
            {"status": TaskStatus.APPROVED.value, "final_content": task.get("draft_content")},
            expected_status=TaskStatus.DRAFTED.value,
        )
        if ok:
            now = to_iso(utcnow())
            await store.insert_approval(
                {
                    "task_id": task_id,
                    "status": ApprovalStatus.AUTO_APPROVED.value,
                    "content_snapshot": task.get("draft_content"),
                    "requested_at": now,
                    "resolved_at": now,
                }
            )
        return ok


@activity.defn
async def complete_dry_run(task_id: str) -> Optional[Dict[str, Any]]:
    with trace_scope(task_id):
        store = get_services().store
        task = await _require_task(task_id)
        result = {
            "dry_run": True,
            "would_execute": task.get("type"),
            "content_preview": task.get("final_content"),
        }
        ok = await store.update_task(
            task_id,
            {"status": TaskStatus.COMPLETED.value, "completed_at": to_iso(utcnow()), "execution_result": result},
            expected_status=TaskStatus.APPROVED.value,
        )
        return result if ok else None


@activity.defn
async def execute_task(task_id: str, organization_id: str) -> Optional[Dict[str, Any]]:
    """
    Publish the task's final content through its channel.

    Returns ``None`` when another run already claimed the task, otherwise
    ``{completed, status, execution_result}``; ``completed`` is false when the
    task was moved out of ``executing`` while the channel call ran. Connector
    hourly/daily limits are enforced before any external call; a sandboxed
    organization gets a preview and nothing is sent.
    """
    with trace_scope(task_id):
        svc = get_services()
        store = svc.store

        # a retry re-enters a task it already moved to executing
        claim_from = [TaskStatus.APPROVED.value]
        if _attempt() > 1:
            claim_from.append(TaskStatus.EXECUTING.value)
        if not await store.update_task(task_id, {"status": TaskStatus.EXECUTING.value}, expected_status=claim_from):
            logger.info("Task %s not claimable for execution; skipping", task_id)
            return None

        task = await _require_task(task_id)
        connector = task.get("connector")
        now = utcnow()

        try:
            await enforce_connector_rate_limits(store, connector, now)
        except RateLimitExceededError as e:
            await store.update_connector(connector["id"], {"last_error": str(e)})
            await store.append_task_error(
                task_id,
                {
                    "type": "rate_limit_exceeded",
                    "window": e.window,
                    "limit": e.limit,
                    "count": e.count,
                    "error": str(e),
                    "timestamp": to_iso(now),
                },
                fields={"status": TaskStatus.FAILED.value},
                expected_status=TaskStatus.EXECUTING.value,
            )
            logger.warning("Task %s refused by connector %s: %s", task_id, connector["id"], e)
            raise

        org_row = await store.get_organization(organization_id)
        org = Organization.model_validate(org_row) if org_row else None

        if org is not None and org.sandbox_mode:
            result: Dict[str, Any] = {
                "sandbox": True,
                "would_execute": task.get("type"),
                "connector": (connector or {}).get("type"),
                "content_preview": task.get("final_content"),
                "timestamp": to_iso(now),
            }
            logger.info("Organization %s in sandbox mode; task %s not sent", organization_id, task_id)
        else:
            try:
                result = await svc.executor.execute(task, connector, task.get("final_content") or {})
            except Exception as e:
                if connector:
                    await store.update_connector(connector["id"], {"last_error": str(e)})
                raise
            if connector:
                await store.update_connector(connector["id"], {"last_used_at": to_iso(utcnow()), "last_error": None})

        completed = await store.update_task(
            task_id,
            {"status": TaskStatus.COMPLETED.value, "completed_at": to_iso(utcnow()), "execution_result": result},
            expected_status=TaskStatus.EXECUTING.value,
        )
        if completed:
            return {"completed": True, "status": TaskStatus.COMPLETED.value, "execution_result": result}

        # stopped mid-send: the delivery happened, keep its result (and spend) on the row
        current = (await _require_task(task_id)).get("status")
        stamp = to_iso(utcnow())
        await store.append_task_error(
            task_id,
            {
                "type": "execution_interrupted",
                "status": current,
                "execution_result": result,
                "timestamp": stamp,
            },
            fields={"execution_result": result, "completed_at": stamp},
        )
        logger.warning("Task %s left executing (now %s) while sending; result recorded", task_id, current)
        return {"completed": False, "status": current, "execution_result": result}


@activity.defn
async def collect_metrics(task_id: str) -> Dict[str, Any]:
    with trace_scope(task_id):
        svc = get_services()
        task = await _require_task(task_id)
        return await svc.metrics.collect(task, task.get("execution_result") or {})


@activity.defn
async def evaluate_task(task_id: str, metrics: Dict[str, Any]) -> str:
    """Final task status: ``evaluated``, or whatever status the task moved to instead."""
    with trace_scope(task_id):
        store = get_services().store
        task = await _require_task(task_id)
        result = {**(task.get("execution_result") or {}), "metrics": metrics}
        ok = await store.update_task(
            task_id,
            {"status": TaskStatus.EVALUATED.value, "execution_result": result},
            expected_status=TaskStatus.COMPLETED.value,
        )
        if not ok:
            return (await _require_task(task_id)).get("status") or "unknown"
        await store.insert_event("metrics/collected", {"taskId": task_id, "metrics": metrics})
        await write_audit(
            store,
            organization_id=organization_id_of(task),
            action="task.evaluated",
            resource_type="task",
            resource_id=task_id,
            metadata={"metrics": metrics},
        )
        return TaskStatus.EVALUATED.value


@activity.defn
async def mark_task_failed(
    task_id: str, step: str, error: str, code: str = "permanent_failure", retryable: bool = False
) -> bool:
    with trace_scope(task_id):
        store = get_services().store
        ok = await store.append_task_error(
            task_id,
            {
                "type": "workflow_failure",
                "step": step,
                "error": error,
                "code": code,
                "retryable": retryable,
                "timestamp": to_iso(utcnow()),
            },
            fields={"status": TaskStatus.FAILED.value},
            expected_status=NON_TERMINAL_STATUSES,
        )
        if ok:
            task = await store.get_task(task_id) or {}
            await write_audit(
                store,
                organization_id=organization_id_of(task),
                action="task.failed",
                resource_type="task",
                resource_id=task_id,
                metadata={"step": step, "error": error, "code": code},
            )
        logger.error("Task %s failed at %s: %s", task_id, step, error)
        return ok


@activity.defn
async def record_outcome(task_id: str, outcome: str) -> None:
    TASK_OUTCOMES.labels(outcome=outcome).inc()
    logger.info("Task %s workflow outcome=%s", task_id, outcome, extra={"task_id": task_id, "outcome": outcome})


ALL_ACTIVITIES = [
    load_task,
    validate_task,
    record_policy_block,
    start_drafting,
    generate_draft,
    request_approval,
    expire_approval,
    auto_approve,
    complete_dry_run,
    execute_task,
    collect_metrics,
    evaluate_task,
    mark_task_failed,
    record_outcome,
]
