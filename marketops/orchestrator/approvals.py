# marketops/orchestrator/approvals.py
"""
Approval resolution.

Every path that settles an approval (approver action, workflow timeout,
heartbeat sweep, emergency stop) goes through ``store.resolve_approval``, a
conditional ``pending -> <status>`` update. Whoever commits first decides;
everyone else observes the decision and becomes a no-op.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from marketops.data.audit import organization_id_of, write_audit
from marketops.data.models import ApprovalStatus, TaskStatus, to_iso, utcnow
from marketops.services import Services

log = logging.getLogger("marketops.approvals")


async def _notify(services: Services, task_id: str, signal: str, payload: dict) -> None:
    if services.trigger is None:
        log.info("No workflow trigger configured; %s for task %s not signalled", signal, task_id)
        return
    await services.trigger.signal_task(task_id, signal, payload)


async def approve_task(services: Services, task_id: str, approver_id: str, *, now: Optional[datetime] = None) -> bool:
    """Approve the task's pending approval. Returns False when nothing was pending (late or duplicate)."""
    store = services.store
    now = now or utcnow()

    approval = await store.resolve_approval(task_id, ApprovalStatus.APPROVED.value, resolved_at=now, resolved_by=approver_id)
    if approval is None:
        log.info("Approval for task %s ignored: no pending approval", task_id)
        return False

    await store.update_task(
        task_id,
        {"status": TaskStatus.APPROVED.value, "final_content": approval.get("content_snapshot")},
        expected_status=TaskStatus.PENDING_APPROVAL.value,
    )
    task = await store.get_task(task_id) or {}
    await write_audit(
        store,
        organization_id=organization_id_of(task),
        action="task.approved",
        resource_type="task",
        resource_id=task_id,
        actor_type="user",
        actor_id=approver_id,
        metadata={"approval_id": approval.get("id")},
    )
    await _notify(services, task_id, "approved", {"approver_id": approver_id, "approved_at": to_iso(now)})
    return True


async def reject_task(
    services: Services,
    task_id: str,
    approver_id: str,
    notes: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> bool:
    store = services.store
    now = now or utcnow()

    approval = await store.resolve_approval(
        task_id, ApprovalStatus.REJECTED.value, resolved_at=now, resolved_by=approver_id, notes=notes
    )
    if approval is None:
        log.info("Rejection for task %s ignored: no pending approval", task_id)
        return False

    await store.append_task_error(
        task_id,
        {"type": "approval_rejected", "approver_id": approver_id, "notes": notes, "timestamp": to_iso(now)},
        fields={"status": TaskStatus.CANCELLED.value},
        expected_status=TaskStatus.PENDING_APPROVAL.value,
    )
    task = await store.get_task(task_id) or {}
    await write_audit(
        store,
        organization_id=organization_id_of(task),
        action="task.rejected",
        resource_type="task",
        resource_id=task_id,
        actor_type="user",
        actor_id=approver_id,
        metadata={"approval_id": approval.get("id"), "notes": notes},
    )
    await _notify(services, task_id, "rejected", {"approver_id": approver_id, "notes": notes})
    return True


async def expire_approval(
    services: Services,
    task_id: str,
    *,
    reason: str = "approval_timeout",
    now: Optional[datetime] = None,
) -> str:
    """
    Expire the pending approval and cancel the task.

    Returns the decision that stands: ``"expired"`` when this call won, or the
    status another resolver committed first (``"approved"``, ``"rejected"``, ...).
    """
    store = services.store
    now = now or utcnow()

    approval = await store.resolve_approval(task_id, ApprovalStatus.EXPIRED.value, resolved_at=now, notes=reason)
    if approval is None:
        latest = await store.get_latest_approval(task_id)
        decided = (latest or {}).get("status") or "missing"
        if decided == ApprovalStatus.APPROVED.value:
            # the approver won the race; make sure the task reflects it
            await store.update_task(
                task_id,
                {"status": TaskStatus.APPROVED.value, "final_content": latest.get("content_snapshot")},
                expected_status=TaskStatus.PENDING_APPROVAL.value,
            )
        log.info("Expiry for task %s lost the race; approval already %s", task_id, decided)
        return decided

    await store.append_task_error(
        task_id,
        {"type": reason, "approval_id": approval.get("id"), "expires_at": approval.get("expires_at"), "timestamp": to_iso(now)},
        fields={"status": TaskStatus.CANCELLED.value},
        expected_status=TaskStatus.PENDING_APPROVAL.value,
    )
    task = await store.get_task(task_id) or {}
    await write_audit(
        store,
        organization_id=organization_id_of(task),
        action="approval.expired",
        resource_type="task",
        resource_id=task_id,
        metadata={"approval_id": approval.get("id"), "reason": reason},
    )
    return ApprovalStatus.EXPIRED.value
