# marketops/orchestrator/emergency.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from marketops.common.errors import OrganizationNotFoundError
from marketops.common.metrics import EMERGENCY_STOPS
from marketops.data.audit import write_audit
from marketops.data.models import (
    NON_TERMINAL_STATUSES,
    ApprovalStatus,
    CampaignStatus,
    Organization,
    TaskStatus,
    to_iso,
    utcnow,
)
from marketops.data.store import RecordStore
from marketops.services import Services

log = logging.getLogger("marketops.emergency")

PAUSABLE_CAMPAIGN_STATUSES = (CampaignStatus.ACTIVE.value, CampaignStatus.PLANNED.value)


class EmergencyStopResult(BaseModel):
    organization_id: str
    campaigns_paused: List[str] = Field(default_factory=list)
    tasks_cancelled: List[str] = Field(default_factory=list)
    approvals_expired: List[str] = Field(default_factory=list)
    sandbox_mode: bool = True
    triggered_by: str
    timestamp: str


async def execute_emergency_stop(
    services: Services,
    organization_id: str,
    triggered_by: str,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> EmergencyStopResult:
    """
    Halt all outbound activity for an organization.

    Pauses active/planned campaigns, cancels every non-terminal task under the
    organization's campaigns (expiring pending approvals first), and switches
    the organization into sandbox mode. Safe to call twice: the second run
    finds nothing left to pause or cancel.
    """
    store = services.store
    now = now or utcnow()
    stamp = to_iso(now)

    org = await store.get_organization(organization_id)
    if org is None:
        raise OrganizationNotFoundError(f"Organization {organization_id} not found")

    log.warning("Emergency stop requested | org=%s by=%s reason=%s", organization_id, triggered_by, reason)

    campaigns = await store.list_campaigns(organization_id=organization_id)
    campaign_ids = [c["id"] for c in campaigns]
    paused = await store.update_campaigns(
        [c["id"] for c in campaigns if c.get("status") in PAUSABLE_CAMPAIGN_STATUSES],
        {"status": CampaignStatus.PAUSED.value},
        expected_status=PAUSABLE_CAMPAIGN_STATUSES,
    )

    tasks = await store.list_tasks(campaign_ids=campaign_ids, statuses=NON_TERMINAL_STATUSES)
    expired: List[str] = []
    cancelled: List[str] = []
    for task in tasks:
        task_id = task["id"]
        if task.get("status") == TaskStatus.PENDING_APPROVAL.value:
            approval = await store.resolve_approval(
                task_id, ApprovalStatus.EXPIRED.value, resolved_at=now, notes="emergency_stop"
            )
            if approval is not None:
                expired.append(approval["id"])
        ok = await store.append_task_error(
            task_id,
            {"type": "emergency_stop", "triggered_by": triggered_by, "reason": reason, "timestamp": stamp},
            fields={"status": TaskStatus.CANCELLED.value},
            expected_status=NON_TERMINAL_STATUSES,
        )
        if ok:
            cancelled.append(task_id)

    settings = dict(org.get("settings") or {})
    settings.update({"sandbox_mode": True, "sandbox_enabled_at": stamp, "sandbox_enabled_by": triggered_by})
    await store.update_organization(organization_id, {"settings": settings})

    await write_audit(
        store,
        organization_id=organization_id,
        action="emergency_stop",
        resource_type="organization",
        resource_id=organization_id,
        actor_type="user",
        actor_id=triggered_by,
        metadata={
            "reason": reason,
            "campaigns_paused": len(paused),
            "tasks_cancelled": len(cancelled),
            "approvals_expired": len(expired),
        },
    )

    if services.trigger is not None:
        for task_id in cancelled:
            await services.trigger.signal_task(task_id, "cancelled", {"reason": "emergency_stop", "triggered_by": triggered_by})

    EMERGENCY_STOPS.inc()
    log.warning(
        "Emergency stop complete | org=%s campaigns=%d tasks=%d approvals=%d",
        organization_id, len(paused), len(cancelled), len(expired),
    )
    return EmergencyStopResult(
        organization_id=organization_id,
        campaigns_paused=paused,
        tasks_cancelled=cancelled,
        approvals_expired=expired,
        triggered_by=triggered_by,
        timestamp=stamp,
    )


async def is_sandbox_mode(store: RecordStore, organization_id: str) -> bool:
    org = await store.get_organization(organization_id)
    if org is None:
        return False
    return Organization.model_validate(org).sandbox_mode


async def disable_sandbox_mode(
    services: Services,
    organization_id: str,
    user_id: str,
    *,
    now: Optional[datetime] = None,
) -> Organization:
    store = services.store
    org = await store.get_organization(organization_id)
    if org is None:
        raise OrganizationNotFoundError(f"Organization {organization_id} not found")

    settings = dict(org.get("settings") or {})
    settings.update({"sandbox_mode": False, "sandbox_disabled_at": to_iso(now or utcnow()), "sandbox_disabled_by": user_id})
    updated = await store.update_organization(organization_id, {"settings": settings})

    await write_audit(
        store,
        organization_id=organization_id,
        action="sandbox_mode.disabled",
        resource_type="organization",
        resource_id=organization_id,
        actor_type="user",
        actor_id=user_id,
    )
    log.info("Sandbox mode disabled | org=%s by=%s", organization_id, user_id)
    return Organization.model_validate(updated or {**org, "settings": settings})
