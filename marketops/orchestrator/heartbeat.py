# marketops/orchestrator/heartbeat.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from marketops.data.models import CampaignStatus, TaskStatus, parse_ts, to_iso, utcnow
from marketops.data.store import RecordStore, Row
from marketops.orchestrator.approvals import expire_approval
from marketops.services import Services

log = logging.getLogger("marketops.heartbeat")


class HeartbeatReport(BaseModel):
    campaigns_activated: List[str] = Field(default_factory=list)
    tasks_triggered: List[str] = Field(default_factory=list)
    approvals_expired: List[str] = Field(default_factory=list)


class _OrgResolver:
    """campaign_id -> organization_id, cached for one sweep."""

    def __init__(self, store: RecordStore):
        self.store = store
        self._cache: Dict[str, Optional[str]] = {}

    async def for_campaign(self, campaign_id: Optional[str]) -> Optional[str]:
        if not campaign_id:
            return None
        if campaign_id not in self._cache:
            org_id = None
            campaign = await self.store.get_campaign(campaign_id)
            if campaign is not None:
                product = await self.store.get_product(campaign.get("product_id") or "")
                org_id = (product or {}).get("organization_id") or campaign.get("organization_id")
            self._cache[campaign_id] = org_id
        return self._cache[campaign_id]


async def activate_due_campaigns(store: RecordStore, now: datetime) -> List[str]:
    planned = await store.list_campaigns(statuses=CampaignStatus.PLANNED.value)
    due = []
    for c in planned:
        start = parse_ts(c.get("start_date"))
        if start is not None and start <= now:
            due.append(c["id"])
    return await store.update_campaigns(due, {"status": CampaignStatus.ACTIVE.value}, expected_status=CampaignStatus.PLANNED.value)


async def trigger_due_tasks(services: Services, now: datetime) -> List[str]:
    if services.trigger is None:
        raise RuntimeError("Heartbeat needs a workflow trigger to queue tasks")
    tasks: List[Row] = await services.store.list_tasks(
        statuses=TaskStatus.QUEUED.value,
        scheduled_before=now,
        limit=services.heartbeat_batch_limit,
    )
    resolver = _OrgResolver(services.store)
    triggered = []
    for task in tasks:
        org_id = await resolver.for_campaign(task.get("campaign_id"))
        if org_id is None:
            # every due task leaves the sweep triggered or failed
            await services.store.append_task_error(
                task["id"],
                {
                    "type": "organization_unresolved",
                    "campaign_id": task.get("campaign_id"),
                    "timestamp": to_iso(now),
                },
                fields={"status": TaskStatus.FAILED.value},
                expected_status=TaskStatus.QUEUED.value,
            )
            log.warning("Task %s has no resolvable organization; marked failed", task["id"])
            continue
        if await services.trigger.queue_task(task["id"], org_id):
            triggered.append(task["id"])
    return triggered


async def expire_overdue_approvals(services: Services, now: datetime) -> List[str]:
    overdue = await services.store.list_expired_approvals(now, limit=services.heartbeat_batch_limit)
    expired = []
    for approval in overdue:
        task_id = approval["task_id"]
        decided = await expire_approval(services, task_id, reason="approval_expired", now=now)
        if decided != "expired":
            continue
        expired.append(approval["id"])
        if services.trigger is not None:
            await services.trigger.signal_task(task_id, "expired", {"approval_id": approval["id"]})
    return expired


async def run_heartbeat(services: Services, *, now: Optional[datetime] = None) -> HeartbeatReport:
    """One sweep: activate due campaigns, queue due tasks, expire overdue approvals."""
    now = now or utcnow()
    report = HeartbeatReport(
        campaigns_activated=await activate_due_campaigns(services.store, now),
        tasks_triggered=await trigger_due_tasks(services, now),
        approvals_expired=await expire_overdue_approvals(services, now),
    )
    log.info(
        "Heartbeat | campaigns=%d tasks=%d approvals=%d",
        len(report.campaigns_activated), len(report.tasks_triggered), len(report.approvals_expired),
    )
    return report
