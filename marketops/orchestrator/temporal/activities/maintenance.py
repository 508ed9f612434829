# marketops/orchestrator/temporal/activities/maintenance.py
from __future__ import annotations

from typing import Any, Dict, Optional

from temporalio import activity

from marketops.common.tracing import trace_scope
from marketops.orchestrator.emergency import execute_emergency_stop
from marketops.orchestrator.heartbeat import run_heartbeat
from marketops.services import get_services


@activity.defn
async def heartbeat_sweep() -> Dict[str, Any]:
    with trace_scope(None):
        report = await run_heartbeat(get_services())
        return report.model_dump()


@activity.defn
async def emergency_stop(organization_id: str, triggered_by: str, reason: Optional[str] = None) -> Dict[str, Any]:
    with trace_scope(organization_id):
        result = await execute_emergency_stop(get_services(), organization_id, triggered_by, reason)
        return result.model_dump()
