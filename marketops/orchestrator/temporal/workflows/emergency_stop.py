# marketops/orchestrator/temporal/workflows/emergency_stop.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    from marketops.orchestrator.temporal.activities.maintenance import emergency_stop
    from marketops.orchestrator.temporal.common.retry_policies import activity_options_for


@dataclass
class EmergencyStopInput:
    organization_id: str
    triggered_by: str
    reason: Optional[str] = None


@workflow.defn
class EmergencyStopWorkflow:
    @workflow.run
    async def run(self, data: EmergencyStopInput) -> Dict[str, Any]:
        workflow.logger.info("Emergency stop | org=%s by=%s", data.organization_id, data.triggered_by)
        opts, rp = activity_options_for("sweep")
        return await workflow.execute_activity(
            emergency_stop,
            args=[data.organization_id, data.triggered_by, data.reason],
            retry_policy=rp,
            **opts,
        )
