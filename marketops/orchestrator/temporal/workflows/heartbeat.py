# marketops/orchestrator/temporal/workflows/heartbeat.py
from __future__ import annotations

from typing import Any, Dict

from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    from marketops.orchestrator.temporal.activities.maintenance import heartbeat_sweep
    from marketops.orchestrator.temporal.common.retry_policies import activity_options_for


@workflow.defn
class HeartbeatWorkflow:
    """One scheduler tick. Started by the heartbeat schedule; overlapping ticks are skipped."""

    @workflow.run
    async def run(self) -> Dict[str, Any]:
        opts, rp = activity_options_for("sweep")
        report = await workflow.execute_activity(heartbeat_sweep, retry_policy=rp, **opts)
        workflow.logger.info("Heartbeat tick: %s", report)
        return report
