# marketops/orchestrator/temporal/schedules.py
from __future__ import annotations

import logging
from datetime import timedelta

from temporalio.client import (
    Client,
    Schedule,
    ScheduleActionStartWorkflow,
    ScheduleAlreadyRunningError,
    ScheduleIntervalSpec,
    ScheduleOverlapPolicy,
    SchedulePolicy,
    ScheduleSpec,
)

from marketops.orchestrator.temporal.config import (
    HEARTBEAT_INTERVAL_SECONDS,
    HEARTBEAT_SCHEDULE_ID,
    TASK_QUEUE,
)
from marketops.orchestrator.temporal.workflows.heartbeat import HeartbeatWorkflow

logger = logging.getLogger("marketops.schedules")


async def ensure_heartbeat_schedule(
    client: Client,
    *,
    schedule_id: str = HEARTBEAT_SCHEDULE_ID,
    every_seconds: int = HEARTBEAT_INTERVAL_SECONDS,
    task_queue: str = TASK_QUEUE,
) -> bool:
    """Create the heartbeat schedule; False when it already exists."""
    try:
        await client.create_schedule(
            schedule_id,
            Schedule(
                action=ScheduleActionStartWorkflow(
                    HeartbeatWorkflow.run,
                    id=f"{schedule_id}-tick",
                    task_queue=task_queue,
                ),
                spec=ScheduleSpec(intervals=[ScheduleIntervalSpec(every=timedelta(seconds=every_seconds))]),
                policy=SchedulePolicy(overlap=ScheduleOverlapPolicy.SKIP),
            ),
        )
    except ScheduleAlreadyRunningError:
        logger.info("Heartbeat schedule %s already exists", schedule_id)
        return False
    logger.info("Heartbeat schedule %s created (every %ss)", schedule_id, every_seconds)
    return True
