# marketops/orchestrator/temporal/config.py
from marketops.config import settings

# Where the Temporal frontend is reachable
TEMPORAL_TARGET = settings.TEMPORAL_TARGET

# Which namespace to use
TEMPORAL_NAMESPACE = settings.TEMPORAL_NAMESPACE

# Queue name both the worker listens on and the trigger/schedule start on
TASK_QUEUE = settings.TEMPORAL_TASK_QUEUE

HEARTBEAT_SCHEDULE_ID = settings.HEARTBEAT_SCHEDULE_ID
HEARTBEAT_INTERVAL_SECONDS = settings.HEARTBEAT_INTERVAL_SECONDS


def task_workflow_id(task_id: str) -> str:
    return f"task-{task_id}"
