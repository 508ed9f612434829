# marketops/orchestrator/temporal/worker.py
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import List

from dotenv import find_dotenv, load_dotenv
from temporalio.client import Client
from temporalio.worker import Worker

from marketops.common.tracing import setup_logging
from marketops.config import settings
from marketops.orchestrator.temporal.activities.maintenance import emergency_stop, heartbeat_sweep
from marketops.orchestrator.temporal.activities.task_steps import ALL_ACTIVITIES
from marketops.orchestrator.temporal.config import TASK_QUEUE, TEMPORAL_NAMESPACE, TEMPORAL_TARGET
from marketops.orchestrator.temporal.schedules import ensure_heartbeat_schedule
from marketops.orchestrator.temporal.trigger import TemporalTaskTrigger
from marketops.orchestrator.temporal.workflows.emergency_stop import EmergencyStopWorkflow
from marketops.orchestrator.temporal.workflows.heartbeat import HeartbeatWorkflow
from marketops.orchestrator.temporal.workflows.task_workflow import TaskWorkflow
from marketops.services import build_services, configure_services

load_dotenv(find_dotenv(usecwd=True), override=False)

log = logging.getLogger("marketops.worker")

WORKFLOWS: List = [TaskWorkflow, HeartbeatWorkflow, EmergencyStopWorkflow]
ACTIVITIES: List = [*ALL_ACTIVITIES, heartbeat_sweep, emergency_stop]


# --------------------------------------------------------------------------
# Helper Functions
# --------------------------------------------------------------------------
async def _connect_temporal(
    target: str, namespace: str, retries: int = 3, delay: int = 3
) -> Client:
    """Connect to Temporal with retry logic."""
    for attempt in range(1, retries + 1):
        try:
            log.info("Connecting to Temporal server (%s@%s) attempt %d/%d", namespace, target, attempt, retries)
            client = await Client.connect(target, namespace=namespace)
            log.info("Connected to Temporal server: %s", target)
            return client
        except Exception as e:
            log.warning("Connection attempt %d failed: %s", attempt, e)
            if attempt < retries:
                await asyncio.sleep(delay)
    raise RuntimeError(f"Failed to connect to Temporal server after {retries} attempts")


async def _serve_queue(client: Client, queue_name: str, workflows: List, activities: List) -> None:
    """Start and run a Temporal worker for a given queue."""
    log.info("Starting worker | queue=%s | workflows=%d | activities=%d", queue_name, len(workflows), len(activities))
    worker = Worker(client=client, task_queue=queue_name, workflows=workflows, activities=activities)
    try:
        await worker.run()
    except asyncio.CancelledError:
        log.info("Worker on %s cancelled, shutting down", queue_name)
    except Exception as e:
        log.exception("Worker crashed on queue %s: %s", queue_name, e)
        raise


# --------------------------------------------------------------------------
# Main Runner
# --------------------------------------------------------------------------
async def run() -> None:
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    setup_logging()
    log.info("MarketOps worker starting | target=%s | namespace=%s | queue=%s", TEMPORAL_TARGET, TEMPORAL_NAMESPACE, TASK_QUEUE)

    client = await _connect_temporal(TEMPORAL_TARGET, TEMPORAL_NAMESPACE)
    configure_services(
        build_services(
            settings,
            trigger=TemporalTaskTrigger(
                client,
                approval_timeout_seconds=settings.APPROVAL_TIMEOUT_HOURS * 3600,
                metrics_delay_seconds=settings.METRICS_DELAY_SECONDS,
            ),
        )
    )
    await ensure_heartbeat_schedule(client)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    worker_task = asyncio.create_task(_serve_queue(client, TASK_QUEUE, WORKFLOWS, ACTIVITIES), name="tasks")
    worker_task.add_done_callback(
        lambda t: log.error("Worker %s exited with: %s", t.get_name(), t.exception())
        if not t.cancelled() and t.exception()
        else None
    )

    try:
        await asyncio.wait(
            [worker_task, asyncio.create_task(stop_event.wait())], return_when=asyncio.FIRST_COMPLETED
        )
        log.info("Stop signal received, shutting down worker")
    finally:
        worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)
        log.info("Worker stopped cleanly.")


# --------------------------------------------------------------------------
# CLI Entrypoint
# --------------------------------------------------------------------------
def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        log.info("KeyboardInterrupt, exiting.")


if __name__ == "__main__":
    main()
