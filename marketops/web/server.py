# marketops/web/server.py
# ---------------------------------------------------------------------------
# MarketOps Web API entrypoint
# ---------------------------------------------------------------------------
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI

load_dotenv(find_dotenv(usecwd=True), override=False)

from marketops.common.tracing import setup_logging  # noqa: E402
from marketops.config import settings  # noqa: E402
from marketops.services import Services, build_services, configure_services  # noqa: E402
from marketops.web import metrics  # noqa: E402
from marketops.web.middleware import setup_middleware  # noqa: E402
from marketops.web.routes_organizations import router as organizations_router  # noqa: E402
from marketops.web.routes_tasks import router as tasks_router  # noqa: E402

log = logging.getLogger("marketops.web")


async def _attach_temporal_trigger(services: Services) -> None:
    """Best effort: the API still serves approvals and validation without Temporal."""
    from marketops.orchestrator.temporal.trigger import TemporalTaskTrigger
    from temporalio.client import Client

    try:
        client = await Client.connect(settings.TEMPORAL_TARGET, namespace=settings.TEMPORAL_NAMESPACE)
    except Exception as e:  # noqa: BLE001
        log.warning("Temporal unavailable at %s; task triggers disabled: %s", settings.TEMPORAL_TARGET, e)
        return
    services.trigger = TemporalTaskTrigger(
        client,
        approval_timeout_seconds=services.approval_timeout_seconds,
        metrics_delay_seconds=services.metrics_delay_seconds,
    )
    log.info("Temporal trigger attached (%s)", settings.TEMPORAL_TARGET)


# ---------------------------------------------------------------------------
# Application Factory
# ---------------------------------------------------------------------------
def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API around ``services``; without them, wire from Settings and connect Temporal on startup."""
    connect_temporal = services is None
    services = configure_services(services or build_services(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if connect_temporal and app.state.services.trigger is None:
            await _attach_temporal_trigger(app.state.services)
        yield

    app = FastAPI(title="MarketOps Core API", lifespan=lifespan)
    app.state.services = services

    setup_middleware(app)

    app.include_router(tasks_router)
    app.include_router(organizations_router)
    app.include_router(metrics.router)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


def main() -> None:
    setup_logging()
    uvicorn.run("marketops.web.server:create_app", factory=True, host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    main()
