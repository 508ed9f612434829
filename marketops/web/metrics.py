# marketops/web/metrics.py
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# -------------------------------------------------------
#  Prometheus metrics definitions
# -------------------------------------------------------

HTTP_TOTAL = Counter(
    "marketops_http_requests_total",
    "Total incoming API requests",
    ["method", "path"],
)
HTTP_2XX = Counter("marketops_http_2xx_total", "API 2xx responses")
HTTP_4XX = Counter("marketops_http_4xx_total", "API 4xx responses")
HTTP_5XX = Counter("marketops_http_5xx_total", "API 5xx responses")
HTTP_LATENCY = Histogram(
    "marketops_http_latency_seconds",
    "API request latency (seconds)",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.3, 0.5, 1.0, 3.0, 5.0),
)

# -------------------------------------------------------
#  FastAPI router for metrics endpoints
# -------------------------------------------------------

router = APIRouter()


@router.get("/metrics")
async def metrics_endpoint():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/readyz")
async def readiness_check(request: Request):
    """Ready when the record store answers."""
    services = request.app.state.services
    if not await services.store.ping():
        return JSONResponse(status_code=503, content={"status": "unavailable", "store": False})
    return {"status": "ready", "store": True, "trigger": services.trigger is not None}
