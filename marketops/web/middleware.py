# marketops/web/middleware.py
import time
import uuid

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from marketops.common.tracing import trace_scope
from marketops.web import metrics as metrics_mod

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Request-ID (or mint one) and bind it as the trace id."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        with trace_scope(request_id):
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _route_label(request: Request) -> str:
    # template path, e.g. /api/v1/tasks/{task_id}/approve
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        metrics_mod.HTTP_TOTAL.labels(method=request.method, path=_route_label(request)).inc()
        metrics_mod.HTTP_LATENCY.observe(elapsed)
        status = response.status_code
        if status >= 500:
            metrics_mod.HTTP_5XX.inc()
        elif status >= 400:
            metrics_mod.HTTP_4XX.inc()
        elif status >= 200:
            metrics_mod.HTTP_2XX.inc()
        return response


def setup_middleware(app: FastAPI) -> None:
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(MetricsMiddleware)
