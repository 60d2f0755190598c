"""
Request metrics for the capture API.

Every request except GET /metrics is counted into the app's CaptureMetrics
(request.app.state.metrics) under a low-cardinality endpoint label:

    matched route      → route template        /log_event
    unmatched, 404     → unmatched:<bucket>    unmatched:/admin/*
    anything else      → <bucket>              /static/x

A handler that raises produces no response and is recorded as status 0 ("0xx").
"""

import time
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .capture_metrics import CaptureMetrics

SCRAPE_PATH = "/metrics"


def _sanitize_path(path: str) -> str:
    """First two segments plus a wildcard."""
    segments = [s for s in path.split("/") if s]
    if len(segments) <= 2:
        return path
    return "/" + "/".join(segments[:2]) + "/*"


def _endpoint_label(request: Request, status_code: Optional[int]) -> str:
    route = request.scope.get("route")
    if route is not None and status_code is not None:
        return route.path
    bucket = _sanitize_path(request.url.path)
    if status_code == 404:
        return f"unmatched:{bucket}"
    return bucket


def _record(request: Request, status_code: Optional[int], started: float) -> None:
    metrics: CaptureMetrics = request.app.state.metrics
    endpoint = _endpoint_label(request, status_code)
    metrics.inc_api_request(endpoint, request.method, status_code or 0)
    metrics.observe_api_request_duration(endpoint, time.monotonic() - started)


class MetricsMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == SCRAPE_PATH:
            return await call_next(request)

        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            _record(request, None, started)
            raise
        _record(request, response.status_code, started)
        return response
