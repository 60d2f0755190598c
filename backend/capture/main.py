"""
Event Capture API.

Endpoints:
- POST /log_event              ingest one event
- GET  /get_events?session_id= events for a session, ingestion order
- GET  /health, /health/ready  liveness / readiness
- GET  /metrics                Prometheus text exposition

Endpoints are sync `def`: FastAPI runs each request on its threadpool,
which is the one-thread-per-request model the capture core is built for.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

load_dotenv()

from . import __version__
from .capture_metrics import CaptureMetrics
from .config import ConfigValidationError, get_config_summary, validate_config
from .core.config import Settings
from .errors import (
    CaptureError,
    ConnectivityError,
    DurabilityError,
    EventsNotFoundError,
    InvalidEventError,
    MissingKeyError,
    SinkConnectionError,
)
from .service import CaptureService, build_capture_service

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Error → HTTP mapping
# ═══════════════════════════════════════════════════════════════════════════════

# Most specific first: ConnectivityError is a DurabilityError.
_STATUS_BY_ERROR = (
    (MissingKeyError, 400),
    (InvalidEventError, 422),
    (EventsNotFoundError, 404),
    (ConnectivityError, 503),
    (DurabilityError, 500),
)


def to_http_exception(exc: CaptureError) -> HTTPException:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            break
    else:
        status_code = 500
    return HTTPException(
        status_code=status_code,
        detail={"error": exc.code, "message": str(exc)},
    )


def _get_service(request: Request) -> CaptureService:
    service = request.app.state.capture_service
    if service is None:
        raise HTTPException(
            status_code=503,
            detail={"error": "service_not_ready", "message": "Capture service is not started"},
        )
    return service


# ═══════════════════════════════════════════════════════════════════════════════
# App factory
# ═══════════════════════════════════════════════════════════════════════════════

def create_app(
    settings: Optional[Settings] = None,
    service: Optional[CaptureService] = None,
) -> FastAPI:
    """
    Build the API.

    With `service` given, the app uses it as-is (tests, embedding). Otherwise
    the startup hook validates `settings` and wires the stores from them.
    """
    settings = settings or Settings()

    app = FastAPI(
        title="Event Capture API",
        description="Client event ingestion and session-keyed retrieval",
        version=__version__,
    )
    app.state.settings = settings
    app.state.capture_service = service
    app.state.metrics = service.metrics if service is not None else CaptureMetrics()

    # ── CORS, environment-aware ──────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=not settings.is_production,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    # ── Metrics Middleware ────────────────────────────────────────────────────
    from .metrics_middleware import MetricsMiddleware
    app.add_middleware(MetricsMiddleware)

    @app.on_event("startup")
    def startup_event():
        if app.state.capture_service is not None:
            logger.info("Using provided capture service")
            return

        # Config validation (MUST be first!)
        try:
            validate_config(settings)
            logger.info("Config validation passed")
        except ConfigValidationError as e:
            logger.critical(f"FATAL: Config validation failed:\n{e}")
            raise RuntimeError(str(e))

        try:
            app.state.capture_service = build_capture_service(settings, metrics=app.state.metrics)
        except SinkConnectionError as e:
            logger.critical(f"FATAL: Relational sink unavailable at startup: {e}")
            raise RuntimeError(str(e))

        logger.info(f"{settings.app_name} started (env={settings.env})")

    @app.on_event("shutdown")
    def shutdown_event():
        service = app.state.capture_service
        if service is not None:
            service.close()

    # ── Prometheus Metrics Endpoint ───────────────────────────────────────────
    @app.get("/metrics", include_in_schema=False)
    def prometheus_metrics():
        """
        GET /metrics: Prometheus text exposition format.
        Instance-level registry only, no global/default registry.
        """
        return Response(
            content=app.state.metrics.generate_metrics(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    # ── Capture ───────────────────────────────────────────────────────────────
    @app.post("/log_event")
    def log_event(request: Request, body: Any = Body(None)):
        """
        Ingest one event.

        Body: {"session_id", "event_type", "timestamp", "payload"}
        (`user_id` is accepted for session_id, `data`/`content` for payload)

        Errors: 400 missing session_id, 422 invalid event,
        503 backend unavailable, 500 persist failed.
        """
        service = _get_service(request)
        if not isinstance(body, dict):
            raise HTTPException(
                status_code=422,
                detail={"error": "invalid_event", "message": "Request body must be a JSON object"},
            )
        try:
            ack = service.ingest(body)
        except CaptureError as e:
            raise to_http_exception(e)

        return {"status": "ok", "message": "Event logged", "session_id": ack.session_id}

    @app.get("/get_events")
    def get_events(request: Request, session_id: Optional[str] = Query(None)):
        """Events for session_id in ingestion order. 404 for an unknown session."""
        service = _get_service(request)
        if not session_id:
            raise to_http_exception(MissingKeyError())
        try:
            events = service.query(session_id)
        except EventsNotFoundError as e:
            raise to_http_exception(e)
        return [event.model_dump() for event in events]

    # ── Health ────────────────────────────────────────────────────────────────
    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/health/ready")
    def health_ready():
        """
        Readiness check.

        Checks:
        - service: capture service started
        - relational_sink: SELECT 1 round-trip (when configured)

        Returns 200 if ready, 503 if not ready.
        """
        checks = {}
        failing_checks = []

        service = app.state.capture_service
        if service is None:
            checks["service"] = {"status": "error", "message": "not started"}
            failing_checks.append("service")
        else:
            checks["service"] = {"status": "ok"}
            sink = service.relational_sink
            if sink is None:
                checks["relational_sink"] = {"status": "disabled"}
            elif service.is_ready():
                checks["relational_sink"] = {"status": "ok"}
            else:
                checks["relational_sink"] = {
                    "status": "error",
                    "message": (sink.last_error or "unreachable")[:100],
                }
                failing_checks.append("relational_sink")

        status = "not_ready" if failing_checks else "ready"
        response = {
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "checks": checks,
            "config": get_config_summary(settings),
        }

        if failing_checks:
            response["failing_checks"] = failing_checks
            return JSONResponse(status_code=503, content=response)

        return response

    return app


app = create_app()
