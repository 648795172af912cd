"""payrecon API - FastAPI Application Entry Point.

Run with the application factory:

    uvicorn --factory payrecon_api.main:create_app

Settings are read from the environment once, when the factory runs. The
lifespan builds the engine, session factory, gateway client and signature
verifier from them and stores everything on ``app.state``.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException
from supabase import Client

from payrecon_api import __version__
from payrecon_api.billing.paystack import PaystackClient
from payrecon_api.billing.signature import SignatureVerifier
from payrecon_api.billing.subscriptions import Clock, utc_clock
from payrecon_api.config import Settings
from payrecon_api.context import organization_id_var, payment_reference_var, request_id_var
from payrecon_api.db.engine import build_engine, build_sessionmaker
from payrecon_api.errors import PaymentError
from payrecon_api.routers import health, payments
from payrecon_api.schemas import ProblemDetail
from payrecon_api.supabase_client import build_supabase_client
from payrecon_api.utils import configure_json_logging

logger = logging.getLogger(__name__)


def configure_state(
    app: FastAPI,
    settings: Settings,
    *,
    engine: Optional[Engine] = None,
    gateway: Optional[PaystackClient] = None,
    clock: Clock = utc_clock,
    supabase: Optional[Client] = None,
) -> None:
    """Build process-wide components from Settings and attach them to app.state.

    Tests call this directly with an SQLite engine and a gateway backed by
    httpx.MockTransport.
    """
    app.state.settings = settings
    app.state.engine = engine if engine is not None else build_engine(settings.database_url, settings.db_pool)
    app.state.session_factory = build_sessionmaker(app.state.engine)
    app.state.gateway = gateway if gateway is not None else PaystackClient(
        secret_key=settings.paystack_secret_key,
        base_url=settings.paystack_base_url,
        max_attempts=settings.verify_max_attempts,
        retry_delay=settings.verify_retry_delay_seconds,
        timeout=settings.gateway_timeout_seconds,
    )
    if settings.paystack_configured:
        app.state.verifier = SignatureVerifier(settings.paystack_secret_key)
    else:
        # Fail closed: every gateway call and webhook answers NotConfigured
        app.state.verifier = None
        logger.warning("PAYSTACK_NOT_CONFIGURED", extra={"env": settings.env})
    app.state.clock = clock
    app.state.supabase = supabase
    app.state.configured = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    if not getattr(app.state, "configured", False):
        configure_state(app, settings)
    if app.state.supabase is None and settings.supabase_configured:
        app.state.supabase = build_supabase_client(settings)
    logger.info(
        "APP_STARTED",
        extra={"env": app.state.settings.env, "version": __version__},
    )
    try:
        yield
    finally:
        app.state.engine.dispose()


def _instance() -> str:
    # Opaque instance using request_id from context
    request_id = request_id_var.get()
    return f"urn:payrecon:trace:{request_id}" if request_id else f"urn:payrecon:trace:{uuid.uuid4()}"


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        422: "Unprocessable Entity",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# ============================================================================
# RFC 9457 Exception Handlers
# ============================================================================


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Render PaymentError subclasses as RFC 9457 Problem Details."""
    problem = ProblemDetail(
        type=f"urn:payrecon:problem:{exc.code.lower()}",
        title=exc.title,
        status=exc.status_code,
        detail=exc.detail,
        instance=_instance(),
        code=exc.code,
        reference=exc.reference,
    )

    log_extra = {"error_code": exc.code, "status_code": exc.status_code, "reference": exc.reference}
    if exc.status_code >= 500:
        logger.error("PAYMENT_ERROR", extra=log_extra)
    else:
        logger.warning("PAYMENT_ERROR", extra=log_extra)

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC 9457 Problem Details format.

    Preserves dict detail fields for structured error responses.
    """
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)

    problem = ProblemDetail(
        type=f"urn:payrecon:problem:http-{exc.status_code}",
        title=_get_title_for_status(exc.status_code),
        status=exc.status_code,
        detail=detail_value,
        instance=_instance(),
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors (422) with RFC 9457 Problem Details format."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    problem = ProblemDetail(
        type="urn:payrecon:problem:validation-error",
        title="Request Validation Failed",
        status=422,
        detail=f"Invalid field '{field}': {msg}",
        instance=_instance(),
    )

    return JSONResponse(
        status_code=422,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions (500) with RFC 9457 Problem Details format."""
    problem = ProblemDetail(
        type="urn:payrecon:problem:internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred. Please try again later.",
        instance=_instance(),
    )

    # Traceback is sanitized by JSONFormatter
    logger.error(f"Unhandled exception: {type(exc).__name__}", exc_info=exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


# ============================================================================
# Application Factory
# ============================================================================


def create_app(
    settings: Optional[Settings] = None,
    *,
    otel_enabled: bool = False,
    otel_service_name: str = "payrecon-api",
    otel_span_exporter: Any = None,
    otel_metric_reader: Any = None,
    otel_log_correlation: bool = True,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Runtime configuration; read from the environment when omitted
        otel_enabled: Enable OpenTelemetry tracing/metrics
        otel_service_name: Service name for OTel resource
        otel_span_exporter: Custom span exporter (testing)
        otel_metric_reader: Custom metric reader (testing)
        otel_log_correlation: Enable trace/span ID injection into logs

    Returns:
        Configured FastAPI application instance
    """
    if settings is None:
        settings = Settings.from_env()

    # Set PAYRECON_JSON_LOGS=false to disable (defaults to true for production)
    if settings.json_logs:
        configure_json_logging(log_level=settings.log_level)

    if otel_enabled:
        from payrecon_api.otel import init_otel

        init_otel(
            service_name=otel_service_name,
            span_exporter=otel_span_exporter,
            metric_reader=otel_metric_reader,
            log_correlation=otel_log_correlation,
        )

    new_app = FastAPI(
        title="payrecon API",
        description="Payment confirmation reconciler: Paystack checkout, verification and webhooks.",
        version=__version__,
        lifespan=lifespan,
    )
    new_app.state.settings = settings
    new_app.state.configured = False
    new_app.state.otel_enabled = otel_enabled

    # MDN: credentials mode CANNOT use wildcard origins
    new_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    new_app.add_exception_handler(PaymentError, payment_error_handler)
    new_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    new_app.add_exception_handler(RequestValidationError, validation_exception_handler)
    new_app.add_exception_handler(Exception, general_exception_handler)

    new_app.include_router(health.router, tags=["health"])
    new_app.include_router(payments.router)

    # Instrument with OTel FIRST (before other middlewares) so spans wrap them
    if otel_enabled:
        from opentelemetry import metrics, trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(
            new_app,
            tracer_provider=trace.get_tracer_provider(),
            meter_provider=metrics.get_meter_provider(),
        )

    @new_app.middleware("http")
    async def completion_logging_mw(request: Request, call_next):
        """Log every HTTP request completion.

        Clears per-request contextvars at start and end to prevent leakage.
        Logs even on exceptions (status_code=500).
        """
        payment_reference_var.set("")
        organization_id_var.set("")

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_seconds = time.perf_counter() - start_time
            logger.info(
                "http.request.completed",
                extra={
                    "event": "http.request.completed",
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": round(duration_seconds * 1000, 2),
                },
            )

            if getattr(new_app.state, "otel_enabled", False):
                from opentelemetry import metrics

                meter = metrics.get_meter(__name__)
                # create_histogram is idempotent - returns existing if already created
                meter.create_histogram(
                    name="http.server.request.duration",
                    unit="s",
                    description="Measures the duration of inbound HTTP requests",
                ).record(
                    duration_seconds,
                    attributes={
                        "http.request.method": request.method,
                        "http.response.status_code": status_code,
                    },
                )

            payment_reference_var.set("")
            organization_id_var.set("")

    # Request ID middleware (outermost for context propagation)
    @new_app.middleware("http")
    async def request_id_mw(request: Request, call_next):
        """Generate and propagate request_id (accepts client X-Request-ID)."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    return new_app
