"""
ZapAround Billing API application.

Builds the FastAPI app that receives Stripe subscription webhooks and serves
the billing and admin endpoints used by the web app. ``create_app`` wires:

- the asyncpg pool, opened on startup and closed on shutdown
- request logging with correlation ids, and per-route HTTP metrics
- CORS, gzip and security headers
- JSON error bodies for validation, HTTP and unexpected errors
- /health, /ready and the Prometheus scrape endpoint

Run locally with ``python -m api.src.main`` or ``uvicorn api.src.main:app``.
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from api.src import dependencies
from api.src.config import Settings, get_settings
from api.src.routers import admin, billing, webhooks
from shared.logging import bind_context, configure_logging, unbind_context
from shared.metrics import get_billing_metrics, get_metrics_handler
from shared.models import HealthResponse, HealthStatus, ReadinessResponse

logger = structlog.get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# HTTP and pool collectors live on the default registry next to the billing ones
REQUESTS = Counter(
    "http_requests_total",
    "HTTP requests by method, route template and status code",
    ["method", "endpoint", "status"],
)
LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency by method and route template",
    ["method", "endpoint"],
)
IN_FLIGHT = Gauge(
    "http_requests_in_progress",
    "HTTP requests being served",
    ["method"],
)
POOL_SIZE = Gauge("database_connections_active", "Connections held by the asyncpg pool")
POOL_IDLE = Gauge("database_connections_idle", "Idle connections in the asyncpg pool")


def _refresh_pool_gauges() -> None:
    try:
        pool = dependencies.get_db_pool()
    except RuntimeError:
        return
    POOL_SIZE.set(pool.get_size())
    POOL_IDLE.set(pool.get_idle_size())


def _route_template(request: Request) -> str:
    # the router stores the matched route in the shared scope; unmatched paths
    # collapse into one label so random URLs cannot blow up cardinality
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Correlation id, request log lines and HTTP metrics."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        method = request.method
        bind_context(correlation_id=correlation_id)
        IN_FLIGHT.labels(method=method).inc()
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=method,
                path=request.url.path,
                error=str(e),
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
                exc_info=True,
            )
            raise
        else:
            elapsed = time.perf_counter() - started
            endpoint = _route_template(request)
            REQUESTS.labels(method=method, endpoint=endpoint, status=response.status_code).inc()
            LATENCY.labels(method=method, endpoint=endpoint).observe(elapsed)
            logger.info(
                "request_completed",
                method=method,
                path=request.url.path,
                status_code=response.status_code,
                client_ip=request.client.host if request.client else None,
                duration_ms=round(elapsed * 1000, 1),
            )
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            IN_FLIGHT.labels(method=method).dec()
            unbind_context("correlation_id", "user_id")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds the fixed set of browser security headers."""

    def __init__(self, app, hsts_max_age: int = 0):
        super().__init__(app)
        self.headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
        if hsts_max_age:
            self.headers["Strict-Transport-Security"] = f"max-age={hsts_max_age}; includeSubDomains"

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.update(self.headers)
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database pool, probe it, and release it on shutdown."""
    settings: Settings = app.state.settings
    logger.info("application_starting", version=settings.app_version, environment=settings.environment)

    try:
        pool = await dependencies.init_db_pool()
        async with pool.acquire() as conn:
            logger.info("database_connected", postgres_version=await conn.fetchval("SELECT version()"))

        await dependencies.check_role_function(pool)
    except Exception as e:
        logger.error("application_startup_failed", error=str(e), exc_info=True)
        await dependencies.close_db_pool()
        raise

    if not settings.email_enabled:
        logger.warning("email_disabled", reason="resend_api_key not set")
    if not settings.stripe_secret_key:
        logger.warning("stripe_secret_key_missing")
    if not settings.stripe_webhook_secret:
        logger.warning("stripe_webhook_secret_missing")

    _refresh_pool_gauges()
    logger.info("application_started")

    try:
        yield
    finally:
        logger.info("application_shutting_down")
        await dependencies.close_db_pool()
        logger.info("application_shutdown_complete")


def _error_items(exc: RequestValidationError) -> list:
    # ctx can carry exception instances, which JSON cannot encode
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        errors = _error_items(exc)
        logger.warning("validation_error", path=request.url.path, errors=errors)
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": errors})

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException):
        # BillingError.to_http() puts X-Error-Code in the headers
        log = logger.warning if exc.status_code >= 500 else logger.info
        log("http_error", path=request.url.path, status_code=exc.status_code, detail=exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def on_unhandled_error(request: Request, exc: Exception):
        logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )


def register_health_routes(app: FastAPI, settings: Settings) -> None:

    @app.get("/health", tags=["Health"], response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Liveness probe; does not touch the database."""
        return HealthResponse(
            service=settings.app_name,
            version=settings.app_version,
            environment=settings.environment,
        )

    @app.get("/ready", tags=["Health"], response_model=ReadinessResponse)
    async def ready() -> JSONResponse:
        """Readiness probe; 503 until the database answers."""
        database = HealthStatus.UNHEALTHY
        try:
            async with dependencies.get_db_pool().acquire() as conn:
                await conn.fetchval("SELECT 1")
            database = HealthStatus.HEALTHY
        except Exception as e:
            logger.warning("readiness_database_unavailable", error=str(e))

        _refresh_pool_gauges()
        readiness = ReadinessResponse(
            status="not_ready",
            service=settings.app_name,
            version=settings.app_version,
            checks={"database": database},
        )
        if readiness.is_ready:
            readiness.status = "ready"
        return JSONResponse(
            status_code=status.HTTP_200_OK if readiness.is_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=readiness.model_dump(mode="json"),
        )

    if settings.metrics_enabled:
        render = get_metrics_handler()

        @app.get(settings.metrics_endpoint, tags=["Monitoring"], response_class=PlainTextResponse)
        async def metrics() -> Response:
            _refresh_pool_gauges()
            return Response(content=render(), media_type=CONTENT_TYPE_LATEST)


def create_app(settings: Settings = None) -> FastAPI:
    """Build the application from ``settings`` (the cached settings by default)."""
    settings = settings or get_settings()
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.log_format == "json",
        service_name=settings.app_name,
        environment=settings.environment,
    )
    # billing collectors must exist before the first scrape
    get_billing_metrics()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Subscription billing for ZapAround. Receives Stripe webhooks, keeps "
            "user roles in step with subscriptions, and serves the billing endpoints "
            "used by the web app."
        ),
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings

    # added innermost first; the request logger wraps everything
    if settings.security_headers_enabled:
        app.add_middleware(
            SecurityHeadersMiddleware,
            hsts_max_age=settings.security_hsts_max_age if settings.security_require_https else 0,
        )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=settings.cors_allow_methods,
            allow_headers=settings.cors_allow_headers,
        )
    app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)
    register_health_routes(app, settings)
    for module in (webhooks, billing, admin):
        app.include_router(module.router, prefix=settings.api_prefix)

    return app


app = create_app()


if __name__ == "__main__":
    _settings = get_settings()
    uvicorn.run(
        "api.src.main:app",
        host=_settings.host,
        port=_settings.port,
        reload=_settings.debug,
        log_level=_settings.log_level.lower(),
    )
