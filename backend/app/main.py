import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    billing_problem,
    problem_details,
)
from app.api.routes_health import router as health_router
from app.api.routes_metrics import router as metrics_router
from app.domain.errors import BillingError, DomainError
from app.infra.db import dispose_engine, get_session_factory
from app.infra.logging import clear_log_context, configure_logging, update_log_context
from app.infra.metrics import configure_metrics
from app.services import build_app_services
from app.settings import settings

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("app.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Propagates X-Request-ID and writes one structured access line per request."""

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            latency_ms = int((time.monotonic() - started) * 1000)
            update_log_context(status_code=status_code, latency_ms=latency_ms)
            request_logger.info("request")
            clear_log_context()


def _validation_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", []) if part not in {"body", "query", "path"}]
        errors.append({"field": ".".join(location) or "body", "message": error.get("msg", "Invalid value")})
    return errors


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=_validation_errors(exc),
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(BillingError)
    async def billing_exception_handler(request: Request, exc: BillingError):
        if exc.status >= 500:
            logger.error(
                "billing_error",
                extra={"extra": {"code": exc.code, "status": exc.status, "path": request.url.path}},
            )
        return billing_problem(request, exc)

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        return problem_details(
            request=request,
            status=400,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else None
        return problem_details(
            request=request,
            status=exc.status_code,
            title=message or "HTTP Error",
            detail=message or "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(request_id=request_id, status_code=500, error_type=error_type)
        logger.exception("unhandled_exception", extra={"extra": {"path": request.url.path}})
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )


def create_app(app_settings, *, session_factory=None, stripe_client=None) -> FastAPI:
    """Build the service app; tests pass their own session factory and Stripe client."""
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    owns_engine = session_factory is None
    resolved_session_factory = session_factory or get_session_factory()
    services = build_app_services(
        app_settings, resolved_session_factory, metrics=metrics_client, stripe_client=stripe_client
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_engine:
            await dispose_engine()

    app = FastAPI(title="Billing Idempotency Orchestrator", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.state.metrics = services.metrics
    app.state.app_settings = app_settings
    app.state.db_session_factory = resolved_session_factory
    app.state.stripe_client = services.stripe_client

    app.add_middleware(RequestContextMiddleware)
    _register_exception_handlers(app)

    app.include_router(health_router)
    if app_settings.metrics_enabled:
        app.include_router(metrics_router)
    return app


def get_app() -> FastAPI:
    return create_app(settings)
