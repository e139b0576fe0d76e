"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from pydantic import ValidationError

from licensecore.api.dependencies import build_services
from licensecore.api.routes import router
from licensecore.config import settings
from licensecore.exceptions import (
    BackendTimeoutError,
    LicenseMintError,
    LicensingError,
    NotFoundError,
    PaymentProviderError,
    PurchaseFailedError,
)
from licensecore.models.api import ErrorResponse
from licensecore.observability import get_logger, metrics, setup_logging, setup_tracing
from licensecore.observability.tracing import instrument_fastapi, instrument_sqlalchemy

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

EXTERNAL_FAILURES = (PaymentProviderError, LicenseMintError, BackendTimeoutError, PurchaseFailedError)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the backends once and, for BACKEND=database, creates missing tables.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        backend=settings.backend,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.backend == "database":
        from licensecore.db.session import create_tables, get_engine

        instrument_sqlalchemy(get_engine())
        await create_tables()
        logger.info("database_tables_ready")

    app.state.services = build_services(settings)

    yield

    logger.info("application_shutting_down")
    if settings.backend == "database":
        from licensecore.db.session import close_engine

        await close_engine()
        logger.info("database_engine_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


def _sanitize(errors: list[Any]) -> list[dict[str, Any]]:
    """Make pydantic error entries JSON serializable (ctx may hold exceptions)."""
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)
    return sanitized_errors


def _summary(errors: list[dict[str, Any]]) -> str:
    """Collapse validation errors into a single human-readable message."""
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error["loc"] or () if part != "body")
        parts.append(f"{location}: {error['msg']}" if location else str(error["msg"]))
    return "; ".join(parts) or "Invalid request"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Log detailed validation errors and answer 400."""
    errors = _sanitize(list(exc.errors()))
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=errors,
        body_preview=str(exc.body)[:500] if exc.body else None,
    )
    return _error(status.HTTP_400_BAD_REQUEST, _summary(errors))


@app.exception_handler(ValidationError)
async def query_validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Query-string variants are validated inside the route; same 400 contract."""
    errors = _sanitize(exc.errors(include_url=False))
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=errors,
    )
    return _error(status.HTTP_400_BAD_REQUEST, _summary(errors))


@app.exception_handler(LicensingError)
async def licensing_exception_handler(request: Request, exc: LicensingError) -> JSONResponse:
    """
    Map domain errors onto the error envelope.

    - NotFoundError: 404
    - payment, mint, timeout and orchestration failures: 500
    - everything else (validation, state conflicts): 400
    """
    if isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, EXTERNAL_FAILURES):
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    log = logger.error if status_code >= 500 else logger.info
    log(
        "request_rejected",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
        status_code=status_code,
    )
    metrics.record_error(type(exc).__name__, request.url.path)
    return _error(status_code, str(exc))


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        request_id=request_id,
    )

    endpoint = request.url.path
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )

        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "licensecore.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
