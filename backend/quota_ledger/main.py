import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from quota_ledger.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_NOT_FOUND,
    PROBLEM_TYPE_QUOTA,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from quota_ledger.api.routes_health import router as health_router
from quota_ledger.api.routes_metrics import router as metrics_router
from quota_ledger.api.routes_storage_quota import router as storage_quota_router
from quota_ledger.domain.organizations.service import OrganizationNotFound
from quota_ledger.domain.storage_quota.service import StorageQuotaExceeded
from quota_ledger.infra.db import dispose_engine
from quota_ledger.infra.logging import clear_log_context, configure_logging, update_log_context
from quota_ledger.infra.metrics import configure_metrics
from quota_ledger.settings import Settings, settings

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("quota_ledger.request")
        start = time.time()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(status_code=status_code, latency_ms=latency_ms)
            request_logger.info("request")
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


def create_app(app_settings: Settings) -> FastAPI:
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.metrics = getattr(app.state, "metrics", None) or metrics_client
        app.state.app_settings = getattr(app.state, "app_settings", None) or app_settings
        try:
            yield
        finally:
            await dispose_engine()

    app = FastAPI(title=app_settings.app_name, version="1.0.0", lifespan=lifespan)
    app.add_middleware(LoggingMiddleware)

    app.include_router(storage_quota_router)
    app.include_router(metrics_router)
    app.include_router(health_router)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(StorageQuotaExceeded)
    async def storage_quota_exceeded_handler(request: Request, exc: StorageQuotaExceeded):
        return problem_details(
            request=request,
            status=409,
            title="Storage quota exceeded",
            detail=str(exc),
            errors=[
                {
                    "code": "ORG_STORAGE_QUOTA_EXCEEDED",
                    "org_id": str(exc.org_id),
                    "bytes_requested": exc.requested_bytes,
                    "available_bytes": exc.available_bytes,
                }
            ],
            type_=PROBLEM_TYPE_QUOTA,
        )

    @app.exception_handler(OrganizationNotFound)
    async def organization_not_found_handler(request: Request, exc: OrganizationNotFound):
        return problem_details(
            request=request,
            status=404,
            title="Organization not found",
            detail="Organization not found",
            errors=[{"code": "ORG_NOT_FOUND", "org_id": str(exc.org_id)}],
            type_=PROBLEM_TYPE_NOT_FOUND,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        update_log_context(
            request_id=getattr(request.state, "request_id", None),
            method=request.method,
            path=request.url.path,
            status_code=500,
            error_type=type(exc).__name__,
        )
        logger.exception("unhandled_exception")
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    return app


app = create_app(settings)
