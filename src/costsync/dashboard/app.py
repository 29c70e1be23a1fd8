"""FastAPI application factory for the consistency dashboard API."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from costsync.dashboard import responses
from costsync.dashboard.routes import actions, api
from costsync.exceptions import ConsistencyError, ValidationError

log = structlog.get_logger(__name__)


async def _consistency_error(request: Request, exc: ConsistencyError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, kind=exc.kind, error=exc.message)
    else:
        log.info("request_rejected", path=request.url.path, kind=exc.kind, error=exc.message)
    return responses.from_exception(exc)


async def _request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    message = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    )
    return responses.error(message, ValidationError.kind, ValidationError.status_code)


def create_dashboard_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.

    Returns:
        Configured FastAPI application. Route handlers expect ``service`` and
        ``scheduler`` on ``app.state``.
    """
    app = FastAPI(
        title="Cost Cache Consistency",
        lifespan=lifespan,
    )

    app.add_exception_handler(ConsistencyError, _consistency_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)

    app.include_router(api.router, prefix="/api")
    app.include_router(actions.router, prefix="/actions")

    return app
