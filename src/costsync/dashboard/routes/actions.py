"""POST endpoints for operator actions: check, fix, rebuild, trigger, config.

Engine errors are not caught here. The app-level handler turns any
ConsistencyError into the failure envelope with its status code.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from costsync.dashboard.responses import ok
from costsync.dashboard.schemas import (
    CheckRequest,
    ConfigUpdateRequest,
    FixAllRequest,
    FixRequest,
    RebuildRequest,
)

log = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/check")
async def check_all(request: Request, body: CheckRequest | None = None) -> JSONResponse:
    """Run a manual check, optionally narrowed to some keys or dimensions."""
    service = request.app.state.service
    scope = body.to_scope() if body is not None else None
    result = await service.check_all(scope)
    log.info(
        "manual_check_via_dashboard",
        inconsistent=result.inconsistent_count,
        cache_misses=len(result.cache_misses),
    )
    return ok(result)


@router.post("/fix")
async def fix_item(request: Request, body: FixRequest) -> JSONResponse:
    service = request.app.state.service
    value = await service.fix_item(body.key_id, body.dimension)
    return ok({"key_id": body.key_id, "dimension": body.dimension, "value": value})


@router.post("/fix-all")
async def fix_all(request: Request, body: FixAllRequest) -> JSONResponse:
    """Fix a batch. Partial success is still a success envelope."""
    service = request.app.state.service
    outcome = await service.fix_all(body.to_targets(), total_difference=body.total_difference())
    return ok(outcome)


@router.post("/rebuild")
async def global_rebuild(request: Request, body: RebuildRequest) -> JSONResponse:
    """Delete every cached cost total. Requires confirm="REBUILD"."""
    service = request.app.state.service
    outcome = await service.global_rebuild(body.confirm)
    log.warning("global_rebuild_via_dashboard", deleted=outcome.deleted)
    return ok(outcome)


@router.post("/trigger")
async def trigger_now(request: Request) -> JSONResponse:
    """Start a scheduler run now. 409 with kind scheduler_busy if one is running."""
    service = request.app.state.service
    summary = await service.trigger_now()
    return ok(summary)


@router.post("/config")
async def update_config(request: Request, body: ConfigUpdateRequest) -> JSONResponse:
    service = request.app.state.service
    config = await service.update_config(body.to_update())
    log.info("task_config_updated_via_dashboard")
    return ok(config)
