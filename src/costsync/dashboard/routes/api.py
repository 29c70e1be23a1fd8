"""Read-only JSON endpoints: status, config, history and statistics."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from costsync.dashboard.responses import ok
from costsync.models import HistoryQuery, OperationType
from costsync.store.audit import MAX_PAGE_SIZE

log = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    """Liveness plus whether the background timer is attached."""
    scheduler = request.app.state.scheduler
    return ok({"status": "ok", "scheduler_loop": scheduler.loop_active})


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Scheduler status: enabled, interval, running flag, last and next run."""
    service = request.app.state.service
    return ok(await service.get_status())


@router.get("/config")
async def get_config(request: Request) -> JSONResponse:
    service = request.app.state.service
    return ok(await service.get_config())


@router.get("/history")
async def get_history(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    operation_type: OperationType | None = None,
    days: int | None = Query(None, ge=1),
) -> JSONResponse:
    """One page of audit history, newest first."""
    service = request.app.state.service
    history = await service.get_history(
        HistoryQuery(page=page, page_size=page_size, operation_type=operation_type, days=days)
    )
    return ok(history)


@router.get("/history/{record_id}")
async def get_history_record(request: Request, record_id: int) -> JSONResponse:
    service = request.app.state.service
    return ok(await service.get_history_record(record_id))


@router.get("/statistics")
async def get_statistics(request: Request, days: int = Query(7, ge=1)) -> JSONResponse:
    """Totals and fix rate over the last ``days`` days."""
    service = request.app.state.service
    return ok(await service.get_statistics(days))


@router.get("/latest-check")
async def get_latest_check(request: Request) -> JSONResponse:
    """Most recent manual check result, or null."""
    service = request.app.state.service
    return ok(await service.get_latest_check())
