"""Entry point for the cost cache consistency service.

Wires all components together, optionally embeds the FastAPI API, and
starts the scheduler. When the dashboard is enabled (default) the scheduler
and the HTTP server share a single asyncio event loop via uvicorn's
programmatic API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown in headless mode.

Component wiring order (in _build_components):
1. Ledger and store databases (connected later, in _open)
2. RedisCostCache (cache gateway)
3. SQLiteLedger (ledger gateway)
4. TaskConfigStore and AuditLog
5. Reconciler, Fixer, Rebuilder
6. ConsistencyScheduler
7. ConsistencyService (operator facade)
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any
from zoneinfo import ZoneInfo

import uvicorn
from fastapi import FastAPI

from costsync.cache.redis_cache import RedisCostCache
from costsync.config import AppSettings
from costsync.database import SQLiteDatabase
from costsync.ledger.sqlite_ledger import LEDGER_SCHEMA_SQL, SQLiteLedger
from costsync.logging import get_logger, setup_logging
from costsync.reconcile.fixer import Fixer
from costsync.reconcile.rebuilder import Rebuilder
from costsync.reconcile.reconciler import Reconciler
from costsync.scheduler import ConsistencyScheduler
from costsync.service import ConsistencyService
from costsync.store.audit import AuditLog
from costsync.store.schema import STORE_SCHEMA_SQL
from costsync.store.task_config import TaskConfigStore


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all components from settings.

    Note: Does NOT connect the databases or start the scheduler -- that
    happens in _open (called by the lifespan or by run()).

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    tz = ZoneInfo(settings.ledger.timezone)

    # 1. Databases
    ledger_db = SQLiteDatabase(settings.ledger.db_path, LEDGER_SCHEMA_SQL, name="ledger")
    store_db = SQLiteDatabase(settings.store.db_path, STORE_SCHEMA_SQL, name="store")

    # 2-4. Gateways and stores
    cache = RedisCostCache(settings.cache, tz)
    ledger = SQLiteLedger(ledger_db, tz)
    config_store = TaskConfigStore(store_db)
    audit_log = AuditLog(store_db)

    # 5. Reconciliation core
    reconciler = Reconciler(cache, ledger, config_store, settings.reconcile)
    fixer = Fixer(cache, ledger, settings.fix)
    rebuilder = Rebuilder(cache, settings.cache.rebuild_pattern)

    # 6. Scheduler
    scheduler = ConsistencyScheduler(
        reconciler=reconciler,
        fixer=fixer,
        config_store=config_store,
        audit_log=audit_log,
        settings=settings.scheduler,
    )

    # 7. Operator facade
    service = ConsistencyService(
        reconciler=reconciler,
        fixer=fixer,
        rebuilder=rebuilder,
        scheduler=scheduler,
        config_store=config_store,
        audit_log=audit_log,
    )

    return {
        "ledger_db": ledger_db,
        "store_db": store_db,
        "cache": cache,
        "ledger": ledger,
        "config_store": config_store,
        "audit_log": audit_log,
        "reconciler": reconciler,
        "fixer": fixer,
        "rebuilder": rebuilder,
        "scheduler": scheduler,
        "service": service,
    }


async def _open(settings: AppSettings, components: dict[str, Any]) -> None:
    """Connect databases, load the task config and start the scheduler loop."""
    logger = get_logger("costsync.main")

    await components["ledger_db"].connect()
    await components["store_db"].connect()

    config = await components["config_store"].get()
    logger.info(
        "task_config_loaded",
        enabled=config.enabled,
        interval_hours=config.interval_hours,
        auto_fix=config.auto_fix,
    )

    if settings.scheduler.enabled:
        await components["scheduler"].start()
    else:
        logger.info("scheduler_loop_disabled")


async def _close(components: dict[str, Any]) -> None:
    """Stop the scheduler and release cache and database connections."""
    await components["scheduler"].stop()
    await components["cache"].close()
    await components["ledger_db"].close()
    await components["store_db"].close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage component lifecycle within the FastAPI application.

    On startup: stores components on app.state, connects databases,
    starts the scheduler loop.
    On shutdown: stops the scheduler, closes cache and databases.
    """
    logger = get_logger("costsync.main")
    settings = app.state.settings
    components = app.state.components

    # Store components on app.state for route handler access
    app.state.service = components["service"]
    app.state.scheduler = components["scheduler"]

    await _open(settings, components)
    logger.info("lifespan_started")

    yield

    await _close(components)
    logger.info("costsync_stopped")


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """Register SIGINT/SIGTERM to request a graceful shutdown.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("costsync.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def run() -> None:
    """Run the consistency service.

    When dashboard is enabled (DASHBOARD_ENABLED=true, the default):
    - Creates the FastAPI app with lifespan
    - Runs the scheduler and the HTTP API in a single event loop via uvicorn

    When dashboard is disabled (DASHBOARD_ENABLED=false):
    - Runs only the scheduler until SIGINT/SIGTERM
    """
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level, ledger_timezone=settings.ledger.timezone)
    logger = get_logger("costsync.main")

    # 3. Build all components
    components = _build_components(settings)

    if settings.dashboard.enabled:
        from costsync.dashboard.app import create_dashboard_app

        app = create_dashboard_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_dashboard",
            host=settings.dashboard.host,
            port=settings.dashboard.port,
        )

        config = uvicorn.Config(
            app,
            host=settings.dashboard.host,
            port=settings.dashboard.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        stop_event = asyncio.Event()
        _setup_signal_handlers(stop_event)

        logger.info(
            "starting_without_dashboard",
            scheduler_loop=settings.scheduler.enabled,
            tick_seconds=settings.scheduler.tick_seconds,
        )

        try:
            await _open(settings, components)
            await stop_event.wait()
        finally:
            await _close(components)
            logger.info("costsync_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
