"""Consistency scheduler -- periodic reconciliation with optional auto-fix.

State machine: Idle -> Running -> Idle. A run is started by the background
tick loop when the persisted TaskConfig is enabled and interval_hours have
passed since the anchor, or by an operator through trigger_now(). At most
one run executes at a time. A trigger arriving while a run is in progress
is rejected with SchedulerBusyError and leaves the state untouched.

Each run takes one TaskConfig snapshot, checks all pairs, fixes drift items
when auto_fix is on, and writes exactly one history record:

- scheduled_check  no fixes were applied
- auto_fix         fixes were attempted
- scheduled_check with FailureDetails when the run failed

The anchor for the next run is the end of the last run, or the moment the
loop first observed the config enabled. Config changes are picked up on the
next tick without a restart.
"""

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from costsync.config import SchedulerSettings
from costsync.exceptions import SchedulerBusyError
from costsync.logging import get_logger
from costsync.models import (
    AutoFixDetails,
    CheckDetails,
    FailureDetails,
    FixOutcome,
    HistoryRecord,
    OperationType,
    Operator,
    RunSummary,
    TaskConfig,
    TaskStatus,
)
from costsync.reconcile.fixer import Fixer
from costsync.reconcile.reconciler import Reconciler
from costsync.store.audit import AuditLog
from costsync.store.task_config import TaskConfigStore
from costsync.windows import utc_now

logger = get_logger(__name__)


@dataclass
class SchedulerState:
    """Mutable runtime state. Only touched under the scheduler's lock."""

    is_running: bool = False
    last_run: datetime | None = None
    last_run_result: RunSummary | None = None
    enabled_since: datetime | None = None


class ConsistencyScheduler:
    """Runs reconciliation on a timer and on demand.

    Args:
        reconciler: Performs the check pass.
        fixer: Applies fixes when auto_fix is enabled.
        config_store: Persisted policy, re-read on every tick and run.
        audit_log: Receives one record per run.
        settings: Tick cadence and whether the loop runs at all.
        clock: Time source for anchors and record timestamps.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        fixer: Fixer,
        config_store: TaskConfigStore,
        audit_log: AuditLog,
        settings: SchedulerSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._reconciler = reconciler
        self._fixer = fixer
        self._config_store = config_store
        self._audit_log = audit_log
        self._settings = settings
        self._clock = clock
        self._state = SchedulerState()
        self._state_lock = asyncio.Lock()
        self._loop_active = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        """Begin evaluating the timer in the background."""
        if self._loop_active:
            logger.warning("scheduler_already_running")
            return
        self._loop_active = True
        self._task = asyncio.create_task(self._tick_loop())
        logger.info("scheduler_started", tick_seconds=self._settings.tick_seconds)

    async def stop(self) -> None:
        """Stop the timer loop. A run in progress is cancelled."""
        self._loop_active = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        async with self._state_lock:
            self._state.enabled_since = None
        logger.info("scheduler_stopped")

    @property
    def loop_active(self) -> bool:
        return self._loop_active

    async def _tick_loop(self) -> None:
        while self._loop_active:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("scheduler_tick_error", exc_info=True)
            if self._loop_active:
                await asyncio.sleep(self._settings.tick_seconds)

    async def tick(self) -> bool:
        """Evaluate the timer once and run if due. Returns True if a run happened."""
        config = await self._config_store.get()
        now = self._clock()

        async with self._state_lock:
            if not config.enabled:
                if self._state.enabled_since is not None:
                    logger.info("scheduler_disabled")
                self._state.enabled_since = None
                return False
            if self._state.enabled_since is None:
                self._state.enabled_since = now
                logger.info("scheduler_enabled", interval_hours=config.interval_hours)
            due = self._next_run(config)

        if due is None or now < due:
            return False
        try:
            await self._run(Operator.SYSTEM)
        except SchedulerBusyError:
            logger.info("scheduled_run_skipped_busy")
            return False
        except Exception:
            # Already recorded as a failed run
            return True
        return True

    def _next_run(self, config: TaskConfig) -> datetime | None:
        anchors = [a for a in (self._state.last_run, self._state.enabled_since) if a is not None]
        if not config.enabled or not anchors:
            return None
        return max(anchors) + timedelta(hours=config.interval_hours)

    # ──────────────────────────────────────────────
    # Operator surface
    # ──────────────────────────────────────────────

    async def trigger_now(self) -> RunSummary:
        """Start a run immediately, regardless of the timer.

        Raises:
            SchedulerBusyError: a run is already in progress.
            TransientIOError: the run failed; a failure record was written.
        """
        return await self._run(Operator.ADMIN)

    async def get_status(self) -> TaskStatus:
        config = await self._config_store.get()
        async with self._state_lock:
            # enabled_since is only set by the timer, so None here means no timer
            next_run = (
                self._next_run(config) if self._state.enabled_since is not None else None
            )
            return TaskStatus(
                enabled=config.enabled,
                interval_hours=config.interval_hours,
                is_running=self._state.is_running,
                last_run=self._state.last_run,
                next_run=next_run,
                last_run_result=self._state.last_run_result,
            )

    # ──────────────────────────────────────────────
    # Run
    # ──────────────────────────────────────────────

    async def _run(self, operator: Operator) -> RunSummary:
        async with self._state_lock:
            if self._state.is_running:
                raise SchedulerBusyError("A consistency run is already in progress")
            self._state.is_running = True

        summary: RunSummary | None = None
        try:
            with structlog.contextvars.bound_contextvars(
                run_id=uuid.uuid4().hex[:12], operator=operator.value
            ):
                logger.info("consistency_run_started")
                try:
                    summary = await self._execute(operator)
                except Exception as e:
                    logger.error("consistency_run_failed", error=str(e), exc_info=True)
                    await self._record_failure(operator, e)
                    raise
                logger.info(
                    "consistency_run_completed",
                    keys_checked=summary.keys_checked,
                    inconsistencies_found=summary.inconsistencies_found,
                    items_fixed=summary.items_fixed,
                )
                return summary
        finally:
            async with self._state_lock:
                self._state.is_running = False
                self._state.last_run = self._clock()
                self._state.last_run_result = summary

    async def _execute(self, operator: Operator) -> RunSummary:
        config = await self._config_store.get()
        result = await self._reconciler.check_all(config=config)

        outcome: FixOutcome | None = None
        if config.auto_fix and result.items:
            outcome = await self._fixer.fix_all(result.items)

        if outcome is not None:
            operation_type = OperationType.AUTO_FIX
            details = AutoFixDetails(
                result=result, attempted=outcome.attempted, fixed=outcome.fixed
            )
        else:
            operation_type = OperationType.SCHEDULED_CHECK
            details = CheckDetails(result=result)

        summary = RunSummary(
            keys_checked=result.total_keys_checked,
            inconsistencies_found=result.inconsistent_count,
            items_fixed=outcome.fixed if outcome is not None else 0,
        )
        await self._audit_log.append(
            HistoryRecord(
                timestamp=self._clock(),
                operation_type=operation_type,
                operator=operator,
                keys_checked=summary.keys_checked,
                inconsistencies_found=summary.inconsistencies_found,
                items_fixed=summary.items_fixed,
                total_difference=str(result.total_difference_usd),
                details=details,
            )
        )
        return summary

    async def _record_failure(self, operator: Operator, error: Exception) -> None:
        record = HistoryRecord(
            timestamp=self._clock(),
            operation_type=OperationType.SCHEDULED_CHECK,
            operator=operator,
            details=FailureDetails(
                error_kind=getattr(error, "kind", "internal"),
                message=str(error),
            ),
        )
        try:
            await self._audit_log.append(record)
        except Exception as e:
            logger.error("failure_record_not_written", error=str(e))
