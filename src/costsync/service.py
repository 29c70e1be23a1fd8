"""Operator-facing facade over the consistency engine.

Every mutating operator action lands in the audit history:

- check_all       -> manual_check
- fix_item        -> manual_fix
- fix_all         -> manual_fix (nothing recorded for an empty batch)
- global_rebuild  -> global_rebuild (also when only partially completed)

Scheduler runs record themselves.
"""

from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import Decimal

from costsync.exceptions import PartialRebuildError, RecordNotFound, ValidationError
from costsync.logging import get_logger
from costsync.models import (
    CheckDetails,
    CheckItem,
    CheckResult,
    CheckScope,
    Dimension,
    FixDetails,
    FixOutcome,
    FixTarget,
    HistoryPage,
    HistoryQuery,
    HistoryRecord,
    HistoryStats,
    OperationType,
    Operator,
    RebuildDetails,
    RebuildOutcome,
    RunSummary,
    TaskConfig,
    TaskConfigUpdate,
    TaskStatus,
)
from costsync.reconcile.fixer import Fixer
from costsync.reconcile.rebuilder import Rebuilder
from costsync.reconcile.reconciler import Reconciler
from costsync.scheduler import ConsistencyScheduler
from costsync.store.audit import AuditLog
from costsync.store.task_config import TaskConfigStore
from costsync.windows import utc_now

logger = get_logger(__name__)

# Exact text an operator must send to run a global rebuild
REBUILD_CONFIRMATION = "REBUILD"


class ConsistencyService:
    """Single entry point for the HTTP layer."""

    def __init__(
        self,
        reconciler: Reconciler,
        fixer: Fixer,
        rebuilder: Rebuilder,
        scheduler: ConsistencyScheduler,
        config_store: TaskConfigStore,
        audit_log: AuditLog,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._reconciler = reconciler
        self._fixer = fixer
        self._rebuilder = rebuilder
        self._scheduler = scheduler
        self._config_store = config_store
        self._audit_log = audit_log
        self._clock = clock

    # ──────────────────────────────────────────────
    # Check and repair
    # ──────────────────────────────────────────────

    async def check_all(self, scope: CheckScope | None = None) -> CheckResult:
        if scope is not None and scope.key_ids is not None and not scope.key_ids:
            raise ValidationError("key_ids must not be empty when given")
        result = await self._reconciler.check_all(scope)
        await self._audit_log.append(
            HistoryRecord(
                timestamp=self._clock(),
                operation_type=OperationType.MANUAL_CHECK,
                operator=Operator.ADMIN,
                keys_checked=result.total_keys_checked,
                inconsistencies_found=result.inconsistent_count,
                total_difference=str(result.total_difference_usd),
                details=CheckDetails(result=result),
            )
        )
        return result

    async def fix_item(self, key_id: int, dimension: Dimension) -> Decimal:
        """Repair one pair and record it. Failed fixes are not recorded."""
        value = await self._fixer.fix_item(key_id, dimension)
        await self._audit_log.append(
            HistoryRecord(
                timestamp=self._clock(),
                operation_type=OperationType.MANUAL_FIX,
                operator=Operator.ADMIN,
                keys_checked=1,
                inconsistencies_found=1,
                items_fixed=1,
                details=FixDetails(
                    targets=(FixTarget(key_id, dimension),), attempted=1, fixed=1
                ),
            )
        )
        return value

    async def fix_all(
        self,
        items: Sequence[CheckItem | FixTarget],
        total_difference: Decimal | None = None,
    ) -> FixOutcome:
        """Repair a batch and record one manual_fix entry for it.

        total_difference defaults to the sum over the CheckItems given.
        """
        if not items:
            logger.info("fix_all_nothing_to_fix")
            return FixOutcome(attempted=0, fixed=0)

        outcome = await self._fixer.fix_all(items)
        if total_difference is None:
            total_difference = sum(
                (i.difference for i in items if isinstance(i, CheckItem)), Decimal("0")
            )
        targets = tuple(i.target if isinstance(i, CheckItem) else i for i in items)
        await self._audit_log.append(
            HistoryRecord(
                timestamp=self._clock(),
                operation_type=OperationType.MANUAL_FIX,
                operator=Operator.ADMIN,
                keys_checked=len({t.key_id for t in targets}),
                inconsistencies_found=outcome.attempted,
                items_fixed=outcome.fixed,
                total_difference=str(total_difference),
                details=FixDetails(
                    targets=targets, attempted=outcome.attempted, fixed=outcome.fixed
                ),
            )
        )
        return outcome

    async def global_rebuild(self, confirm: str) -> RebuildOutcome:
        """Delete every cached cost total after an explicit confirmation.

        Raises:
            ValidationError: confirm is not the expected text. Nothing is deleted.
            PartialRebuildError: interrupted; the partial count is still recorded.
        """
        if confirm != REBUILD_CONFIRMATION:
            raise ValidationError(f"Rebuild requires confirm={REBUILD_CONFIRMATION!r}")
        try:
            outcome = await self._rebuilder.global_rebuild()
        except PartialRebuildError as e:
            await self._record_rebuild(
                RebuildOutcome(pattern=self._rebuilder.pattern, deleted=e.deleted, complete=False)
            )
            raise
        await self._record_rebuild(outcome)
        return outcome

    async def _record_rebuild(self, outcome: RebuildOutcome) -> None:
        await self._audit_log.append(
            HistoryRecord(
                timestamp=self._clock(),
                operation_type=OperationType.GLOBAL_REBUILD,
                operator=Operator.ADMIN,
                details=RebuildDetails(
                    pattern=outcome.pattern,
                    deleted=outcome.deleted,
                    complete=outcome.complete,
                ),
            )
        )

    # ──────────────────────────────────────────────
    # Scheduler and config
    # ──────────────────────────────────────────────

    async def get_status(self) -> TaskStatus:
        return await self._scheduler.get_status()

    async def trigger_now(self) -> RunSummary:
        return await self._scheduler.trigger_now()

    async def get_config(self) -> TaskConfig:
        return await self._config_store.get()

    async def update_config(self, update: TaskConfigUpdate) -> TaskConfig:
        # The scheduler re-reads the config on its next tick
        return await self._config_store.update(update)

    # ──────────────────────────────────────────────
    # History
    # ──────────────────────────────────────────────

    async def get_history(self, query: HistoryQuery) -> HistoryPage:
        return await self._audit_log.query(query)

    async def get_history_record(self, record_id: int) -> HistoryRecord:
        record = await self._audit_log.get(record_id)
        if record is None:
            raise RecordNotFound(f"History record {record_id} not found")
        return record

    async def get_statistics(self, days: int = 7) -> HistoryStats:
        return await self._audit_log.aggregate_stats(days)

    async def get_latest_check(self) -> CheckResult | None:
        """Result of the most recent manual check, if any."""
        record = await self._audit_log.latest(OperationType.MANUAL_CHECK)
        if record is None or not isinstance(record.details, CheckDetails):
            return None
        return record.details.result
