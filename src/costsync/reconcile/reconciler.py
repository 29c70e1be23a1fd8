"""Reconciler -- compares cached cost totals against the ledger.

One pass enumerates (active key x dimension) pairs, narrowed by an optional
CheckScope, reads both sides for every pair concurrently and classifies it:

- cache absent (any ledger value) -> cache miss (reported, not counted)
- difference > threshold_usd, or
  difference_rate > threshold_rate -> drift (inconsistent)
- otherwise                       -> consistent

Thresholds come from a single TaskConfig snapshot taken when the pass starts.
The pass never writes. Any TransientIOError aborts the whole pass: pending
pair checks are cancelled and the error propagates, so a partial result is
never reported as a successful check.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

from costsync.cache.client import CostCache
from costsync.config import ReconcileSettings
from costsync.ledger.client import Ledger
from costsync.logging import get_logger
from costsync.models import (
    ALL_DIMENSIONS,
    CheckItem,
    CheckResult,
    CheckScope,
    CheckStatus,
    Dimension,
    KeyRef,
    TaskConfig,
    dimension_rank,
    measure_drift,
)
from costsync.store.task_config import TaskConfigStore
from costsync.windows import utc_now

logger = get_logger(__name__)


def summarize(
    timestamp: datetime,
    keys_checked: int,
    items: list[CheckItem],
    misses: list[CheckItem],
) -> CheckResult:
    """Build a CheckResult whose aggregates cover drift items only.

    The average rate ignores items without a relative baseline.
    """
    ordering = lambda i: (i.key_id, dimension_rank(i.dimension))  # noqa: E731
    items = sorted(items, key=ordering)
    misses = sorted(misses, key=ordering)

    total_difference = sum((i.difference for i in items), Decimal("0"))
    rates = [i.difference_rate for i in items if i.difference_rate is not None]
    average_rate = sum(rates, Decimal("0")) / len(rates) if rates else Decimal("0")

    return CheckResult(
        timestamp=timestamp,
        total_keys_checked=keys_checked,
        inconsistent_count=len(items),
        total_difference_usd=total_difference,
        average_difference_rate=average_rate,
        items=tuple(items),
        cache_misses=tuple(misses),
    )


class Reconciler:
    """Read-only cache vs ledger comparison.

    Args:
        cache: Cost cache gateway.
        ledger: Authoritative ledger gateway.
        config_store: Source of the threshold policy snapshot.
        settings: Fan-out and epsilon settings.
        clock: Returns the timestamp stamped on each CheckResult.
    """

    def __init__(
        self,
        cache: CostCache,
        ledger: Ledger,
        config_store: TaskConfigStore,
        settings: ReconcileSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._cache = cache
        self._ledger = ledger
        self._config_store = config_store
        self._settings = settings
        self._clock = clock

    async def check_all(
        self,
        scope: CheckScope | None = None,
        config: TaskConfig | None = None,
    ) -> CheckResult:
        """Run one reconciliation pass.

        Args:
            scope: Optional narrowing to some key ids and/or dimensions.
            config: Policy snapshot to use. Read from the store when omitted.

        Raises:
            TransientIOError: the cache or the ledger was unreachable.
        """
        if config is None:
            config = await self._config_store.get()
        timestamp = self._clock()
        started = time.monotonic()

        keys = await self._ledger.list_active_keys()
        if scope is not None and scope.key_ids is not None:
            wanted = set(scope.key_ids)
            keys = [k for k in keys if k.id in wanted]
        dimensions: tuple[Dimension, ...] = (
            scope.dimensions if scope is not None and scope.dimensions else ALL_DIMENSIONS
        )

        logger.info(
            "consistency_check_started",
            keys=len(keys),
            dimensions=[d.value for d in dimensions],
            threshold_usd=str(config.threshold_usd),
            threshold_rate=str(config.threshold_rate),
        )

        semaphore = asyncio.Semaphore(self._settings.max_concurrency)

        async def _bounded(key: KeyRef, dimension: Dimension) -> CheckItem | None:
            async with semaphore:
                return await self._check_pair(key, dimension, config)

        tasks = [
            asyncio.create_task(_bounded(key, dimension))
            for key in keys
            for dimension in dimensions
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except Exception as e:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.error(
                "consistency_check_aborted",
                error=str(e),
                kind=getattr(e, "kind", "internal"),
            )
            raise

        items = [o for o in outcomes if o is not None and o.status is CheckStatus.DRIFT]
        misses = [o for o in outcomes if o is not None and o.status is CheckStatus.CACHE_MISS]
        result = summarize(timestamp, len(keys), items, misses)

        logger.info(
            "consistency_check_completed",
            keys_checked=result.total_keys_checked,
            pairs_checked=len(tasks),
            inconsistent=result.inconsistent_count,
            cache_misses=len(result.cache_misses),
            total_difference_usd=str(result.total_difference_usd),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    async def _check_pair(
        self, key: KeyRef, dimension: Dimension, config: TaskConfig
    ) -> CheckItem | None:
        """Classify one pair. Returns None when it is consistent."""
        cached = await self._cache.get(key.id, dimension)
        ledger_value = await self._ledger.get_authoritative(key.id, dimension)
        difference, rate = measure_drift(cached, ledger_value, self._settings.rate_epsilon)

        if cached is None:
            status = CheckStatus.CACHE_MISS
        elif difference > config.threshold_usd or (
            rate is not None and rate > config.threshold_rate
        ):
            status = CheckStatus.DRIFT
        else:
            return None

        logger.debug(
            "pair_not_consistent",
            key_id=key.id,
            dimension=dimension.value,
            status=status.value,
            cached=str(cached) if cached is not None else None,
            ledger=str(ledger_value),
        )
        return CheckItem(
            key_id=key.id,
            key_name=key.name,
            dimension=dimension,
            cached_value=cached,
            ledger_value=ledger_value,
            difference=difference,
            difference_rate=rate,
            status=status,
        )
