"""Fixer -- overwrites cached totals with freshly read ledger values.

At most one fix per (key, dimension) is in flight within this process. A
second fix for the same pair waits up to FIX_LOCK_TIMEOUT seconds for the
first one to finish and is rejected with ConcurrencyConflict after that
(immediately when the timeout is 0). Fixes for different pairs run
concurrently.

The ledger is re-read at fix time, never taken from an earlier CheckResult,
so a fix never writes a stale value.
"""

import asyncio
from collections.abc import Sequence
from decimal import Decimal

from costsync.cache.client import CostCache
from costsync.config import FixSettings
from costsync.exceptions import ConcurrencyConflict
from costsync.ledger.client import Ledger
from costsync.logging import get_logger
from costsync.models import CheckItem, Dimension, FixOutcome, FixTarget

logger = get_logger(__name__)


class Fixer:
    """Repairs individual cache entries and batches of them."""

    def __init__(self, cache: CostCache, ledger: Ledger, settings: FixSettings) -> None:
        self._cache = cache
        self._ledger = ledger
        self._settings = settings
        self._locks: dict[FixTarget, asyncio.Lock] = {}
        self._users: dict[FixTarget, int] = {}

    def in_flight(self, key_id: int, dimension: Dimension) -> bool:
        """Whether a fix for this pair currently holds its lock."""
        lock = self._locks.get(FixTarget(key_id, dimension))
        return lock is not None and lock.locked()

    async def fix_item(self, key_id: int, dimension: Dimension) -> Decimal:
        """Set the cached value of one pair to its current ledger value.

        Returns the value written.

        Raises:
            ConcurrencyConflict: another fix for the pair did not finish in time.
            TransientIOError: the ledger read or the cache write failed.
        """
        target = FixTarget(key_id, dimension)
        lock = self._locks.setdefault(target, asyncio.Lock())
        self._users[target] = self._users.get(target, 0) + 1
        try:
            await self._acquire(lock, target)
            try:
                value = await self._ledger.get_authoritative(key_id, dimension)
                await self._cache.set(key_id, dimension, value)
            finally:
                lock.release()
        finally:
            self._users[target] -= 1
            if self._users[target] == 0:
                del self._users[target]
                del self._locks[target]

        logger.info("cache_entry_fixed", key_id=key_id, dimension=dimension.value, value=str(value))
        return value

    async def _acquire(self, lock: asyncio.Lock, target: FixTarget) -> None:
        timeout = self._settings.lock_timeout
        if timeout <= 0:
            if lock.locked():
                raise self._conflict(target)
            await lock.acquire()
            return
        # asyncio.timeout cancels the acquire in place; a lock is held only
        # when acquire() returned
        try:
            async with asyncio.timeout(timeout):
                await lock.acquire()
        except TimeoutError:
            raise self._conflict(target) from None

    @staticmethod
    def _conflict(target: FixTarget) -> ConcurrencyConflict:
        logger.warning(
            "fix_rejected_in_flight", key_id=target.key_id, dimension=target.dimension.value
        )
        return ConcurrencyConflict(
            f"A fix for key {target.key_id} ({target.dimension.value}) is already in progress"
        )

    async def fix_all(self, items: Sequence[CheckItem | FixTarget]) -> FixOutcome:
        """Fix every given pair. One failure does not stop the others.

        Accepts CheckItems straight from a CheckResult or bare FixTargets.
        """
        targets = [item.target if isinstance(item, CheckItem) else item for item in items]
        if not targets:
            return FixOutcome(attempted=0, fixed=0)

        semaphore = asyncio.Semaphore(self._settings.max_concurrency)

        async def _bounded(target: FixTarget) -> Decimal:
            async with semaphore:
                return await self.fix_item(target.key_id, target.dimension)

        results = await asyncio.gather(
            *(_bounded(target) for target in targets),
            return_exceptions=True,
        )

        failed: list[FixTarget] = []
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                failed.append(target)
                logger.warning(
                    "fix_item_failed",
                    key_id=target.key_id,
                    dimension=target.dimension.value,
                    error=str(result),
                    kind=getattr(result, "kind", "internal"),
                )

        outcome = FixOutcome(
            attempted=len(targets),
            fixed=len(targets) - len(failed),
            failed=tuple(failed),
        )
        logger.info(
            "fix_all_completed",
            attempted=outcome.attempted,
            fixed=outcome.fixed,
            failed=len(outcome.failed),
        )
        return outcome
