"""Rebuilder -- destructive removal of every cached cost total.

After a rebuild every cached total is absent. The request path (or the
Fixer) repopulates entries from the ledger on demand, and the next check
reports them as cache misses until then. The confirmation gate lives in
the service facade.
"""

from costsync.cache.client import CostCache
from costsync.exceptions import PartialRebuildError, TransientIOError
from costsync.logging import get_logger
from costsync.models import RebuildOutcome

logger = get_logger(__name__)


class Rebuilder:
    def __init__(self, cache: CostCache, pattern: str) -> None:
        self._cache = cache
        self._pattern = pattern

    @property
    def pattern(self) -> str:
        return self._pattern

    async def global_rebuild(self) -> RebuildOutcome:
        """Delete all cost cache entries matching the configured pattern.

        Raises:
            PartialRebuildError: interrupted after deleting some keys.
            TransientIOError: the cache was unreachable before anything was deleted.
        """
        logger.warning("global_rebuild_started", pattern=self._pattern)
        try:
            deleted = await self._cache.delete_matching(self._pattern)
        except PartialRebuildError as e:
            logger.error("global_rebuild_partial", pattern=self._pattern, deleted=e.deleted, error=str(e))
            raise
        except TransientIOError as e:
            logger.error("global_rebuild_failed", pattern=self._pattern, error=str(e))
            raise

        logger.warning("global_rebuild_completed", pattern=self._pattern, deleted=deleted)
        return RebuildOutcome(pattern=self._pattern, deleted=deleted)
