"""Abstract cost cache interface.

Reconcile code depends only on this interface, keeping the Redis key layout
and data types isolated in the concrete implementation.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from costsync.models import Dimension


class CostCache(ABC):
    """Key-value access to cached per-key, per-dimension cost totals.

    Implementations raise TransientIOError when the backing store is
    unreachable.
    """

    @abstractmethod
    async def get(self, key_id: int, dimension: Dimension) -> Decimal | None:
        """Return the cached total, or None if nothing is cached."""
        ...

    @abstractmethod
    async def set(self, key_id: int, dimension: Dimension, value: Decimal) -> None:
        """Replace the cached total with ``value``."""
        ...

    @abstractmethod
    async def delete_matching(self, pattern: str) -> int:
        """Delete every entry whose key matches the glob ``pattern``.

        Returns the number of deleted entries. Raises PartialRebuildError if
        interrupted after deleting at least one entry.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        ...
