"""Abstract ledger interface.

The ledger is the authoritative record of billed usage. The engine only
ever reads from it.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from costsync.models import Dimension, KeyRef


class Ledger(ABC):
    """Read-only access to authoritative per-key, per-dimension cost totals.

    Implementations raise TransientIOError when the database is unreachable.
    """

    @abstractmethod
    async def get_authoritative(self, key_id: int, dimension: Dimension) -> Decimal:
        """Return the billed total for ``key_id`` over ``dimension``'s current window.

        Unknown keys and keys without usage total zero.
        """
        ...

    @abstractmethod
    async def list_active_keys(self) -> list[KeyRef]:
        """Return all enabled, non-deleted keys ordered by id."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        ...
