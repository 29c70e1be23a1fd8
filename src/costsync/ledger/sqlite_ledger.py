"""SQLite-backed ledger over the usage tables of the admin application.

CRITICAL: cost_usd is stored as TEXT and summed as Decimal in Python.
SQLite's SUM() would coerce to float and lose cents.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal, InvalidOperation
from zoneinfo import ZoneInfo

import aiosqlite

from costsync.database import SQLiteDatabase
from costsync.exceptions import TransientIOError
from costsync.ledger.client import Ledger
from costsync.logging import get_logger
from costsync.models import Dimension, KeyRef
from costsync.windows import utc_now, window_start

logger = get_logger(__name__)

# Owned by the admin application; created here only when absent so a fresh
# deployment (or a test) has something to read.
LEDGER_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS api_keys (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    deleted_at INTEGER
);

CREATE TABLE IF NOT EXISTS usage_ledger (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key_id INTEGER NOT NULL,
    cost_usd TEXT NOT NULL,
    created_at_ms INTEGER NOT NULL,
    deleted_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_usage_key_ts
    ON usage_ledger(key_id, created_at_ms);
"""


def _row_cost(raw: str, key_id: int) -> Decimal:
    try:
        value = Decimal(raw)
    except (InvalidOperation, TypeError) as e:
        raise TransientIOError(f"Ledger row for key {key_id} has invalid cost {raw!r}") from e
    if not value.is_finite():
        raise TransientIOError(f"Ledger row for key {key_id} has non-finite cost {raw!r}")
    return value


class SQLiteLedger(Ledger):
    """Ledger reading ``api_keys`` and ``usage_ledger`` through aiosqlite.

    Usage:
        async with SQLiteDatabase(path, LEDGER_SCHEMA_SQL, name="ledger") as database:
            ledger = SQLiteLedger(database, ZoneInfo("Asia/Shanghai"))
            total = await ledger.get_authoritative(42, Dimension.DAILY)
    """

    def __init__(
        self,
        database: SQLiteDatabase,
        tz: ZoneInfo,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._database = database
        self._tz = tz
        self._clock = clock

    async def get_authoritative(self, key_id: int, dimension: Dimension) -> Decimal:
        now = self._clock()
        start = window_start(dimension, now, self._tz)
        now_ms = int(now.timestamp() * 1000)

        conditions = ["key_id = ?", "deleted_at IS NULL", "created_at_ms <= ?"]
        params: list = [key_id, now_ms]
        if start is not None:
            conditions.append("created_at_ms >= ?")
            params.append(int(start.timestamp() * 1000))

        where = " AND ".join(conditions)
        total = Decimal("0")
        try:
            cursor = await self._database.db.execute(
                f"SELECT cost_usd FROM usage_ledger WHERE {where}", params
            )
            async for row in cursor:
                total += _row_cost(row[0], key_id)
        except (aiosqlite.Error, OSError) as e:
            raise TransientIOError(
                f"Ledger read failed for key {key_id} ({dimension.value}): {e}"
            ) from e
        return total

    async def list_active_keys(self) -> list[KeyRef]:
        try:
            cursor = await self._database.db.execute(
                "SELECT id, name FROM api_keys "
                "WHERE deleted_at IS NULL AND is_enabled = 1 ORDER BY id"
            )
            rows = await cursor.fetchall()
        except (aiosqlite.Error, OSError) as e:
            raise TransientIOError(f"Ledger key listing failed: {e}") from e
        return [KeyRef(id=row[0], name=row[1]) for row in rows]

    async def close(self) -> None:
        await self._database.close()
