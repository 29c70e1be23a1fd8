"""Append-only audit history of consistency operations.

Records are never updated or deleted here. Appends are serialized so that
ids, and therefore listing order, follow the order in which operations
completed within this process.

CRITICAL: total_difference and every Decimal inside details are stored as
TEXT/strings and restored as Decimal on read.
"""

import asyncio
import json
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import aiosqlite

from costsync.database import SQLiteDatabase
from costsync.exceptions import TransientIOError, ValidationError
from costsync.logging import get_logger
from costsync.models import (
    AutoFixDetails,
    CheckDetails,
    CheckItem,
    CheckResult,
    CheckStatus,
    Dimension,
    FailureDetails,
    FixDetails,
    FixTarget,
    HistoryDetails,
    HistoryPage,
    HistoryQuery,
    HistoryRecord,
    HistoryStats,
    OperationType,
    Operator,
    RebuildDetails,
)
from costsync.serialization import to_jsonable
from costsync.windows import utc_now

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100

_COLUMNS = (
    "id, timestamp, operation_type, operator, keys_checked, "
    "inconsistencies_found, items_fixed, total_difference, details"
)


# ──────────────────────────────────────────────
# Details decoding
# ──────────────────────────────────────────────


def _opt_decimal(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _decode_item(data: dict[str, Any]) -> CheckItem:
    return CheckItem(
        key_id=data["key_id"],
        key_name=data["key_name"],
        dimension=Dimension(data["dimension"]),
        cached_value=_opt_decimal(data["cached_value"]),
        ledger_value=Decimal(data["ledger_value"]),
        difference=Decimal(data["difference"]),
        difference_rate=_opt_decimal(data["difference_rate"]),
        status=CheckStatus(data["status"]),
    )


def _decode_result(data: dict[str, Any]) -> CheckResult:
    return CheckResult(
        timestamp=datetime.fromisoformat(data["timestamp"]),
        total_keys_checked=data["total_keys_checked"],
        inconsistent_count=data["inconsistent_count"],
        total_difference_usd=Decimal(data["total_difference_usd"]),
        average_difference_rate=Decimal(data["average_difference_rate"]),
        items=tuple(_decode_item(i) for i in data["items"]),
        cache_misses=tuple(_decode_item(i) for i in data.get("cache_misses", [])),
    )


def decode_details(data: dict[str, Any] | None) -> HistoryDetails | None:
    """Rebuild a typed details payload from its stored JSON form."""
    if data is None:
        return None
    kind = data.get("kind")
    if kind == CheckDetails.kind:
        return CheckDetails(result=_decode_result(data["result"]))
    if kind == AutoFixDetails.kind:
        return AutoFixDetails(
            result=_decode_result(data["result"]),
            attempted=data["attempted"],
            fixed=data["fixed"],
        )
    if kind == FixDetails.kind:
        return FixDetails(
            targets=tuple(
                FixTarget(t["key_id"], Dimension(t["dimension"])) for t in data["targets"]
            ),
            attempted=data["attempted"],
            fixed=data["fixed"],
        )
    if kind == RebuildDetails.kind:
        return RebuildDetails(
            pattern=data["pattern"], deleted=data["deleted"], complete=data["complete"]
        )
    if kind == FailureDetails.kind:
        return FailureDetails(error_kind=data["error_kind"], message=data["message"])
    raise ValueError(f"Unknown history details kind: {kind!r}")


def _row_to_record(row: tuple) -> HistoryRecord:
    return HistoryRecord(
        id=row[0],
        timestamp=datetime.fromisoformat(row[1]),
        operation_type=OperationType(row[2]),
        operator=Operator(row[3]),
        keys_checked=row[4],
        inconsistencies_found=row[5],
        items_fixed=row[6],
        total_difference=row[7],
        details=decode_details(json.loads(row[8]) if row[8] is not None else None),
    )


class AuditLog:
    """Async SQLite store for consistency_history.

    Usage:
        async with SQLiteDatabase("data/consistency.db", STORE_SCHEMA_SQL) as database:
            audit = AuditLog(database)
            record_id = await audit.append(record)
    """

    def __init__(
        self,
        database: SQLiteDatabase,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._database = database
        self._clock = clock
        self._append_lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Write
    # ──────────────────────────────────────────────

    async def append(self, record: HistoryRecord) -> int:
        """Persist ``record`` and return its assigned id."""
        details = (
            json.dumps(to_jsonable(record.details)) if record.details is not None else None
        )
        async with self._append_lock:
            try:
                cursor = await self._database.db.execute(
                    "INSERT INTO consistency_history "
                    "(timestamp, timestamp_ms, operation_type, operator, keys_checked, "
                    "inconsistencies_found, items_fixed, total_difference, details) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.timestamp.isoformat(),
                        int(record.timestamp.timestamp() * 1000),
                        record.operation_type.value,
                        record.operator.value,
                        record.keys_checked,
                        record.inconsistencies_found,
                        record.items_fixed,
                        record.total_difference,
                        details,
                    ),
                )
                await self._database.db.commit()
            except (aiosqlite.Error, OSError) as e:
                raise TransientIOError(f"Audit append failed: {e}") from e
            record_id = cursor.lastrowid

        logger.debug(
            "history_record_appended",
            id=record_id,
            operation_type=record.operation_type.value,
            operator=record.operator.value,
        )
        return record_id

    # ──────────────────────────────────────────────
    # Read
    # ──────────────────────────────────────────────

    async def query(self, query: HistoryQuery) -> HistoryPage:
        """Return one page of history, newest first."""
        if query.page < 1:
            raise ValidationError(f"page must be >= 1, got {query.page}")
        if not 1 <= query.page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {query.page_size}"
            )
        if query.days is not None and query.days < 1:
            raise ValidationError(f"days must be >= 1, got {query.days}")

        conditions: list[str] = []
        params: list = []
        if query.operation_type is not None:
            conditions.append("operation_type = ?")
            params.append(query.operation_type.value)
        if query.days is not None:
            conditions.append("timestamp_ms >= ?")
            params.append(self._cutoff_ms(query.days))

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        offset = (query.page - 1) * query.page_size
        try:
            cursor = await self._database.db.execute(
                f"SELECT COUNT(*) FROM consistency_history {where}", params
            )
            (total,) = await cursor.fetchone()
            cursor = await self._database.db.execute(
                f"SELECT {_COLUMNS} FROM consistency_history {where} "
                f"ORDER BY id DESC LIMIT ? OFFSET ?",
                [*params, query.page_size, offset],
            )
            rows = await cursor.fetchall()
        except (aiosqlite.Error, OSError) as e:
            raise TransientIOError(f"Audit query failed: {e}") from e

        return HistoryPage(
            items=[_row_to_record(row) for row in rows],
            total=total,
            page=query.page,
            page_size=query.page_size,
        )

    async def get(self, record_id: int) -> HistoryRecord | None:
        """Return one record by id, or None."""
        return await self._fetch_one(
            f"SELECT {_COLUMNS} FROM consistency_history WHERE id = ?", (record_id,)
        )

    async def latest(self, operation_type: OperationType | None = None) -> HistoryRecord | None:
        """Return the most recently appended record, optionally of one type."""
        if operation_type is None:
            return await self._fetch_one(
                f"SELECT {_COLUMNS} FROM consistency_history ORDER BY id DESC LIMIT 1", ()
            )
        return await self._fetch_one(
            f"SELECT {_COLUMNS} FROM consistency_history WHERE operation_type = ? "
            "ORDER BY id DESC LIMIT 1",
            (operation_type.value,),
        )

    async def aggregate_stats(self, window_days: int = 7) -> HistoryStats:
        """Totals over records of the last ``window_days`` days.

        fix_rate is items fixed as a percentage of inconsistencies found,
        0 when none were found.
        """
        if window_days < 1:
            raise ValidationError(f"window_days must be >= 1, got {window_days}")
        try:
            cursor = await self._database.db.execute(
                "SELECT COUNT(*), COALESCE(SUM(inconsistencies_found), 0), "
                "COALESCE(SUM(items_fixed), 0) FROM consistency_history "
                "WHERE timestamp_ms >= ?",
                (self._cutoff_ms(window_days),),
            )
            total_checks, total_inconsistencies, total_fixed = await cursor.fetchone()
        except (aiosqlite.Error, OSError) as e:
            raise TransientIOError(f"Audit statistics failed: {e}") from e

        fix_rate = (
            Decimal(total_fixed) / Decimal(total_inconsistencies) * 100
            if total_inconsistencies > 0
            else Decimal("0")
        )
        return HistoryStats(
            total_checks=total_checks,
            total_inconsistencies=total_inconsistencies,
            total_fixed=total_fixed,
            fix_rate=fix_rate,
        )

    async def _fetch_one(self, sql: str, params: tuple) -> HistoryRecord | None:
        try:
            cursor = await self._database.db.execute(sql, params)
            row = await cursor.fetchone()
        except (aiosqlite.Error, OSError) as e:
            raise TransientIOError(f"Audit read failed: {e}") from e
        return _row_to_record(row) if row is not None else None

    def _cutoff_ms(self, days: int) -> int:
        return int((self._clock() - timedelta(days=days)).timestamp() * 1000)
