"""Persisted singleton holding the operator-tunable reconciliation policy.

Readers always receive an immutable TaskConfig snapshot, so a run that takes
one snapshot at its start sees consistent thresholds and interval throughout.
"""

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from decimal import Decimal

import aiosqlite

from costsync.database import SQLiteDatabase
from costsync.exceptions import TransientIOError, ValidationError
from costsync.logging import get_logger
from costsync.models import ALLOWED_INTERVAL_HOURS, TaskConfig, TaskConfigUpdate
from costsync.windows import utc_now

logger = get_logger(__name__)


def validate_update(update: TaskConfigUpdate) -> None:
    """Reject malformed updates before anything is persisted.

    Raises:
        ValidationError: empty update, unsupported interval, or a threshold
            that is negative or not finite.
    """
    if update.is_empty():
        raise ValidationError("No configuration fields to update")
    if update.interval_hours is not None and update.interval_hours not in ALLOWED_INTERVAL_HOURS:
        allowed = ", ".join(str(h) for h in ALLOWED_INTERVAL_HOURS)
        raise ValidationError(
            f"Invalid interval_hours {update.interval_hours}; allowed values: {allowed}"
        )
    for name in ("threshold_usd", "threshold_rate"):
        value: Decimal | None = getattr(update, name)
        if value is None:
            continue
        if not value.is_finite() or value < 0:
            raise ValidationError(f"{name} must be a finite non-negative number, got {value}")


class TaskConfigStore:
    """Read and update the single consistency_task_config row.

    The row is created with defaults on first read.
    """

    def __init__(
        self,
        database: SQLiteDatabase,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._database = database
        self._clock = clock
        self._lock = asyncio.Lock()

    async def get(self) -> TaskConfig:
        """Return the current policy snapshot, creating defaults if absent."""
        async with self._lock:
            return await self._load_or_create()

    async def update(self, update: TaskConfigUpdate) -> TaskConfig:
        """Validate and apply a partial update. Returns the new snapshot."""
        validate_update(update)
        async with self._lock:
            current = await self._load_or_create()
            changes = {
                name: value
                for name, value in (
                    ("enabled", update.enabled),
                    ("interval_hours", update.interval_hours),
                    ("auto_fix", update.auto_fix),
                    ("threshold_usd", update.threshold_usd),
                    ("threshold_rate", update.threshold_rate),
                )
                if value is not None
            }
            new = replace(current, updated_at=self._clock(), **changes)
            try:
                await self._database.db.execute(
                    "UPDATE consistency_task_config SET enabled = ?, interval_hours = ?, "
                    "auto_fix = ?, threshold_usd = ?, threshold_rate = ?, updated_at = ? "
                    "WHERE id = 1",
                    (
                        int(new.enabled),
                        new.interval_hours,
                        int(new.auto_fix),
                        str(new.threshold_usd),
                        str(new.threshold_rate),
                        new.updated_at.isoformat(),
                    ),
                )
                await self._database.db.commit()
            except (aiosqlite.Error, OSError) as e:
                raise TransientIOError(f"Task config update failed: {e}") from e

        logger.info(
            "task_config_updated",
            changed=sorted(changes),
            enabled=new.enabled,
            interval_hours=new.interval_hours,
            auto_fix=new.auto_fix,
            threshold_usd=str(new.threshold_usd),
            threshold_rate=str(new.threshold_rate),
        )
        return new

    async def _load_or_create(self) -> TaskConfig:
        try:
            cursor = await self._database.db.execute(
                "SELECT enabled, interval_hours, auto_fix, threshold_usd, "
                "threshold_rate, updated_at FROM consistency_task_config WHERE id = 1"
            )
            row = await cursor.fetchone()
            if row is None:
                return await self._create_default()
        except (aiosqlite.Error, OSError) as e:
            raise TransientIOError(f"Task config read failed: {e}") from e

        return TaskConfig(
            enabled=bool(row[0]),
            interval_hours=row[1],
            auto_fix=bool(row[2]),
            threshold_usd=Decimal(row[3]),
            threshold_rate=Decimal(row[4]),
            updated_at=datetime.fromisoformat(row[5]),
        )

    async def _create_default(self) -> TaskConfig:
        now = self._clock()
        config = TaskConfig(updated_at=now)
        await self._database.db.execute(
            "INSERT OR IGNORE INTO consistency_task_config "
            "(id, enabled, interval_hours, auto_fix, threshold_usd, threshold_rate, "
            "created_at, updated_at) VALUES (1, ?, ?, ?, ?, ?, ?, ?)",
            (
                int(config.enabled),
                config.interval_hours,
                int(config.auto_fix),
                str(config.threshold_usd),
                str(config.threshold_rate),
                now.isoformat(),
                now.isoformat(),
            ),
        )
        await self._database.db.commit()
        logger.info("task_config_defaults_created", interval_hours=config.interval_hours)
        return config
