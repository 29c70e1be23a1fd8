"""Shared test fixtures for the consistency engine.

InMemoryCache and InMemoryLedger stand in for Redis and the usage ledger so
reconciliation, fixing and scheduling can be tested without either.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from costsync.cache.client import CostCache
from costsync.config import FixSettings, ReconcileSettings, SchedulerSettings
from costsync.database import SQLiteDatabase
from costsync.exceptions import TransientIOError
from costsync.ledger.client import Ledger
from costsync.models import Dimension, KeyRef
from costsync.store.audit import AuditLog
from costsync.store.schema import STORE_SCHEMA_SQL
from costsync.store.task_config import TaskConfigStore

# Wednesday 2025-01-15 04:00 UTC, 12:00 in Asia/Shanghai
NOW = datetime(2025, 1, 15, 4, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for components that accept ``clock``."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class InMemoryCache(CostCache):
    """Dict-backed cost cache. Set ``fail_reads``/``fail_writes`` to simulate outages."""

    def __init__(self) -> None:
        self.values: dict[tuple[int, Dimension], Decimal] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.set_calls: list[tuple[int, Dimension, Decimal]] = []

    async def get(self, key_id: int, dimension: Dimension) -> Decimal | None:
        if self.fail_reads:
            raise TransientIOError("cache unreachable")
        return self.values.get((key_id, dimension))

    async def set(self, key_id: int, dimension: Dimension, value: Decimal) -> None:
        if self.fail_writes:
            raise TransientIOError("cache unreachable")
        self.set_calls.append((key_id, dimension, value))
        self.values[(key_id, dimension)] = value

    async def delete_matching(self, pattern: str) -> int:
        deleted = len(self.values)
        self.values.clear()
        return deleted

    async def close(self) -> None:
        pass


class InMemoryLedger(Ledger):
    """Dict-backed ledger. Unknown pairs total zero."""

    def __init__(self) -> None:
        self.keys: list[KeyRef] = []
        self.totals: dict[tuple[int, Dimension], Decimal] = {}
        self.failing_keys: set[int] = set()
        self.reads: list[tuple[int, Dimension]] = []

    def add_key(self, key_id: int, name: str | None = None) -> None:
        self.keys.append(KeyRef(id=key_id, name=name or f"key-{key_id}"))

    async def get_authoritative(self, key_id: int, dimension: Dimension) -> Decimal:
        if key_id in self.failing_keys:
            raise TransientIOError(f"ledger unreachable for key {key_id}")
        self.reads.append((key_id, dimension))
        return self.totals.get((key_id, dimension), Decimal("0"))

    async def list_active_keys(self) -> list[KeyRef]:
        return list(self.keys)

    async def close(self) -> None:
        pass


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def reconcile_settings() -> ReconcileSettings:
    return ReconcileSettings(max_concurrency=4)


@pytest.fixture
def fix_settings() -> FixSettings:
    return FixSettings(lock_timeout=0.05, max_concurrency=4)


@pytest.fixture
def scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings(enabled=True, tick_seconds=0.01)


@pytest_asyncio.fixture
async def store_db(tmp_path):
    """Connected consistency store database in a temp directory."""
    async with SQLiteDatabase(str(tmp_path / "consistency.db"), STORE_SCHEMA_SQL) as database:
        yield database


@pytest.fixture
def config_store(store_db: SQLiteDatabase, clock: FakeClock) -> TaskConfigStore:
    return TaskConfigStore(store_db, clock=clock)


@pytest.fixture
def audit_log(store_db: SQLiteDatabase, clock: FakeClock) -> AuditLog:
    return AuditLog(store_db, clock=clock)
