"""Shared data models for the consistency engine.

CRITICAL: All monetary values use Decimal. Never use float for costs,
differences or thresholds. Rates are percentages, also Decimal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Union

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class Dimension(str, Enum):
    """Aggregation window a cached or ledger total represents."""

    TOTAL = "total"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    FIVE_HOUR = "5h"


# Canonical order used for enumeration and for sorting check items
ALL_DIMENSIONS: tuple[Dimension, ...] = tuple(Dimension)
_DIMENSION_RANK = {d: i for i, d in enumerate(ALL_DIMENSIONS)}


def dimension_rank(dimension: Dimension) -> int:
    return _DIMENSION_RANK[dimension]


class CheckStatus(str, Enum):
    """Classification of a checked (key, dimension) pair that is not consistent."""

    DRIFT = "drift"
    CACHE_MISS = "cache_miss"


class OperationType(str, Enum):
    """Kind of operation recorded in the audit history."""

    MANUAL_CHECK = "manual_check"
    SCHEDULED_CHECK = "scheduled_check"
    MANUAL_FIX = "manual_fix"
    AUTO_FIX = "auto_fix"
    GLOBAL_REBUILD = "global_rebuild"


class Operator(str, Enum):
    """Who initiated an audited operation."""

    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class KeyRef:
    """An active API key as listed by the ledger."""

    id: int
    name: str


@dataclass(frozen=True)
class FixTarget:
    """A (key, dimension) pair to repair."""

    key_id: int
    dimension: Dimension


def measure_drift(
    cached_value: Decimal | None,
    ledger_value: Decimal,
    epsilon: Decimal,
) -> tuple[Decimal, Decimal | None]:
    """Return (difference, difference_rate) for a cached vs ledger pair.

    A missing cached value counts as zero. The rate is a percentage relative
    to the ledger value and is None when the ledger value is zero: there is
    no relative baseline, and None is used instead of NaN or infinity.
    """
    difference = abs((cached_value if cached_value is not None else ZERO) - ledger_value)
    if ledger_value == 0:
        return difference, None
    rate = difference / max(ledger_value, epsilon) * HUNDRED
    return difference, rate


@dataclass(frozen=True)
class CheckItem:
    """One non-consistent (key, dimension) pair found by a check."""

    key_id: int
    key_name: str
    dimension: Dimension
    cached_value: Decimal | None
    ledger_value: Decimal
    difference: Decimal
    difference_rate: Decimal | None
    status: CheckStatus = CheckStatus.DRIFT

    @property
    def is_cache_miss(self) -> bool:
        return self.status is CheckStatus.CACHE_MISS

    @property
    def target(self) -> FixTarget:
        return FixTarget(self.key_id, self.dimension)


@dataclass(frozen=True)
class CheckScope:
    """Optional narrowing of a check to some keys and/or dimensions."""

    key_ids: tuple[int, ...] | None = None
    dimensions: tuple[Dimension, ...] | None = None


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one reconciliation pass.

    Aggregates cover drift items only. Cache misses are reported alongside
    but never counted as inconsistencies.
    """

    timestamp: datetime
    total_keys_checked: int
    inconsistent_count: int
    total_difference_usd: Decimal
    average_difference_rate: Decimal
    items: tuple[CheckItem, ...] = ()
    cache_misses: tuple[CheckItem, ...] = ()


@dataclass(frozen=True)
class FixOutcome:
    """Result of a batch fix.

    attempted == 0 means nothing needed fixing; fixed == 0 with
    attempted > 0 means every fix failed.
    """

    attempted: int
    fixed: int
    failed: tuple[FixTarget, ...] = ()

    @property
    def all_failed(self) -> bool:
        return self.attempted > 0 and self.fixed == 0


@dataclass(frozen=True)
class RebuildOutcome:
    """Result of a global cache rebuild."""

    pattern: str
    deleted: int
    complete: bool = True


# Allowed scheduler intervals, in hours
ALLOWED_INTERVAL_HOURS: tuple[int, ...] = (1, 3, 6, 12, 24)


@dataclass(frozen=True)
class TaskConfig:
    """Immutable snapshot of the persisted reconciliation policy."""

    enabled: bool = False
    interval_hours: int = 6
    auto_fix: bool = False
    threshold_usd: Decimal = Decimal("0.01")
    threshold_rate: Decimal = Decimal("5.00")  # percent
    updated_at: datetime | None = None


@dataclass
class TaskConfigUpdate:
    """Partial update of TaskConfig. Non-None fields replace stored values."""

    enabled: bool | None = None
    interval_hours: int | None = None
    auto_fix: bool | None = None
    threshold_usd: Decimal | None = None
    threshold_rate: Decimal | None = None

    def is_empty(self) -> bool:
        return all(
            v is None
            for v in (
                self.enabled,
                self.interval_hours,
                self.auto_fix,
                self.threshold_usd,
                self.threshold_rate,
            )
        )


@dataclass(frozen=True)
class RunSummary:
    """Short summary of the last scheduler run."""

    keys_checked: int
    inconsistencies_found: int
    items_fixed: int


@dataclass(frozen=True)
class TaskStatus:
    """Scheduler status as shown to operators. Derived, never persisted."""

    enabled: bool
    interval_hours: int
    is_running: bool
    last_run: datetime | None
    next_run: datetime | None
    last_run_result: RunSummary | None


# ──────────────────────────────────────────────
# History details: tagged union keyed by ``kind``
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class CheckDetails:
    kind: ClassVar[str] = "check"

    result: CheckResult


@dataclass(frozen=True)
class AutoFixDetails:
    kind: ClassVar[str] = "auto_fix"

    result: CheckResult
    attempted: int
    fixed: int


@dataclass(frozen=True)
class FixDetails:
    kind: ClassVar[str] = "fix"

    targets: tuple[FixTarget, ...]
    attempted: int
    fixed: int


@dataclass(frozen=True)
class RebuildDetails:
    kind: ClassVar[str] = "rebuild"

    pattern: str
    deleted: int
    complete: bool


@dataclass(frozen=True)
class FailureDetails:
    """Dedicated payload for an unattended run that failed."""

    kind: ClassVar[str] = "failure"

    error_kind: str
    message: str


HistoryDetails = Union[CheckDetails, AutoFixDetails, FixDetails, RebuildDetails, FailureDetails]


@dataclass(frozen=True)
class HistoryRecord:
    """Append-only audit entry. id is None until the audit log assigns one."""

    timestamp: datetime
    operation_type: OperationType
    operator: Operator
    keys_checked: int = 0
    inconsistencies_found: int = 0
    items_fixed: int = 0
    total_difference: str = "0"
    details: HistoryDetails | None = None
    id: int | None = None


@dataclass(frozen=True)
class HistoryQuery:
    """Filters and page for history listing. page is 1-based."""

    page: int = 1
    page_size: int = 20
    operation_type: OperationType | None = None
    days: int | None = None


@dataclass(frozen=True)
class HistoryPage:
    items: list[HistoryRecord] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20


@dataclass(frozen=True)
class HistoryStats:
    """Aggregate history statistics over a window of days."""

    total_checks: int
    total_inconsistencies: int
    total_fixed: int
    fix_rate: Decimal  # percent
