"""Tests for the append-only AuditLog: ordering, paging, filters, typed details, stats."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from costsync.exceptions import ValidationError
from costsync.models import (
    CheckDetails,
    CheckItem,
    CheckResult,
    CheckStatus,
    Dimension,
    FailureDetails,
    FixDetails,
    FixTarget,
    HistoryQuery,
    HistoryRecord,
    OperationType,
    Operator,
    RebuildDetails,
)
from costsync.store.audit import AuditLog

from conftest import NOW


def _record(
    operation_type: OperationType = OperationType.MANUAL_CHECK,
    inconsistencies: int = 0,
    fixed: int = 0,
    age: timedelta = timedelta(0),
    details=None,
) -> HistoryRecord:
    return HistoryRecord(
        timestamp=NOW - age,
        operation_type=operation_type,
        operator=Operator.ADMIN,
        keys_checked=3,
        inconsistencies_found=inconsistencies,
        items_fixed=fixed,
        total_difference="0.50",
        details=details,
    )


def _check_result() -> CheckResult:
    drift = CheckItem(
        key_id=42,
        key_name="prod",
        dimension=Dimension.DAILY,
        cached_value=Decimal("9.50"),
        ledger_value=Decimal("10.00"),
        difference=Decimal("0.50"),
        difference_rate=Decimal("5"),
    )
    zero_base = CheckItem(
        key_id=43,
        key_name="idle",
        dimension=Dimension.FIVE_HOUR,
        cached_value=Decimal("1"),
        ledger_value=Decimal("0"),
        difference=Decimal("1"),
        difference_rate=None,
    )
    miss = CheckItem(
        key_id=44,
        key_name="cold",
        dimension=Dimension.TOTAL,
        cached_value=None,
        ledger_value=Decimal("3"),
        difference=Decimal("3"),
        difference_rate=Decimal("100"),
        status=CheckStatus.CACHE_MISS,
    )
    return CheckResult(
        timestamp=NOW,
        total_keys_checked=3,
        inconsistent_count=2,
        total_difference_usd=Decimal("1.50"),
        average_difference_rate=Decimal("5"),
        items=(drift, zero_base),
        cache_misses=(miss,),
    )


class TestAppendAndQuery:
    @pytest.mark.asyncio()
    async def test_ids_increase_and_listing_is_newest_first(self, audit_log: AuditLog) -> None:
        ids = [await audit_log.append(_record()) for _ in range(3)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3

        page = await audit_log.query(HistoryQuery())
        assert [r.id for r in page.items] == list(reversed(ids))
        assert page.total == 3

    @pytest.mark.asyncio()
    async def test_concurrent_appends_get_ids_in_completion_order(
        self, audit_log: AuditLog
    ) -> None:
        ids = await asyncio.gather(
            *(audit_log.append(_record(inconsistencies=n)) for n in range(10))
        )

        assert len(set(ids)) == 10
        assert list(ids) == sorted(ids)

        page = await audit_log.query(HistoryQuery(page_size=20))
        assert [r.id for r in page.items] == sorted(ids, reverse=True)
        by_id = {r.id: r.inconsistencies_found for r in page.items}
        assert [by_id[i] for i in ids] == list(range(10))

    @pytest.mark.asyncio()
    async def test_paging(self, audit_log: AuditLog) -> None:
        for _ in range(5):
            await audit_log.append(_record())

        first = await audit_log.query(HistoryQuery(page=1, page_size=2))
        last = await audit_log.query(HistoryQuery(page=3, page_size=2))

        assert len(first.items) == 2
        assert len(last.items) == 1
        assert first.total == last.total == 5

    @pytest.mark.asyncio()
    async def test_filter_by_operation_type(self, audit_log: AuditLog) -> None:
        await audit_log.append(_record(OperationType.MANUAL_CHECK))
        await audit_log.append(_record(OperationType.GLOBAL_REBUILD))

        page = await audit_log.query(HistoryQuery(operation_type=OperationType.GLOBAL_REBUILD))
        assert [r.operation_type for r in page.items] == [OperationType.GLOBAL_REBUILD]
        assert page.total == 1

    @pytest.mark.asyncio()
    async def test_filter_by_days(self, audit_log: AuditLog) -> None:
        await audit_log.append(_record(age=timedelta(days=10)))
        recent_id = await audit_log.append(_record(age=timedelta(hours=1)))

        page = await audit_log.query(HistoryQuery(days=7))
        assert [r.id for r in page.items] == [recent_id]

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        "query",
        [HistoryQuery(page=0), HistoryQuery(page_size=0), HistoryQuery(page_size=101), HistoryQuery(days=0)],
    )
    async def test_invalid_query_rejected(self, audit_log: AuditLog, query: HistoryQuery) -> None:
        with pytest.raises(ValidationError):
            await audit_log.query(query)


class TestTypedDetails:
    @pytest.mark.asyncio()
    async def test_check_details_round_trip(self, audit_log: AuditLog) -> None:
        details = CheckDetails(result=_check_result())
        record_id = await audit_log.append(_record(details=details))

        stored = await audit_log.get(record_id)

        assert stored is not None
        assert stored.details == details
        assert stored.total_difference == "0.50"
        assert stored.timestamp == NOW

    @pytest.mark.asyncio()
    async def test_fix_rebuild_and_failure_details(self, audit_log: AuditLog) -> None:
        payloads = [
            FixDetails(targets=(FixTarget(42, Dimension.FIVE_HOUR),), attempted=1, fixed=1),
            RebuildDetails(pattern="key:*:*cost*", deleted=12, complete=False),
            FailureDetails(error_kind="transient_io", message="ledger unreachable"),
        ]
        for payload in payloads:
            record_id = await audit_log.append(_record(details=payload))
            stored = await audit_log.get(record_id)
            assert stored is not None
            assert stored.details == payload

    @pytest.mark.asyncio()
    async def test_missing_record(self, audit_log: AuditLog) -> None:
        assert await audit_log.get(12345) is None


class TestLatest:
    @pytest.mark.asyncio()
    async def test_latest_of_type(self, audit_log: AuditLog) -> None:
        first = await audit_log.append(_record(OperationType.MANUAL_CHECK))
        await audit_log.append(_record(OperationType.MANUAL_FIX))

        latest_check = await audit_log.latest(OperationType.MANUAL_CHECK)
        latest_any = await audit_log.latest()

        assert latest_check is not None and latest_check.id == first
        assert latest_any is not None and latest_any.operation_type is OperationType.MANUAL_FIX

    @pytest.mark.asyncio()
    async def test_latest_on_empty_log(self, audit_log: AuditLog) -> None:
        assert await audit_log.latest() is None


class TestAggregateStats:
    @pytest.mark.asyncio()
    async def test_fix_rate(self, audit_log: AuditLog) -> None:
        await audit_log.append(_record(inconsistencies=3, fixed=0))
        await audit_log.append(_record(OperationType.AUTO_FIX, inconsistencies=1, fixed=1))
        await audit_log.append(_record(inconsistencies=50, fixed=50, age=timedelta(days=30)))

        stats = await audit_log.aggregate_stats(7)

        assert stats.total_checks == 2
        assert stats.total_inconsistencies == 4
        assert stats.total_fixed == 1
        assert stats.fix_rate == Decimal("25")

    @pytest.mark.asyncio()
    async def test_no_inconsistencies_gives_zero_rate(self, audit_log: AuditLog) -> None:
        await audit_log.append(_record())
        stats = await audit_log.aggregate_stats()
        assert stats.total_checks == 1
        assert stats.fix_rate == Decimal("0")

    @pytest.mark.asyncio()
    async def test_invalid_window(self, audit_log: AuditLog) -> None:
        with pytest.raises(ValidationError):
            await audit_log.aggregate_stats(0)
