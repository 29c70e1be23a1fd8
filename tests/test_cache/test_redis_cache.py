"""Tests for RedisCostCache against a mocked redis.asyncio client.

Covers key layout, rolling-window summing, TTLs on write, the 5h rewrite
pipeline, batched SCAN/DEL and error translation.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from costsync.cache.redis_cache import RedisCostCache, cache_key
from costsync.config import CacheSettings
from costsync.exceptions import PartialRebuildError, TransientIOError
from costsync.models import Dimension

from conftest import NOW, FakeClock

SHANGHAI = ZoneInfo("Asia/Shanghai")
NOW_MS = int(NOW.timestamp() * 1000)
FIVE_HOURS_MS = 5 * 3600 * 1000


async def _aiter(items: list[str]):
    for item in items:
        yield item


@pytest.fixture()
def redis() -> MagicMock:
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock()
    client.zrangebyscore = AsyncMock(return_value=[])
    client.delete = AsyncMock(return_value=0)
    client.aclose = AsyncMock()

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    client.pipeline.return_value.__aenter__.return_value = pipe
    client.pipe = pipe
    return client


@pytest.fixture()
def cost_cache(redis: MagicMock) -> RedisCostCache:
    return RedisCostCache(
        CacheSettings(scan_batch_size=2), SHANGHAI, redis=redis, clock=FakeClock()
    )


class TestCacheKey:
    def test_layout(self) -> None:
        assert cache_key(42, Dimension.TOTAL) == "key:42:total_cost"
        assert cache_key(42, Dimension.DAILY) == "key:42:daily_cost"
        assert cache_key(42, Dimension.WEEKLY) == "key:42:cost_weekly"
        assert cache_key(42, Dimension.MONTHLY) == "key:42:cost_monthly"
        assert cache_key(42, Dimension.FIVE_HOUR) == "key:42:cost_5h_rolling"

    def test_default_rebuild_pattern_covers_every_dimension(self) -> None:
        from fnmatch import fnmatchcase

        pattern = CacheSettings().rebuild_pattern
        for dimension in Dimension:
            assert fnmatchcase(cache_key(7, dimension), pattern)


class TestGet:
    @pytest.mark.asyncio()
    async def test_string_value(self, cost_cache: RedisCostCache, redis: MagicMock) -> None:
        redis.get.return_value = "12.345"
        assert await cost_cache.get(42, Dimension.DAILY) == Decimal("12.345")
        redis.get.assert_awaited_once_with("key:42:daily_cost")

    @pytest.mark.asyncio()
    async def test_absent_value(self, cost_cache: RedisCostCache) -> None:
        assert await cost_cache.get(42, Dimension.TOTAL) is None

    @pytest.mark.asyncio()
    async def test_unparseable_value_is_absent(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        redis.get.return_value = "not-a-number"
        assert await cost_cache.get(42, Dimension.TOTAL) is None

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("raw", ["NaN", "Infinity", "-Infinity", "sNaN"])
    async def test_non_finite_value_is_absent(
        self, cost_cache: RedisCostCache, redis: MagicMock, raw: str
    ) -> None:
        redis.get.return_value = raw
        assert await cost_cache.get(42, Dimension.DAILY) is None

    @pytest.mark.asyncio()
    async def test_non_finite_rolling_member_is_skipped(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        redis.zrangebyscore.return_value = [
            f"{NOW_MS - 1000}:1.5",
            f"{NOW_MS - 500}:NaN",
            f"{NOW_MS}:Infinity",
        ]
        assert await cost_cache.get(42, Dimension.FIVE_HOUR) == Decimal("1.5")

    @pytest.mark.asyncio()
    async def test_rolling_window_sums_members(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        redis.zrangebyscore.return_value = [
            f"{NOW_MS - 1000}:1.5",
            f"{NOW_MS - 500}:2.25",
            f"{NOW_MS}:garbage",
        ]
        assert await cost_cache.get(42, Dimension.FIVE_HOUR) == Decimal("3.75")
        redis.zrangebyscore.assert_awaited_once_with(
            "key:42:cost_5h_rolling", NOW_MS - FIVE_HOURS_MS, NOW_MS
        )

    @pytest.mark.asyncio()
    async def test_empty_rolling_window_is_absent(self, cost_cache: RedisCostCache) -> None:
        assert await cost_cache.get(42, Dimension.FIVE_HOUR) is None

    @pytest.mark.asyncio()
    async def test_redis_error_is_transient(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        redis.get.side_effect = RedisConnectionError("down")
        with pytest.raises(TransientIOError):
            await cost_cache.get(42, Dimension.DAILY)


class TestSet:
    @pytest.mark.asyncio()
    async def test_daily_expires_at_local_midnight(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        await cost_cache.set(42, Dimension.DAILY, Decimal("10.00"))
        redis.set.assert_awaited_once_with("key:42:daily_cost", "10.00", ex=12 * 3600)

    @pytest.mark.asyncio()
    async def test_total_never_expires(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        await cost_cache.set(42, Dimension.TOTAL, Decimal("99.5"))
        redis.set.assert_awaited_once_with("key:42:total_cost", "99.5", ex=None)

    @pytest.mark.asyncio()
    async def test_rolling_window_replaced_with_single_member(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        await cost_cache.set(42, Dimension.FIVE_HOUR, Decimal("3.75"))

        pipe = redis.pipe
        redis.pipeline.assert_called_once_with(transaction=True)
        pipe.delete.assert_called_once_with("key:42:cost_5h_rolling")
        pipe.zadd.assert_called_once_with(
            "key:42:cost_5h_rolling", {f"{NOW_MS}:3.75": NOW_MS}
        )
        pipe.pexpire.assert_called_once_with("key:42:cost_5h_rolling", FIVE_HOURS_MS)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_zero_rolling_total_is_written(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        await cost_cache.set(42, Dimension.FIVE_HOUR, Decimal("0"))

        pipe = redis.pipe
        pipe.delete.assert_called_once_with("key:42:cost_5h_rolling")
        pipe.zadd.assert_called_once_with("key:42:cost_5h_rolling", {f"{NOW_MS}:0": NOW_MS})
        pipe.pexpire.assert_called_once_with("key:42:cost_5h_rolling", FIVE_HOURS_MS)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_redis_error_is_transient(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        redis.set.side_effect = RedisConnectionError("down")
        with pytest.raises(TransientIOError):
            await cost_cache.set(42, Dimension.DAILY, Decimal("1"))


class TestDeleteMatching:
    @pytest.mark.asyncio()
    async def test_deletes_in_batches(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        keys = ["key:1:total_cost", "key:1:daily_cost", "key:2:total_cost"]
        redis.scan_iter = MagicMock(return_value=_aiter(keys))
        redis.delete.side_effect = [2, 1]

        assert await cost_cache.delete_matching("key:*:*cost*") == 3
        redis.scan_iter.assert_called_once_with(match="key:*:*cost*", count=2)
        assert redis.delete.await_args_list[0].args == ("key:1:total_cost", "key:1:daily_cost")
        assert redis.delete.await_args_list[1].args == ("key:2:total_cost",)

    @pytest.mark.asyncio()
    async def test_nothing_to_delete(self, cost_cache: RedisCostCache, redis: MagicMock) -> None:
        redis.scan_iter = MagicMock(return_value=_aiter([]))
        assert await cost_cache.delete_matching("key:*:*cost*") == 0
        redis.delete.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_interrupted_after_some_deletes(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        keys = ["a", "b", "c", "d"]
        redis.scan_iter = MagicMock(return_value=_aiter(keys))
        redis.delete.side_effect = [2, RedisConnectionError("lost")]

        with pytest.raises(PartialRebuildError) as exc_info:
            await cost_cache.delete_matching("key:*:*cost*")
        assert exc_info.value.deleted == 2

    @pytest.mark.asyncio()
    async def test_failure_before_any_delete(
        self, cost_cache: RedisCostCache, redis: MagicMock
    ) -> None:
        redis.scan_iter = MagicMock(return_value=_aiter(["a"]))
        redis.delete.side_effect = RedisConnectionError("lost")

        with pytest.raises(TransientIOError) as exc_info:
            await cost_cache.delete_matching("key:*:*cost*")
        assert not isinstance(exc_info.value, PartialRebuildError)


@pytest.mark.asyncio()
async def test_close(cost_cache: RedisCostCache, redis: MagicMock) -> None:
    await cost_cache.close()
    redis.aclose.assert_awaited_once()
