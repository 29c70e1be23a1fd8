"""Redis cost cache implementation via redis.asyncio.

Key layout written by the request path and read here:

    key:{id}:total_cost       STRING, no TTL
    key:{id}:daily_cost       STRING, TTL to next local midnight
    key:{id}:cost_weekly      STRING, TTL to next local Monday
    key:{id}:cost_monthly     STRING, TTL to next local 1st of month
    key:{id}:cost_5h_rolling  ZSET of "<ts_ms>:<cost>" scored by ts_ms

The 5h value is the sum of member costs scored inside the last five hours.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal, InvalidOperation
from zoneinfo import ZoneInfo

from redis.asyncio import Redis
from redis.exceptions import RedisError

from costsync.cache.client import CostCache
from costsync.config import CacheSettings
from costsync.exceptions import PartialRebuildError, TransientIOError
from costsync.logging import get_logger
from costsync.models import Dimension
from costsync.windows import FIVE_HOUR_WINDOW, ttl_seconds, utc_now

logger = get_logger(__name__)

_KEY_SUFFIX = {
    Dimension.TOTAL: "total_cost",
    Dimension.DAILY: "daily_cost",
    Dimension.WEEKLY: "cost_weekly",
    Dimension.MONTHLY: "cost_monthly",
    Dimension.FIVE_HOUR: "cost_5h_rolling",
}

_FIVE_HOUR_MS = int(FIVE_HOUR_WINDOW.total_seconds() * 1000)


def cache_key(key_id: int, dimension: Dimension) -> str:
    """Return the Redis key holding ``dimension``'s total for ``key_id``."""
    return f"key:{key_id}:{_KEY_SUFFIX[dimension]}"


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _parse_cost(raw: str) -> Decimal | None:
    """Parse a cached amount. NaN, infinities and garbage all give None."""
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def _member_cost(member: str) -> Decimal | None:
    """Parse the cost part of a "<ts_ms>:<cost>" rolling-window member."""
    _, _, raw = member.partition(":")
    return _parse_cost(raw)


class RedisCostCache(CostCache):
    """Concrete cost cache over a redis.asyncio client."""

    def __init__(
        self,
        settings: CacheSettings,
        tz: ZoneInfo,
        redis: Redis | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._tz = tz
        self._clock = clock
        self._redis = redis or Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.socket_timeout,
        )

    @property
    def redis(self) -> Redis:
        """Access the underlying redis client."""
        return self._redis

    async def get(self, key_id: int, dimension: Dimension) -> Decimal | None:
        key = cache_key(key_id, dimension)
        try:
            if dimension is Dimension.FIVE_HOUR:
                return await self._get_rolling(key)
            raw = await self._redis.get(key)
        except RedisError as e:
            raise TransientIOError(f"Cache read failed for {key}: {e}") from e
        if raw is None:
            return None
        value = _parse_cost(str(raw))
        if value is None:
            # Unparseable entry behaves as a miss so the fixer can overwrite it
            logger.warning("cache_value_unparseable", key=key, raw=str(raw))
        return value

    async def _get_rolling(self, key: str) -> Decimal | None:
        now_ms = _to_ms(self._clock())
        members = await self._redis.zrangebyscore(key, now_ms - _FIVE_HOUR_MS, now_ms)
        if not members:
            return None
        total = Decimal("0")
        for member in members:
            cost = _member_cost(member)
            if cost is None:
                logger.warning("rolling_member_unparseable", key=key, member=member)
                continue
            total += cost
        return total

    async def set(self, key_id: int, dimension: Dimension, value: Decimal) -> None:
        key = cache_key(key_id, dimension)
        now = self._clock()
        try:
            if dimension is Dimension.FIVE_HOUR:
                await self._set_rolling(key, value, _to_ms(now))
            else:
                ttl = ttl_seconds(dimension, now, self._tz)
                await self._redis.set(key, str(value), ex=ttl)
        except RedisError as e:
            raise TransientIOError(f"Cache write failed for {key}: {e}") from e
        logger.debug("cache_value_set", key=key, value=str(value))

    async def _set_rolling(self, key: str, value: Decimal, now_ms: int) -> None:
        """Replace the rolling window with a single member carrying ``value``.

        The individual request timestamps are not known, so the whole window
        total is attributed to now. A zero total is still written so the
        entry reads back as present.
        """
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.zadd(key, {f"{now_ms}:{value}": now_ms})
            pipe.pexpire(key, _FIVE_HOUR_MS)
            await pipe.execute()

    async def delete_matching(self, pattern: str) -> int:
        deleted = 0
        batch: list[str] = []
        batch_size = self._settings.scan_batch_size
        try:
            async for key in self._redis.scan_iter(match=pattern, count=batch_size):
                batch.append(key)
                if len(batch) >= batch_size:
                    deleted += await self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._redis.delete(*batch)
        except RedisError as e:
            if deleted:
                raise PartialRebuildError(
                    f"Cache deletion interrupted after {deleted} keys: {e}",
                    deleted=deleted,
                ) from e
            raise TransientIOError(f"Cache deletion failed: {e}") from e
        return deleted

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("cost_cache_closed")
