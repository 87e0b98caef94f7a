# app/services/redis_client.py
import inspect
import json
from collections.abc import Awaitable, Callable

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError, WatchError

from app.config import Settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_CONNECTIONS = 20
MAX_WATCH_RETRIES = 10

JsonMutator = Callable[[dict | None], dict | None | Awaitable[dict | None]]


class RedisUnavailableError(ConnectionError):
    """Raised when a Redis command cannot be completed."""

    def __init__(self, operation: str, key: str | None = None):
        super().__init__(f"Redis {operation} failed" + (f" for {key}" if key else ""))
        self.operation = operation
        self.key = key


class FastRedisClient:
    """Pooled Redis client for the email job store (Upstash over TLS)."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            redis_url = self._build_upstash_redis_url()

            logger.info("Attempting Redis connection", url_preview=redis_url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=MAX_CONNECTIONS,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                ssl_check_hostname=True,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Fast Redis client initialized successfully", max_connections=MAX_CONNECTIONS)

        except Exception as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    def _build_upstash_redis_url(self) -> str:
        """Build the native-protocol URL: rediss://default:<token>@<host>:6379"""
        host = self.settings.redis_host()
        if not host:
            raise ValueError("UPSTASH_REDIS_REST_URL is not configured")

        redis_url = f"rediss://default:{self.settings.UPSTASH_REDIS_REST_TOKEN}@{host}:6379"
        logger.debug("Built Redis URL", host=host, url_length=len(redis_url))
        return redis_url

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Fast Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            try:
                await self.initialize()
            except RuntimeError as e:
                raise RedisUnavailableError("initialize") from e

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    # ------------------------------------------------------------------
    # JSON records
    # ------------------------------------------------------------------

    async def get_json(self, key: str) -> dict | None:
        await self._ensure_initialized()
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.error("Redis GET failed", key=key[:40], error=str(e))
            raise RedisUnavailableError("GET", key) from e
        return json.loads(raw) if raw else None

    async def get_many_json(self, keys: list[str]) -> list[dict | None]:
        if not keys:
            return []
        await self._ensure_initialized()
        try:
            values = await self.client.mget(keys)
        except RedisError as e:
            logger.error("Redis MGET failed", key_count=len(keys), error=str(e))
            raise RedisUnavailableError("MGET") from e
        return [json.loads(raw) if raw else None for raw in values]

    async def set_json(self, key: str, value: dict, ttl_s: int | None = None) -> None:
        await self._ensure_initialized()
        try:
            await self.client.set(key, json.dumps(value), ex=ttl_s)
        except RedisError as e:
            logger.error("Redis SET failed", key=key[:40], error=str(e))
            raise RedisUnavailableError("SET", key) from e

    async def update_json(
        self, key: str, mutate: JsonMutator, ttl_s: int | None = None
    ) -> dict | None:
        """
        Optimistic read-modify-write of a JSON record using WATCH/MULTI.

        `mutate` receives the current value (or None) and returns the new value,
        or None to leave the key untouched. Exceptions raised by `mutate` abort
        the update and propagate. Retries when another writer touched the key.
        """
        await self._ensure_initialized()
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for attempt in range(1, MAX_WATCH_RETRIES + 1):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        current = json.loads(raw) if raw else None

                        updated = mutate(current)
                        if inspect.isawaitable(updated):
                            updated = await updated
                        if updated is None:
                            await pipe.unwatch()
                            return current

                        pipe.multi()
                        pipe.set(key, json.dumps(updated), ex=ttl_s)
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("Redis WATCH conflict, retrying", key=key[:40], attempt=attempt)
                        continue
        except RedisError as e:
            logger.error("Redis transactional update failed", key=key[:40], error=str(e))
            raise RedisUnavailableError("WATCH/MULTI", key) from e

        raise RedisUnavailableError("WATCH/MULTI retries exhausted", key)

    # ------------------------------------------------------------------
    # Lists and sets
    # ------------------------------------------------------------------

    async def push_to_list(self, key: str, *values: str, ttl_s: int | None = None) -> int:
        """Append values to a list and refresh its TTL atomically."""
        await self._ensure_initialized()
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.rpush(key, *values)
                if ttl_s:
                    pipe.expire(key, ttl_s)
                results = await pipe.execute()
        except RedisError as e:
            logger.error("Redis RPUSH failed", key=key[:40], error=str(e))
            raise RedisUnavailableError("RPUSH", key) from e
        return int(results[0])

    async def prepend_to_list(self, key: str, value: str, ttl_s: int | None = None) -> int:
        """Insert at the head so LRANGE 0..n returns the newest entries first."""
        await self._ensure_initialized()
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lpush(key, value)
                if ttl_s:
                    pipe.expire(key, ttl_s)
                results = await pipe.execute()
        except RedisError as e:
            logger.error("Redis LPUSH failed", key=key[:40], error=str(e))
            raise RedisUnavailableError("LPUSH", key) from e
        return int(results[0])

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        await self._ensure_initialized()
        try:
            return list(await self.client.lrange(key, start, end))
        except RedisError as e:
            logger.error("Redis LRANGE failed", key=key[:40], error=str(e))
            raise RedisUnavailableError("LRANGE", key) from e

    async def remove_from_list(self, key: str, value: str) -> int:
        await self._ensure_initialized()
        try:
            return int(await self.client.lrem(key, 0, value))
        except RedisError as e:
            logger.error("Redis LREM failed", key=key[:40], error=str(e))
            raise RedisUnavailableError("LREM", key) from e

    async def add_to_set(self, key: str, member: str, ttl_s: int | None = None) -> None:
        await self._ensure_initialized()
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.sadd(key, member)
                if ttl_s:
                    pipe.expire(key, ttl_s)
                await pipe.execute()
        except RedisError as e:
            logger.error("Redis SADD failed", key=key[:40], error=str(e))
            raise RedisUnavailableError("SADD", key) from e

    async def remove_from_set(self, key: str, member: str) -> None:
        await self._ensure_initialized()
        try:
            await self.client.srem(key, member)
        except RedisError as e:
            logger.error("Redis SREM failed", key=key[:40], error=str(e))
            raise RedisUnavailableError("SREM", key) from e

    async def set_members(self, key: str) -> set[str]:
        await self._ensure_initialized()
        try:
            return set(await self.client.smembers(key))
        except RedisError as e:
            logger.error("Redis SMEMBERS failed", key=key[:40], error=str(e))
            raise RedisUnavailableError("SMEMBERS", key) from e

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        await self._ensure_initialized()
        try:
            return int(await self.client.delete(*keys))
        except RedisError as e:
            logger.error("Redis DELETE failed", key_count=len(keys), error=str(e))
            raise RedisUnavailableError("DELETE") from e

    async def scan_keys(self, pattern: str) -> list[str]:
        await self._ensure_initialized()
        try:
            return [key async for key in self.client.scan_iter(match=pattern, count=200)]
        except RedisError as e:
            logger.error("Redis SCAN failed", pattern=pattern, error=str(e))
            raise RedisUnavailableError("SCAN") from e
