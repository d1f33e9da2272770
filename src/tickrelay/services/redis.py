import logging
from typing import AsyncIterator, Callable

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from ..errors import StoreError
from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_TRANSACTION_ATTEMPTS = 16


class RedisCrudService:
    """Async CRUD, transaction and pub/sub operations against a Redis instance.

    Connection and timeout failures are logged and re-raised as StoreError so
    the write path can fail the tick and the read path can end its subscription.
    """

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    def _require_client(self) -> Redis:
        if self._client is None:
            raise StoreError("Redis is not connected")
        return self._client

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing."""
        client = self._require_client()
        try:
            value = await client.get(key)
            return value if value is None else str(value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            raise StoreError(f"Redis get {key} failed: {e}") from e

    async def transform(
        self,
        key: str,
        mutate: Callable[[str | None], str],
        channel: str | None = None,
    ) -> str:
        """Atomically replace key with ``mutate(current)`` using WATCH/MULTI.

        Retries when another client modifies the key between the read and the
        write. Exceptions raised by ``mutate`` abort the transaction and propagate.
        """
        client = self._require_client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
                    try:
                        await pipe.watch(key)
                        current = await pipe.get(key)
                        new_value = mutate(current)
                        pipe.multi()
                        pipe.set(key, new_value)
                        if channel is not None:
                            pipe.publish(channel, new_value)
                        await pipe.execute()
                        return new_value
                    except WatchError:
                        logger.debug("Redis transaction on %s conflicted (attempt %d)", key, attempt)
                        continue
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis transaction on %s failed: %s", key, e)
            raise StoreError(f"Redis update {key} failed: {e}") from e
        raise StoreError(f"Redis update {key} kept conflicting")

    async def open_channel(self, channel: str) -> PubSub:
        """Subscribe to channel and return the PubSub handle. Caller closes it with close_channel."""
        client = self._require_client()
        pubsub = client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(channel)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis subscribe %s failed: %s", channel, e)
            await pubsub.aclose()
            raise StoreError(f"Redis subscribe {channel} failed: {e}") from e
        return pubsub

    @staticmethod
    async def channel_messages(pubsub: PubSub) -> AsyncIterator[str]:
        """Yield message payloads from an open PubSub handle in delivery order."""
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield str(message["data"])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis channel listen failed: %s", e)
            raise StoreError(f"Redis subscription failed: {e}") from e

    @staticmethod
    async def close_channel(pubsub: PubSub) -> None:
        try:
            await pubsub.unsubscribe()
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.debug("Redis unsubscribe failed: %s", e)
        await pubsub.aclose()


def get_redis_crud_service(settings: Settings | None = None) -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = settings or get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())

