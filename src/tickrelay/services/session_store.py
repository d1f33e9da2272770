import asyncio
import copy
import json
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Protocol, Set

from ..errors import NotFoundError, StoreError
from ..models import (
    RECORD_FIELDS,
    SERVER_TIMESTAMP,
    TIMESTAMP_FIELDS,
    SessionRecord,
    SessionStatus,
    dict_to_record,
    record_to_dict,
)
from ..settings import Settings
from .redis import RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_MIN_TICK = timedelta(microseconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionSubscription(Protocol):
    """Push stream of every observed version of one session record.

    Yields ``None`` while the record does not exist. Raises StoreError when the
    underlying channel fails; the subscription is finished after that.
    """

    async def __aenter__(self) -> "SessionSubscription": ...

    async def __aexit__(self, *exc_info: Any) -> None: ...

    def __aiter__(self) -> AsyncIterator[SessionRecord | None]: ...

    async def close(self) -> None: ...


class SessionStore(Protocol):
    async def get(self, session_id: str) -> SessionRecord | None: ...

    async def set(self, session_id: str, record: SessionRecord) -> None: ...

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> SessionRecord: ...

    def subscribe(self, session_id: str) -> SessionSubscription: ...


def _commit_time(previous: SessionRecord | None, clock: Clock) -> datetime:
    """Server time for a write, strictly later than every timestamp already on the record."""
    now = clock()
    if previous is None:
        return now
    stamps = [
        getattr(previous, name)
        for name in TIMESTAMP_FIELDS
        if isinstance(getattr(previous, name), datetime)
    ]
    if stamps:
        floor = max(stamps)
        if now <= floor:
            now = floor + _MIN_TICK
    return now


def _resolve_timestamps(values: Dict[str, Any], commit_time: datetime) -> Dict[str, Any]:
    return {
        name: commit_time if value is SERVER_TIMESTAMP else value
        for name, value in values.items()
    }


def commit_set(
    previous: SessionRecord | None, record: SessionRecord, clock: Clock
) -> SessionRecord:
    """Full write: the new record replaces the old one, sentinels become the commit time."""
    commit_time = _commit_time(previous, clock)
    values = _resolve_timestamps(
        {name: getattr(record, name) for name in RECORD_FIELDS}, commit_time
    )
    return copy.deepcopy(SessionRecord(**values))


def commit_update(
    current: SessionRecord, fields: Mapping[str, Any], clock: Clock
) -> SessionRecord:
    """Partial write: named top-level fields are overwritten, everything else is kept.

    ``shared_context`` is replaced wholesale; callers merge it before updating.
    """
    unknown = set(fields) - RECORD_FIELDS
    if unknown:
        raise ValueError(f"Unknown session fields: {sorted(unknown)}")
    if "organization_id" in fields and fields["organization_id"] != current.organization_id:
        raise ValueError("organization_id cannot change after creation")

    values = _resolve_timestamps(dict(fields), _commit_time(current, clock))
    if "status" in values:
        values["status"] = SessionStatus(values["status"])
    return copy.deepcopy(replace(current, **values))


class _QueueSubscription:
    """In-process subscription backed by its own asyncio.Queue."""

    _CLOSED = object()

    def __init__(self, store: "InMemorySessionStore", session_id: str) -> None:
        self._store = store
        self._session_id = session_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._open = False
        self._closed = False

    async def __aenter__(self) -> "_QueueSubscription":
        await self._store._register(self._session_id, self)
        self._open = True
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def deliver(self, record: SessionRecord | None) -> None:
        if not self._closed:
            self._queue.put_nowait(copy.deepcopy(record))

    def fail(self, exc: BaseException) -> None:
        """Terminate the stream with an error raised to the consumer."""
        if not self._closed:
            self._queue.put_nowait(exc)

    def __aiter__(self) -> "_QueueSubscription":
        return self

    async def __anext__(self) -> SessionRecord | None:
        if self._closed:
            raise StopAsyncIteration
        if not self._open:
            raise RuntimeError("Subscription must be entered before iteration")
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._closed = True
            self._store._unregister(self._session_id, self)
            raise item
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._unregister(self._session_id, self)
        self._queue.put_nowait(self._CLOSED)


class InMemorySessionStore:
    """Session store held in process memory, used when no Redis is configured.

    Every committed version is pushed to each open subscription in commit order.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._records: Dict[str, SessionRecord] = {}
        self._subscribers: Dict[str, Set[_QueueSubscription]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or utcnow

    async def get(self, session_id: str) -> SessionRecord | None:
        async with self._lock:
            record = self._records.get(session_id)
            return copy.deepcopy(record)

    async def set(self, session_id: str, record: SessionRecord) -> None:
        async with self._lock:
            committed = commit_set(self._records.get(session_id), record, self._clock)
            self._records[session_id] = committed
            self._publish(session_id, committed)

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> SessionRecord:
        async with self._lock:
            current = self._records.get(session_id)
            if current is None:
                raise NotFoundError(f"Session {session_id} not found", session_id=session_id)
            committed = commit_update(current, fields, self._clock)
            self._records[session_id] = committed
            self._publish(session_id, committed)
            return copy.deepcopy(committed)

    def subscribe(self, session_id: str) -> _QueueSubscription:
        return _QueueSubscription(self, session_id)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    async def _register(self, session_id: str, subscription: _QueueSubscription) -> None:
        async with self._lock:
            self._subscribers.setdefault(session_id, set()).add(subscription)
            subscription.deliver(self._records.get(session_id))

    def _unregister(self, session_id: str, subscription: _QueueSubscription) -> None:
        subscribers = self._subscribers.get(session_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[session_id]

    def _publish(self, session_id: str, record: SessionRecord) -> None:
        for subscription in list(self._subscribers.get(session_id, ())):
            subscription.deliver(record)


class _RedisSubscription:
    """Subscription over the record's Redis change channel.

    The channel is joined before the current value is read, so a write landing
    in between can be observed twice; consumers de-duplicate.
    """

    def __init__(self, store: "RedisSessionStore", session_id: str) -> None:
        self._store = store
        self._session_id = session_id
        self._pubsub = None
        self._initial: SessionRecord | None = None

    async def __aenter__(self) -> "_RedisSubscription":
        self._pubsub = await self._store._redis.open_channel(self._store._channel(self._session_id))
        try:
            self._initial = await self._store.get(self._session_id)
        except StoreError:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def __aiter__(self) -> AsyncIterator[SessionRecord | None]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[SessionRecord | None]:
        if self._pubsub is None:
            raise RuntimeError("Subscription must be entered before iteration")
        yield self._initial
        async for payload in RedisCrudService.channel_messages(self._pubsub):
            yield self._store._decode(payload, self._session_id)

    async def close(self) -> None:
        if self._pubsub is not None:
            pubsub, self._pubsub = self._pubsub, None
            await RedisCrudService.close_channel(pubsub)


class RedisSessionStore:
    """Session records as JSON strings under ``<namespace>:<session_id>``.

    Each write runs as a WATCH/MULTI transaction that also publishes the new
    version on ``<namespace>:<session_id>:changes``.
    """

    def __init__(
        self,
        redis_crud: RedisCrudService,
        namespace: str = "sessions",
        clock: Clock | None = None,
    ) -> None:
        self._redis = redis_crud
        self._namespace = namespace
        self._clock = clock or utcnow

    def _key(self, session_id: str) -> str:
        return f"{self._namespace}:{session_id}"

    def _channel(self, session_id: str) -> str:
        return f"{self._namespace}:{session_id}:changes"

    def _decode(self, raw: str | None, session_id: str) -> SessionRecord | None:
        if raw is None:
            return None
        try:
            return dict_to_record(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid session data for %s: %s", session_id, e)
            raise StoreError(f"Invalid session data for {session_id}", session_id=session_id) from e

    @staticmethod
    def _encode(record: SessionRecord) -> str:
        return json.dumps(record_to_dict(record))

    async def get(self, session_id: str) -> SessionRecord | None:
        raw = await self._redis.get(self._key(session_id))
        return self._decode(raw, session_id)

    async def set(self, session_id: str, record: SessionRecord) -> None:
        def mutate(current: str | None) -> str:
            previous = self._decode(current, session_id)
            return self._encode(commit_set(previous, record, self._clock))

        await self._redis.transform(self._key(session_id), mutate, channel=self._channel(session_id))

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> SessionRecord:
        def mutate(current: str | None) -> str:
            record = self._decode(current, session_id)
            if record is None:
                raise NotFoundError(f"Session {session_id} not found", session_id=session_id)
            return self._encode(commit_update(record, fields, self._clock))

        raw = await self._redis.transform(
            self._key(session_id), mutate, channel=self._channel(session_id)
        )
        return self._decode(raw, session_id)

    def subscribe(self, session_id: str) -> _RedisSubscription:
        return _RedisSubscription(self, session_id)


async def create_session_store(settings: Settings) -> SessionStore:
    """Build the store for this process: Redis when redis_url is set, else in-memory.

    A configured but unreachable Redis fails startup rather than silently
    splitting writers and viewers across process-local stores.
    """
    redis_crud = get_redis_crud_service(settings)
    if redis_crud is None:
        logger.info("REDIS_URL not set; using in-memory session store")
        return InMemorySessionStore()
    await redis_crud.connect()
    return RedisSessionStore(redis_crud, namespace=settings.sessions_namespace)


async def close_session_store(store: SessionStore) -> None:
    """Release the store's connection, if it holds one. Idempotent."""
    if isinstance(store, RedisSessionStore):
        await store._redis.close()
        logger.debug("Session store (Redis) closed")
