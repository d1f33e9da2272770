import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from tickrelay.errors import NotFoundError, StoreError
from tickrelay.models import (
    SERVER_TIMESTAMP,
    SessionRecord,
    SessionStatus,
    dict_to_record,
    record_to_dict,
)
from tickrelay.services.redis import RedisCrudService
from tickrelay.services.session_store import InMemorySessionStore, RedisSessionStore

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def frozen_clock() -> Callable[[], datetime]:
    return lambda: T0


def new_record(**overrides) -> SessionRecord:
    values = dict(
        organization_id="o1",
        user_id="u1",
        created_at=SERVER_TIMESTAMP,
        updated_at=SERVER_TIMESTAMP,
        latest_fragment_timestamp=SERVER_TIMESTAMP,
    )
    values.update(overrides)
    return SessionRecord(**values)


@pytest.mark.asyncio
async def test_get_missing_returns_none(store: InMemorySessionStore) -> None:
    assert await store.get("nope") is None


@pytest.mark.asyncio
async def test_set_resolves_server_timestamps() -> None:
    """Sentinels become one commit time shared by every timestamp field of the write."""
    store = InMemorySessionStore(clock=frozen_clock())
    await store.set("s1", new_record(shared_context={"a": 1}))
    record = await store.get("s1")
    assert record is not None
    assert record.created_at == record.updated_at == record.latest_fragment_timestamp == T0
    assert record.shared_context == {"a": 1}
    assert record.status is SessionStatus.ACTIVE


@pytest.mark.asyncio
async def test_server_timestamps_strictly_increase_under_frozen_clock() -> None:
    """A clock that does not advance still yields strictly later fragment timestamps."""
    store = InMemorySessionStore(clock=frozen_clock())
    await store.set("s1", new_record())
    seen = []
    for fragment in ("a", "b", "c"):
        updated = await store.update(
            "s1",
            {"latest_fragment": fragment, "latest_fragment_timestamp": SERVER_TIMESTAMP},
        )
        seen.append(updated.latest_fragment_timestamp)
    assert seen == sorted(seen)
    assert len(set(seen)) == 3
    assert seen[0] == T0 + timedelta(microseconds=1)


@pytest.mark.asyncio
async def test_update_is_shallow_and_keeps_other_fields(store: InMemorySessionStore) -> None:
    await store.set("s1", new_record(shared_context={"a": 1}, metadata={"m": True}))
    updated = await store.update("s1", {"status": "error"})
    assert updated.status is SessionStatus.ERROR
    assert updated.shared_context == {"a": 1}
    assert updated.metadata == {"m": True}


@pytest.mark.asyncio
async def test_update_missing_session_raises_not_found(store: InMemorySessionStore) -> None:
    with pytest.raises(NotFoundError):
        await store.update("ghost", {"status": SessionStatus.ERROR})


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields_and_org_change(store: InMemorySessionStore) -> None:
    await store.set("s1", new_record())
    with pytest.raises(ValueError):
        await store.update("s1", {"lastDelta": "x"})
    with pytest.raises(ValueError):
        await store.update("s1", {"organization_id": "o2"})
    record = await store.get("s1")
    assert record is not None and record.organization_id == "o1"


@pytest.mark.asyncio
async def test_get_returns_a_copy(store: InMemorySessionStore) -> None:
    await store.set("s1", new_record(shared_context={"a": 1}))
    record = await store.get("s1")
    record.shared_context["a"] = 99
    again = await store.get("s1")
    assert again.shared_context == {"a": 1}


@pytest.mark.asyncio
async def test_subscription_delivers_snapshot_then_every_version(store: InMemorySessionStore) -> None:
    async with store.subscribe("s1") as subscription:
        await store.set("s1", new_record())
        await store.update("s1", {"latest_fragment": "He"})
        await store.update("s1", {"latest_fragment": "llo"})

        received = []
        iterator = subscription.__aiter__()
        for _ in range(4):
            received.append(await asyncio.wait_for(iterator.__anext__(), timeout=1))

    assert received[0] is None
    assert [r.latest_fragment for r in received[1:]] == ["", "He", "llo"]


@pytest.mark.asyncio
async def test_closed_subscription_stops_and_unregisters(store: InMemorySessionStore) -> None:
    subscription = store.subscribe("s1")
    await subscription.__aenter__()
    assert store.subscriber_count("s1") == 1
    await subscription.close()
    assert store.subscriber_count("s1") == 0
    await store.set("s1", new_record())
    assert [r async for r in subscription] == []


@pytest.mark.asyncio
async def test_subscription_failure_is_raised_to_consumer(store: InMemorySessionStore) -> None:
    async with store.subscribe("s1") as subscription:
        subscription.fail(StoreError("channel lost"))
        received = []
        with pytest.raises(StoreError):
            async for record in subscription:
                received.append(record)
    assert received == [None]
    assert store.subscriber_count("s1") == 0


@pytest.fixture
def redis_crud() -> MagicMock:
    """Mock CRUD service backed by a dict, applying transform mutations for real."""
    values: dict[str, str] = {}
    published: list[tuple[str | None, str]] = []
    crud = MagicMock(spec=RedisCrudService)

    async def get(key: str) -> str | None:
        return values.get(key)

    async def transform(key, mutate, channel=None):
        new_value = mutate(values.get(key))
        values[key] = new_value
        published.append((channel, new_value))
        return new_value

    crud.get = AsyncMock(side_effect=get)
    crud.transform = AsyncMock(side_effect=transform)
    crud.values = values
    crud.published = published
    return crud


@pytest.mark.asyncio
async def test_redis_store_set_and_get_round_trip(redis_crud: MagicMock) -> None:
    store = RedisSessionStore(redis_crud, namespace="sessions", clock=frozen_clock())
    await store.set("s1", new_record(shared_context={"topic": "cats"}))
    assert "sessions:s1" in redis_crud.values
    stored = json.loads(redis_crud.values["sessions:s1"])
    assert stored["organizationId"] == "o1"
    assert stored["sharedContext"] == {"topic": "cats"}
    assert redis_crud.published[0][0] == "sessions:s1:changes"

    record = await store.get("s1")
    assert record is not None
    assert record.created_at == T0


@pytest.mark.asyncio
async def test_redis_store_update_publishes_new_version(redis_crud: MagicMock) -> None:
    store = RedisSessionStore(redis_crud, clock=frozen_clock())
    await store.set("s1", new_record())
    updated = await store.update(
        "s1", {"latest_fragment": "He", "latest_fragment_timestamp": SERVER_TIMESTAMP}
    )
    assert updated.latest_fragment == "He"
    assert updated.latest_fragment_timestamp > T0
    channel, payload = redis_crud.published[-1]
    assert channel == "sessions:s1:changes"
    assert json.loads(payload)["latestFragment"] == "He"


@pytest.mark.asyncio
async def test_redis_store_update_missing_raises_not_found(redis_crud: MagicMock) -> None:
    store = RedisSessionStore(redis_crud)
    with pytest.raises(NotFoundError):
        await store.update("ghost", {"status": SessionStatus.ERROR})
    assert "sessions:ghost" not in redis_crud.values


@pytest.mark.asyncio
async def test_redis_store_invalid_payload_raises_store_error(redis_crud: MagicMock) -> None:
    redis_crud.values["sessions:s1"] = "not json"
    store = RedisSessionStore(redis_crud)
    with pytest.raises(StoreError):
        await store.get("s1")


@pytest.mark.asyncio
async def test_redis_subscription_yields_snapshot_then_channel_versions(redis_crud: MagicMock) -> None:
    first = record_to_dict(dict_to_record({"organizationId": "o1", "latestFragment": "He",
                                           "latestFragmentTimestamp": T0.isoformat()}))
    redis_crud.values["sessions:s1"] = json.dumps(first)
    second = dict(first, latestFragment="llo",
                  latestFragmentTimestamp=(T0 + timedelta(seconds=1)).isoformat())

    async def channel_messages(pubsub):
        yield json.dumps(second)

    pubsub = MagicMock()
    redis_crud.open_channel = AsyncMock(return_value=pubsub)
    store = RedisSessionStore(redis_crud)

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(RedisCrudService, "channel_messages", staticmethod(channel_messages))
        close_channel = AsyncMock()
        mp.setattr(RedisCrudService, "close_channel", staticmethod(close_channel))
        async with store.subscribe("s1") as subscription:
            received = [record async for record in subscription]

    redis_crud.open_channel.assert_awaited_once_with("sessions:s1:changes")
    close_channel.assert_awaited_once_with(pubsub)
    assert [r.latest_fragment for r in received] == ["He", "llo"]
