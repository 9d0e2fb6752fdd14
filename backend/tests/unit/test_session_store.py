import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from heartline.domain.sessions.models import DeviceInfo
from heartline.domain.sessions.store import (
    INSTANCES_KEY,
    ONLINE_USERS_KEY,
    SessionStore,
    instance_key,
    presence_key,
    session_key,
    user_sessions_key,
)


@pytest.mark.asyncio
async def test_create_and_fetch_session(sessions, fake_redis):
    created = await sessions.create_session(
        "u1",
        "token-1",
        "refresh-1",
        ip_address="10.0.0.1",
        user_agent="tests",
        device=DeviceInfo(device_type="phone", os="ios"),
    )

    fetched = await sessions.get_session(created.id)
    assert fetched is not None
    assert fetched.user_id == "u1"
    assert fetched.device.os == "ios"
    assert "token" not in fetched.to_public_dict()
    assert await fake_redis.ttl(session_key(created.id)) > 0
    assert [s.id for s in await sessions.get_user_sessions("u1")] == [created.id]


@pytest.mark.asyncio
async def test_update_activity_extends_expiry(sessions):
    created = await sessions.create_session("u1", "t", "r")
    touched = await sessions.update_activity(created.id)
    assert touched.expires_at >= created.expires_at
    assert touched.last_activity >= created.last_activity
    assert await sessions.update_activity("missing") is None


@pytest.mark.asyncio
async def test_expired_session_is_dropped_on_read(sessions):
    created = await sessions.create_session("u1", "t", "r")
    created.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    await sessions._save(created)

    assert await sessions.get_session(created.id) is None
    assert await sessions.get_user_sessions("u1") == []


@pytest.mark.asyncio
async def test_delete_sessions(sessions, fake_redis):
    first = await sessions.create_session("u1", "t", "r")
    await sessions.create_session("u1", "t2", "r2")

    await sessions.delete_session(first.id)
    assert await sessions.get_session(first.id) is None
    assert len(await sessions.get_user_sessions("u1")) == 1

    assert await sessions.delete_all_user_sessions("u1") == 1
    assert not await fake_redis.exists(user_sessions_key("u1"))


@pytest.mark.asyncio
async def test_presence_counts_connections_per_instance(sessions, fake_redis):
    assert await sessions.acquire_presence("u1", "node-a") is True
    assert await sessions.acquire_presence("u1", "node-b") is False
    assert await sessions.get_online_users() == ["u1"]
    assert await fake_redis.hgetall(presence_key("u1")) == {"node-a": "1", "node-b": "1"}
    assert await sessions.connection_count("u1") == 2

    assert await sessions.release_presence("u1", "node-a") is False
    assert await sessions.is_user_online("u1")
    assert await sessions.release_presence("u1", "node-b") is True
    assert not await sessions.is_user_online("u1")
    assert not await fake_redis.exists(presence_key("u1"))


@pytest.mark.asyncio
async def test_release_without_acquire_changes_nothing(sessions):
    assert await sessions.release_presence("u1", "node-a") is False
    assert await sessions.get_online_users() == []
    assert await sessions.connection_count("u1") == 0


@pytest.mark.asyncio
async def test_cleanup_expired_removes_dangling_entries(sessions, fake_redis):
    kept = await sessions.create_session("u1", "t", "r")
    await fake_redis.sadd(user_sessions_key("u1"), "ghost")
    await fake_redis.sadd(ONLINE_USERS_KEY, "u2")
    await sessions.acquire_presence("u3", "node-a")

    assert await sessions.cleanup_expired() == 2

    assert await fake_redis.smembers(user_sessions_key("u1")) == {kept.id}
    assert await sessions.get_online_users() == ["u3"]


class _YieldingPipeline:
    """Hands control back to the event loop before every round trip."""

    def __init__(self, pipe):
        self._pipe = pipe

    async def __aenter__(self):
        await self._pipe.__aenter__()
        return self

    async def __aexit__(self, *exc_info):
        return await self._pipe.__aexit__(*exc_info)

    async def watch(self, *names):
        await asyncio.sleep(0)
        return await self._pipe.watch(*names)

    async def hgetall(self, name):
        await asyncio.sleep(0)
        return await self._pipe.hgetall(name)

    async def execute(self):
        await asyncio.sleep(0)
        return await self._pipe.execute()

    def __getattr__(self, item):
        return getattr(self._pipe, item)


class _YieldingClient:
    def __init__(self, client):
        self._client = client

    def pipeline(self, *args, **kwargs):
        return _YieldingPipeline(self._client.pipeline(*args, **kwargs))

    def __getattr__(self, item):
        return getattr(self._client, item)


async def _after_ticks(ticks, operation):
    for _ in range(ticks):
        await asyncio.sleep(0)
    return await operation


@pytest.mark.asyncio
@pytest.mark.parametrize("ticks", range(8))
async def test_overlapping_disconnect_and_connect_keep_user_online(fake_redis, ticks):
    store = SessionStore(_YieldingClient(fake_redis))
    await store.acquire_presence("alice", "node-a")

    went_offline, went_online = await asyncio.gather(
        store.release_presence("alice", "node-a"),
        _after_ticks(ticks, store.acquire_presence("alice", "node-b")),
    )

    assert await store.connection_count("alice") == 1
    assert await store.is_user_online("alice")
    assert went_offline == went_online


@pytest.mark.asyncio
async def test_reap_dead_instances_releases_only_their_users(sessions, fake_redis):
    await sessions.acquire_presence("alice", "node-a")
    await sessions.acquire_presence("bob", "node-b")
    await sessions.acquire_presence("carol", "node-a")
    await sessions.acquire_presence("carol", "node-b")
    await fake_redis.delete(instance_key("node-b"))

    assert await sessions.dead_instances() == {"node-b"}
    assert await sessions.reap_dead_instances() == ["bob"]

    assert await sessions.get_online_users() == ["alice", "carol"]
    assert await fake_redis.hgetall(presence_key("carol")) == {"node-a": "1"}
    assert await fake_redis.smembers(INSTANCES_KEY) == {"node-a"}
    assert await sessions.reap_dead_instances() == []


@pytest.mark.asyncio
async def test_refresh_instance_reports_lapsed_heartbeat(sessions, fake_redis):
    assert await sessions.refresh_instance("node-a") is False
    assert await sessions.refresh_instance("node-a") is True
    assert 0 < await fake_redis.ttl(instance_key("node-a")) <= sessions._instance_ttl

    await sessions.retire_instance("node-a")
    assert not await fake_redis.exists(instance_key("node-a"))
    assert await fake_redis.smembers(INSTANCES_KEY) == set()


@pytest.mark.asyncio
async def test_restore_presence_sets_instance_count(sessions):
    assert await sessions.restore_presence("alice", "node-a", 2) is True
    assert await sessions.restore_presence("alice", "node-a", 3) is False
    assert await sessions.connection_count("alice") == 3
