import asyncio

import pytest

from heartline.infra.pubsub import InMemoryPubSub
from heartline.realtime.connection import Bridge, ClientConnection
from heartline.realtime.frames import Frame


class SlowTransport:
    def __init__(self) -> None:
        self.closed = False

    async def send_text(self, data: str) -> None:
        await asyncio.sleep(10)

    async def receive_text(self) -> str:
        await asyncio.sleep(10)
        return ""

    async def close(self, code: int = 1000, reason=None) -> None:
        self.closed = True


async def _idle(subscription):
    async for _ in subscription:
        pass


@pytest.mark.asyncio
async def test_send_writes_encoded_frame(transport_factory):
    transport = transport_factory()
    conn = ClientConnection(transport, user_id="u1", session_id="s1")

    assert await conn.send(Frame(type="pong", data={"ok": True}))
    assert transport.sent[0]["data"] == {"ok": True}


@pytest.mark.asyncio
async def test_missed_write_deadline_marks_dead():
    transport = SlowTransport()
    conn = ClientConnection(transport, user_id="u1", session_id="s1", write_deadline=0.01)

    assert await conn.send(Frame(type="pong")) is False
    assert conn.alive is False
    assert await conn.send(Frame(type="pong")) is False


@pytest.mark.asyncio
async def test_conversation_membership(transport_factory):
    conn = ClientConnection(transport_factory(), user_id="u1", session_id="s1")
    assert await conn.add_conversation("c1") is True
    assert await conn.add_conversation("c1") is False
    assert await conn.has_conversation("c1")
    assert await conn.remove_conversation("c1") is True
    assert await conn.remove_conversation("c1") is False


@pytest.mark.asyncio
async def test_close_stops_bridges_and_transport(transport_factory):
    bus = InMemoryPubSub()
    transport = transport_factory()
    conn = ClientConnection(transport, user_id="u1", session_id="s1")
    subscription = await bus.subscribe("notifications:u1")
    task = asyncio.create_task(_idle(subscription))
    bridge = Bridge(channel="notifications:u1", task=task, subscription=subscription)

    assert await conn.attach_bridge(bridge)
    assert not await conn.attach_bridge(bridge)
    assert conn.subscriptions == {"notifications:u1"}

    await conn.close(code=1001)

    assert task.cancelled()
    assert bus.subscriber_count("notifications:u1") == 0
    assert conn.subscriptions == set()
    assert transport.closed
    assert transport.close_code == 1001
    assert not await conn.send(Frame(type="pong"))


@pytest.mark.asyncio
async def test_detach_matches_owning_task(transport_factory):
    bus = InMemoryPubSub()
    conn = ClientConnection(transport_factory(), user_id="u1", session_id="s1")
    subscription = await bus.subscribe("matches:u1")
    task = asyncio.create_task(_idle(subscription))
    other = asyncio.create_task(asyncio.sleep(10))
    await conn.attach_bridge(Bridge(channel="matches:u1", task=task, subscription=subscription))

    assert await conn.detach_bridge("matches:u1", other) is None
    detached = await conn.detach_bridge("matches:u1", task)
    assert detached is not None
    await detached.stop()
    other.cancel()

    assert conn.subscriptions == set()
    assert bus.subscriber_count("matches:u1") == 0


def test_to_dict_lists_sorted_state(transport_factory):
    conn = ClientConnection(transport_factory(), user_id="u1", session_id="s1", client_addr="127.0.0.1")
    conn.active_conversations.update({"c2", "c1"})
    snapshot = conn.to_dict()
    assert snapshot["active_conversations"] == ["c1", "c2"]
    assert snapshot["client_addr"] == "127.0.0.1"
    assert snapshot["id"].startswith("u1:s1:")
