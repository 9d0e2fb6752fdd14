import pytest

from heartline.infra.pubsub import conversation_channel
from heartline.realtime import janitor


async def _join(events, conn, conversation, send_event):
	await send_event(events, conn, "conversation:join", {"conversation_id": conversation.id})


@pytest.mark.asyncio
async def test_typing_indicator_then_timeout(manager, events, clock, conversation, connect_to, send_event, fake_redis):
	alice, _ = await connect_to(manager, "alice")
	bob, bob_t = await connect_to(manager, "bob")
	await _join(events, alice, conversation, send_event)
	await _join(events, bob, conversation, send_event)

	await send_event(events, alice, "typing:start", {"conversation_id": conversation.id})

	indicator = bob_t.frames("typing:indicator")
	assert indicator[0]["data"] == {"conversation_id": conversation.id, "user_id": "alice", "is_typing": True}
	assert await manager.get_typing_users(conversation.id) == ["alice"]
	assert await fake_redis.get(f"typing:{conversation.id}:alice") == "1"

	clock.advance(5)
	assert await manager.get_typing_users(conversation.id) == []

	removed = await janitor.sweep_once(manager)
	assert removed["typing"] == 1
	assert await manager.get_typing_users(conversation.id) == []


@pytest.mark.asyncio
async def test_typing_stop_clears_entry(manager, events, conversation, connect_to, send_event, fake_redis):
	alice, _ = await connect_to(manager, "alice")
	bob, bob_t = await connect_to(manager, "bob")
	await _join(events, alice, conversation, send_event)
	await _join(events, bob, conversation, send_event)

	await send_event(events, alice, "typing:start", {"conversation_id": conversation.id})
	await send_event(events, alice, "typing:stop", {"conversation_id": conversation.id})

	assert [frame["data"]["is_typing"] for frame in bob_t.frames("typing:indicator")] == [True, False]
	assert await manager.get_typing_users(conversation.id) == []
	assert await fake_redis.get(f"typing:{conversation.id}:alice") is None


@pytest.mark.asyncio
async def test_typing_requires_room_presence(manager, events, conversation, connect_to, send_event):
	alice, alice_t = await connect_to(manager, "alice")

	await send_event(events, alice, "typing:start", {"conversation_id": conversation.id})

	assert alice_t.frames("error")[-1]["data"]["code"] == "not_present"
	assert await manager.get_typing_users(conversation.id) == []


@pytest.mark.asyncio
async def test_leave_clears_typing_and_room(manager, events, conversation, connect_to, send_event):
	alice, _ = await connect_to(manager, "alice")
	await _join(events, alice, conversation, send_event)
	await send_event(events, alice, "typing:start", {"conversation_id": conversation.id})

	await send_event(events, alice, "conversation:leave", {"conversation_id": conversation.id})

	assert await manager.get_typing_users(conversation.id) == []
	assert await manager.get_conversation_participants(conversation.id) == []
	assert conversation.id not in alice.active_conversations
	assert conversation_channel(conversation.id) not in alice.subscriptions
	assert (await manager.stats())["active_rooms"] == 0


@pytest.mark.asyncio
async def test_join_applies_to_every_device(manager, events, bus, conversation, connect_to, send_event):
	phone, _ = await connect_to(manager, "alice", "phone")
	laptop, _ = await connect_to(manager, "alice", "laptop")

	await _join(events, phone, conversation, send_event)

	channel = conversation_channel(conversation.id)
	for conn in (phone, laptop):
		assert conversation.id in conn.active_conversations
		assert channel in conn.subscriptions
	assert bus.subscriber_count(channel) == 2
	assert await manager.get_conversation_participants(conversation.id) == ["alice"]


@pytest.mark.asyncio
async def test_closing_one_device_keeps_room_membership(manager, events, conversation, connect_to, send_event):
	phone, _ = await connect_to(manager, "alice", "phone")
	laptop, _ = await connect_to(manager, "alice", "laptop")
	await _join(events, phone, conversation, send_event)

	await manager.remove_connection(phone.id)
	assert await manager.get_conversation_participants(conversation.id) == ["alice"]

	await manager.remove_connection(laptop.id)
	assert await manager.get_conversation_participants(conversation.id) == []


@pytest.mark.asyncio
async def test_idle_room_is_reaped(manager, events, bus, clock, conversation, connect_to, send_event):
	alice, _ = await connect_to(manager, "alice")
	await _join(events, alice, conversation, send_event)
	channel = conversation_channel(conversation.id)
	assert bus.subscriber_count(channel) == 1

	clock.advance(1799)
	assert await manager.cleanup_inactive_chat_rooms() == 0
	clock.advance(1)
	assert await manager.cleanup_inactive_chat_rooms() == 1

	assert await manager.get_conversation_participants(conversation.id) == []
	assert conversation.id not in alice.active_conversations
	assert channel not in alice.subscriptions
	assert bus.subscriber_count(channel) == 0
	assert (await manager.stats())["active_rooms"] == 0


@pytest.mark.asyncio
async def test_room_activity_postpones_reaping(manager, events, clock, conversation, connect_to, send_event):
	alice, _ = await connect_to(manager, "alice")
	await _join(events, alice, conversation, send_event)

	clock.advance(1000)
	await send_event(events, alice, "message:new", {"conversation_id": conversation.id, "content": "still here"})
	clock.advance(1000)

	assert await manager.cleanup_inactive_chat_rooms() == 0
	assert await manager.get_conversation_participants(conversation.id) == ["alice"]


@pytest.mark.asyncio
async def test_outsider_typing_stop_is_not_broadcast(manager, events, conversation, connect_to, send_event):
	alice, alice_t = await connect_to(manager, "alice")
	await _join(events, alice, conversation, send_event)
	mallory, mallory_t = await connect_to(manager, "mallory")

	await send_event(events, mallory, "typing:stop", {"conversation_id": conversation.id})

	assert alice_t.frames("typing:indicator") == []
	assert mallory_t.frames("error")[-1]["data"]["code"] == "not_present"
	assert await manager.get_typing_users(conversation.id) == []
