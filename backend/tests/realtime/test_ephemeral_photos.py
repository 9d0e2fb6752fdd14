from datetime import datetime, timedelta, timezone

import pytest


def _photo_payload(conversation_id, photo_id="photo-1"):
	return {
		"conversation_id": conversation_id,
		"photo_id": photo_id,
		"access_key": "k-123",
		"thumbnail_url": "https://cdn.example.com/thumb.jpg",
		"expires_at": (datetime.now(timezone.utc) + timedelta(seconds=30)).isoformat(),
		"message": "just for you",
	}


async def _pair(manager, events, conversation, connect_to, send_event):
	alice, alice_t = await connect_to(manager, "alice")
	bob, bob_t = await connect_to(manager, "bob")
	for conn in (alice, bob):
		await send_event(events, conn, "conversation:join", {"conversation_id": conversation.id})
	return alice, alice_t, bob, bob_t


@pytest.mark.asyncio
async def test_photo_viewed_is_delivered_once(manager, events, store, conversation, connect_to, send_event):
	alice, alice_t, bob, bob_t = await _pair(manager, events, conversation, connect_to, send_event)

	await send_event(events, alice, "ephemeral_photo:new", _photo_payload(conversation.id))

	announced = bob_t.frames("ephemeral_photo:new")
	assert len(announced) == 1
	assert announced[0]["data"]["photo_id"] == "photo-1"
	assert announced[0]["data"]["sender_id"] == "alice"
	stored = await store.get_message("photo-1")
	assert stored.message_type == "photo_ephemeral"
	assert stored.content == "just for you"

	await send_event(events, bob, "ephemeral_photo:viewed", {"photo_id": "photo-1"})
	await send_event(events, bob, "ephemeral_photo:viewed", {"photo_id": "photo-1"})

	for transport in (alice_t, bob_t):
		viewed = transport.frames("ephemeral_photo:viewed")
		assert len(viewed) == 1
		assert viewed[0]["data"]["photo_id"] == "photo-1"
		assert viewed[0]["data"]["viewer_id"] == "bob"
	assert bob_t.frames("error") == []


@pytest.mark.asyncio
async def test_owner_view_is_ignored(manager, events, conversation, connect_to, send_event):
	alice, alice_t, bob, bob_t = await _pair(manager, events, conversation, connect_to, send_event)
	await send_event(events, alice, "ephemeral_photo:new", _photo_payload(conversation.id))

	await send_event(events, alice, "ephemeral_photo:viewed", {"photo_id": "photo-1"})
	await send_event(events, bob, "ephemeral_photo:viewed", {"photo_id": "photo-1"})

	viewed = bob_t.frames("ephemeral_photo:viewed")
	assert [frame["data"]["viewer_id"] for frame in viewed] == ["bob"]


@pytest.mark.asyncio
async def test_unknown_photo_view_is_not_found(manager, events, connect_to, send_event):
	bob, bob_t = await connect_to(manager, "bob")

	await send_event(events, bob, "ephemeral_photo:viewed", {"photo_id": "missing"})

	assert bob_t.frames("error")[-1]["data"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_outsider_cannot_announce_photo(manager, events, conversation, connect_to, send_event):
	mallory, mallory_t = await connect_to(manager, "mallory")

	await send_event(events, mallory, "ephemeral_photo:new", _photo_payload(conversation.id))

	assert mallory_t.frames("error")[-1]["data"]["code"] == "forbidden"


@pytest.mark.asyncio
async def test_photo_expiry_reaches_owner_once(manager, events, conversation, connect_to, send_event):
	alice, alice_t, bob, bob_t = await _pair(manager, events, conversation, connect_to, send_event)
	await send_event(events, alice, "ephemeral_photo:new", _photo_payload(conversation.id))

	await send_event(events, bob, "ephemeral_photo:expired", {"photo_id": "photo-1", "owner_id": "bob"})
	await send_event(events, alice, "ephemeral_photo:expired", {"photo_id": "photo-1"})

	expired = alice_t.frames("ephemeral_photo:expired")
	assert len(expired) == 1
	assert expired[0]["data"]["owner_id"] == "alice"
	assert bob_t.frames("ephemeral_photo:expired") == []


@pytest.mark.asyncio
async def test_photo_expiry_without_record_uses_payload_owner(manager, events, connect_to, send_event):
	alice, alice_t = await connect_to(manager, "alice")
	bob, _ = await connect_to(manager, "bob")

	await send_event(events, bob, "ephemeral_photo:expired", {"photo_id": "gone", "owner_id": "alice"})
	await send_event(events, bob, "ephemeral_photo:expired", {"photo_id": "nobody"})

	assert alice_t.frames("ephemeral_photo:expired")[0]["data"]["photo_id"] == "gone"
