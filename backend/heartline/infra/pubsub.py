"""Topic-based broadcast between realtime instances.

Bus payloads are JSON envelopes ``{"origin": <instance id>, "frame": <frame>}``.
External producers may publish a bare frame record; it is delivered with no origin.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol

from heartline.infra.redis import redis_client
from heartline.realtime.frames import Frame, FrameError, json_default

logger = logging.getLogger(__name__)

ONLINE_STATUS_CHANNEL = "online_status"


def notifications_channel(user_id: str) -> str:
	return f"notifications:{user_id}"


def matches_channel(user_id: str) -> str:
	return f"matches:{user_id}"


CONVERSATION_PREFIX = "conversation:"


def conversation_channel(conversation_id: str) -> str:
	return f"{CONVERSATION_PREFIX}{conversation_id}"


def conversation_from_channel(channel: str) -> Optional[str]:
	if channel.startswith(CONVERSATION_PREFIX):
		return channel[len(CONVERSATION_PREFIX):] or None
	return None


@dataclass(slots=True)
class BusMessage:
	channel: str
	frame: Frame
	origin: Optional[str] = None


class Subscription(Protocol):
	channel: str

	def __aiter__(self) -> AsyncIterator[BusMessage]:
		...

	async def close(self) -> None:
		...


class PubSub(Protocol):
	async def publish(self, channel: str, frame: Frame, *, origin: Optional[str] = None) -> int:
		...

	async def subscribe(self, channel: str) -> Subscription:
		...


def encode_envelope(frame: Frame, origin: Optional[str]) -> str:
	return json.dumps({"origin": origin, "frame": frame.to_dict()}, separators=(",", ":"), default=json_default)


def decode_envelope(channel: str, raw: str | bytes) -> BusMessage:
	try:
		payload = json.loads(raw)
	except (TypeError, ValueError) as exc:
		raise FrameError("bus payload is not valid JSON") from exc
	if not isinstance(payload, dict):
		raise FrameError("bus payload must be a JSON object")
	inner = payload.get("frame")
	if isinstance(inner, dict):
		origin = payload.get("origin")
		return BusMessage(channel=channel, frame=Frame.from_dict(inner), origin=str(origin) if origin else None)
	return BusMessage(channel=channel, frame=Frame.from_dict(payload))


class RedisSubscription:
	"""Async iterator over one redis channel; ``close`` releases the subscription."""

	def __init__(self, pubsub: Any, channel: str) -> None:
		self.channel = channel
		self._pubsub = pubsub
		self._closed = False

	async def __aiter__(self) -> AsyncIterator[BusMessage]:
		async for message in self._pubsub.listen():
			if self._closed:
				break
			if message is None or message.get("type") != "message":
				continue
			try:
				yield decode_envelope(self.channel, message["data"])
			except FrameError:
				logger.warning("Dropping undecodable bus payload on %s", self.channel, exc_info=True)

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		try:
			await self._pubsub.unsubscribe(self.channel)
		finally:
			await self._pubsub.aclose()


class RedisPubSub:
	"""Publishes frames on redis channels shared by every instance."""

	def __init__(self, client: Any = None) -> None:
		self._client = client if client is not None else redis_client

	async def publish(self, channel: str, frame: Frame, *, origin: Optional[str] = None) -> int:
		receivers = await self._client.publish(channel, encode_envelope(frame, origin))
		logger.debug("Published %s to %s (subscribers: %s)", frame.type, channel, receivers)
		return int(receivers or 0)

	async def subscribe(self, channel: str) -> RedisSubscription:
		pubsub = self._client.pubsub()
		await pubsub.subscribe(channel)
		return RedisSubscription(pubsub, channel)


class _MemorySubscription:
	def __init__(self, bus: "InMemoryPubSub", channel: str) -> None:
		self.channel = channel
		self._bus = bus
		self._queue: asyncio.Queue[Optional[BusMessage]] = asyncio.Queue()
		self._closed = False

	def deliver(self, message: BusMessage) -> None:
		if not self._closed:
			self._queue.put_nowait(message)

	async def __aiter__(self) -> AsyncIterator[BusMessage]:
		while True:
			message = await self._queue.get()
			if message is None:
				return
			yield message

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self._bus._detach(self)
		self._queue.put_nowait(None)


class InMemoryPubSub:
	"""Process-local bus used for single-instance deployments and tests."""

	def __init__(self) -> None:
		self._subscribers: dict[str, set[_MemorySubscription]] = {}

	async def publish(self, channel: str, frame: Frame, *, origin: Optional[str] = None) -> int:
		# round-trip through the envelope so subscribers never share mutable state
		message = decode_envelope(channel, encode_envelope(frame, origin))
		subscribers = list(self._subscribers.get(channel, ()))
		for subscription in subscribers:
			subscription.deliver(message)
		return len(subscribers)

	async def subscribe(self, channel: str) -> _MemorySubscription:
		subscription = _MemorySubscription(self, channel)
		self._subscribers.setdefault(channel, set()).add(subscription)
		return subscription

	def subscriber_count(self, channel: str) -> int:
		return len(self._subscribers.get(channel, ()))

	def _detach(self, subscription: _MemorySubscription) -> None:
		subscribers = self._subscribers.get(subscription.channel)
		if not subscribers:
			return
		subscribers.discard(subscription)
		if not subscribers:
			self._subscribers.pop(subscription.channel, None)


async def publish_notification(bus: PubSub, user_id: str, frame: Frame, *, origin: Optional[str] = None) -> int:
	return await bus.publish(notifications_channel(user_id), frame, origin=origin)


async def publish_match(bus: PubSub, user_id: str, frame: Frame, *, origin: Optional[str] = None) -> int:
	return await bus.publish(matches_channel(user_id), frame, origin=origin)


async def publish_conversation(bus: PubSub, conversation_id: str, frame: Frame, *, origin: Optional[str] = None) -> int:
	return await bus.publish(conversation_channel(conversation_id), frame, origin=origin)


async def publish_online_status(bus: PubSub, frame: Frame, *, origin: Optional[str] = None) -> int:
	return await bus.publish(ONLINE_STATUS_CHANNEL, frame, origin=origin)
