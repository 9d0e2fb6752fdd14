"""Redis-backed cache used by the realtime fabric for hints and counters."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from heartline.infra.redis import redis_client
from heartline.realtime.frames import json_default

logger = logging.getLogger(__name__)

UNREAD_TTL_SECONDS = 24 * 3600
USER_STATUS_TTL_SECONDS = 5 * 60
MESSAGE_TTL_SECONDS = 3600
RECENT_MESSAGES_CAP = 100
EPHEMERAL_CLAIM_TTL_SECONDS = 30 * 24 * 3600


def unread_key(user_id: str, conversation_id: str) -> str:
	return f"unread:{user_id}:{conversation_id}"


def user_status_key(user_id: str) -> str:
	return f"user_status:{user_id}"


def typing_key(conversation_id: str, user_id: str) -> str:
	return f"typing:{conversation_id}:{user_id}"


def message_key(message_id: str) -> str:
	return f"message:{message_id}"


def conversation_messages_key(conversation_id: str) -> str:
	return f"conversation_messages:{conversation_id}"


def spam_score_key(user_id: str) -> str:
	return f"spam_score:{user_id}"


def ephemeral_viewed_key(photo_id: str) -> str:
	return f"ephemeral_photo:viewed:{photo_id}"


def ephemeral_expired_key(photo_id: str) -> str:
	return f"ephemeral_photo:expired:{photo_id}"


class CacheStore:
	"""Thin key/value facade over redis.

	Values are opaque strings; numeric readers fall back to a default when the
	stored value does not parse, so a corrupted hint never breaks a handler.
	"""

	def __init__(self, client: Any = None) -> None:
		self._client = client if client is not None else redis_client

	async def get(self, key: str) -> Optional[str]:
		return await self._client.get(key)

	async def get_int(self, key: str, default: int = 0) -> int:
		raw = await self._client.get(key)
		if raw is None:
			return default
		try:
			return int(raw)
		except (TypeError, ValueError):
			logger.warning("Cache key %s holds a non-integer value", key)
			return default

	async def get_float(self, key: str, default: float = 0.0) -> float:
		raw = await self._client.get(key)
		if raw is None:
			return default
		try:
			return float(raw)
		except (TypeError, ValueError):
			logger.warning("Cache key %s holds a non-numeric value", key)
			return default

	async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
		if ttl_seconds:
			await self._client.set(key, value, px=int(ttl_seconds * 1000))
		else:
			await self._client.set(key, value)

	async def set_if_absent(self, key: str, value: Any, ttl_seconds: float) -> bool:
		created = await self._client.set(key, value, px=int(ttl_seconds * 1000), nx=True)
		return bool(created)

	async def incr(self, key: str, ttl_seconds: float) -> int:
		async with self._client.pipeline(transaction=True) as pipe:
			pipe.incr(key)
			pipe.expire(key, int(ttl_seconds))
			count, _ = await pipe.execute()
		return int(count)

	async def delete(self, key: str) -> None:
		await self._client.delete(key)

	async def set_json(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
		await self.set(key, json.dumps(value, separators=(",", ":"), default=json_default), ttl_seconds)

	async def get_json(self, key: str) -> Any:
		raw = await self._client.get(key)
		if raw is None:
			return None
		try:
			return json.loads(raw)
		except ValueError:
			logger.warning("Cache key %s holds invalid JSON", key)
			return None

	async def push_capped(self, key: str, value: Any, *, cap: int, ttl_seconds: float) -> None:
		async with self._client.pipeline(transaction=True) as pipe:
			pipe.lpush(key, value)
			pipe.ltrim(key, 0, cap - 1)
			pipe.expire(key, int(ttl_seconds))
			await pipe.execute()

	async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
		return list(await self._client.lrange(key, start, end))
