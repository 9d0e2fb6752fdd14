"""Shared Redis client.

Every module imports the same ``redis_client`` proxy; tests swap the client
behind it for fakeredis with ``set_redis_client``. Sessions, presence counters,
the chat cache and the cross-instance bus all go through this one connection pool.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from heartline.settings import settings

logger = logging.getLogger(__name__)


def build_client(url: Optional[str] = None) -> redis.Redis:
	return redis.from_url(
		url or settings.redis_url,
		encoding="utf-8",
		decode_responses=True,
		socket_connect_timeout=settings.redis_connect_timeout_seconds,
		health_check_interval=settings.redis_health_check_interval_seconds,
	)


class RedisProxy:
	"""Forwards attribute access to whichever client is currently installed."""

	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	def __getattr__(self, item):
		return getattr(self._client, item)


redis_client: RedisProxy = RedisProxy(build_client())


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)


async def close_redis() -> None:
	"""Release the pool of the installed client; the proxy keeps pointing at it."""
	try:
		await redis_client.client.aclose()
	except RedisError:
		logger.warning("Redis client did not close cleanly", exc_info=True)
		return
	logger.info("Redis client closed")
