"""Redis-backed session store and cluster-wide online set.

Layout:
- ``session:{id}``          hash with a JSON ``data`` field, expires with the session
- ``session:user:{user}``   set of the user's session ids
- ``session:online_users``  set of user ids with at least one live connection
- ``session:presence:{user}`` hash of instance id -> live connection count on that instance
- ``session:instance:{id}``  heartbeat of a running instance, expires unless refreshed
- ``session:instances``      set of instance ids that have held presence

Every change to a user's presence hash and the online set runs as one WATCH/MULTI
transaction, so concurrent connects and disconnects agree on the 0->1 and 1->0
transitions.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import ulid
from redis.exceptions import WatchError

from heartline.domain.sessions.models import DeviceInfo, Session
from heartline.infra.redis import redis_client
from heartline.settings import settings

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session:"
ONLINE_USERS_KEY = "session:online_users"
INSTANCES_KEY = "session:instances"


def session_key(session_id: str) -> str:
	return f"{SESSION_PREFIX}{session_id}"


def user_sessions_key(user_id: str) -> str:
	return f"{SESSION_PREFIX}user:{user_id}"


def presence_key(user_id: str) -> str:
	return f"{SESSION_PREFIX}presence:{user_id}"


def instance_key(instance_id: str) -> str:
	return f"{SESSION_PREFIX}instance:{instance_id}"


class SessionStore:
	def __init__(
		self,
		client: Any = None,
		*,
		ttl_seconds: Optional[int] = None,
		instance_ttl_seconds: Optional[int] = None,
	) -> None:
		self._client = client if client is not None else redis_client
		self._ttl = int(ttl_seconds or settings.session_ttl_seconds)
		self._instance_ttl = max(1, int(instance_ttl_seconds or settings.realtime_instance_ttl_seconds))

	@property
	def ttl_seconds(self) -> int:
		return self._ttl

	async def _save(self, session: Session) -> None:
		key = session_key(session.id)
		async with self._client.pipeline(transaction=True) as pipe:
			pipe.hset(key, "data", json.dumps(session.to_dict(), separators=(",", ":")))
			pipe.expire(key, self._ttl)
			pipe.sadd(user_sessions_key(session.user_id), session.id)
			pipe.expire(user_sessions_key(session.user_id), self._ttl)
			await pipe.execute()

	async def create_session(
		self,
		user_id: str,
		token: str,
		refresh_token: str,
		ip_address: Optional[str] = None,
		user_agent: Optional[str] = None,
		device: Optional[DeviceInfo] = None,
	) -> Session:
		now = datetime.now(timezone.utc)
		session = Session(
			id=str(ulid.new()),
			user_id=str(user_id),
			token=token,
			refresh_token=refresh_token,
			created_at=now,
			last_activity=now,
			expires_at=now + timedelta(seconds=self._ttl),
			ip_address=ip_address,
			user_agent=user_agent,
			device=device or DeviceInfo(),
		)
		await self._save(session)
		logger.info("Session created", extra={"session_id": session.id, "user_id": session.user_id})
		return session

	async def get_session(self, session_id: str) -> Optional[Session]:
		raw = await self._client.hget(session_key(session_id), "data")
		if not raw:
			return None
		session = Session.from_dict(json.loads(raw))
		if session.is_expired():
			await self.delete_session(session_id)
			return None
		return session

	async def update_activity(self, session_id: str) -> Optional[Session]:
		"""Touch the session and push its expiry out by a full TTL."""
		session = await self.get_session(session_id)
		if session is None:
			return None
		now = datetime.now(timezone.utc)
		session.last_activity = now
		session.expires_at = now + timedelta(seconds=self._ttl)
		await self._save(session)
		return session

	async def delete_session(self, session_id: str) -> None:
		raw = await self._client.hget(session_key(session_id), "data")
		await self._client.delete(session_key(session_id))
		if raw:
			user_id = json.loads(raw).get("user_id")
			if user_id:
				await self._client.srem(user_sessions_key(str(user_id)), session_id)

	async def get_user_sessions(self, user_id: str) -> list[Session]:
		sessions: list[Session] = []
		for session_id in sorted(await self._client.smembers(user_sessions_key(user_id))):
			session = await self.get_session(session_id)
			if session is None:
				await self._client.srem(user_sessions_key(user_id), session_id)
				continue
			sessions.append(session)
		return sessions

	async def delete_all_user_sessions(self, user_id: str) -> int:
		session_ids = await self._client.smembers(user_sessions_key(user_id))
		if session_ids:
			await self._client.delete(*(session_key(sid) for sid in session_ids))
		await self._client.delete(user_sessions_key(user_id))
		return len(session_ids)

	async def is_user_online(self, user_id: str) -> bool:
		return bool(await self._client.sismember(ONLINE_USERS_KEY, user_id))

	async def get_online_users(self) -> list[str]:
		return sorted(await self._client.smembers(ONLINE_USERS_KEY))

	async def set_user_online(self, user_id: str) -> bool:
		return bool(await self._client.sadd(ONLINE_USERS_KEY, user_id))

	async def set_user_offline(self, user_id: str) -> bool:
		return bool(await self._client.srem(ONLINE_USERS_KEY, user_id))

	# ------------------------------------------------------------------
	# presence

	async def connection_count(self, user_id: str) -> int:
		counts = await self._client.hgetall(presence_key(user_id))
		return sum(max(0, int(value)) for value in counts.values())

	async def _update_presence(
		self,
		user_id: str,
		mutate: Callable[[dict[str, int]], dict[str, int]],
		*,
		instance_id: Optional[str] = None,
	) -> tuple[bool, bool]:
		"""Rewrite one user's per-instance counts and the online set in a single transaction.

		Returns ``(was_online, is_online)`` as seen by the committed transaction.
		"""
		key = presence_key(user_id)
		async with self._client.pipeline(transaction=True) as pipe:
			while True:
				try:
					await pipe.watch(key)
					current = {field: int(value) for field, value in (await pipe.hgetall(key)).items()}
					updated = {field: count for field, count in mutate(dict(current)).items() if count > 0}
					was_online = sum(current.values()) > 0
					is_online = bool(updated)
					pipe.multi()
					pipe.delete(key)
					if is_online:
						pipe.hset(key, mapping=updated)
						pipe.sadd(ONLINE_USERS_KEY, user_id)
					else:
						pipe.srem(ONLINE_USERS_KEY, user_id)
					if instance_id is not None:
						pipe.set(instance_key(instance_id), "1", ex=self._instance_ttl)
						pipe.sadd(INSTANCES_KEY, instance_id)
					await pipe.execute()
					return was_online, is_online
				except WatchError:
					logger.debug("Presence of %s changed concurrently; retrying", user_id)
					continue

	async def acquire_presence(self, user_id: str, instance_id: str) -> bool:
		"""Count a new live connection on ``instance_id``; True when the user just came online."""

		def _add(counts: dict[str, int]) -> dict[str, int]:
			counts[instance_id] = counts.get(instance_id, 0) + 1
			return counts

		was_online, is_online = await self._update_presence(user_id, _add, instance_id=instance_id)
		return is_online and not was_online

	async def release_presence(self, user_id: str, instance_id: str) -> bool:
		"""Drop a live connection; True when it was the user's last one cluster-wide."""

		def _remove(counts: dict[str, int]) -> dict[str, int]:
			counts[instance_id] = counts.get(instance_id, 0) - 1
			return counts

		was_online, is_online = await self._update_presence(user_id, _remove)
		return was_online and not is_online

	async def restore_presence(self, user_id: str, instance_id: str, count: int) -> bool:
		"""Overwrite this instance's count for a user; True when the user came back online."""

		def _set(counts: dict[str, int]) -> dict[str, int]:
			counts[instance_id] = count
			return counts

		was_online, is_online = await self._update_presence(user_id, _set, instance_id=instance_id)
		return is_online and not was_online

	async def refresh_instance(self, instance_id: str) -> bool:
		"""Extend the instance heartbeat; False when it had already lapsed."""
		async with self._client.pipeline(transaction=True) as pipe:
			pipe.exists(instance_key(instance_id))
			pipe.set(instance_key(instance_id), "1", ex=self._instance_ttl)
			pipe.sadd(INSTANCES_KEY, instance_id)
			existed, _, _ = await pipe.execute()
		return bool(existed)

	async def retire_instance(self, instance_id: str) -> None:
		await self._client.delete(instance_key(instance_id))
		await self._client.srem(INSTANCES_KEY, instance_id)

	async def dead_instances(self) -> set[str]:
		dead: set[str] = set()
		for instance_id in await self._client.smembers(INSTANCES_KEY):
			if not await self._client.exists(instance_key(instance_id)):
				dead.add(instance_id)
		return dead

	async def reap_dead_instances(self) -> list[str]:
		"""Drop counts held by instances whose heartbeat lapsed; returns users that went offline."""
		dead = await self.dead_instances()
		if not dead:
			return []

		def _prune(counts: dict[str, int]) -> dict[str, int]:
			return {field: count for field, count in counts.items() if field not in dead}

		went_offline: list[str] = []
		for user_id in sorted(await self._client.smembers(ONLINE_USERS_KEY)):
			was_online, is_online = await self._update_presence(user_id, _prune)
			if was_online and not is_online:
				went_offline.append(user_id)
		await self._client.srem(INSTANCES_KEY, *dead)
		logger.warning(
			"Reaped presence of %d dead instances",
			len(dead),
			extra={"instances": sorted(dead), "went_offline": len(went_offline)},
		)
		return went_offline

	async def cleanup_expired(self) -> int:
		"""Drop dangling session ids and online users with no live connections."""
		removed = 0
		async for key in self._client.scan_iter(match=f"{SESSION_PREFIX}user:*"):
			for session_id in await self._client.smembers(key):
				if not await self._client.exists(session_key(session_id)):
					await self._client.srem(key, session_id)
					removed += 1
		for user_id in await self._client.smembers(ONLINE_USERS_KEY):
			_, is_online = await self._update_presence(user_id, lambda counts: counts)
			if not is_online:
				removed += 1
		if removed:
			logger.info("Session cleanup removed %d stale entries", removed)
		return removed
