"""Connection table, fan-out and presence for one realtime instance.

Lock order: connection table, chat rooms, typing, then a single connection.
No lock is held across a transport write apart from the per-connection lock
guarding that one frame.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import Counter
from typing import Awaitable, Callable, Iterable, Optional

import ulid
from redis.exceptions import RedisError

from heartline.domain.sessions.store import SessionStore
from heartline.infra.pubsub import (
	ONLINE_STATUS_CHANNEL,
	BusMessage,
	PubSub,
	Subscription,
	conversation_channel,
	conversation_from_channel,
	matches_channel,
	notifications_channel,
)
from heartline.obs import logging as obs_logging
from heartline.obs import metrics as obs_metrics
from heartline.realtime.connection import Bridge, ClientConnection, FrameTransport, make_connection_id
from heartline.realtime.frames import EventType, Frame, utcnow
from heartline.realtime.registry import ChatRoomRegistry, TypingRegistry
from heartline.settings import settings

logger = logging.getLogger(__name__)

FrameCallback = Callable[[ClientConnection, str], Awaitable[None]]


def _or_default(value: Optional[float], default: float) -> float:
	return float(default if value is None else value)


class ConnectionManager:
	"""Owns every live connection on this instance."""

	def __init__(
		self,
		sessions: SessionStore,
		pubsub: Optional[PubSub] = None,
		*,
		instance_id: Optional[str] = None,
		heartbeat_interval: Optional[float] = None,
		heartbeat_timeout: Optional[float] = None,
		stale_after: Optional[float] = None,
		typing_expiry: Optional[float] = None,
		room_idle: Optional[float] = None,
		write_deadline: Optional[float] = None,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.instance_id = instance_id or settings.realtime_instance_id or str(ulid.new())
		self._sessions = sessions
		self._pubsub = pubsub
		self._clock = clock
		self._heartbeat_interval = _or_default(heartbeat_interval, settings.realtime_heartbeat_interval_seconds)
		self._heartbeat_timeout = _or_default(heartbeat_timeout, settings.realtime_heartbeat_timeout_seconds)
		self._stale_after = _or_default(stale_after, settings.realtime_stale_connection_seconds)
		self._write_deadline = _or_default(write_deadline, settings.realtime_write_deadline_seconds)
		self._lock = asyncio.Lock()
		self._connections: dict[str, ClientConnection] = {}
		self.rooms = ChatRoomRegistry(
			idle_seconds=_or_default(room_idle, settings.realtime_room_idle_seconds),
			clock=clock,
		)
		self.typing = TypingRegistry(
			expiry_seconds=_or_default(typing_expiry, settings.realtime_typing_expiry_seconds),
			clock=clock,
		)

	# ------------------------------------------------------------------
	# lifecycle

	async def accept(
		self,
		transport: FrameTransport,
		user_id: str,
		session_id: str,
		*,
		client_addr: Optional[str] = None,
		user_agent: Optional[str] = None,
	) -> str:
		"""Register an upgraded transport, start its bridges and flip presence."""
		conn = ClientConnection(
			transport,
			user_id=user_id,
			session_id=session_id,
			client_addr=client_addr,
			user_agent=user_agent,
			write_deadline=self._write_deadline,
			clock=self._clock,
		)
		async with self._lock:
			while conn.id in self._connections:
				conn.id = make_connection_id(user_id, session_id)
			self._connections[conn.id] = conn
		obs_metrics.socket_connected()
		logger.info(
			"Connection accepted",
			extra={"connection_id": conn.id, "user_id": user_id, "client_addr": client_addr},
		)
		for channel in (notifications_channel(user_id), matches_channel(user_id), ONLINE_STATUS_CHANNEL):
			await self._start_bridge(conn, channel)
		await self._mark_online(user_id)
		return conn.id

	async def serve(self, connection_id: str, on_frame: FrameCallback) -> None:
		"""Run the reader and heartbeat until either ends, then drop the connection."""
		conn = await self.get_connection(connection_id)
		if conn is None:
			return
		tokens = obs_logging.bind_context(user_id=conn.user_id, connection_id=conn.id)
		reader = asyncio.create_task(self._read_loop(conn, on_frame), name=f"ws-reader:{conn.id}")
		heartbeat = asyncio.create_task(self._heartbeat_loop(conn), name=f"ws-heartbeat:{conn.id}")
		conn.bind_workers(reader, heartbeat)
		try:
			await asyncio.wait({reader, heartbeat}, return_when=asyncio.FIRST_COMPLETED)
		finally:
			for task in (reader, heartbeat):
				task.cancel()
			results = await asyncio.gather(reader, heartbeat, return_exceptions=True)
			for result in results:
				if isinstance(result, Exception):
					logger.error("Connection task failed for %s", conn.id, exc_info=result)
			await self.remove_connection(conn.id)
			obs_logging.reset_context(tokens)

	async def _read_loop(self, conn: ClientConnection, on_frame: FrameCallback) -> None:
		while conn.alive:
			try:
				raw = await conn.transport.receive_text()
			except asyncio.CancelledError:
				raise
			except Exception as exc:
				logger.debug("Reader for %s stopped: %s", conn.id, type(exc).__name__)
				return
			await on_frame(conn, raw)

	async def _heartbeat_loop(self, conn: ClientConnection) -> None:
		while True:
			await asyncio.sleep(self._heartbeat_interval)
			if not conn.alive or conn.heartbeat_age() > self._heartbeat_timeout:
				logger.info("Heartbeat expired for %s", conn.id)
				return
			if not await conn.send(Frame.build(EventType.PING, {"timestamp": utcnow()})):
				return

	async def remove_connection(self, connection_id: str, *, code: int = 1000) -> bool:
		"""Unregister and close a connection; a no-op when it is already gone."""
		async with self._lock:
			conn = self._connections.pop(connection_id, None)
			if conn is None:
				return False
			siblings = [other for other in self._connections.values() if other.user_id == conn.user_id]
		await conn.close(code)
		obs_metrics.socket_disconnected()
		for conversation_id in sorted(conn.active_conversations):
			still_held = False
			for other in siblings:
				if await other.has_conversation(conversation_id):
					still_held = True
					break
			if not still_held:
				await self._leave_room(conn.user_id, conversation_id)
		await self._mark_offline(conn.user_id)
		logger.info("Connection removed", extra={"connection_id": conn.id, "user_id": conn.user_id})
		return True

	async def shutdown(self) -> None:
		async with self._lock:
			connection_ids = list(self._connections)
		for connection_id in connection_ids:
			await self.remove_connection(connection_id, code=1001)
		try:
			await self._sessions.retire_instance(self.instance_id)
		except (RedisError, OSError):
			logger.warning("Failed to retire instance %s", self.instance_id, exc_info=True)
		logger.info("Connection manager stopped (%d connections closed)", len(connection_ids))

	# ------------------------------------------------------------------
	# presence

	async def _mark_online(self, user_id: str) -> None:
		try:
			went_online = await self._sessions.acquire_presence(user_id, self.instance_id)
		except (RedisError, OSError):
			logger.warning("Failed to record presence for %s", user_id, exc_info=True)
			return
		if went_online:
			obs_metrics.inc_presence("online")
			await self.fan_out_to_all(self._status_frame(user_id, True))

	async def _mark_offline(self, user_id: str) -> None:
		try:
			went_offline = await self._sessions.release_presence(user_id, self.instance_id)
		except (RedisError, OSError):
			logger.warning("Failed to release presence for %s", user_id, exc_info=True)
			return
		if went_offline:
			obs_metrics.inc_presence("offline")
			await self.fan_out_to_all(self._status_frame(user_id, False))

	async def refresh_presence(self) -> int:
		"""Keep this instance's heartbeat alive and release users held only by dead instances.

		Returns how many users went offline because their instance stopped refreshing.
		"""
		if not await self._sessions.refresh_instance(self.instance_id):
			await self._restore_local_presence()
		went_offline = await self._sessions.reap_dead_instances()
		for user_id in went_offline:
			obs_metrics.inc_presence("offline")
			await self.fan_out_to_all(self._status_frame(user_id, False))
		if went_offline:
			obs_metrics.inc_janitor_removal("presence", len(went_offline))
		return len(went_offline)

	async def _restore_local_presence(self) -> None:
		async with self._lock:
			per_user = Counter(conn.user_id for conn in self._connections.values())
		if per_user:
			logger.warning("Heartbeat of %s lapsed; restoring %d users", self.instance_id, len(per_user))
		for user_id, count in per_user.items():
			if await self._sessions.restore_presence(user_id, self.instance_id, count):
				obs_metrics.inc_presence("online")
				await self.fan_out_to_all(self._status_frame(user_id, True))

	@staticmethod
	def _status_frame(user_id: str, is_online: bool) -> Frame:
		return Frame.build(
			EventType.USER_STATUS,
			{"user_id": user_id, "is_online": is_online, "timestamp": utcnow()},
		)

	# ------------------------------------------------------------------
	# local broadcast

	async def _targets(self, predicate: Callable[[ClientConnection], bool]) -> list[ClientConnection]:
		async with self._lock:
			return [conn for conn in self._connections.values() if conn.alive and predicate(conn)]

	@staticmethod
	async def _deliver(targets: Iterable[ClientConnection], frame: Frame) -> int:
		targets = list(targets)
		if not targets:
			return 0
		results = await asyncio.gather(*(conn.send(frame) for conn in targets))
		return sum(1 for ok in results if ok)

	async def broadcast_to_user(self, user_id: str, frame: Frame) -> int:
		return await self._deliver(await self._targets(lambda conn: conn.user_id == user_id), frame)

	async def broadcast_to_conversation(self, conversation_id: str, frame: Frame) -> int:
		await self.rooms.touch(conversation_id)
		targets = await self._targets(lambda conn: conversation_id in conn.active_conversations)
		return await self._deliver(targets, frame)

	async def broadcast_to_channel(self, channel: str, frame: Frame) -> int:
		return await self._deliver(await self._targets(lambda conn: channel in conn.subscriptions), frame)

	async def broadcast_to_all(self, frame: Frame) -> int:
		return await self._deliver(await self._targets(lambda conn: True), frame)

	# ------------------------------------------------------------------
	# cluster fan-out

	async def _publish(self, channel: str, frame: Frame) -> None:
		if self._pubsub is None:
			return
		try:
			await self._pubsub.publish(channel, frame, origin=self.instance_id)
		except (RedisError, OSError):
			logger.warning("Publish to %s failed", channel, exc_info=True)

	async def fan_out_to_user(self, user_id: str, frame: Frame) -> int:
		delivered = await self.broadcast_to_user(user_id, frame)
		await self._publish(notifications_channel(user_id), frame)
		return delivered

	async def fan_out_to_conversation(self, conversation_id: str, frame: Frame) -> int:
		delivered = await self.broadcast_to_conversation(conversation_id, frame)
		await self._publish(conversation_channel(conversation_id), frame)
		return delivered

	async def fan_out_to_all(self, frame: Frame) -> int:
		delivered = await self.broadcast_to_all(frame)
		await self._publish(ONLINE_STATUS_CHANNEL, frame)
		return delivered

	# ------------------------------------------------------------------
	# bridges

	async def _start_bridge(self, conn: ClientConnection, channel: str) -> bool:
		if self._pubsub is None or channel in conn.subscriptions:
			return False
		try:
			subscription = await self._pubsub.subscribe(channel)
		except (RedisError, OSError):
			logger.warning("Subscribe to %s failed for %s", channel, conn.id, exc_info=True)
			return False
		task = asyncio.create_task(self._bridge_loop(conn, subscription), name=f"ws-bridge:{channel}:{conn.id}")
		bridge = Bridge(channel=channel, task=task, subscription=subscription)
		if not await conn.attach_bridge(bridge):
			await bridge.stop()
			return False
		return True

	async def _stop_bridge(self, conn: ClientConnection, channel: str) -> None:
		bridge = await conn.detach_bridge(channel)
		if bridge is not None:
			await bridge.stop()

	async def _bridge_loop(self, conn: ClientConnection, subscription: Subscription) -> None:
		task = asyncio.current_task()
		try:
			async for message in subscription:
				if not conn.alive:
					break
				if not await self._relay(conn, message):
					break
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("Bridge on %s failed for %s", subscription.channel, conn.id)
		finally:
			try:
				await subscription.close()
			except (RedisError, OSError):
				logger.debug("Closing subscription %s failed", subscription.channel, exc_info=True)
			await conn.detach_bridge(subscription.channel, task)

	async def _relay(self, conn: ClientConnection, message: BusMessage) -> bool:
		if message.origin == self.instance_id:
			return True
		frame = message.frame
		if frame.channel is None:
			frame = dataclasses.replace(frame, channel=message.channel)
		conversation_id = conversation_from_channel(message.channel)
		if conversation_id is not None:
			await self.rooms.touch(conversation_id)
		obs_metrics.inc_bridge_frame(frame.type)
		return await conn.send(frame)

	# ------------------------------------------------------------------
	# rooms and typing

	async def join_conversation(self, user_id: str, conversation_id: str) -> int:
		"""Add the user's local connections to a room; returns how many joined."""
		conns = await self.get_user_connections(user_id)
		if not conns:
			return 0
		await self.rooms.join(conversation_id, user_id)
		channel = conversation_channel(conversation_id)
		for conn in conns:
			await conn.add_conversation(conversation_id)
			await self._start_bridge(conn, channel)
		obs_metrics.set_chat_rooms(await self.rooms.count())
		return len(conns)

	async def leave_conversation(self, user_id: str, conversation_id: str) -> None:
		channel = conversation_channel(conversation_id)
		for conn in await self.get_user_connections(user_id):
			await conn.remove_conversation(conversation_id)
			await self._stop_bridge(conn, channel)
		await self._leave_room(user_id, conversation_id)

	async def _leave_room(self, user_id: str, conversation_id: str) -> None:
		await self.rooms.leave(conversation_id, user_id)
		await self.typing.clear_user(conversation_id, user_id)
		obs_metrics.set_chat_rooms(await self.rooms.count())

	async def set_typing(self, user_id: str, conversation_id: str, is_typing: bool) -> None:
		await self.typing.set_typing(conversation_id, user_id, is_typing)
		frame = Frame.build(
			EventType.TYPING_INDICATOR,
			{"conversation_id": conversation_id, "user_id": user_id, "is_typing": is_typing},
			sender_id=user_id,
		)
		await self.fan_out_to_conversation(conversation_id, frame)

	async def update_unread_count(self, user_id: str, conversation_id: str, count: int) -> None:
		frame = Frame.build(
			EventType.CONVERSATION_UNREAD,
			{"conversation_id": conversation_id, "user_id": user_id, "count": count},
		)
		await self.fan_out_to_user(user_id, frame)

	# ------------------------------------------------------------------
	# queries

	async def get_connection(self, connection_id: str) -> Optional[ClientConnection]:
		async with self._lock:
			return self._connections.get(connection_id)

	async def get_user_connections(self, user_id: str) -> list[ClientConnection]:
		async with self._lock:
			return [conn for conn in self._connections.values() if conn.user_id == user_id]

	async def connection_snapshots(self, user_id: Optional[str] = None) -> list[dict]:
		async with self._lock:
			conns = [conn for conn in self._connections.values() if user_id is None or conn.user_id == user_id]
		return sorted((conn.to_dict() for conn in conns), key=lambda snapshot: snapshot["connected_at"])

	async def get_typing_users(self, conversation_id: str) -> list[str]:
		return await self.typing.typing_users(conversation_id)

	async def get_conversation_participants(self, conversation_id: str) -> list[str]:
		return sorted(await self.rooms.participants(conversation_id))

	async def stats(self) -> dict:
		async with self._lock:
			per_user = Counter(conn.user_id for conn in self._connections.values())
			total = len(self._connections)
		return {
			"instance_id": self.instance_id,
			"total_connections": total,
			"unique_users": len(per_user),
			"user_connections": dict(per_user),
			"active_rooms": await self.rooms.count(),
		}

	# ------------------------------------------------------------------
	# janitors

	async def cleanup_inactive_connections(self) -> int:
		async with self._lock:
			stale = [
				conn.id
				for conn in self._connections.values()
				if not conn.alive or conn.heartbeat_age() > self._stale_after
			]
		removed = 0
		for connection_id in stale:
			if await self.remove_connection(connection_id):
				removed += 1
		if removed:
			obs_metrics.inc_janitor_removal("connection", removed)
			logger.info("Removed %d inactive connections", removed)
		return removed

	async def cleanup_expired_typing(self) -> int:
		removed = await self.typing.cleanup_expired()
		if removed:
			obs_metrics.inc_janitor_removal("typing", removed)
		return removed

	async def cleanup_inactive_chat_rooms(self) -> int:
		reaped = await self.rooms.reap()
		for conversation_id, participants in reaped.items():
			await self.typing.clear_conversation(conversation_id)
			channel = conversation_channel(conversation_id)
			for user_id in participants:
				for conn in await self.get_user_connections(user_id):
					await conn.remove_conversation(conversation_id)
					await self._stop_bridge(conn, channel)
		if reaped:
			obs_metrics.inc_janitor_removal("room", len(reaped))
			obs_metrics.set_chat_rooms(await self.rooms.count())
			logger.info("Reaped %d chat rooms", len(reaped))
		return len(reaped)
