"""A single live client connection and its guarded writer."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from heartline.infra.pubsub import Subscription
from heartline.obs import metrics as obs_metrics
from heartline.realtime.frames import Frame, format_timestamp

logger = logging.getLogger(__name__)


class FrameTransport(Protocol):
	"""The full-duplex channel under a connection (a Starlette ``WebSocket`` in production)."""

	async def send_text(self, data: str) -> None:
		...

	async def receive_text(self) -> str:
		...

	async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
		...


def make_connection_id(user_id: str, session_id: str) -> str:
	return f"{user_id}:{session_id}:{time.time_ns()}"


@dataclass(slots=True)
class Bridge:
	"""A task relaying one bus subscription to a connection."""

	channel: str
	task: asyncio.Task
	subscription: Subscription

	async def stop(self) -> None:
		if self.task is not asyncio.current_task():
			self.task.cancel()
			with suppress(asyncio.CancelledError):
				await self.task
		try:
			await self.subscription.close()
		except Exception:
			logger.debug("Closing subscription %s failed", self.channel, exc_info=True)


class ClientConnection:
	"""State owned by one upgraded connection.

	Writes and mutations of ``subscriptions`` / ``active_conversations`` go
	through the per-connection lock; the lock is held for one frame at a time.
	"""

	def __init__(
		self,
		transport: FrameTransport,
		*,
		user_id: str,
		session_id: str,
		client_addr: Optional[str] = None,
		user_agent: Optional[str] = None,
		write_deadline: float = 10.0,
		clock: Callable[[], float] = time.monotonic,
		connection_id: Optional[str] = None,
	) -> None:
		self.id = connection_id or make_connection_id(user_id, session_id)
		self.user_id = user_id
		self.session_id = session_id
		self.client_addr = client_addr
		self.user_agent = user_agent
		self.connected_at = datetime.now(timezone.utc)
		self.alive = True
		self.subscriptions: set[str] = set()
		self.active_conversations: set[str] = set()
		self._transport = transport
		self._write_deadline = write_deadline
		self._clock = clock
		self._last_heartbeat = clock()
		self._lock = asyncio.Lock()
		self._bridges: dict[str, Bridge] = {}
		self._workers: list[asyncio.Task] = []

	@property
	def transport(self) -> FrameTransport:
		return self._transport

	def touch_heartbeat(self) -> None:
		self._last_heartbeat = self._clock()

	def heartbeat_age(self) -> float:
		return self._clock() - self._last_heartbeat

	async def send(self, frame: Frame) -> bool:
		"""Write one frame; a failure or missed deadline marks the connection dead."""
		payload = frame.encode()
		async with self._lock:
			if not self.alive:
				return False
			try:
				await asyncio.wait_for(self._transport.send_text(payload), timeout=self._write_deadline)
			except asyncio.CancelledError:
				raise
			except Exception as exc:
				self.alive = False
				obs_metrics.inc_write_failure()
				logger.warning(
					"Write to connection %s failed: %s",
					self.id,
					type(exc).__name__,
				)
				return False
		return True

	async def add_conversation(self, conversation_id: str) -> bool:
		async with self._lock:
			if conversation_id in self.active_conversations:
				return False
			self.active_conversations.add(conversation_id)
			return True

	async def remove_conversation(self, conversation_id: str) -> bool:
		async with self._lock:
			if conversation_id not in self.active_conversations:
				return False
			self.active_conversations.discard(conversation_id)
			return True

	async def has_conversation(self, conversation_id: str) -> bool:
		async with self._lock:
			return conversation_id in self.active_conversations

	def bind_workers(self, *tasks: asyncio.Task) -> None:
		self._workers = list(tasks)

	async def attach_bridge(self, bridge: Bridge) -> bool:
		async with self._lock:
			if bridge.channel in self._bridges or not self.alive or bridge.task.done():
				return False
			self._bridges[bridge.channel] = bridge
			self.subscriptions.add(bridge.channel)
			return True

	async def detach_bridge(self, channel: str, task: Optional[asyncio.Task] = None) -> Optional[Bridge]:
		async with self._lock:
			current = self._bridges.get(channel)
			if current is None or (task is not None and current.task is not task):
				return None
			del self._bridges[channel]
			self.subscriptions.discard(channel)
			return current

	async def close(self, code: int = 1000) -> None:
		"""Mark dead, stop every bridge, and close the transport."""
		async with self._lock:
			self.alive = False
			bridges = list(self._bridges.values())
			self._bridges.clear()
			self.subscriptions.clear()
		current = asyncio.current_task()
		for worker in self._workers:
			if worker is not current:
				worker.cancel()
		for bridge in bridges:
			await bridge.stop()
		try:
			await self._transport.close(code=code)
		except Exception:
			logger.debug("Transport for %s already closed", self.id, exc_info=True)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"user_id": self.user_id,
			"session_id": self.session_id,
			"client_addr": self.client_addr,
			"user_agent": self.user_agent,
			"connected_at": format_timestamp(self.connected_at),
			"alive": self.alive,
			"subscriptions": sorted(self.subscriptions),
			"active_conversations": sorted(self.active_conversations),
		}
