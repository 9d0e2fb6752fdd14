"""Per-instance registries for conversation presence and typing state."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

Clock = Callable[[], float]


@dataclass(slots=True)
class ChatRoom:
	conversation_id: str
	created_at: float
	last_activity: float
	participants: set[str] = field(default_factory=set)

	def to_dict(self) -> dict:
		return {
			"conversation_id": self.conversation_id,
			"participants": sorted(self.participants),
		}


class ChatRoomRegistry:
	"""Conversation id -> users present on this instance.

	Rooms are created on first join and dropped when their last participant
	leaves, or by ``reap`` once empty or idle past ``idle_seconds``.
	"""

	def __init__(self, *, idle_seconds: float, clock: Clock = time.monotonic) -> None:
		self._idle_seconds = idle_seconds
		self._clock = clock
		self._lock = asyncio.Lock()
		self._rooms: dict[str, ChatRoom] = {}

	async def join(self, conversation_id: str, user_id: str) -> bool:
		async with self._lock:
			now = self._clock()
			room = self._rooms.get(conversation_id)
			if room is None:
				room = ChatRoom(conversation_id=conversation_id, created_at=now, last_activity=now)
				self._rooms[conversation_id] = room
			added = user_id not in room.participants
			room.participants.add(user_id)
			room.last_activity = now
			return added

	async def leave(self, conversation_id: str, user_id: str) -> bool:
		async with self._lock:
			room = self._rooms.get(conversation_id)
			if room is None or user_id not in room.participants:
				return False
			room.participants.discard(user_id)
			room.last_activity = self._clock()
			if not room.participants:
				del self._rooms[conversation_id]
			return True

	async def touch(self, conversation_id: str) -> None:
		async with self._lock:
			room = self._rooms.get(conversation_id)
			if room is not None:
				room.last_activity = self._clock()

	async def participants(self, conversation_id: str) -> set[str]:
		async with self._lock:
			room = self._rooms.get(conversation_id)
			return set(room.participants) if room else set()

	async def is_present(self, conversation_id: str, user_id: str) -> bool:
		async with self._lock:
			room = self._rooms.get(conversation_id)
			return room is not None and user_id in room.participants

	async def get(self, conversation_id: str) -> Optional[ChatRoom]:
		async with self._lock:
			room = self._rooms.get(conversation_id)
			if room is None:
				return None
			return ChatRoom(
				conversation_id=room.conversation_id,
				created_at=room.created_at,
				last_activity=room.last_activity,
				participants=set(room.participants),
			)

	async def count(self) -> int:
		async with self._lock:
			return len(self._rooms)

	async def reap(self) -> dict[str, set[str]]:
		"""Drop empty or idle rooms; returns the removed rooms' participants."""
		async with self._lock:
			now = self._clock()
			removed: dict[str, set[str]] = {}
			for conversation_id, room in list(self._rooms.items()):
				if room.participants and now - room.last_activity < self._idle_seconds:
					continue
				removed[conversation_id] = set(room.participants)
				del self._rooms[conversation_id]
			return removed


class TypingRegistry:
	"""Conversation id -> user id -> last time the user reported typing."""

	def __init__(self, *, expiry_seconds: float, clock: Clock = time.monotonic) -> None:
		self._expiry_seconds = expiry_seconds
		self._clock = clock
		self._lock = asyncio.Lock()
		self._typing: dict[str, dict[str, float]] = {}

	def _expired(self, typed_at: float, now: float) -> bool:
		return now - typed_at >= self._expiry_seconds

	async def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
		async with self._lock:
			if is_typing:
				self._typing.setdefault(conversation_id, {})[user_id] = self._clock()
				return
			self._discard(conversation_id, user_id)

	async def clear_user(self, conversation_id: str, user_id: str) -> None:
		async with self._lock:
			self._discard(conversation_id, user_id)

	async def clear_conversation(self, conversation_id: str) -> None:
		async with self._lock:
			self._typing.pop(conversation_id, None)

	async def typing_users(self, conversation_id: str) -> list[str]:
		async with self._lock:
			now = self._clock()
			entries = self._typing.get(conversation_id, {})
			return sorted(user_id for user_id, typed_at in entries.items() if not self._expired(typed_at, now))

	async def cleanup_expired(self) -> int:
		async with self._lock:
			now = self._clock()
			removed = 0
			for conversation_id, entries in list(self._typing.items()):
				for user_id, typed_at in list(entries.items()):
					if self._expired(typed_at, now):
						del entries[user_id]
						removed += 1
				if not entries:
					del self._typing[conversation_id]
			return removed

	def _discard(self, conversation_id: str, user_id: str) -> None:
		entries = self._typing.get(conversation_id)
		if not entries:
			return
		entries.pop(user_id, None)
		if not entries:
			del self._typing[conversation_id]
