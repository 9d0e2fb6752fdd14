"""Message and conversation persistence backed by asyncpg with an in-memory fallback."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional, Protocol, Tuple

import asyncpg
import ulid

from heartline.domain.chat.models import Conversation, Message
from heartline.infra.postgres import PoolUnavailable, get_pool

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
	"""Raised when the backing store fails; ``operation`` names the failed call."""

	def __init__(self, operation: str) -> None:
		super().__init__(f"store operation failed: {operation}")
		self.operation = operation


class MessageStore(Protocol):
	async def create_message(self, message: Message) -> Message:
		...

	async def get_message(self, message_id: str) -> Optional[Message]:
		...

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		...

	async def touch_conversation(self, conversation_id: str) -> None:
		...

	async def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
		...

	async def mark_as_read(self, message_id: str, reader_id: str) -> None:
		...

	async def soft_delete(self, message_id: str) -> bool:
		...

	async def user_can_access_conversation(self, conversation_id: str, user_id: str) -> bool:
		...

	async def user_can_access_message(self, message_id: str, user_id: str) -> bool:
		...

	async def conversation_unread_count(self, conversation_id: str, user_id: str) -> int:
		...

	async def conversation_participants(self, conversation_id: str) -> Tuple[str, ...]:
		...


def _now() -> datetime:
	return datetime.now(timezone.utc)


class _InMemoryStore:
	"""Fallback store used in tests and local runs when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._conversations: dict[str, Conversation] = {}
		self._messages: dict[str, Message] = {}
		self._by_conversation: dict[str, list[str]] = {}

	async def create_conversation(self, conversation: Conversation) -> Conversation:
		async with self._lock:
			self._conversations[conversation.id] = conversation
			self._by_conversation.setdefault(conversation.id, [])
			return conversation

	async def create_message(self, message: Message) -> Message:
		async with self._lock:
			self._messages[message.id] = message
			self._by_conversation.setdefault(message.conversation_id, []).append(message.id)
			return message

	async def get_message(self, message_id: str) -> Optional[Message]:
		async with self._lock:
			return self._messages.get(message_id)

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		async with self._lock:
			return self._conversations.get(conversation_id)

	async def touch_conversation(self, conversation_id: str) -> None:
		async with self._lock:
			conversation = self._conversations.get(conversation_id)
			if conversation is not None:
				conversation.updated_at = _now()

	async def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
		async with self._lock:
			ids = self._by_conversation.get(conversation_id, [])
			visible = [self._messages[mid] for mid in ids if not self._messages[mid].is_deleted]
			visible.sort(key=lambda m: m.created_at)
			return visible[-limit:] if limit > 0 else []

	async def mark_as_read(self, message_id: str, reader_id: str) -> None:
		async with self._lock:
			message = self._messages.get(message_id)
			if message is not None and message.sender_id != reader_id:
				message.is_read = True
				message.updated_at = _now()

	async def soft_delete(self, message_id: str) -> bool:
		async with self._lock:
			message = self._messages.get(message_id)
			if message is None or message.is_deleted:
				return False
			message.is_deleted = True
			message.updated_at = _now()
			return True

	async def conversation_unread_count(self, conversation_id: str, user_id: str) -> int:
		async with self._lock:
			return sum(
				1
				for mid in self._by_conversation.get(conversation_id, [])
				if self._messages[mid].sender_id != user_id
				and not self._messages[mid].is_read
				and not self._messages[mid].is_deleted
			)


class ChatRepository:
	"""Repository backed by asyncpg with an in-memory fallback."""

	def __init__(self, *, memory: Optional[_InMemoryStore] = None) -> None:
		self._pool_checked = False
		self._pool = None
		self._memory = memory or _InMemoryStore()

	async def _pool_or_none(self):
		if self._pool_checked:
			return self._pool
		self._pool_checked = True
		try:
			pool = await get_pool()
		except PoolUnavailable:
			pool = None
		except Exception:
			logger.warning("Postgres unavailable, using in-memory chat store", exc_info=True)
			pool = None
		self._pool = pool
		return pool

	@asynccontextmanager
	async def _connection(self, pool, operation: str) -> AsyncIterator[asyncpg.Connection]:
		try:
			async with pool.acquire() as conn:
				yield conn
		except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as exc:
			logger.exception("Chat store operation %s failed", operation)
			raise StoreError(operation) from exc

	async def create_conversation(
		self,
		match_id: str,
		user_a: str,
		user_b: str,
		*,
		conversation_id: Optional[str] = None,
	) -> Conversation:
		now = _now()
		conversation = Conversation(
			id=conversation_id or str(ulid.new()),
			match_id=match_id,
			user_a=user_a,
			user_b=user_b,
			created_at=now,
			updated_at=now,
		)
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.create_conversation(conversation)
		async with self._connection(pool, "create_conversation") as conn:
			async with conn.transaction():
				await conn.execute(
					"""
					INSERT INTO matches (id, user1_id, user2_id, created_at)
					VALUES ($1, $2, $3, $4)
					ON CONFLICT (id) DO NOTHING
					""",
					match_id,
					user_a,
					user_b,
					now,
				)
				await conn.execute(
					"""
					INSERT INTO conversations (id, match_id, created_at, updated_at)
					VALUES ($1, $2, $3, $3)
					""",
					conversation.id,
					match_id,
					now,
				)
		return conversation

	async def create_message(self, message: Message) -> Message:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.create_message(message)
		async with self._connection(pool, "create_message") as conn:
			await conn.execute(
				"""
				INSERT INTO messages (
					id, conversation_id, sender_id, content, message_type,
					is_read, is_deleted, metadata, client_message_id, created_at, updated_at
				)
				VALUES ($1, $2, $3, $4, $5, FALSE, FALSE, $6::jsonb, $7, $8, $9)
				""",
				message.id,
				message.conversation_id,
				message.sender_id,
				message.content,
				message.message_type,
				json.dumps(message.metadata),
				message.client_message_id,
				message.created_at,
				message.updated_at,
			)
		return message

	async def get_message(self, message_id: str) -> Optional[Message]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.get_message(message_id)
		async with self._connection(pool, "get_message") as conn:
			row = await conn.fetchrow("SELECT * FROM messages WHERE id = $1", message_id)
		return Message.from_record(row) if row else None

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.get_conversation(conversation_id)
		async with self._connection(pool, "get_conversation") as conn:
			row = await conn.fetchrow(
				"""
				SELECT c.id, c.match_id, c.created_at, c.updated_at, m.user1_id, m.user2_id
				FROM conversations c
				JOIN matches m ON m.id = c.match_id
				WHERE c.id = $1
				""",
				conversation_id,
			)
		return Conversation.from_record(row) if row else None

	async def touch_conversation(self, conversation_id: str) -> None:
		pool = await self._pool_or_none()
		if pool is None:
			await self._memory.touch_conversation(conversation_id)
			return
		async with self._connection(pool, "touch_conversation") as conn:
			await conn.execute("UPDATE conversations SET updated_at = NOW() WHERE id = $1", conversation_id)

	async def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
		"""Return the newest ``limit`` visible messages, oldest first."""
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.recent_messages(conversation_id, limit)
		async with self._connection(pool, "recent_messages") as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM messages
				WHERE conversation_id = $1 AND is_deleted = FALSE
				ORDER BY created_at DESC, id DESC
				LIMIT $2
				""",
				conversation_id,
				limit,
			)
		return [Message.from_record(row) for row in reversed(rows)]

	async def mark_as_read(self, message_id: str, reader_id: str) -> None:
		pool = await self._pool_or_none()
		if pool is None:
			await self._memory.mark_as_read(message_id, reader_id)
			return
		async with self._connection(pool, "mark_as_read") as conn:
			await conn.execute(
				"""
				UPDATE messages SET is_read = TRUE, updated_at = NOW()
				WHERE id = $1 AND sender_id <> $2 AND is_read = FALSE
				""",
				message_id,
				reader_id,
			)

	async def soft_delete(self, message_id: str) -> bool:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.soft_delete(message_id)
		async with self._connection(pool, "soft_delete") as conn:
			status = await conn.execute(
				"""
				UPDATE messages SET is_deleted = TRUE, updated_at = NOW()
				WHERE id = $1 AND is_deleted = FALSE
				""",
				message_id,
			)
		return status.endswith(" 1")

	async def user_can_access_conversation(self, conversation_id: str, user_id: str) -> bool:
		conversation = await self.get_conversation(conversation_id)
		return conversation is not None and conversation.has_participant(user_id)

	async def user_can_access_message(self, message_id: str, user_id: str) -> bool:
		message = await self.get_message(message_id)
		if message is None:
			return False
		return await self.user_can_access_conversation(message.conversation_id, user_id)

	async def conversation_unread_count(self, conversation_id: str, user_id: str) -> int:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.conversation_unread_count(conversation_id, user_id)
		async with self._connection(pool, "conversation_unread_count") as conn:
			count = await conn.fetchval(
				"""
				SELECT COUNT(*) FROM messages
				WHERE conversation_id = $1 AND sender_id <> $2
				  AND is_read = FALSE AND is_deleted = FALSE
				""",
				conversation_id,
				user_id,
			)
		return int(count or 0)

	async def conversation_participants(self, conversation_id: str) -> Tuple[str, ...]:
		conversation = await self.get_conversation(conversation_id)
		return conversation.participants() if conversation else ()
