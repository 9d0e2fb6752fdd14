"""Inbound frame dispatch: the realtime chat protocol."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional

import ulid
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from heartline.domain.chat.models import Message, MessageType
from heartline.domain.chat.processing import process_message
from heartline.domain.chat.repo import MessageStore, StoreError
from heartline.domain.chat.validation import MessageValidator, sanitize
from heartline.infra import cache as cache_keys
from heartline.infra.cache import CacheStore
from heartline.obs import metrics as obs_metrics
from heartline.realtime import policy
from heartline.realtime.connection import ClientConnection
from heartline.realtime.frames import INBOUND_EVENTS, EventType, Frame, FrameError, error_frame, utcnow
from heartline.realtime.manager import ConnectionManager
from heartline.realtime.policy import EventPolicyError
from heartline.realtime.schemas import (
	ConversationPayload,
	EphemeralPhotoExpiredPayload,
	EphemeralPhotoNewPayload,
	EphemeralPhotoViewedPayload,
	MessageNewPayload,
	MessageRefPayload,
	UserStatusPayload,
)
from heartline.settings import settings

logger = logging.getLogger(__name__)

Handler = Callable[[ClientConnection, Any], Awaitable[None]]


def _format_errors(exc: ValidationError) -> list[str]:
	formatted = []
	for error in exc.errors():
		location = ".".join(str(part) for part in error.get("loc", ()))
		formatted.append(f"{location}: {error['msg']}" if location else error["msg"])
	return formatted


class EventHandler:
	"""Decodes client frames and runs one handler per event type.

	Frames from a connection are handled one at a time by its reader, so
	effects of a single sender are observed in send order. Every failure is
	answered inline with an ``error`` frame; the connection stays open.
	"""

	def __init__(
		self,
		manager: ConnectionManager,
		store: MessageStore,
		cache: CacheStore,
		validator: MessageValidator,
		*,
		history_window: Optional[int] = None,
		delete_window_seconds: Optional[int] = None,
		typing_expiry_seconds: Optional[float] = None,
		profanity_words: Optional[Iterable[str]] = None,
	) -> None:
		self._manager = manager
		self._store = store
		self._cache = cache
		self._validator = validator
		self._history_window = history_window or settings.realtime_history_window
		self._delete_window = timedelta(seconds=delete_window_seconds or settings.chat_delete_window_seconds)
		self._typing_ttl = typing_expiry_seconds or settings.realtime_typing_expiry_seconds
		self._profanity_words = tuple(profanity_words) if profanity_words is not None else None
		self._routes: dict[EventType, tuple[Optional[type[BaseModel]], Handler]] = {
			EventType.MESSAGE_NEW: (MessageNewPayload, self._on_message_new),
			EventType.MESSAGE_READ: (MessageRefPayload, self._on_message_read),
			EventType.MESSAGE_DELETE: (MessageRefPayload, self._on_message_delete),
			EventType.EPHEMERAL_PHOTO_NEW: (EphemeralPhotoNewPayload, self._on_photo_new),
			EventType.EPHEMERAL_PHOTO_VIEWED: (EphemeralPhotoViewedPayload, self._on_photo_viewed),
			EventType.EPHEMERAL_PHOTO_EXPIRED: (EphemeralPhotoExpiredPayload, self._on_photo_expired),
			EventType.TYPING_START: (ConversationPayload, self._on_typing_start),
			EventType.TYPING_STOP: (ConversationPayload, self._on_typing_stop),
			EventType.CONVERSATION_JOIN: (ConversationPayload, self._on_join),
			EventType.CONVERSATION_LEAVE: (ConversationPayload, self._on_leave),
			EventType.USER_STATUS: (UserStatusPayload, self._on_user_status),
			EventType.PING: (None, self._on_ping),
		}

	async def handle(self, conn: ClientConnection, raw: str | bytes) -> None:
		try:
			frame = Frame.decode(raw)
		except FrameError as exc:
			await self._send_error(conn, "invalid_payload", str(exc))
			return
		event = frame.event
		if event is not None and event not in INBOUND_EVENTS:
			await self._send_error(conn, "unknown_type", f"{frame.type} is sent by the server only")
			return
		route = self._routes.get(event) if event is not None else None
		if route is None:
			await self._send_error(conn, "unknown_type", f"unknown event type: {frame.type}")
			return
		schema, handler = route
		obs_metrics.socket_event(event.value)
		payload: Any = frame.data
		if schema is not None:
			try:
				payload = schema.model_validate(frame.data if frame.data is not None else {})
			except ValidationError as exc:
				await self._send_error(conn, "invalid_payload", "invalid payload", _format_errors(exc))
				return
		try:
			await handler(conn, payload)
		except EventPolicyError as exc:
			await self._send_error(conn, exc.code, exc.detail, exc.errors)
		except StoreError as exc:
			await self._send_error(conn, "persistence_failed", f"could not complete {exc.operation}")
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("Handler for %s failed", event.value)
			await self._send_error(conn, "internal_error", "internal error")

	async def _send_error(self, conn: ClientConnection, code: str, message: str, errors: Iterable[str] = ()) -> None:
		obs_metrics.socket_error(code)
		await conn.send(error_frame(code, message, errors))

	# ------------------------------------------------------------------
	# messages

	async def _on_message_new(self, conn: ClientConnection, payload: MessageNewPayload) -> None:
		user_id = conn.user_id
		conversation = await policy.ensure_conversation_access(self._store, payload.conversation_id, user_id)
		message_type = payload.message_type.value
		result = await self._validator.validate(user_id, payload.content, message_type)
		if result.rate_limited:
			retry_after = result.metadata.get("retry_after_seconds")
			raise EventPolicyError("rate_limited", f"rate limit exceeded, retry in {retry_after}s", errors=result.errors)
		if not result.is_valid:
			raise EventPolicyError("validation_failed", "message rejected", errors=result.errors)

		now = utcnow()
		message = Message(
			id=str(ulid.new()),
			conversation_id=conversation.id,
			sender_id=user_id,
			content=result.sanitized,
			message_type=message_type,
			created_at=now,
			updated_at=now,
			metadata=dict(result.metadata),
			client_message_id=payload.client_message_id,
		)
		message = process_message(message, profanity_words=self._profanity_words)
		stored = await self._store.create_message(message)
		await self._store.touch_conversation(conversation.id)
		obs_metrics.inc_chat_message(message_type)

		await self._manager.fan_out_to_conversation(
			conversation.id,
			Frame.build(EventType.MESSAGE_NEW, stored.to_dict(), sender_id=user_id),
		)
		await self._cache_message(stored)
		for participant in conversation.participants():
			if participant == user_id:
				continue
			await self._bump_unread(participant, conversation.id)

	async def _cache_message(self, message: Message) -> None:
		record = message.to_dict()
		try:
			await self._cache.set_json(cache_keys.message_key(message.id), record, cache_keys.MESSAGE_TTL_SECONDS)
			await self._cache.push_capped(
				cache_keys.conversation_messages_key(message.conversation_id),
				message.id,
				cap=cache_keys.RECENT_MESSAGES_CAP,
				ttl_seconds=cache_keys.MESSAGE_TTL_SECONDS,
			)
		except (RedisError, OSError):
			logger.warning("Failed to cache message %s", message.id, exc_info=True)

	async def _bump_unread(self, user_id: str, conversation_id: str) -> None:
		try:
			count = await self._cache.incr(
				cache_keys.unread_key(user_id, conversation_id),
				cache_keys.UNREAD_TTL_SECONDS,
			)
		except (RedisError, OSError):
			logger.warning("Failed to bump unread count for %s in %s", user_id, conversation_id, exc_info=True)
			return
		await self._manager.update_unread_count(user_id, conversation_id, count)

	async def _on_message_read(self, conn: ClientConnection, payload: MessageRefPayload) -> None:
		user_id = conn.user_id
		message = await policy.ensure_message_access(self._store, payload.message_id, user_id)
		if message.sender_id != user_id:
			await self._store.mark_as_read(message.id, user_id)
			await self._manager.fan_out_to_conversation(
				message.conversation_id,
				Frame.build(
					EventType.MESSAGE_VIEWED,
					{"message_id": message.id, "user_id": user_id, "timestamp": utcnow()},
					sender_id=user_id,
				),
			)
		count = await self._store.conversation_unread_count(message.conversation_id, user_id)
		try:
			await self._cache.set(
				cache_keys.unread_key(user_id, message.conversation_id),
				count,
				cache_keys.UNREAD_TTL_SECONDS,
			)
		except (RedisError, OSError):
			logger.warning("Failed to store unread count for %s", user_id, exc_info=True)
		await self._manager.update_unread_count(user_id, message.conversation_id, count)

	async def _on_message_delete(self, conn: ClientConnection, payload: MessageRefPayload) -> None:
		user_id = conn.user_id
		message = await policy.ensure_message_access(self._store, payload.message_id, user_id)
		policy.ensure_sender(message, user_id)
		if not message.can_be_deleted(window=self._delete_window):
			raise EventPolicyError("not_deletable", "message can no longer be deleted")
		if not await self._store.soft_delete(message.id):
			raise EventPolicyError("not_deletable", "message can no longer be deleted")
		try:
			await self._cache.delete(cache_keys.message_key(message.id))
		except (RedisError, OSError):
			logger.warning("Failed to evict cached message %s", message.id, exc_info=True)
		await self._manager.fan_out_to_conversation(
			message.conversation_id,
			Frame.build(
				EventType.MESSAGE_DELETED,
				{"message_id": message.id, "user_id": user_id, "timestamp": utcnow()},
				sender_id=user_id,
			),
		)

	# ------------------------------------------------------------------
	# ephemeral photos

	async def _on_photo_new(self, conn: ClientConnection, payload: EphemeralPhotoNewPayload) -> None:
		user_id = conn.user_id
		conversation = await policy.ensure_conversation_access(self._store, payload.conversation_id, user_id)
		existing = await self._store.get_message(payload.photo_id)
		if existing is not None:
			if existing.sender_id != user_id or existing.conversation_id != conversation.id:
				raise EventPolicyError("forbidden", "photo belongs to another message")
		else:
			caption, _ = sanitize(payload.message or "")
			now = utcnow()
			await self._store.create_message(
				Message(
					id=payload.photo_id,
					conversation_id=conversation.id,
					sender_id=user_id,
					content=caption,
					message_type=MessageType.PHOTO_EPHEMERAL.value,
					created_at=now,
					updated_at=now,
					metadata={
						"thumbnail_url": payload.thumbnail_url,
						"expires_at": payload.expires_at.isoformat(),
					},
				)
			)
			await self._store.touch_conversation(conversation.id)
			obs_metrics.inc_chat_message(MessageType.PHOTO_EPHEMERAL.value)
		data = payload.model_dump(mode="json")
		data["sender_id"] = user_id
		await self._manager.fan_out_to_conversation(
			conversation.id,
			Frame.build(EventType.EPHEMERAL_PHOTO_NEW, data, sender_id=user_id),
		)

	async def _on_photo_viewed(self, conn: ClientConnection, payload: EphemeralPhotoViewedPayload) -> None:
		user_id = conn.user_id
		message = await policy.ensure_message_access(self._store, payload.photo_id, user_id)
		if message.sender_id == user_id:
			return
		claimed = await self._cache.set_if_absent(
			cache_keys.ephemeral_viewed_key(payload.photo_id),
			user_id,
			cache_keys.EPHEMERAL_CLAIM_TTL_SECONDS,
		)
		if not claimed:
			logger.debug("Photo %s already viewed", payload.photo_id)
			return
		await self._manager.fan_out_to_conversation(
			message.conversation_id,
			Frame.build(
				EventType.EPHEMERAL_PHOTO_VIEWED,
				{"photo_id": payload.photo_id, "viewer_id": user_id, "viewed_at": utcnow()},
				sender_id=user_id,
			),
		)

	async def _on_photo_expired(self, conn: ClientConnection, payload: EphemeralPhotoExpiredPayload) -> None:
		message = await self._store.get_message(payload.photo_id)
		if message is not None:
			await policy.ensure_conversation_access(self._store, message.conversation_id, conn.user_id)
			owner_id = message.sender_id
		elif payload.owner_id:
			owner_id = payload.owner_id
		else:
			raise EventPolicyError("not_found", "photo not found")
		claimed = await self._cache.set_if_absent(
			cache_keys.ephemeral_expired_key(payload.photo_id),
			owner_id,
			cache_keys.EPHEMERAL_CLAIM_TTL_SECONDS,
		)
		if not claimed:
			return
		await self._manager.fan_out_to_user(
			owner_id,
			Frame.build(
				EventType.EPHEMERAL_PHOTO_EXPIRED,
				{"photo_id": payload.photo_id, "owner_id": owner_id, "expired_at": utcnow()},
			),
		)

	# ------------------------------------------------------------------
	# presence, typing, rooms

	async def _on_typing_start(self, conn: ClientConnection, payload: ConversationPayload) -> None:
		if not await self._manager.rooms.is_present(payload.conversation_id, conn.user_id):
			raise EventPolicyError("not_present", "join the conversation before typing")
		await self._manager.set_typing(conn.user_id, payload.conversation_id, True)
		try:
			await self._cache.set(cache_keys.typing_key(payload.conversation_id, conn.user_id), "1", self._typing_ttl)
		except (RedisError, OSError):
			logger.debug("Failed to cache typing hint", exc_info=True)

	async def _on_typing_stop(self, conn: ClientConnection, payload: ConversationPayload) -> None:
		if not await self._manager.rooms.is_present(payload.conversation_id, conn.user_id):
			raise EventPolicyError("not_present", "join the conversation before typing")
		await self._manager.set_typing(conn.user_id, payload.conversation_id, False)
		try:
			await self._cache.delete(cache_keys.typing_key(payload.conversation_id, conn.user_id))
		except (RedisError, OSError):
			logger.debug("Failed to clear typing hint", exc_info=True)

	async def _on_join(self, conn: ClientConnection, payload: ConversationPayload) -> None:
		conversation = await policy.ensure_conversation_access(self._store, payload.conversation_id, conn.user_id)
		await self._manager.join_conversation(conn.user_id, conversation.id)
		history = await self._store.recent_messages(conversation.id, self._history_window)
		await conn.send(
			Frame.build(
				EventType.CONVERSATION_HISTORY,
				{"conversation_id": conversation.id, "messages": [message.to_dict() for message in history]},
			)
		)

	async def _on_leave(self, conn: ClientConnection, payload: ConversationPayload) -> None:
		await self._manager.leave_conversation(conn.user_id, payload.conversation_id)

	async def _on_user_status(self, conn: ClientConnection, payload: UserStatusPayload) -> None:
		await self._cache.set(
			cache_keys.user_status_key(conn.user_id),
			payload.status,
			cache_keys.USER_STATUS_TTL_SECONDS,
		)
		await self._manager.fan_out_to_all(
			Frame.build(
				EventType.USER_STATUS_UPDATE,
				{"user_id": conn.user_id, "status": payload.status, "timestamp": utcnow()},
				sender_id=conn.user_id,
			)
		)

	async def _on_ping(self, conn: ClientConnection, payload: Any) -> None:
		conn.touch_heartbeat()
		await conn.send(Frame.build(EventType.PONG, {"timestamp": utcnow()}))
