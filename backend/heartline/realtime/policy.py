"""Policy helpers for realtime chat events."""

from __future__ import annotations

from typing import Iterable, Optional

from heartline.domain.chat.models import Conversation, Message
from heartline.domain.chat.repo import MessageStore


class EventPolicyError(RuntimeError):
	"""Raised by event handlers; converted to an inline ``error`` frame."""

	def __init__(self, code: str, message: Optional[str] = None, *, errors: Iterable[str] = ()) -> None:
		super().__init__(message or code)
		self.code = code
		self.detail = message or code
		self.errors = list(errors)


async def ensure_conversation_access(store: MessageStore, conversation_id: str, user_id: str) -> Conversation:
	conversation = await store.get_conversation(conversation_id)
	if conversation is None:
		raise EventPolicyError("not_found", "conversation not found")
	if not conversation.has_participant(user_id):
		raise EventPolicyError("forbidden", "no access to conversation")
	return conversation


async def ensure_message_access(store: MessageStore, message_id: str, user_id: str) -> Message:
	message = await store.get_message(message_id)
	if message is None:
		raise EventPolicyError("not_found", "message not found")
	await ensure_conversation_access(store, message.conversation_id, user_id)
	return message


def ensure_sender(message: Message, user_id: str) -> None:
	if message.sender_id != user_id:
		raise EventPolicyError("forbidden", "only the sender can delete a message")
