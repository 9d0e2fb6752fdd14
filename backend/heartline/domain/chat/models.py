"""Domain models for chat persistence."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

DEFAULT_DELETE_WINDOW = timedelta(hours=24)


class MessageType(str, Enum):
	TEXT = "text"
	IMAGE = "image"
	PHOTO_EPHEMERAL = "photo_ephemeral"
	LOCATION = "location"
	SYSTEM = "system"
	GIFT = "gift"


def _load_metadata(value: Any) -> dict[str, Any]:
	if value is None:
		return {}
	if isinstance(value, str):
		return json.loads(value) if value else {}
	return dict(value)


@dataclass(slots=True)
class Message:
	id: str
	conversation_id: str
	sender_id: str
	content: str
	message_type: str
	created_at: datetime
	updated_at: datetime
	is_read: bool = False
	is_deleted: bool = False
	metadata: dict[str, Any] = field(default_factory=dict)
	client_message_id: Optional[str] = None

	def can_be_deleted(self, now: Optional[datetime] = None, *, window: timedelta = DEFAULT_DELETE_WINDOW) -> bool:
		if self.is_deleted:
			return False
		now = now or datetime.now(timezone.utc)
		return now - self.created_at < window

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"conversation_id": self.conversation_id,
			"sender_id": self.sender_id,
			"content": self.content,
			"message_type": self.message_type,
			"is_read": self.is_read,
			"is_deleted": self.is_deleted,
			"metadata": dict(self.metadata),
			"client_message_id": self.client_message_id,
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
		}

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Message":
		return cls(
			id=str(record["id"]),
			conversation_id=str(record["conversation_id"]),
			sender_id=str(record["sender_id"]),
			content=record["content"] or "",
			message_type=str(record["message_type"]),
			created_at=record["created_at"],
			updated_at=record["updated_at"],
			is_read=bool(record["is_read"]),
			is_deleted=bool(record["is_deleted"]),
			metadata=_load_metadata(record.get("metadata")),
			client_message_id=record.get("client_message_id"),
		)


@dataclass(slots=True)
class Conversation:
	"""A 1:1 thread bound to a prior match."""

	id: str
	match_id: str
	user_a: str
	user_b: str
	created_at: datetime
	updated_at: datetime

	def participants(self) -> Tuple[str, str]:
		return (self.user_a, self.user_b)

	def has_participant(self, user_id: str) -> bool:
		return user_id in (self.user_a, self.user_b)

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"match_id": self.match_id,
			"participants": list(self.participants()),
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
		}

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Conversation":
		return cls(
			id=str(record["id"]),
			match_id=str(record["match_id"]),
			user_a=str(record["user1_id"]),
			user_b=str(record["user2_id"]),
			created_at=record["created_at"],
			updated_at=record["updated_at"],
		)
