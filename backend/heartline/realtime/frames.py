"""Wire frames exchanged over realtime connections."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Optional


class EventType(str, Enum):
	MESSAGE_NEW = "message:new"
	MESSAGE_READ = "message:read"
	MESSAGE_DELETE = "message:delete"
	EPHEMERAL_PHOTO_NEW = "ephemeral_photo:new"
	EPHEMERAL_PHOTO_VIEWED = "ephemeral_photo:viewed"
	EPHEMERAL_PHOTO_EXPIRED = "ephemeral_photo:expired"
	TYPING_START = "typing:start"
	TYPING_STOP = "typing:stop"
	CONVERSATION_JOIN = "conversation:join"
	CONVERSATION_LEAVE = "conversation:leave"
	USER_STATUS = "user:status"
	PING = "ping"
	# outbound only
	MESSAGE_VIEWED = "message:viewed"
	MESSAGE_DELETED = "message:deleted"
	CONVERSATION_HISTORY = "conversation:history"
	CONVERSATION_UNREAD = "conversation:unread"
	TYPING_INDICATOR = "typing:indicator"
	USER_STATUS_UPDATE = "user:status_update"
	PONG = "pong"
	ERROR = "error"

	@classmethod
	def parse(cls, value: object) -> Optional["EventType"]:
		try:
			return cls(value)
		except ValueError:
			return None


INBOUND_EVENTS = frozenset(
	{
		EventType.MESSAGE_NEW,
		EventType.MESSAGE_READ,
		EventType.MESSAGE_DELETE,
		EventType.EPHEMERAL_PHOTO_NEW,
		EventType.EPHEMERAL_PHOTO_VIEWED,
		EventType.EPHEMERAL_PHOTO_EXPIRED,
		EventType.TYPING_START,
		EventType.TYPING_STOP,
		EventType.CONVERSATION_JOIN,
		EventType.CONVERSATION_LEAVE,
		EventType.USER_STATUS,
		EventType.PING,
	}
)


class FrameError(ValueError):
	"""Raised when raw text cannot be decoded into a frame."""


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
	if value.tzinfo is None:
		value = value.replace(tzinfo=timezone.utc)
	return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
	text = value.strip()
	if text.endswith(("Z", "z")):
		text = f"{text[:-1]}+00:00"
	parsed = datetime.fromisoformat(text)
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed


def json_default(value: Any) -> Any:
	if isinstance(value, datetime):
		return format_timestamp(value)
	if isinstance(value, (set, frozenset, tuple)):
		return list(value)
	to_dict = getattr(value, "to_dict", None)
	if callable(to_dict):
		return to_dict()
	raise TypeError(f"unserialisable value of type {type(value).__name__}")


@dataclass(slots=True)
class Frame:
	"""A single realtime frame.

	``type`` stays a plain string so unknown kinds survive decoding and can be
	answered with an ``unknown_type`` error instead of a decode failure.
	"""

	type: str
	data: Any = None
	timestamp: datetime = field(default_factory=utcnow)
	channel: Optional[str] = None
	sender_id: Optional[str] = None

	@classmethod
	def build(cls, event: EventType, data: Any = None, *, sender_id: Optional[str] = None) -> "Frame":
		return cls(type=event.value, data=data, sender_id=sender_id)

	@property
	def event(self) -> Optional[EventType]:
		return EventType.parse(self.type)

	def to_dict(self) -> dict[str, Any]:
		payload: dict[str, Any] = {
			"type": self.type,
			"data": self.data,
			"timestamp": format_timestamp(self.timestamp),
		}
		if self.channel is not None:
			payload["channel"] = self.channel
		if self.sender_id is not None:
			payload["sender_id"] = self.sender_id
		return payload

	def encode(self) -> str:
		return json.dumps(self.to_dict(), separators=(",", ":"), default=json_default)

	@classmethod
	def from_dict(cls, raw: Mapping[str, Any]) -> "Frame":
		kind = raw.get("type")
		if not isinstance(kind, str) or not kind:
			raise FrameError("frame type is required")
		timestamp_raw = raw.get("timestamp")
		if timestamp_raw is None:
			timestamp = utcnow()
		elif isinstance(timestamp_raw, str):
			try:
				timestamp = parse_timestamp(timestamp_raw)
			except ValueError as exc:
				raise FrameError("timestamp must be RFC3339") from exc
		else:
			raise FrameError("timestamp must be RFC3339")
		channel = raw.get("channel")
		sender_id = raw.get("sender_id")
		if channel is not None and not isinstance(channel, str):
			raise FrameError("channel must be a string")
		if sender_id is not None and not isinstance(sender_id, str):
			raise FrameError("sender_id must be a string")
		return cls(
			type=kind,
			data=raw.get("data"),
			timestamp=timestamp,
			channel=channel,
			sender_id=sender_id,
		)

	@classmethod
	def decode(cls, text: str | bytes) -> "Frame":
		try:
			raw = json.loads(text)
		except (TypeError, ValueError) as exc:
			raise FrameError("frame is not valid JSON") from exc
		if not isinstance(raw, dict):
			raise FrameError("frame must be a JSON object")
		return cls.from_dict(raw)


def error_frame(code: str, message: str, errors: Iterable[str] = ()) -> Frame:
	return Frame.build(
		EventType.ERROR,
		{"code": code, "message": message, "errors": list(errors)},
	)
