"""Pydantic schemas for inbound realtime payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from heartline.domain.chat.models import MessageType


class _Payload(BaseModel):
	model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class MessageNewPayload(_Payload):
	conversation_id: str = Field(..., min_length=1, max_length=64)
	content: str = Field(default="", max_length=8000)
	message_type: MessageType = MessageType.TEXT
	client_message_id: Optional[str] = Field(default=None, max_length=64)


class MessageRefPayload(_Payload):
	message_id: str = Field(..., min_length=1, max_length=64)


class EphemeralPhotoNewPayload(_Payload):
	conversation_id: str = Field(..., min_length=1, max_length=64)
	photo_id: str = Field(..., min_length=1, max_length=64)
	access_key: str = Field(..., min_length=1, max_length=256)
	thumbnail_url: Optional[str] = Field(default=None, max_length=2048)
	expires_at: datetime
	message: Optional[str] = Field(default=None, max_length=500)


class EphemeralPhotoViewedPayload(_Payload):
	photo_id: str = Field(..., min_length=1, max_length=64)


class EphemeralPhotoExpiredPayload(_Payload):
	photo_id: str = Field(..., min_length=1, max_length=64)
	owner_id: Optional[str] = Field(default=None, max_length=64)


class ConversationPayload(_Payload):
	conversation_id: str = Field(..., min_length=1, max_length=64)


class UserStatusPayload(_Payload):
	status: str = Field(..., min_length=1, max_length=32)
