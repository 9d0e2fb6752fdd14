"""Message content validation, sanitisation and abuse checks."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from heartline.domain.chat.models import MessageType
from heartline.infra import rate_limit
from heartline.infra.cache import CacheStore, spam_score_key
from heartline.obs import metrics as obs_metrics
from heartline.settings import settings

logger = logging.getLogger(__name__)

# (min, max) characters after sanitisation
_LENGTH_LIMITS: dict[str, tuple[int, int]] = {
	MessageType.TEXT.value: (1, 2000),
	MessageType.IMAGE.value: (0, 500),
	MessageType.PHOTO_EPHEMERAL.value: (0, 500),
	MessageType.LOCATION.value: (1, 200),
	MessageType.GIFT.value: (0, 500),
}

_FORBIDDEN_PATTERNS = (
	re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),  # card numbers
	re.compile(r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b"),  # SSN
)
_REPETITION_RE = re.compile(r"(.)\1{5,}")
_SPAM_RE = re.compile(r"click here|buy now|limited time|act fast|free money|guaranteed", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")

_CAPS_MIN_LENGTH = 10
_CAPS_RATIO = 0.7


@dataclass(slots=True)
class ValidationResult:
	is_valid: bool = True
	errors: list[str] = field(default_factory=list)
	warnings: list[str] = field(default_factory=list)
	sanitized: str = ""
	metadata: dict[str, Any] = field(default_factory=dict)
	rate_limited: bool = False

	def reject(self, reason: str, message: str) -> None:
		self.is_valid = False
		self.errors.append(message)
		obs_metrics.inc_chat_reject(reason)


def sanitize(content: str) -> tuple[str, list[str]]:
	cleaned = _TAG_RE.sub("", content)
	cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
	warnings = ["content was sanitized"] if cleaned != content else []
	return cleaned, warnings


def has_excessive_caps(content: str) -> bool:
	if len(content) < _CAPS_MIN_LENGTH:
		return False
	caps = sum(1 for char in content if "A" <= char <= "Z")
	return caps / len(content) > _CAPS_RATIO


def _length_error(message_type: str, length: int) -> Optional[str]:
	lower, upper = _LENGTH_LIMITS[message_type]
	if length < lower:
		return "message cannot be empty"
	if length > upper:
		label = "message" if message_type == MessageType.TEXT.value else f"{message_type.replace('_', ' ')} content"
		return f"{label} too long (max {upper} characters)"
	return None


class MessageValidator:
	"""Rule-based validator applied to every client-sent message.

	System messages are server-generated and never accepted from clients.
	"""

	def __init__(
		self,
		cache: CacheStore,
		*,
		rate_limit_per_minute: Optional[int] = None,
		spam_score_threshold: Optional[float] = None,
	) -> None:
		self._cache = cache
		self._rate_limit = rate_limit_per_minute if rate_limit_per_minute is not None else settings.chat_rate_limit_per_minute
		self._spam_threshold = spam_score_threshold if spam_score_threshold is not None else settings.chat_spam_score_threshold

	async def validate(self, sender_id: str, content: str, message_type: str) -> ValidationResult:
		result = ValidationResult()
		sanitized, warnings = sanitize(content)
		result.sanitized = sanitized
		result.warnings.extend(warnings)

		if message_type not in _LENGTH_LIMITS:
			result.reject("unsupported_type", f"unsupported message type: {message_type}")
		else:
			error = _length_error(message_type, len(sanitized))
			if error:
				result.reject("length", error)

		if any(pattern.search(sanitized) for pattern in _FORBIDDEN_PATTERNS):
			result.reject("forbidden_content", "message contains forbidden content")
		if _REPETITION_RE.search(sanitized):
			result.reject("repetition", "message contains excessive repetition")
		if has_excessive_caps(sanitized):
			result.reject("caps", "message contains excessive capitalization")

		if await self._is_spam(sender_id, sanitized):
			result.reject("spam", "message detected as spam")

		decision = await rate_limit.hit("message", sender_id, limit=self._rate_limit, window_seconds=60)
		if not decision.allowed:
			result.rate_limited = True
			result.reject("rate_limited", "rate limit exceeded")

		result.metadata = {
			"char_count": len(sanitized),
			"word_count": len(sanitized.split()),
			"message_type": message_type,
		}
		if result.rate_limited:
			result.metadata["retry_after_seconds"] = decision.retry_after
		if not result.is_valid:
			logger.info("Message rejected", extra={"sender_id": sender_id, "errors": result.errors})
		return result

	async def _is_spam(self, sender_id: str, content: str) -> bool:
		if _SPAM_RE.search(content):
			return True
		score = await self._cache.get_float(spam_score_key(sender_id), default=0.0)
		return score > self._spam_threshold
