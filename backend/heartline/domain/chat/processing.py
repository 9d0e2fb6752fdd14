"""Post-validation processing applied to outgoing chat messages."""

from __future__ import annotations

import re
from typing import Iterable

from heartline.domain.chat.models import Message, MessageType
from heartline.settings import settings

_URL_RE = re.compile(r"https?://[^\s]+", re.IGNORECASE)


def extract_links(content: str) -> list[str]:
	return _URL_RE.findall(content)


def mask_profanity(content: str, words: Iterable[str]) -> tuple[str, bool]:
	masked = content
	for word in words:
		if not word:
			continue
		pattern = re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)
		masked = pattern.sub(lambda match: "*" * len(match.group(0)), masked)
	return masked, masked != content


def process_message(message: Message, *, profanity_words: Iterable[str] | None = None) -> Message:
	"""Mask configured profanity and record outbound links in the message metadata."""
	words = settings.chat_profanity_words if profanity_words is None else profanity_words
	content, filtered = mask_profanity(message.content, words)
	if filtered:
		message.content = content
		message.metadata["filtered"] = True
	if message.message_type == MessageType.TEXT.value:
		links = extract_links(message.content)
		if links:
			message.metadata["links"] = links
	return message
