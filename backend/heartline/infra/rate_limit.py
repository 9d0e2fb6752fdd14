"""Redis-backed fixed-window rate limiting."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Optional

from heartline.infra.redis import redis_client


@dataclass(slots=True)
class RateLimitDecision:
	allowed: bool
	count: int
	limit: int
	retry_after: int


def window_key(kind: str, actor_id: str, slot: int) -> str:
	return f"rl:{kind}:{actor_id}:{slot}"


async def hit(
	kind: str,
	actor_id: str,
	*,
	limit: int,
	window_seconds: int = 60,
	now: Optional[float] = None,
) -> RateLimitDecision:
	"""Count one operation in the current window and report whether it fits the budget."""
	window = max(1, int(window_seconds))
	now = time.time() if now is None else now
	slot = int(math.floor(now / window))
	retry_after = max(1, int((slot + 1) * window - now))
	if limit <= 0:
		return RateLimitDecision(allowed=False, count=0, limit=limit, retry_after=retry_after)
	key = window_key(kind, actor_id, slot)
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.incr(key)
		pipe.expire(key, window)
		count, _ = await pipe.execute()
	count = int(count)
	return RateLimitDecision(allowed=count <= limit, count=count, limit=limit, retry_after=retry_after)


async def allow(kind: str, actor_id: str, *, limit: int, window_seconds: int = 60, now: Optional[float] = None) -> bool:
	decision = await hit(kind, actor_id, limit=limit, window_seconds=window_seconds, now=now)
	return decision.allowed
