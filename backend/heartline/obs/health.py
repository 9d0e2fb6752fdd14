"""Liveness and readiness probes for a realtime instance.

Redis carries sessions, presence and the cross-instance bus, so an instance
without it is not ready. Postgres only backs the chat store, which falls back
to memory; its absence reports ``degraded`` without failing the probe.
"""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Dict, Optional, Tuple

from heartline.infra import postgres
from heartline.infra.redis import redis_client
from heartline.obs import metrics

LOGGER = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> float:
	return round((perf_counter() - start) * 1000, 2)


async def _redis_status(timeout: float = 0.2) -> Dict[str, Any]:
	start = perf_counter()
	try:
		await asyncio.wait_for(redis_client.ping(), timeout=timeout)
	except Exception as exc:  # pragma: no cover - depends on runtime
		metrics.mark_redis(False)
		LOGGER.warning("Redis readiness check failed", exc_info=True)
		return {"ok": False, "error": type(exc).__name__}
	metrics.mark_redis(True)
	return {"ok": True, "latency_ms": _elapsed_ms(start)}


async def _postgres_status(timeout: float = 0.3) -> Dict[str, Any]:
	pool = postgres.current_pool()
	if pool is None:
		metrics.mark_postgres(False)
		return {"ok": False, "error": "not_configured"}
	start = perf_counter()
	try:
		async with pool.acquire() as conn:
			await asyncio.wait_for(conn.execute("SELECT 1"), timeout=timeout)
	except Exception as exc:  # pragma: no cover - depends on runtime
		metrics.mark_postgres(False)
		LOGGER.warning("Postgres readiness query failed", exc_info=True)
		return {"ok": False, "error": type(exc).__name__}
	metrics.mark_postgres(True)
	return {"ok": True, "latency_ms": _elapsed_ms(start)}


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness(realtime: Optional[Dict[str, Any]] = None) -> Tuple[int, Dict[str, Any]]:
	redis_state = await _redis_status()
	postgres_state = await _postgres_status()
	if not redis_state["ok"]:
		status_code, label = 503, "unavailable"
	elif not postgres_state["ok"]:
		status_code, label = 200, "degraded"
	else:
		status_code, label = 200, "ok"
	payload: Dict[str, Any] = {"status": label, "redis": redis_state, "postgres": postgres_state}
	if realtime is not None:
		payload["realtime"] = realtime
	return status_code, payload
