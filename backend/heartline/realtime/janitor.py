"""Periodic cleanup loops started by the application lifespan."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from heartline.domain.sessions.store import SessionStore
from heartline.realtime.manager import ConnectionManager
from heartline.settings import settings

logger = logging.getLogger(__name__)


async def sweep_once(manager: ConnectionManager) -> dict[str, int]:
	"""Run every realtime janitor once and report how much each removed."""
	return {
		"connections": await manager.cleanup_inactive_connections(),
		"typing": await manager.cleanup_expired_typing(),
		"rooms": await manager.cleanup_inactive_chat_rooms(),
		"presence": await manager.refresh_presence(),
	}


async def run_realtime_janitor(manager: ConnectionManager, interval_s: Optional[float] = None) -> None:
	interval = max(0.01, float(interval_s or settings.realtime_janitor_interval_seconds))
	while True:
		await asyncio.sleep(interval)
		try:
			removed = await sweep_once(manager)
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("realtime janitor iteration failed")
			continue
		if any(removed.values()):
			logger.debug("realtime janitor removed %s", removed)


async def run_session_cleanup(sessions: SessionStore, interval_s: Optional[float] = None) -> None:
	interval = max(0.01, float(interval_s or settings.session_cleanup_interval_seconds))
	while True:
		await asyncio.sleep(interval)
		try:
			await sessions.cleanup_expired()
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("session cleanup iteration failed")


def spawn_janitors(manager: ConnectionManager, sessions: SessionStore) -> list[asyncio.Task]:
	return [
		asyncio.create_task(run_realtime_janitor(manager), name="realtime-janitor"),
		asyncio.create_task(run_session_cleanup(sessions), name="session-cleanup"),
	]


async def shutdown(tasks: list[asyncio.Task]) -> None:
	for task in tasks:
		task.cancel()
	await asyncio.gather(*tasks, return_exceptions=True)
