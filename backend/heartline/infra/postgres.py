"""AsyncPG pool for the chat store.

The realtime fabric runs without Postgres (the chat repository falls back to
memory), so an unconfigured pool is a normal state rather than an error at
import time.
"""

from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from heartline.settings import settings

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.pool.Pool] = None


class PoolUnavailable(RuntimeError):
	"""Raised by ``get_pool`` when no pool has been configured."""


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
			command_timeout=settings.postgres_command_timeout_seconds,
		)
		logger.info("Postgres pool ready (max %d)", settings.postgres_max_pool_size)
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


def current_pool() -> Optional[asyncpg.pool.Pool]:
	return _pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	if _pool is None:
		raise PoolUnavailable("postgres pool is not configured")
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		pool, _pool = _pool, None
		await pool.close()
