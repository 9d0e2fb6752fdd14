"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from heartline.api import ops, realtime
from heartline.api.errors import install_error_handlers
from heartline.domain.chat.repo import ChatRepository
from heartline.domain.chat.validation import MessageValidator
from heartline.domain.sessions.store import SessionStore
from heartline.infra import postgres
from heartline.infra.auth import AuthContext
from heartline.infra.cache import CacheStore
from heartline.infra.pubsub import InMemoryPubSub, PubSub, RedisPubSub
from heartline.infra.redis import close_redis
from heartline.obs import init as obs_init
from heartline.realtime import janitor
from heartline.realtime.events import EventHandler
from heartline.realtime.manager import ConnectionManager
from heartline.settings import settings

logger = logging.getLogger(__name__)


def build_realtime(app: FastAPI, *, pubsub: Optional[PubSub] = None) -> ConnectionManager:
	"""Wire the realtime fabric and expose its parts on ``app.state``."""
	sessions = SessionStore()
	cache = CacheStore()
	store = ChatRepository()
	if pubsub is None:
		pubsub = RedisPubSub() if settings.pubsub_enabled else InMemoryPubSub()
	manager = ConnectionManager(sessions, pubsub)
	app.state.sessions = sessions
	app.state.auth = AuthContext(sessions)
	app.state.realtime_manager = manager
	app.state.realtime_events = EventHandler(manager, store, cache, MessageValidator(cache))
	return manager


@asynccontextmanager
async def lifespan(app: FastAPI):
	try:
		await postgres.init_pool()
	except Exception:
		logger.warning("Postgres unavailable at startup; chat store falls back to memory", exc_info=True)
	manager = build_realtime(app)
	tasks = janitor.spawn_janitors(manager, app.state.sessions)
	logger.info("Realtime instance %s started", manager.instance_id)
	try:
		yield
	finally:
		await janitor.shutdown(tasks)
		await manager.shutdown()
		await postgres.close_pool()
		await close_redis()


app = FastAPI(title="Heartline Realtime", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)
obs_init(app)

app.include_router(ops.router)
app.include_router(realtime.router)
