"""Realtime websocket upgrade and presence endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, WebSocket
from redis.exceptions import RedisError

from heartline.domain.sessions.store import SessionStore
from heartline.infra.auth import AuthContext, AuthenticationError
from heartline.realtime.events import EventHandler
from heartline.realtime.manager import ConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["realtime"])

UNAUTHENTICATED_CLOSE_CODE = 4401
UNAVAILABLE_CLOSE_CODE = 1011


def get_manager(request: Request) -> ConnectionManager:
	return request.app.state.realtime_manager


def get_sessions(request: Request) -> SessionStore:
	return request.app.state.sessions


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket) -> None:
	state = websocket.app.state
	auth: AuthContext = state.auth
	manager: ConnectionManager = state.realtime_manager
	events: EventHandler = state.realtime_events
	try:
		user = await auth.authenticate(websocket)
	except AuthenticationError as exc:
		logger.info("Realtime upgrade refused: %s", exc.code)
		await websocket.close(code=UNAUTHENTICATED_CLOSE_CODE, reason=exc.code)
		return
	except RedisError:
		logger.exception("Session lookup failed during upgrade")
		await websocket.close(code=UNAVAILABLE_CLOSE_CODE, reason="session_backend_unavailable")
		return
	await websocket.accept()
	connection_id = await manager.accept(
		websocket,
		user.id,
		user.session_id,
		client_addr=user.client_addr,
		user_agent=user.user_agent,
	)
	await manager.serve(connection_id, events.handle)


@router.get("/ws/stats")
async def realtime_stats(manager: ConnectionManager = Depends(get_manager)) -> dict:
	return await manager.stats()


@router.get("/presence/online")
async def online_users(sessions: SessionStore = Depends(get_sessions)) -> dict:
	users = await sessions.get_online_users()
	return {"users": users, "count": len(users)}
