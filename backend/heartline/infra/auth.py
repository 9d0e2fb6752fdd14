"""Authentication for the realtime upgrade.

A connection may present its session in three ways, checked in order:
``session_id`` query parameter, ``X-Session-Id`` header, or an access JWT
(``Authorization: Bearer`` header or ``token`` query parameter) carrying a
``sid`` claim. The session must resolve in the SessionStore.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from jwt import InvalidTokenError
from starlette.requests import HTTPConnection

from heartline.domain.sessions.store import SessionStore
from heartline.infra import jwt as jwt_helper

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	session_id: str
	client_addr: Optional[str] = None
	user_agent: Optional[str] = None


class AuthenticationError(RuntimeError):
	def __init__(self, code: str) -> None:
		super().__init__(code)
		self.code = code


def _bearer_token(conn: HTTPConnection) -> Optional[str]:
	authorization = conn.headers.get("authorization")
	if authorization and authorization.lower().startswith("bearer "):
		return authorization.split(" ", 1)[1].strip() or None
	return conn.query_params.get("token") or None


class AuthContext:
	def __init__(self, sessions: SessionStore) -> None:
		self._sessions = sessions

	def resolve_session_id(self, conn: HTTPConnection) -> tuple[Optional[str], Optional[str]]:
		"""Return ``(session_id, token_subject)`` from the connection."""
		session_id = conn.query_params.get("session_id") or conn.headers.get("x-session-id")
		if session_id:
			return session_id.strip(), None
		token = _bearer_token(conn)
		if not token:
			return None, None
		try:
			claims = jwt_helper.decode_access(token)
		except InvalidTokenError as exc:
			raise AuthenticationError("invalid_token") from exc
		return claims.session_id, claims.user_id

	async def authenticate(self, conn: HTTPConnection) -> AuthenticatedUser:
		session_id, subject = self.resolve_session_id(conn)
		if not session_id:
			raise AuthenticationError("missing_session")
		session = await self._sessions.get_session(session_id)
		if session is None:
			raise AuthenticationError("invalid_session")
		if subject is not None and subject != session.user_id:
			logger.warning("Token subject does not own session %s", session_id)
			raise AuthenticationError("session_mismatch")
		await self._sessions.update_activity(session_id)
		client = conn.client
		return AuthenticatedUser(
			id=session.user_id,
			session_id=session.id,
			client_addr=client.host if client else None,
			user_agent=conn.headers.get("user-agent"),
		)
