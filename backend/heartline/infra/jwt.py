"""Access tokens for the realtime upgrade.

HS256 tokens signed with ``settings.secret_key``. The realtime fabric only
needs two claims: ``sub`` (the user) and ``sid`` (the session the socket
attaches to).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from jwt import InvalidTokenError

from heartline.settings import settings

ISSUER = "heartline-api"
AUDIENCE = "heartline-realtime"
ALGORITHM = "HS256"
LEEWAY_SECONDS = 5


@dataclass(frozen=True, slots=True)
class AccessClaims:
	user_id: str
	session_id: str
	expires_at: int


def encode_access(
	user_id: str,
	session_id: Optional[str],
	*,
	ttl_seconds: int = 3600,
	extra: Optional[Dict[str, Any]] = None,
) -> str:
	now = int(time.time())
	body: Dict[str, Any] = {"iss": ISSUER, "aud": AUDIENCE, "iat": now, "exp": now + ttl_seconds, "sub": user_id}
	if session_id is not None:
		body["sid"] = session_id
	body.update(extra or {})
	return jwt.encode(body, settings.secret_key, algorithm=ALGORITHM)


def decode_access(token: str) -> AccessClaims:
	"""Validate signature, issuer, audience and expiry, then pull the realtime claims.

	Raises ``jwt.InvalidTokenError`` subclasses on failure.
	"""
	payload = jwt.decode(
		token,
		settings.secret_key,
		algorithms=[ALGORITHM],
		audience=AUDIENCE,
		issuer=ISSUER,
		leeway=LEEWAY_SECONDS,
		options={"require": ["exp", "iat", "iss", "aud"]},
	)
	for claim in ("sub", "sid"):
		if not payload.get(claim):
			raise InvalidTokenError(f"missing_claim:{claim}")
	return AccessClaims(user_id=str(payload["sub"]), session_id=str(payload["sid"]), expires_at=int(payload["exp"]))
