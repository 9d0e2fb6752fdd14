"""Session records kept in redis."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional


def _parse_dt(value: Any) -> datetime:
	if isinstance(value, datetime):
		return value
	parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed


@dataclass(slots=True)
class DeviceInfo:
	device_id: Optional[str] = None
	device_type: Optional[str] = None
	os: Optional[str] = None
	browser: Optional[str] = None
	location: Optional[str] = None

	@classmethod
	def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "DeviceInfo":
		if not raw:
			return cls()
		return cls(
			device_id=raw.get("device_id"),
			device_type=raw.get("device_type"),
			os=raw.get("os"),
			browser=raw.get("browser"),
			location=raw.get("location"),
		)


@dataclass(slots=True)
class Session:
	id: str
	user_id: str
	token: str
	refresh_token: str
	created_at: datetime
	last_activity: datetime
	expires_at: datetime
	ip_address: Optional[str] = None
	user_agent: Optional[str] = None
	device: DeviceInfo = field(default_factory=DeviceInfo)

	def is_expired(self, now: Optional[datetime] = None) -> bool:
		now = now or datetime.now(timezone.utc)
		return now >= self.expires_at

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"user_id": self.user_id,
			"token": self.token,
			"refresh_token": self.refresh_token,
			"created_at": self.created_at.isoformat(),
			"last_activity": self.last_activity.isoformat(),
			"expires_at": self.expires_at.isoformat(),
			"ip_address": self.ip_address,
			"user_agent": self.user_agent,
			"device": asdict(self.device),
		}

	def to_public_dict(self) -> dict[str, Any]:
		payload = self.to_dict()
		payload.pop("token")
		payload.pop("refresh_token")
		return payload

	@classmethod
	def from_dict(cls, raw: Mapping[str, Any]) -> "Session":
		return cls(
			id=str(raw["id"]),
			user_id=str(raw["user_id"]),
			token=str(raw.get("token") or ""),
			refresh_token=str(raw.get("refresh_token") or ""),
			created_at=_parse_dt(raw["created_at"]),
			last_activity=_parse_dt(raw["last_activity"]),
			expires_at=_parse_dt(raw["expires_at"]),
			ip_address=raw.get("ip_address"),
			user_agent=raw.get("user_agent"),
			device=DeviceInfo.from_dict(raw.get("device")),
		)
