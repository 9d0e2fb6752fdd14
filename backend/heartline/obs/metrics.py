"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Info


REQUEST_COUNTER = Counter(
	"heartline_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"heartline_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

WS_CONNECTIONS = Gauge(
	"heartline_ws_connections",
	"Active realtime connections on this instance",
)

WS_EVENTS = Counter(
	"heartline_ws_events_total",
	"Inbound realtime frames handled",
	["event"],
)

WS_ERRORS = Counter(
	"heartline_ws_error_frames_total",
	"Error frames returned to senders",
	["code"],
)

WS_WRITE_FAILURES = Counter(
	"heartline_ws_write_failures_total",
	"Outbound frame writes that failed or exceeded the deadline",
)

WS_BRIDGE_FRAMES = Counter(
	"heartline_ws_bridge_frames_total",
	"Frames relayed from the pub/sub bus onto connections",
	["kind"],
)

CHAT_ROOMS = Gauge(
	"heartline_chat_rooms",
	"Chat rooms tracked on this instance",
)

JANITOR_REMOVALS = Counter(
	"heartline_janitor_removals_total",
	"Entries removed by periodic janitors",
	["kind"],
)

PRESENCE_TRANSITIONS = Counter(
	"heartline_presence_transitions_total",
	"Cluster presence transitions",
	["state"],
)

CHAT_MESSAGES = Counter(
	"heartline_chat_messages_total",
	"Chat messages persisted",
	["message_type"],
)

CHAT_REJECTS = Counter(
	"heartline_chat_rejects_total",
	"Chat messages rejected by validation",
	["reason"],
)

REDIS_UP = Gauge("heartline_redis_up", "Redis connectivity (1=up)")
POSTGRES_UP = Gauge("heartline_postgres_up", "Postgres connectivity (1=up)")
BUILD_INFO = Info("heartline_build", "Service name and commit of the running instance")


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected() -> None:
	WS_CONNECTIONS.inc()


def socket_disconnected() -> None:
	WS_CONNECTIONS.dec()


def socket_event(event: str) -> None:
	WS_EVENTS.labels(event=event).inc()


def socket_error(code: str) -> None:
	WS_ERRORS.labels(code=code).inc()


def inc_write_failure() -> None:
	WS_WRITE_FAILURES.inc()


def inc_bridge_frame(kind: str) -> None:
	WS_BRIDGE_FRAMES.labels(kind=kind).inc()


def set_chat_rooms(count: int) -> None:
	CHAT_ROOMS.set(count)


def inc_janitor_removal(kind: str, count: int = 1) -> None:
	if count > 0:
		JANITOR_REMOVALS.labels(kind=kind).inc(count)


def inc_presence(state: str) -> None:
	PRESENCE_TRANSITIONS.labels(state=state).inc()


def inc_chat_message(message_type: str) -> None:
	CHAT_MESSAGES.labels(message_type=message_type).inc()


def inc_chat_reject(reason: str) -> None:
	CHAT_REJECTS.labels(reason=reason).inc()


def mark_redis(ok: bool) -> None:
	REDIS_UP.set(1 if ok else 0)


def mark_postgres(ok: bool) -> None:
	POSTGRES_UP.set(1 if ok else 0)


def set_build_info(service: str, commit: str) -> None:
	BUILD_INFO.info({"service": service, "commit": commit})
