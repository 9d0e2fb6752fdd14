import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from heartline.infra.pubsub import InMemoryPubSub
from heartline.main import app, build_realtime
from heartline.settings import settings


@pytest_asyncio.fixture
async def realtime():
	manager = build_realtime(app, pubsub=InMemoryPubSub())
	try:
		yield manager
	finally:
		await manager.shutdown()


@pytest.mark.asyncio
async def test_stats_reports_local_connections(api_client, realtime, connect_to):
	await connect_to(realtime, "alice", "phone")
	await connect_to(realtime, "alice", "laptop")

	response = await api_client.get("/api/v1/ws/stats")

	assert response.status_code == 200
	body = response.json()
	assert body["total_connections"] == 2
	assert body["unique_users"] == 1
	assert body["user_connections"] == {"alice": 2}
	assert body["instance_id"] == realtime.instance_id


@pytest.mark.asyncio
async def test_online_users_follow_connections(api_client, realtime, connect_to):
	conn, _ = await connect_to(realtime, "bob")
	response = await api_client.get("/api/v1/presence/online")
	assert response.json() == {"users": ["bob"], "count": 1}

	await realtime.remove_connection(conn.id)
	response = await api_client.get("/api/v1/presence/online")
	assert response.json() == {"users": [], "count": 0}


@pytest.mark.asyncio
async def test_redis_outage_maps_to_service_unavailable(api_client, realtime, monkeypatch):
	async def _down():
		raise RedisConnectionError("connection refused")

	monkeypatch.setattr(app.state.sessions, "get_online_users", _down)

	response = await api_client.get("/api/v1/presence/online")

	assert response.status_code == 503
	assert response.json()["detail"] == "redis_unavailable"
	assert "request_id" in response.json()


@pytest.mark.asyncio
async def test_health_probes(api_client, realtime):
	live = await api_client.get("/health/live")
	assert live.json() == {"status": "ok"}

	ready = await api_client.get("/health/ready")
	assert ready.status_code == 200
	body = ready.json()
	assert body["status"] == "degraded"
	assert body["redis"]["ok"] is True
	assert body["postgres"] == {"ok": False, "error": "not_configured"}
	assert body["realtime"] == {"instance_id": realtime.instance_id, "connections": 0}


@pytest.mark.asyncio
async def test_readiness_counts_local_connections(api_client, realtime, connect_to):
	await connect_to(realtime, "alice")

	body = (await api_client.get("/health/ready")).json()

	assert body["realtime"]["connections"] == 1


@pytest.mark.asyncio
async def test_connection_listing_requires_admin(api_client, realtime, monkeypatch):
	monkeypatch.setattr(settings, "obs_admin_token", "ops-secret")

	response = await api_client.get("/ops/realtime/connections")

	assert response.status_code == 403


@pytest.mark.asyncio
async def test_connection_listing_filters_by_user(api_client, realtime, connect_to, monkeypatch):
	monkeypatch.setattr(settings, "obs_admin_token", "ops-secret")
	alice, _ = await connect_to(realtime, "alice")
	await connect_to(realtime, "bob")
	headers = {"X-Admin-Token": "ops-secret"}

	everyone = (await api_client.get("/ops/realtime/connections", headers=headers)).json()
	assert everyone["instance_id"] == realtime.instance_id
	assert everyone["count"] == 2
	assert {entry["user_id"] for entry in everyone["connections"]} == {"alice", "bob"}

	only_alice = (await api_client.get("/ops/realtime/connections", params={"user_id": "alice"}, headers=headers)).json()
	assert only_alice["count"] == 1
	assert only_alice["connections"][0]["id"] == alice.id


@pytest.mark.asyncio
async def test_metrics_require_admin_token(api_client, monkeypatch):
	monkeypatch.setattr(settings, "obs_metrics_public", False)
	monkeypatch.setattr(settings, "obs_admin_token", "ops-secret")

	denied = await api_client.get("/metrics")
	assert denied.status_code == 403
	assert denied.json()["detail"] == "forbidden"

	allowed = await api_client.get("/metrics", headers={"Authorization": "Bearer ops-secret"})
	assert allowed.status_code == 200
	assert "heartline_redis_up" in allowed.text
	assert "heartline_build_info{" in allowed.text


@pytest.mark.asyncio
async def test_metrics_can_be_public(api_client, monkeypatch):
	monkeypatch.setattr(settings, "obs_metrics_public", True)
	response = await api_client.get("/metrics")
	assert response.status_code == 200


@pytest.mark.parametrize(
	"url, reason",
	[
		("/api/v1/ws", "missing_session"),
		("/api/v1/ws?token=not-a-jwt", "invalid_token"),
	],
)
def test_websocket_refuses_unauthenticated_upgrade(url, reason):
	build_realtime(app, pubsub=InMemoryPubSub())
	client = TestClient(app)
	with pytest.raises(WebSocketDisconnect) as excinfo:
		with client.websocket_connect(url):
			pass
	assert excinfo.value.code == 4401
	assert excinfo.value.reason == reason
