import asyncio
import json
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis
from starlette.websockets import WebSocketDisconnect

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from heartline.domain.chat.repo import ChatRepository
from heartline.domain.chat.validation import MessageValidator
from heartline.domain.sessions.store import SessionStore
from heartline.infra import postgres
from heartline.infra.cache import CacheStore
from heartline.infra.pubsub import InMemoryPubSub
from heartline.main import app
from heartline.realtime.events import EventHandler
from heartline.realtime.manager import ConnectionManager


class FakeClock:
	def __init__(self, start: float = 1_000.0) -> None:
		self.now = start

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds


class FakeTransport:
	"""Records outbound frames; inbound text is fed through ``feed``."""

	def __init__(self) -> None:
		self.sent: list[dict] = []
		self.closed = False
		self.close_code = None
		self._inbox: asyncio.Queue = asyncio.Queue()

	async def send_text(self, data: str) -> None:
		if self.closed:
			raise RuntimeError("transport closed")
		self.sent.append(json.loads(data))

	async def receive_text(self) -> str:
		item = await self._inbox.get()
		if item is None:
			raise WebSocketDisconnect(code=1000)
		return item

	async def close(self, code: int = 1000, reason=None) -> None:
		self.closed = True
		self.close_code = code
		self._inbox.put_nowait(None)

	def feed(self, frame) -> None:
		self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

	def frames(self, kind: str) -> list[dict]:
		return [frame for frame in self.sent if frame["type"] == kind]


async def wait_for_frames(transport: FakeTransport, kind: str, count: int = 1, timeout: float = 2.0) -> list[dict]:
	async def _poll() -> list[dict]:
		while len(transport.frames(kind)) < count:
			await asyncio.sleep(0.01)
		return transport.frames(kind)

	return await asyncio.wait_for(_poll(), timeout=timeout)


async def connect(manager: ConnectionManager, user_id: str, session_id: str = "s1"):
	transport = FakeTransport()
	connection_id = await manager.accept(transport, user_id, session_id)
	return await manager.get_connection(connection_id), transport


async def send(events: EventHandler, conn, kind: str, data=None) -> None:
	await events.handle(conn, json.dumps({"type": kind, "data": data}))


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from heartline.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)
	postgres.set_pool(None)


@pytest.fixture
def clock():
	return FakeClock()


@pytest.fixture
def bus():
	return InMemoryPubSub()


@pytest.fixture
def sessions():
	return SessionStore()


@pytest.fixture
def cache():
	return CacheStore()


@pytest.fixture
def store():
	return ChatRepository()


@pytest_asyncio.fixture
async def manager(sessions, bus, clock):
	instance = ConnectionManager(sessions, bus, instance_id="instance-a", clock=clock)
	try:
		yield instance
	finally:
		await instance.shutdown()


@pytest.fixture
def events(manager, store, cache):
	return EventHandler(manager, store, cache, MessageValidator(cache))


@pytest_asyncio.fixture
async def conversation(store):
	return await store.create_conversation("match-1", "alice", "bob")


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


@pytest.fixture
def connect_to():
	return connect


@pytest.fixture
def send_event():
	return send


@pytest.fixture
def wait_frames():
	return wait_for_frames


@pytest.fixture
def transport_factory():
	return FakeTransport
