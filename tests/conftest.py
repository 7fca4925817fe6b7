"""Shared test fixtures."""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from llamagate.config import Settings
from llamagate.database import SQLiteDatabase, utcnow
from llamagate.main import Gateway, create_app

OLLAMA_URL = "http://ollama.test:11434"
ADMIN_PASSWORD = "test-admin-pass-123"


class FakeClock:
    """Controllable wall clock for rate limit windows."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingTransport:
    """httpx.MockTransport wrapper that remembers every request it served."""

    def __init__(self, responder: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.requests: List[httpx.Request] = []
        self.responder = responder or (lambda request: httpx.Response(200, json={}))
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport)


class ChunkStream(httpx.AsyncByteStream):
    """Backend body that yields chunks and optionally dies part way."""

    def __init__(self, chunks, fail_after: bool = False):
        self.chunks = chunks
        self.fail_after = fail_after
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.fail_after:
            raise httpx.ReadError("connection reset by peer")

    async def aclose(self) -> None:
        self.closed = True


def ollama_reply(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"model": "llama3", "response": "Hello!", "done": True},
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        port=8000,
        ollama_url=OLLAMA_URL,
        database_path=str(tmp_path / "test.db"),
        database_url=None,
        admin_password=ADMIN_PASSWORD,
        log_level="WARNING",
    )


@pytest_asyncio.fixture
async def database(settings) -> AsyncGenerator[SQLiteDatabase, None]:
    db = SQLiteDatabase(settings.database_path)
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> RecordingTransport:
    return RecordingTransport(ollama_reply)


@pytest.fixture
def webhooks() -> RecordingTransport:
    return RecordingTransport(lambda request: httpx.Response(204))


@pytest_asyncio.fixture
async def gateway(settings, database, clock, backend, webhooks) -> AsyncGenerator[Gateway, None]:
    backend_client = backend.client()
    webhook_client = webhooks.client()
    gw = Gateway(
        settings,
        database,
        http_client=backend_client,
        webhook_client=webhook_client,
        clock=clock,
    )
    await gw.start()
    yield gw
    await gw.stop()
    await backend_client.aclose()
    await webhook_client.aclose()


@pytest_asyncio.fixture
async def client(gateway) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient talking to the app in-process."""
    async with AsyncClient(
        transport=ASGITransport(app=create_app(gateway)), base_url="http://test"
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def api_key(database) -> str:
    """A fresh active key with the default rate limit."""
    record = await database.create_api_key("test-key-0123456789abcdef", 10)
    return record.key
