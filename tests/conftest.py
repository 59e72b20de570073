"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry

# Settings are cached on first use; point them at test values before any import reads them
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("API_SECRET_KEY", "test-secret-key")

from visitqueue.api.auth import create_access_token  # noqa: E402
from visitqueue.api.main import create_app  # noqa: E402
from visitqueue.config import Settings  # noqa: E402
from visitqueue.constants import Role  # noqa: E402
from visitqueue.db.memory import InMemoryQueueStore  # noqa: E402
from visitqueue.engine import AuditLog, NotificationFanOut, QueueController  # noqa: E402
from visitqueue.observability.metrics import MetricsCollector  # noqa: E402
from visitqueue.types.events import WebSocketMessage  # noqa: E402
from visitqueue.types.queue import Server  # noqa: E402

# Test database URL for PostgreSQL-backed tests; those are skipped when unset
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

START_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock for the controller."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingPublisher:
    """Queue publisher that keeps every message it is given."""

    def __init__(self):
        self.server_messages: list[tuple[UUID, WebSocketMessage]] = []
        self.consumer_messages: list[tuple[str, WebSocketMessage]] = []
        self.fail = False

    async def broadcast_to_server(self, server_id: UUID, message: WebSocketMessage) -> int:
        if self.fail:
            raise ConnectionError("publisher unavailable")
        self.server_messages.append((server_id, message))
        return 0

    async def send_to_consumer(self, consumer_id: str, message: WebSocketMessage) -> int:
        if self.fail:
            raise ConnectionError("publisher unavailable")
        self.consumer_messages.append((consumer_id, message))
        return 0

    def of_type(self, message_type: str) -> list[WebSocketMessage]:
        messages = [m for _, m in self.server_messages] + [m for _, m in self.consumer_messages]
        return [m for m in messages if m.type == message_type]


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        store_backend="memory",
        store_lock_timeout_seconds=1.0,
        api_secret_key="test-secret-key",
        service_timezone="UTC",
        log_level="DEBUG",
        log_format="console",
    )


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=registry)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(test_settings: Settings) -> InMemoryQueueStore:
    return InMemoryQueueStore(lock_timeout_seconds=test_settings.store_lock_timeout_seconds)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def controller(
    store: InMemoryQueueStore,
    publisher: RecordingPublisher,
    clock: FakeClock,
    test_settings: Settings,
    metrics: MetricsCollector,
) -> QueueController:
    """Controller wired to the in-memory store and a recording publisher."""
    return QueueController(
        store,
        fanout=NotificationFanOut(store, publisher, metrics),
        audit=AuditLog(store, metrics),
        clock=clock,
        settings=test_settings,
        metrics=metrics,
    )


@pytest.fixture
def server(store: InMemoryQueueStore) -> Server:
    """An accepting server with the default 15 minute average."""
    return store.add_server("Dr. Mehta", department="General Medicine")


@pytest.fixture
def closed_server(store: InMemoryQueueStore) -> Server:
    return store.add_server("Dr. Iyer", department="Cardiology", is_accepting=False)


@pytest.fixture
def app(controller: QueueController) -> FastAPI:
    """Create a FastAPI app around the test controller."""
    return create_app(controller=controller)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def auth_headers_for(subject: str, role: Role = Role.CONSUMER) -> dict[str, str]:
    """Create authentication headers for a caller."""
    token = create_access_token(subject=subject, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def consumer_id() -> str:
    """Generate a test consumer ID."""
    return f"patient-{uuid4().hex[:8]}"


@pytest.fixture
def consumer_headers(consumer_id: str) -> dict[str, str]:
    return auth_headers_for(consumer_id, Role.CONSUMER)


@pytest.fixture
def operator_headers() -> dict[str, str]:
    return auth_headers_for(f"nurse-{uuid4().hex[:8]}", Role.OPERATOR)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return auth_headers_for(f"admin-{uuid4().hex[:8]}", Role.ADMIN)


@pytest.fixture
def headers_for():
    """Build authentication headers for an arbitrary subject and role."""
    return auth_headers_for
