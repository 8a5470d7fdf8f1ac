import asyncio

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from relaychat.config import get_settings
from relaychat.database.connection import mongo_db_dependency
from relaychat.main import app, ensure_indexes
from relaychat.repositories.user_repository import UserRepository
from relaychat.services.delivery import DeliveryBus
from relaychat.utils import realtime_bus
from relaychat.utils.dependencies import build_services
from relaychat.utils.realtime_bus import LocalBus
from relaychat.utils.security import create_access_token


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(monkeypatch):
    """Settings read from a test environment."""
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("ADMIN_TOKEN", "test-admin-token")
    monkeypatch.setenv("RESERVED_GROUP_NAMES", "Channel,Announcements")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def db(settings):
    """In-memory database with the production indexes."""
    database = AsyncMongoMockClient()["relaychat_test"]
    asyncio.run(ensure_indexes(database))
    return database


@pytest.fixture
def bus(monkeypatch):
    local = LocalBus()
    monkeypatch.setattr(realtime_bus, "_bus", local)
    return local


@pytest.fixture
def users(db):
    """Four registered users keyed by first name."""
    repo = UserRepository(db)

    async def create():
        return {
            name: await repo.create_user(f"{name}@example.com", f"{name.title()} Tester")
            for name in ("alice", "bob", "carol", "dave")
        }

    return asyncio.run(create())


@pytest.fixture
def services(db, bus, settings):
    """(ConversationService, ChatService) wired to the in-memory db and bus."""
    return build_services(db, DeliveryBus(bus), settings)


@pytest.fixture
def client(db, bus):
    """Test client whose database dependency points at the in-memory db."""
    app.dependency_overrides[mongo_db_dependency] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth(settings):
    """Build bearer headers for a user id."""

    def headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return headers
