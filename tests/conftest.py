"""
Pytest configuration and shared fixtures.

Environment defaults are set before any relay import so the module-level
settings and engine pick them up. Provider calls never leave the process:
every app under test talks to a FakeProvider through httpx.MockTransport.
"""

import os

import pytest

# Default to an in-memory SQLite database for tests unless specified otherwise
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from relay.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from relay import models  # noqa: F401
from relay.config import settings
from relay.main import create_app
from relay.notifier import channel_for
from relay.storage import Base, engine

from factories import GRAPH_BASE, FakeProvider, seed_tenant


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db():
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def test_settings(tmp_path):
    return settings.model_copy(
        update={
            "APP_SECRET": None,
            "WHATSAPP_API_BASE": GRAPH_BASE,
            "MEDIA_ROOT": str(tmp_path / "media"),
            "MEDIA_BASE_URL": "/media",
        }
    )


@pytest.fixture
def app(test_settings, provider):
    return create_app(config=test_settings, transport=provider.transport)


@pytest.fixture
def client(db, app):
    """Create test client with fresh database for each test."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def tenant(db):
    """A tenant with one contact and no type restriction."""
    return seed_tenant()


@pytest.fixture
def events(client, app, tenant):
    """Subscription to the seeded contact's channel, opened on the app's loop."""
    pubsub = app.state.services.pubsub
    return client.portal.call(pubsub.subscribe, channel_for(tenant.contact_id))
