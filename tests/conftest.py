import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app
from app.services.security import get_current_user
from app.services.whatsapp_service import registry


@pytest.fixture
def db_session():
    """Mock database session. MagicMock so begin_nested() works as a context manager."""
    session = MagicMock()
    session.info = {}
    return session


@pytest.fixture
def user():
    return SimpleNamespace(
        id=uuid.uuid4(),
        email="owner@example.com",
        full_name="Shop Owner",
        phone="+971500000000",
        company_name="Example Shop",
        role="user",
        password_hash="",
    )


@pytest.fixture(autouse=True)
def _clean_registry():
    registry.clear()
    yield
    registry.clear()


@pytest.fixture
def emit():
    """Capture websocket fan-out instead of sending."""
    with patch("app.services.socket_manager.manager.emit", new_callable=AsyncMock) as mocked:
        mocked.return_value = 0
        yield mocked


@pytest.fixture
def client(db_session, user):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_current_user] = lambda: user
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def gateway():
    fake = Mock()
    fake.ensure_instance = AsyncMock(return_value={})
    fake.connect_instance = AsyncMock(return_value={})
    fake.get_connection_state = AsyncMock(return_value="connecting")
    fake.logout_instance = AsyncMock(return_value={})
    fake.send_text = AsyncMock(return_value={"key": {"id": "MSG1"}})
    with patch("app.services.whatsapp_service.get_gateway", return_value=fake):
        yield fake
