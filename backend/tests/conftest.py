"""Stable shared fixtures for tests.

Design goal: avoid async fixture loop injection and keep test boundaries explicit.
"""
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# Must be set before importing app modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["APP_AUTH_BEARER_TOKENS"] = "test_token"
os.environ["APP_TIMEZONE"] = "America/Argentina/Buenos_Aires"
os.environ["APP_PUBLIC_URL"] = "https://gtd.example"
os.environ["LLM_API_KEY"] = "test_key"
os.environ["LLM_MODEL_CLASSIFY"] = "test-model"
os.environ["GATEWAY_API_URL"] = "https://relay.example"
os.environ["GATEWAY_INSTANCE_NAME"] = "gtd"
os.environ["GATEWAY_API_KEY"] = "test_gateway_key"
os.environ["STT_API_BASE_URL"] = "https://stt.example/v1"

from api.main import app, get_db


@pytest.fixture
def mock_redis():
    r = AsyncMock()
    r.rpush = AsyncMock(return_value=1)
    r.incr = AsyncMock(return_value=1)
    r.expire = AsyncMock(return_value=True)
    r.ttl = AsyncMock(return_value=30)
    r.set = AsyncMock(return_value=True)
    r.delete = AsyncMock(return_value=1)
    r.ping = AsyncMock(return_value=True)
    return r


@pytest.fixture
def mock_send():
    with patch("api.main.send_message", new_callable=AsyncMock) as m:
        m.return_value = {"ok": True}
        yield m


@pytest.fixture
def mock_send_list():
    with patch("api.main.send_list_message", new_callable=AsyncMock) as m:
        m.return_value = {"ok": True, "interactive": True}
        yield m


@pytest.fixture
def mock_classify():
    with patch("api.main.adapter") as m:
        m.classify_intent = AsyncMock()
        yield m


@pytest.fixture
def mock_db():
    db = AsyncMock()
    result = MagicMock()
    result.rowcount = 1
    result.scalar_one_or_none.return_value = None
    db.execute = AsyncMock(return_value=result)
    db.commit = AsyncMock(return_value=None)
    db.add = MagicMock()
    return db


@pytest.fixture
def app_no_db(mock_redis, mock_send, mock_send_list, mock_classify, mock_db):
    async def _stub_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = _stub_get_db
    with patch("api.main.redis_client", mock_redis):
        yield app
    app.dependency_overrides.clear()
