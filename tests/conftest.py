"""Shared pytest fixtures.

Key goals:
- Prevent the global settings singleton from leaking state across tests.
- Provide mock and in-memory Redis clients for session store tests.
"""

from __future__ import annotations

import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakeredis import FakeServer, aioredis

import redis_session.config as config_module


@pytest.fixture(autouse=True)
def _reset_global_settings() -> None:
    """Ensure the global settings instance does not leak between tests."""
    config_module._settings = None
    yield
    config_module._settings = None


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep REDIS_SESSION_* variables and stray .env files out of tests."""
    for name in list(os.environ):
        if name.upper().startswith("REDIS_SESSION_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


def make_mock_client(modules: list[str] | None = None) -> MagicMock:
    """Create a mock redis.asyncio client.

    ``json()`` returns a shared mock exposing async ``get``/``set``.
    """
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.initialize = AsyncMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.expire = AsyncMock(return_value=True)
    client.ttl = AsyncMock(return_value=-2)
    client.delete = AsyncMock(return_value=0)
    client.execute_command = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    client.info = AsyncMock(
        return_value={"modules": [{"name": name, "ver": 1} for name in modules or []]}
    )

    json_commands = MagicMock()
    json_commands.get = AsyncMock(return_value=None)
    json_commands.set = AsyncMock(return_value=True)
    client.json.return_value = json_commands
    return client


@pytest.fixture
def mock_client() -> MagicMock:
    """Mock client with no server modules loaded."""
    return make_mock_client()


@pytest.fixture
async def fake_redis() -> aioredis.FakeRedis:
    """In-memory Redis with an isolated server per test."""
    client = aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    # INFO modules is not emulated; report a server without modules
    client.info = AsyncMock(return_value={"redis_version": "7.2.0"})
    yield client
    await client.aclose()


@pytest.fixture
def client_factory():
    """Factory building mock clients advertising the given server modules."""
    return make_mock_client
