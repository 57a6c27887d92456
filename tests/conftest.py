"""Pytest fixtures for MCP Warden tests."""

import pytest

from mcp_warden.config import Settings, get_settings
from mcp_warden.reputation import ReputationLedger
from mcp_warden.sandbox import SandboxManager, SandboxMiddleware
from mcp_warden.security import InjectionDetector
from mcp_warden.storage import MemoryRecordStore


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Clear the settings cache so tests never see a developer's .env values."""
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def test_settings():
    """Settings for testing, independent of the environment."""
    return Settings(
        _env_file=None,
        environment="test",
        log_level="DEBUG",
        store_backend="memory",
        store_timeout_seconds=0.5,
    )


@pytest.fixture
def detector():
    """Detector with the default catalog and config."""
    return InjectionDetector()


@pytest.fixture
def ledger():
    """Reputation ledger without a backing store."""
    return ReputationLedger()


@pytest.fixture
def server_store():
    return MemoryRecordStore(namespace="sandbox")


@pytest.fixture
def violation_store():
    return MemoryRecordStore(namespace="violations")


@pytest.fixture
def manager(server_store, violation_store):
    """Sandbox manager with the default policies and in-memory stores."""
    return SandboxManager(server_store=server_store, violation_store=violation_store)


@pytest.fixture
def sandbox(manager):
    """Enforcement middleware over the ``manager`` fixture."""
    return SandboxMiddleware(manager)
