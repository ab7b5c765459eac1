"""Shared fixtures: settings bound to a temporary directory and a fresh SQLite store."""

import pytest
import pytest_asyncio

from chatagent.persistence import SessionStore

from tests.fakes import make_settings


@pytest.fixture
def settings(tmp_path):
    """Settings with test-friendly timeouts and a store under tmp_path."""
    return make_settings(tmp_path)


@pytest_asyncio.fixture
async def store(tmp_path):
    """Initialized SessionStore backed by a temporary SQLite file."""
    store = SessionStore(tmp_path / "agent.db")
    await store.init()
    return store
