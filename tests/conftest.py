"""Shared fixtures."""

import logging

import pytest

from landform.providers.null import NullProvider
from landform.providers.registry import ProviderRegistry
from landform.state.local import LocalLockTable, LocalSnapshotStorage
from landform.state.models import StateSnapshot
from landform.state.store import StateStore

from helpers import FakeProvider


@pytest.fixture(autouse=True)
def reset_logging():
    """CLI tests install handlers bound to captured streams; drop them afterwards."""
    yield
    logging.getLogger().handlers.clear()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def registry(provider):
    return ProviderRegistry([provider, NullProvider()])


@pytest.fixture
def snapshot():
    return StateSnapshot(state_id="test")


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def store(state_dir):
    return StateStore(
        LocalLockTable(str(state_dir)),
        LocalSnapshotStorage(str(state_dir)),
        lock_ttl=60,
        poll_interval=0.01,
        recovery_dir=state_dir.parent / "recovery",
    )
