"""
conftest.py - pytest fixtures for chat_sync tests.
"""

import os
import tempfile
import pytest

from chat_sync import ChatStore
from chat_sync.relay.hub import RelayHub


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test databases."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def store(temp_dir):
    """Create an initialized ChatStore in a temp directory."""
    store = ChatStore(os.path.join(temp_dir, "device.db"))
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def registered_store(store):
    """A store with the watermark row in place, as after registration."""
    store.init_last_seq_num()
    return store


@pytest.fixture
def hub():
    """A fresh in-memory relay."""
    return RelayHub(server_id="relay-test")
