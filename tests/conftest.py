"""
Shared pytest fixtures for the GreenPath test suite.

Storage is always in-memory and the routing backend is faked with
``httpx.MockTransport``, so nothing here touches the disk or the network
unless a test asks for ``tmp_path`` explicitly.
"""

import json

import httpx
import pytest

from greenpath.services.backend import BackendClient
from greenpath.services.preference_store import PreferenceStore
from greenpath.services.storage import MemoryStorage


class RecordingStorage(MemoryStorage):
    """MemoryStorage that remembers every write and delete."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.writes = []
        self.removals = []

    def set_item(self, key, value):
        self.writes.append((key, value))
        super().set_item(key, value)

    def remove_item(self, key):
        self.removals.append(key)
        super().remove_item(key)


@pytest.fixture
def storage():
    return RecordingStorage()


@pytest.fixture
def store(storage):
    return PreferenceStore(storage)


@pytest.fixture
def stored(storage, store):
    """Return the persisted record as a dict, or None if nothing is stored."""
    def read():
        raw = storage.get_item(store.key)
        return json.loads(raw) if raw is not None else None
    return read


@pytest.fixture
def sse_body():
    """Build a server-sent event body from frame dicts or raw strings."""
    def build(*frames):
        chunks = []
        for frame in frames:
            data = frame if isinstance(frame, str) else json.dumps(frame)
            chunks.append(f"data: {data}\n\n")
        return "".join(chunks)
    return build


@pytest.fixture
def make_backend():
    def build(handler):
        return BackendClient("http://backend.test", timeout=5, transport=httpx.MockTransport(handler))
    return build
