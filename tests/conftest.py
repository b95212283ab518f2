"""Root pytest configuration for all tests."""

from __future__ import annotations

import pytest

from docwatch.clock import ManualClock
from docwatch.config import reset_config
from docwatch.store import MemoryStore

from tests.utils import (
    FakeSource,
    RecordingNotifySink,
    RecordingTaskSink,
    RecordingWebhookSink,
)

# Configure pytest-asyncio to use auto mode
# This is redundant with pyproject.toml but ensures it's set
pytest_plugins = ("pytest_asyncio",)

# 2023-11-14 22:13:20 UTC
START_MS = 1_700_000_000_000


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start_ms=START_MS)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def notify_sink() -> RecordingNotifySink:
    return RecordingNotifySink()


@pytest.fixture
def webhook_sink() -> RecordingWebhookSink:
    return RecordingWebhookSink()


@pytest.fixture
def task_sink() -> RecordingTaskSink:
    return RecordingTaskSink()


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch):
    """Keep host config and DOCWATCH_* variables out of every test."""
    for var in ("DOCWATCH_LOG", "DOCWATCH_USER", "DOCWATCH_DATA_DIR", "DOCWATCH_SOURCE_URL"):
        monkeypatch.delenv(var, raising=False)
    reset_config()
    yield
    reset_config()
