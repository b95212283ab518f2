"""Shared test utilities and fakes for docwatch tests."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from docwatch.errors import TransientFetchError
from docwatch.models import ChangeEvent, ChangeType, DocMetadata
from docwatch.store import MemoryStore


def make_metadata(
    doc_token: str = "doc1",
    user: str = "U1",
    time_ms: int = 1000,
    doc_type: str = "docx",
    title: str = "Quarterly plan",
) -> DocMetadata:
    """Build DocMetadata with test defaults."""
    return DocMetadata(
        doc_token=doc_token,
        last_modified_user=user,
        last_modified_time=time_ms,
        doc_type=doc_type,
        title=title,
    )


def make_event(
    doc_token: str = "doc1",
    user: str = "U2",
    change_type: ChangeType = ChangeType.USER_CHANGED,
    detected_at: datetime | None = None,
    **metadata: Any,
) -> ChangeEvent:
    """Build a ChangeEvent with test defaults.

    Extra keyword arguments end up in ``event.metadata``.
    """
    return ChangeEvent(
        id=uuid.uuid4().hex,
        doc_token=doc_token,
        previous_modified_user="U1",
        previous_modified_time=1000,
        new_modified_user=user,
        new_modified_time=2000,
        change_type=change_type,
        change_detected_at=detected_at or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        metadata=dict(metadata),
    )


class FakeSource:
    """Scriptable DocumentSource.

    ``metadata[token]`` is returned as is (None means permanently
    unavailable). Exceptions queued in ``failures[token]`` are raised one
    per call before the metadata is returned.
    """

    def __init__(self) -> None:
        self.metadata: dict[str, DocMetadata | None] = {}
        self.content: dict[str, Any] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.metadata_calls: list[str] = []
        self.content_calls: list[str] = []

    def set(self, doc_token: str, user: str, time_ms: int, content: Any = None) -> None:
        self.metadata[doc_token] = make_metadata(doc_token, user, time_ms)
        if content is not None:
            self.content[doc_token] = content

    def fail(self, doc_token: str, times: int = 1) -> None:
        self.failures.setdefault(doc_token, []).extend(
            TransientFetchError(f"HTTP 503 for {doc_token}") for _ in range(times)
        )

    async def fetch_metadata(self, doc_token: str, doc_type: str) -> DocMetadata | None:
        self.metadata_calls.append(doc_token)
        pending = self.failures.get(doc_token)
        if pending:
            raise pending.pop(0)
        return self.metadata.get(doc_token)

    async def fetch_content(self, doc_token: str, doc_type: str) -> Any:
        self.content_calls.append(doc_token)
        return self.content.get(doc_token)


class RecordingNotifySink:
    """NotifySink that records messages; set ``error`` to make it fail."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []
        self.error: Exception | None = None

    async def notify(self, target: str, message: str) -> str | None:
        if self.error is not None:
            raise self.error
        self.messages.append((target, message))
        return f"msg-{len(self.messages)}"


class RecordingWebhookSink:
    def __init__(self, status: int = 200) -> None:
        self.posts: list[tuple[str, dict[str, Any]]] = []
        self.status = status
        self.error: Exception | None = None

    async def post(self, url: str, payload: dict[str, Any]) -> int:
        if self.error is not None:
            raise self.error
        self.posts.append((url, payload))
        return self.status


class RecordingTaskSink:
    def __init__(self) -> None:
        self.tasks: list[tuple[str, str, str | None]] = []

    async def create_task(
        self, title: str, description: str, target: str | None = None
    ) -> str | None:
        self.tasks.append((title, description, target))
        return f"task-{len(self.tasks)}"


class FailingWritesStore(MemoryStore):
    """MemoryStore whose writes raise OSError while ``fail_writes`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    def atomic_update(self, table, modifier):
        if self.fail_writes:
            raise OSError("disk full")
        return super().atomic_update(table, modifier)


async def no_sleep(seconds: float) -> None:
    """Drop-in for asyncio.sleep that returns immediately."""
    return None
