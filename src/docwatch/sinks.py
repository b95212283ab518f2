"""Outbound side effects: notifications, webhooks, tasks, aggregation.

Sinks are the only places rule actions and the poller talk to the outside
world. Every sink call is awaited, so a slow endpoint only ever delays the
coroutine that made the call.

The HTTP sinks accept an ``httpx.AsyncClient`` for connection reuse and
testing; without one they open a short-lived client per call.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

import httpx

from docwatch.clock import Clock, SystemClock
from docwatch.logging import get_logger
from docwatch.models import ChangeEvent

log = get_logger("sinks")


@runtime_checkable
class NotifySink(Protocol):
    async def notify(self, target: str, message: str) -> str | None:
        """Deliver ``message`` to ``target``; return a message id if known."""
        ...


@runtime_checkable
class WebhookSink(Protocol):
    async def post(self, url: str, payload: dict[str, Any]) -> int:
        """POST ``payload`` as JSON; return the HTTP status."""
        ...


@runtime_checkable
class TaskSink(Protocol):
    async def create_task(
        self, title: str, description: str, target: str | None = None
    ) -> str | None:
        """Create a task; return its id if known."""
        ...


class LoggingNotifySink:
    """Notify sink that only writes to the log. Used when no endpoint is set."""

    async def notify(self, target: str, message: str) -> str | None:
        message_id = uuid.uuid4().hex
        log.info("Notify %s [%s]: %s", target, message_id, message)
        return message_id


class LoggingTaskSink:
    """Task sink that only writes to the log."""

    async def create_task(
        self, title: str, description: str, target: str | None = None
    ) -> str | None:
        task_id = uuid.uuid4().hex
        log.info("Task %s for %s: %s (%s)", task_id, target or "-", title, description)
        return task_id


class _HttpSink:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        token: str | None = None,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                yield client

    async def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        async with self._session() as client:
            return await client.post(url, json=payload, headers=self._headers)


class HttpNotifySink(_HttpSink):
    """POSTs ``{"target", "message"}`` to a notification endpoint.

    The endpoint may answer with ``{"message_id": ...}``.
    """

    def __init__(self, url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._url = url

    async def notify(self, target: str, message: str) -> str | None:
        response = await self._post(self._url, {"target": target, "message": message})
        response.raise_for_status()
        return _response_field(response, "message_id")


class HttpWebhookSink(_HttpSink):
    """POSTs the change payload to arbitrary rule-supplied URLs."""

    async def post(self, url: str, payload: dict[str, Any]) -> int:
        response = await self._post(url, payload)
        if response.is_error:
            raise RuntimeError(f"Webhook returned {response.status_code}")
        return response.status_code


class HttpTaskSink(_HttpSink):
    """POSTs ``{"title", "description", "target"}`` to a task endpoint."""

    def __init__(self, url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._url = url

    async def create_task(
        self, title: str, description: str, target: str | None = None
    ) -> str | None:
        response = await self._post(
            self._url, {"title": title, "description": description, "target": target}
        )
        response.raise_for_status()
        return _response_field(response, "task_id")


def _response_field(response: httpx.Response, key: str) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    value = data.get(key) if isinstance(data, dict) else None
    return str(value) if value is not None else None


@dataclass
class AggregatedChange:
    rule_name: str
    doc_token: str
    change_type: str
    modified_by: str
    detected_at: datetime


@dataclass
class _Bucket:
    changes: list[AggregatedChange] = field(default_factory=list)
    opened_at: datetime | None = None


class AggregationBuffer:
    """Collects changes per target and sends one summary per target on flush.

    Example:
        buffer = AggregationBuffer(notify_sink)
        buffer.add("chat-1", event, rule_name="Hourly summary")
        await buffer.flush()  # one message to chat-1
    """

    def __init__(self, notify_sink: NotifySink, clock: Clock | None = None) -> None:
        self._sink = notify_sink
        self._clock = clock or SystemClock()
        self._buckets: dict[str, _Bucket] = {}

    def add(self, target: str, event: ChangeEvent, rule_name: str = "") -> int:
        """Buffer ``event`` for ``target``; return the target's pending count."""
        bucket = self._buckets.setdefault(target, _Bucket(opened_at=self._clock.now()))
        bucket.changes.append(
            AggregatedChange(
                rule_name=rule_name,
                doc_token=event.doc_token,
                change_type=str(event.change_type),
                modified_by=event.new_modified_user,
                detected_at=event.change_detected_at,
            )
        )
        return len(bucket.changes)

    def pending(self, target: str | None = None) -> int:
        if target is not None:
            bucket = self._buckets.get(target)
            return len(bucket.changes) if bucket else 0
        return sum(len(b.changes) for b in self._buckets.values())

    def targets(self) -> list[str]:
        return list(self._buckets)

    @staticmethod
    def format_summary(changes: list[AggregatedChange]) -> str:
        docs: dict[str, list[AggregatedChange]] = {}
        for change in changes:
            docs.setdefault(change.doc_token, []).append(change)

        lines = [f"{len(changes)} document change(s) since last summary:"]
        for doc_token, doc_changes in docs.items():
            editors = sorted({c.modified_by for c in doc_changes})
            lines.append(f"- {doc_token}: {len(doc_changes)} change(s) by {', '.join(editors)}")
        return "\n".join(lines)

    async def flush(self, min_age_ms: int | None = None) -> dict[str, str | None]:
        """Send and clear pending buckets.

        Each bucket is detached before its send, so changes added while the
        send is in flight start a new bucket. A bucket whose send fails is
        put back ahead of any newer changes for the next flush.

        Args:
            min_age_ms: Only flush buckets opened at least this long ago.
                None flushes everything.

        Returns:
            Message id per target that was sent.
        """
        now = self._clock.now()
        sent: dict[str, str | None] = {}
        for target in list(self._buckets):
            bucket = self._buckets.get(target)
            if bucket is None:
                continue
            if (
                min_age_ms is not None
                and bucket.opened_at is not None
                and now - bucket.opened_at < timedelta(milliseconds=min_age_ms)
            ):
                continue
            del self._buckets[target]
            if not bucket.changes:
                continue
            try:
                sent[target] = await self._sink.notify(target, self.format_summary(bucket.changes))
            except Exception as e:
                log.warning("Aggregated summary to %s failed: %s", target, e)
                self._requeue(target, bucket)
        return sent

    def _requeue(self, target: str, bucket: _Bucket) -> None:
        newer = self._buckets.get(target)
        if newer is not None:
            bucket.changes.extend(newer.changes)
        self._buckets[target] = bucket
