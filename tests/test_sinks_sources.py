"""Tests for HTTP sinks, the document source and the aggregation buffer."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from docwatch.clock import ManualClock
from docwatch.errors import TransientFetchError
from docwatch.sinks import (
    AggregationBuffer,
    HttpNotifySink,
    HttpTaskSink,
    HttpWebhookSink,
    LoggingNotifySink,
    LoggingTaskSink,
)
from docwatch.sources import HttpDocumentSource

from tests.utils import RecordingNotifySink, make_event


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class GatedNotifySink(RecordingNotifySink):
    """Holds every notify call until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def notify(self, target: str, message: str) -> str | None:
        self.entered.set()
        await self.release.wait()
        return await super().notify(target, message)


class TestHttpDocumentSource:
    """Test metadata/content fetches against a mocked document API."""

    @pytest.mark.asyncio
    async def test_fetch_metadata(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"last_modified_user": "U1", "last_modified_time": 1000, "title": "Plan"},
            )

        async with client_for(handler) as client:
            source = HttpDocumentSource("https://docs.test/api/", client=client, token="secret")
            metadata = await source.fetch_metadata("doc1", "docx")

        assert metadata.doc_token == "doc1"
        assert metadata.doc_type == "docx"
        assert metadata.last_modified_user == "U1"
        assert metadata.last_modified_time == 1000
        assert str(seen[0].url) == "https://docs.test/api/documents/doc1/metadata?type=docx"
        assert seen[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [403, 404, 410])
    async def test_permanent_failures_return_none(self, status: int) -> None:
        async with client_for(lambda request: httpx.Response(status)) as client:
            source = HttpDocumentSource("https://docs.test", client=client)
            assert await source.fetch_metadata("doc1", "docx") is None
            assert await source.fetch_content("doc1", "docx") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_transient_statuses_raise(self, status: int) -> None:
        async with client_for(lambda request: httpx.Response(status)) as client:
            source = HttpDocumentSource("https://docs.test", client=client)
            with pytest.raises(TransientFetchError):
                await source.fetch_metadata("doc1", "docx")

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with client_for(handler) as client:
            source = HttpDocumentSource("https://docs.test", client=client)
            with pytest.raises(TransientFetchError):
                await source.fetch_metadata("doc1", "docx")

    @pytest.mark.asyncio
    async def test_fetch_content_text_and_json(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params["type"] == "sheet":
                return httpx.Response(200, json={"cells": [[1, 2]]})
            return httpx.Response(200, text="# Plan\n")

        async with client_for(handler) as client:
            source = HttpDocumentSource("https://docs.test", client=client)
            assert await source.fetch_content("doc1", "docx") == "# Plan\n"
            assert await source.fetch_content("doc1", "sheet") == {"cells": [[1, 2]]}


class TestHttpSinks:
    @pytest.mark.asyncio
    async def test_notify_posts_and_returns_id(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"message_id": "m-42"})

        async with client_for(handler) as client:
            sink = HttpNotifySink("https://chat.test/send", client=client)
            assert await sink.notify("C1", "hello") == "m-42"

        assert bodies == [{"target": "C1", "message": "hello"}]

    @pytest.mark.asyncio
    async def test_notify_error_raises(self) -> None:
        async with client_for(lambda request: httpx.Response(500)) as client:
            sink = HttpNotifySink("https://chat.test/send", client=client)
            with pytest.raises(httpx.HTTPStatusError):
                await sink.notify("C1", "hello")

    @pytest.mark.asyncio
    async def test_webhook_returns_status(self) -> None:
        async with client_for(lambda request: httpx.Response(202)) as client:
            sink = HttpWebhookSink(client=client)
            assert await sink.post("https://hooks.test/x", {"rule": "r"}) == 202

    @pytest.mark.asyncio
    async def test_webhook_error_status_raises(self) -> None:
        async with client_for(lambda request: httpx.Response(502)) as client:
            sink = HttpWebhookSink(client=client)
            with pytest.raises(RuntimeError, match="Webhook returned 502"):
                await sink.post("https://hooks.test/x", {"rule": "r"})

    @pytest.mark.asyncio
    async def test_task_sink(self) -> None:
        async with client_for(lambda request: httpx.Response(201, json={"task_id": 7})) as client:
            sink = HttpTaskSink("https://tasks.test/new", client=client)
            assert await sink.create_task("Review", "details", "C1") == "7"

    @pytest.mark.asyncio
    async def test_logging_sinks_return_ids(self) -> None:
        assert await LoggingNotifySink().notify("C1", "hello")
        assert await LoggingTaskSink().create_task("Review", "details")


class TestAggregationBuffer:
    @pytest.mark.asyncio
    async def test_one_summary_per_target(self, clock: ManualClock) -> None:
        sink = RecordingNotifySink()
        buffer = AggregationBuffer(sink, clock)
        assert buffer.add("C1", make_event(doc_token="doc1", user="U2"), "r") == 1
        assert buffer.add("C1", make_event(doc_token="doc1", user="U3"), "r") == 2
        buffer.add("C2", make_event(doc_token="doc2"), "r")

        sent = await buffer.flush()

        assert set(sent) == {"C1", "C2"}
        c1_message = dict(sink.messages)["C1"]
        assert "doc1: 2 change(s) by U2, U3" in c1_message
        assert buffer.pending() == 0

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_bucket(self, clock: ManualClock) -> None:
        sink = RecordingNotifySink()
        sink.error = ConnectionError("down")
        buffer = AggregationBuffer(sink, clock)
        buffer.add("C1", make_event(), "r")

        assert await buffer.flush() == {}
        assert buffer.pending("C1") == 1

        sink.error = None
        assert await buffer.flush() == {"C1": "msg-1"}

    @pytest.mark.asyncio
    async def test_change_added_during_send_is_kept(self, clock: ManualClock) -> None:
        """Test that a change arriving while a summary is in flight waits for the next flush."""
        sink = GatedNotifySink()
        buffer = AggregationBuffer(sink, clock)
        buffer.add("C1", make_event(user="U2"), "r")

        flush = asyncio.create_task(buffer.flush())
        await sink.entered.wait()
        buffer.add("C1", make_event(user="U3"), "r")
        sink.release.set()

        assert await flush == {"C1": "msg-1"}
        assert "by U2" in sink.messages[0][1]
        assert buffer.pending("C1") == 1

        await buffer.flush()
        assert "by U3" in sink.messages[1][1]
        assert buffer.pending() == 0

    @pytest.mark.asyncio
    async def test_failed_send_requeued_ahead_of_newer_changes(self, clock: ManualClock) -> None:
        sink = GatedNotifySink()
        buffer = AggregationBuffer(sink, clock)
        buffer.add("C1", make_event(doc_token="doc1"), "r")

        flush = asyncio.create_task(buffer.flush())
        await sink.entered.wait()
        buffer.add("C1", make_event(doc_token="doc2"), "r")
        sink.error = ConnectionError("down")
        sink.release.set()

        assert await flush == {}
        assert buffer.pending("C1") == 2

        sink.error = None
        await buffer.flush()
        message = sink.messages[0][1]
        assert "2 document change(s)" in message
        assert message.index("doc1") < message.index("doc2")

    @pytest.mark.asyncio
    async def test_min_age_skips_young_buckets(self, clock: ManualClock) -> None:
        sink = RecordingNotifySink()
        buffer = AggregationBuffer(sink, clock)
        buffer.add("C1", make_event(), "r")
        clock.advance(1_000)
        buffer.add("C2", make_event(), "r")

        assert set(await buffer.flush(min_age_ms=1_000)) == {"C1"}
        assert buffer.targets() == ["C2"]
