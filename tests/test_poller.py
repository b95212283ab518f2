"""Tests for the document poller and its change pipeline."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from docwatch.clock import ManualClock
from docwatch.config.schema import PollingConfig, RulesConfig, SnapshotConfig
from docwatch.models import ChangeType, TrackedDocument
from docwatch.persistence import DocumentPersistence
from docwatch.poller import DocPoller, TrackedDocumentRegistry
from docwatch.rules.engine import RulesEngine
from docwatch.rules.integration import RulesIntegration
from docwatch.snapshots import DocSnapshotService
from docwatch.store import MemoryStore

from tests.utils import FailingWritesStore, FakeSource, RecordingNotifySink, make_event, no_sleep

TEXT_V1 = "\n".join(f"Paragraph {i}: the plan is unchanged." for i in range(30))
TEXT_V2 = TEXT_V1 + "\nParagraph 30: budget approved."


@dataclass
class Pipeline:
    poller: DocPoller
    persistence: DocumentPersistence
    snapshots: DocSnapshotService
    engine: RulesEngine


def build_pipeline(
    source: FakeSource,
    store: MemoryStore,
    clock: ManualClock,
    notify_sink: RecordingNotifySink,
    config: PollingConfig | None = None,
    sleep=no_sleep,
    snapshot_config: SnapshotConfig | None = None,
) -> Pipeline:
    persistence = DocumentPersistence(store, clock, user_id="user-1")
    snapshots = DocSnapshotService(store, snapshot_config, clock=clock, user_id="user-1")
    engine = RulesEngine(store, notify_sink=notify_sink, clock=clock, user_id="user-1")
    rules = RulesIntegration(engine, RulesConfig(async_mode=False))
    poller = DocPoller(
        source,
        config=config,
        snapshots=snapshots,
        rules=rules,
        persistence=persistence,
        notify_sink=notify_sink,
        clock=clock,
        sleep=sleep,
    )
    return Pipeline(poller, persistence, snapshots, engine)


@pytest.fixture
def pipeline(
    source: FakeSource, store: MemoryStore, clock: ManualClock, notify_sink: RecordingNotifySink
) -> Pipeline:
    return build_pipeline(source, store, clock, notify_sink)


class TestRegistry:
    def test_add_only_inserts_once(self) -> None:
        registry = TrackedDocumentRegistry()
        assert registry.add(TrackedDocument("doc1", "docx", "C1")) is True
        assert registry.add(TrackedDocument("doc1", "docx", "C2")) is False
        assert registry.get("doc1").notify_target == "C1"
        assert len(registry) == 1

    def test_replace_if_present(self) -> None:
        registry = TrackedDocumentRegistry()
        assert registry.replace_if_present(TrackedDocument("doc1", "docx", "C1")) is False
        assert "doc1" not in registry

        registry.add(TrackedDocument("doc1", "docx", "C1"))
        assert registry.replace_if_present(TrackedDocument("doc1", "docx", "C2")) is True
        assert registry.get("doc1").notify_target == "C2"

    def test_remove_and_clear(self) -> None:
        registry = TrackedDocumentRegistry()
        registry.add(TrackedDocument("doc1", "docx", "C1"))
        registry.add(TrackedDocument("doc2", "docx", "C1"))

        assert registry.remove("doc1").doc_token == "doc1"
        assert registry.remove("doc1") is None
        registry.clear()
        assert registry.values() == []


class TestTracking:
    def test_start_tracking_is_idempotent(self, pipeline: Pipeline) -> None:
        poller = pipeline.poller
        assert poller.start_tracking_doc("doc1", "docx", "C1") is True
        assert poller.start_tracking_doc("doc1", "docx", "C2") is False

        assert len(poller.get_tracked_docs()) == 1
        assert poller.get_tracked_doc("doc1").notify_target == "C1"
        assert pipeline.persistence.get_tracked_doc("doc1") is not None

    def test_stop_untracked_is_noop(self, pipeline: Pipeline) -> None:
        assert pipeline.poller.stop_tracking_doc("missing") is False

    def test_stop_tracking_updates_persistence(self, pipeline: Pipeline) -> None:
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        assert pipeline.poller.stop_tracking_doc("doc1") is True

        assert pipeline.poller.get_tracked_doc("doc1") is None
        assert pipeline.persistence.get_tracked_docs() == []

    def test_failed_persist_rolls_back_start(
        self, source: FakeSource, clock: ManualClock, notify_sink: RecordingNotifySink
    ) -> None:
        """Test that a document the store refused is not left in the registry."""
        store = FailingWritesStore()
        pipeline = build_pipeline(source, store, clock, notify_sink)
        store.fail_writes = True

        with pytest.raises(OSError):
            pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        assert pipeline.poller.get_tracked_docs() == []

        store.fail_writes = False
        assert pipeline.poller.start_tracking_doc("doc1", "docx", "C1") is True

    def test_failed_persist_rolls_back_stop(
        self, source: FakeSource, clock: ManualClock, notify_sink: RecordingNotifySink
    ) -> None:
        store = FailingWritesStore()
        pipeline = build_pipeline(source, store, clock, notify_sink)
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        store.fail_writes = True

        with pytest.raises(OSError):
            pipeline.poller.stop_tracking_doc("doc1")

        assert pipeline.poller.get_tracked_doc("doc1").notify_target == "C1"
        assert [d.doc_token for d in pipeline.persistence.get_tracked_docs()] == ["doc1"]

    @pytest.mark.asyncio
    async def test_restore_keeps_baseline(
        self,
        pipeline: Pipeline,
        source: FakeSource,
        store: MemoryStore,
        clock: ManualClock,
        notify_sink: RecordingNotifySink,
    ) -> None:
        """Test that a restarted poller resumes from the persisted state."""
        source.set("doc1", "U1", 1000, content=TEXT_V1)
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        await pipeline.poller.poll_once()

        restarted = build_pipeline(source, store, clock, notify_sink)
        assert restarted.poller.restore() == 1
        assert restarted.poller.get_tracked_doc("doc1").last_known_user == "U1"

        summary = await restarted.poller.poll_once()
        assert summary.changes == 0


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_baseline_change_and_debounce(
        self,
        pipeline: Pipeline,
        source: FakeSource,
        clock: ManualClock,
        notify_sink: RecordingNotifySink,
    ) -> None:
        """Test new document, no change, user change and debounced change in sequence."""
        poller = pipeline.poller
        pipeline.engine.create_rule(
            "doc1",
            "Budget watch",
            {"type": "content_match", "value": "budget"},
            {"type": "notify", "target": "C-rules"},
        )
        poller.start_tracking_doc("doc1", "docx", "C1")

        # Poll 1: baseline, no default notification
        source.set("doc1", "U1", 1000, content=TEXT_V1)
        summary = await poller.poll_once()
        assert summary.changes == 1
        assert notify_sink.messages == []
        state = poller.get_tracked_doc("doc1")
        assert state.last_known_user == "U1"
        assert state.last_known_modified_time == 1000
        assert state.last_notification_time == clock.now_ms()
        assert pipeline.snapshots.get_latest_snapshot("doc1").revision_number == 1000
        history = pipeline.persistence.get_change_history("doc1")
        assert [e.change_type for e in history] == [ChangeType.NEW_DOCUMENT]

        # Poll 2: nothing moved
        clock.advance(1000)
        summary = await poller.poll_once()
        assert summary.changes == 0

        # Poll 3: different user after the debounce window
        clock.advance(5000)
        source.set("doc1", "U2", 2000, content=TEXT_V2)
        summary = await poller.poll_once()
        assert summary.changes == 1
        assert summary.debounced == 0

        targets = [target for target, _ in notify_sink.messages]
        assert targets == ["C1", "C-rules"]
        default_message = notify_sink.messages[0][1]
        assert "Document changed: Quarterly plan" in default_message
        assert "Modified by: U2" in default_message
        assert "Modified at: 1970-01-01 00:00:02 UTC" in default_message
        assert "Document type: docx" in default_message

        event = pipeline.persistence.get_change_history("doc1")[0]
        assert event.change_type is ChangeType.USER_CHANGED
        assert event.previous_modified_user == "U1"
        assert event.new_modified_user == "U2"
        assert event.notification_sent is True
        assert event.notification_message_id == "msg-1"
        assert event.metadata["previous_revision"] == 1000
        assert event.metadata["new_revision"] == 2000
        assert "budget approved" in event.metadata["diff_text"]
        assert event.metadata["diff_summary"]
        assert len(pipeline.snapshots.get_snapshot_history("doc1")) == 2

        # Poll 4: immediately after, debounced and silent
        source.set("doc1", "U3", 2001, content=TEXT_V2 + "\nmore")
        summary = await poller.poll_once()
        assert summary.changes == 1
        assert summary.debounced == 1
        assert len(notify_sink.messages) == 2
        assert poller.get_tracked_doc("doc1").last_known_user == "U2"
        assert len(pipeline.persistence.get_change_history("doc1")) == 2
        assert len(pipeline.snapshots.get_snapshot_history("doc1")) == 2
        assert poller.get_metrics().debounced_changes == 1

    @pytest.mark.asyncio
    async def test_snapshots_pruned_after_each_capture(
        self,
        source: FakeSource,
        store: MemoryStore,
        clock: ManualClock,
        notify_sink: RecordingNotifySink,
    ) -> None:
        """Test that retention runs per capture and the diff still sees the prior revision."""
        pipeline = build_pipeline(
            source, store, clock, notify_sink, snapshot_config=SnapshotConfig(max_snapshots_per_doc=1)
        )
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")

        for i in range(4):
            source.set("doc1", f"U{i}", 1000 + i, content=f"{TEXT_V1}\nEdit number {i}.")
            await pipeline.poller.poll_once()
            clock.advance(10_000)

        history = pipeline.snapshots.get_snapshot_history("doc1")
        assert [s.revision_number for s in history] == [1003]
        latest_event = pipeline.persistence.get_change_history("doc1")[0]
        assert latest_event.metadata["previous_revision"] == 1002
        assert "Edit number 3." in latest_event.metadata["diff_text"]

    @pytest.mark.asyncio
    async def test_notify_disabled_still_records(
        self, source: FakeSource, store: MemoryStore, clock: ManualClock
    ) -> None:
        sink = RecordingNotifySink()
        pipeline = build_pipeline(
            source, store, clock, sink, config=PollingConfig(notify_on_change=False)
        )
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.set("doc1", "U1", 1000)
        await pipeline.poller.poll_once()
        clock.advance(10_000)
        source.set("doc1", "U1", 3000)
        await pipeline.poller.poll_once()

        assert sink.messages == []
        event = pipeline.persistence.get_change_history("doc1")[0]
        assert event.change_type is ChangeType.TIME_UPDATED
        assert event.notification_sent is False

    @pytest.mark.asyncio
    async def test_missing_content_skips_snapshot(
        self, pipeline: Pipeline, source: FakeSource
    ) -> None:
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.set("doc1", "U1", 1000)
        await pipeline.poller.poll_once()

        assert pipeline.snapshots.get_latest_snapshot("doc1") is None
        assert "diff_summary" not in pipeline.persistence.get_change_history("doc1")[0].metadata

    @pytest.mark.asyncio
    async def test_notification_failure_counted(
        self,
        pipeline: Pipeline,
        source: FakeSource,
        clock: ManualClock,
        notify_sink: RecordingNotifySink,
    ) -> None:
        """Test that a failing notify sink does not undo the state update."""
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.set("doc1", "U1", 1000)
        await pipeline.poller.poll_once()

        notify_sink.error = ConnectionError("chat down")
        clock.advance(10_000)
        source.set("doc1", "U2", 2000)
        await pipeline.poller.poll_once()

        assert pipeline.poller.get_metrics().failed_notifications == 1
        assert pipeline.poller.get_tracked_doc("doc1").last_known_user == "U2"
        assert pipeline.persistence.get_change_history("doc1")[0].notification_sent is False


class TestFailures:
    @pytest.mark.asyncio
    async def test_retry_with_backoff(
        self, source: FakeSource, store: MemoryStore, clock: ManualClock
    ) -> None:
        sleeps: list[float] = []

        async def record_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        pipeline = build_pipeline(source, store, clock, RecordingNotifySink(), sleep=record_sleep)
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.set("doc1", "U1", 1000)
        source.fail("doc1", times=2)

        summary = await pipeline.poller.poll_once()

        assert summary.succeeded == 1
        assert sleeps == [0.1, 0.5]
        assert len(source.metadata_calls) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted_leaves_state(
        self, pipeline: Pipeline, source: FakeSource
    ) -> None:
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.set("doc1", "U1", 1000)
        source.fail("doc1", times=3)

        summary = await pipeline.poller.poll_once()

        assert summary.failed == 1
        assert not pipeline.poller.get_tracked_doc("doc1").has_baseline
        metrics = pipeline.poller.get_metrics()
        assert metrics.errors_in_last_hour == 1
        assert metrics.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_permanent_failure(self, pipeline: Pipeline, source: FakeSource) -> None:
        """Test that a missing document is logged, not retried, and not an error."""
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.metadata["doc1"] = None

        summary = await pipeline.poller.poll_once()

        assert summary.permanent_failures == 1
        assert len(source.metadata_calls) == 1
        metrics = pipeline.poller.get_metrics()
        assert metrics.permanent_failures == 1
        assert metrics.errors_in_last_hour == 0
        assert metrics.success_rate == 1.0

    @pytest.mark.asyncio
    async def test_fetch_timeout_is_a_failed_attempt(
        self, source: FakeSource, store: MemoryStore, clock: ManualClock
    ) -> None:
        class SlowSource(FakeSource):
            async def fetch_metadata(self, doc_token, doc_type):
                await asyncio.sleep(1)
                return await super().fetch_metadata(doc_token, doc_type)

        config = PollingConfig(retry_attempts=1, fetch_timeout_ms=10)
        pipeline = build_pipeline(SlowSource(), store, clock, RecordingNotifySink(), config=config)
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")

        summary = await pipeline.poller.poll_once()
        assert summary.failed == 1

    @pytest.mark.asyncio
    async def test_stop_during_fetch_discards_update(
        self, store: MemoryStore, clock: ManualClock
    ) -> None:
        """Test that a document stopped mid-poll is not re-added by the poll."""

        class StoppingSource(FakeSource):
            poller: DocPoller | None = None

            async def fetch_metadata(self, doc_token, doc_type):
                self.poller.stop_tracking_doc(doc_token)
                return await super().fetch_metadata(doc_token, doc_type)

        source = StoppingSource()
        source.set("doc1", "U1", 1000, content=TEXT_V1)
        pipeline = build_pipeline(source, store, clock, RecordingNotifySink())
        source.poller = pipeline.poller
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")

        await pipeline.poller.poll_once()

        assert "doc1" not in pipeline.poller.registry
        assert pipeline.persistence.get_change_history() == []
        assert pipeline.snapshots.get_latest_snapshot("doc1") is None


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_bounded_in_flight_fetches(self, store: MemoryStore, clock: ManualClock) -> None:
        class CountingSource(FakeSource):
            in_flight = 0
            peak = 0

            async def fetch_metadata(self, doc_token, doc_type):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                await asyncio.sleep(0.01)
                self.in_flight -= 1
                return await super().fetch_metadata(doc_token, doc_type)

        source = CountingSource()
        config = PollingConfig(max_concurrent_polls=2)
        pipeline = build_pipeline(source, store, clock, RecordingNotifySink(), config=config)
        for i in range(5):
            source.set(f"doc{i}", "U1", 1000)
            pipeline.poller.start_tracking_doc(f"doc{i}", "docx", "C1")

        summary = await pipeline.poller.poll_once()

        assert summary.succeeded == 5
        assert source.peak == 2


class TestMetricsAndHealth:
    def test_healthy_without_documents(self, pipeline: Pipeline) -> None:
        health = pipeline.poller.get_health_status()
        assert health.status == "healthy"
        assert health.reason == "No documents tracked"

    @pytest.mark.asyncio
    async def test_healthy_after_success(self, pipeline: Pipeline, source: FakeSource) -> None:
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.set("doc1", "U1", 1000)
        await pipeline.poller.poll_once()

        metrics = pipeline.poller.get_metrics()
        assert metrics.docs_tracked == 1
        assert metrics.poll_cycles == 1
        assert metrics.last_poll_time is not None
        assert pipeline.poller.get_health_status().to_dict() == {
            "status": "healthy",
            "reason": "All systems operational",
        }

    @pytest.mark.asyncio
    async def test_degraded_on_low_success_rate(
        self, pipeline: Pipeline, source: FakeSource
    ) -> None:
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.fail("doc1", times=3)
        await pipeline.poller.poll_once()

        health = pipeline.poller.get_health_status()
        assert health.status == "degraded"
        assert health.reason == "Success rate 0.00 < 0.90"

    @pytest.mark.asyncio
    async def test_degraded_on_error_count_until_hour_passes(
        self, source: FakeSource, store: MemoryStore, clock: ManualClock
    ) -> None:
        config = PollingConfig(retry_attempts=1, success_rate_threshold=0.0, max_errors_per_hour=1)
        pipeline = build_pipeline(source, store, clock, RecordingNotifySink(), config=config)
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.fail("doc1", times=2)
        await pipeline.poller.poll_once()
        await pipeline.poller.poll_once()

        assert pipeline.poller.get_health_status().reason == "2 errors in last hour"

        clock.advance(3_600_001)
        assert pipeline.poller.get_health_status().status == "healthy"

    @pytest.mark.asyncio
    async def test_reset(self, pipeline: Pipeline, source: FakeSource) -> None:
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.set("doc1", "U1", 1000)
        await pipeline.poller.poll_once()

        await pipeline.poller.reset()

        assert pipeline.poller.get_tracked_docs() == []
        assert pipeline.poller.get_metrics().poll_cycles == 0
        assert pipeline.poller.is_running() is False


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(
        self, source: FakeSource, store: MemoryStore, clock: ManualClock
    ) -> None:
        """Test that the background loop polls until stopped."""
        config = PollingConfig(interval_ms=5)
        pipeline = build_pipeline(
            source, store, clock, RecordingNotifySink(), config=config, sleep=asyncio.sleep
        )
        source.set("doc1", "U1", 1000)
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")

        pipeline.poller.start()
        assert pipeline.poller.is_running()
        await asyncio.sleep(0.05)
        await pipeline.poller.stop()

        assert pipeline.poller.is_running() is False
        assert pipeline.poller.get_metrics().poll_cycles >= 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, pipeline: Pipeline) -> None:
        await pipeline.poller.stop()
        assert pipeline.poller.is_running() is False

    @pytest.mark.asyncio
    async def test_reset_while_running_waits_for_loop(
        self, source: FakeSource, store: MemoryStore, clock: ManualClock
    ) -> None:
        pipeline = build_pipeline(
            source,
            store,
            clock,
            RecordingNotifySink(),
            config=PollingConfig(interval_ms=5),
            sleep=asyncio.sleep,
        )
        source.set("doc1", "U1", 1000)
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        pipeline.poller.start()
        task = pipeline.poller._task
        await asyncio.sleep(0.02)

        await pipeline.poller.reset()

        assert task.done()
        assert pipeline.poller.is_running() is False
        assert pipeline.poller.get_tracked_docs() == []
        assert pipeline.poller.get_metrics().poll_cycles == 0


class TestAggregates:
    @pytest.mark.asyncio
    async def test_flushed_by_poll_cycle_once_due(
        self,
        pipeline: Pipeline,
        source: FakeSource,
        clock: ManualClock,
        notify_sink: RecordingNotifySink,
    ) -> None:
        """Test that buffered summaries go out on the first cycle after the interval."""
        pipeline.engine.create_rule(
            "doc1", "Digest", {"type": "any"}, {"type": "aggregate", "target": "C9"}
        )
        pipeline.poller.start_tracking_doc("doc1", "docx", "C1")
        source.set("doc1", "U1", 1000)
        await pipeline.poller.poll_once()
        assert pipeline.engine.aggregation.pending("C9") == 1

        clock.advance(3_599_000)
        await pipeline.poller.poll_once()
        assert notify_sink.messages == []

        clock.advance(1_000)
        await pipeline.poller.poll_once()
        assert [target for target, _ in notify_sink.messages] == ["C9"]
        assert pipeline.engine.aggregation.pending() == 0

    @pytest.mark.asyncio
    async def test_flushed_with_no_documents_tracked(
        self, pipeline: Pipeline, clock: ManualClock, notify_sink: RecordingNotifySink
    ) -> None:
        pipeline.engine.aggregation.add("C9", make_event())
        clock.advance(3_600_000)

        await pipeline.poller.poll_once()

        assert [target for target, _ in notify_sink.messages] == ["C9"]
