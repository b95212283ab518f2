"""Document poller: the scheduling loop and the change pipeline.

One asyncio task runs poll cycles every ``interval_ms``. Within a cycle each
tracked document is polled concurrently, bounded by a semaphore of
``max_concurrent_polls``. A document's poll:

1. fetches metadata (retried with backoff on transient failure)
2. runs change detection against the registry entry
3. on a confirmed, non-debounced change writes the new state back, but
   only if the document is still tracked (a concurrent stop wins)
4. runs the pipeline: notify -> snapshot -> diff -> change event -> rules

Only the cycle that polled a document writes that document's state, so the
registry lock only has to make individual reads and writes atomic.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from docwatch.clock import Clock, SystemClock, ms_to_datetime
from docwatch.config.schema import PollingConfig
from docwatch.detection import create_updated_tracked_state, detect_change
from docwatch.diff import DiffResult, changed_text, compute_diff
from docwatch.logging import get_logger
from docwatch.models import (
    ChangeDetectionResult,
    ChangeEvent,
    ChangeType,
    DocMetadata,
    TrackedDocument,
)
from docwatch.persistence import DocumentPersistence
from docwatch.rules.engine import DIFF_SUMMARY_KEY, DIFF_TEXT_KEY, TITLE_KEY
from docwatch.rules.integration import RulesIntegration
from docwatch.sinks import NotifySink
from docwatch.snapshots import DocSnapshotService, serialize_content
from docwatch.sources import DocumentSource

log = get_logger("poller")

HOUR_MS = 3_600_000

Sleep = Callable[[float], Awaitable[Any]]


class TrackedDocumentRegistry:
    """Thread-safe map of doc token -> TrackedDocument.

    Entries are immutable; updates replace the whole entry.
    """

    def __init__(self) -> None:
        self._docs: dict[str, TrackedDocument] = {}
        self._lock = threading.Lock()

    def add(self, doc: TrackedDocument) -> bool:
        """Insert ``doc`` unless its token is present. Returns True if inserted."""
        with self._lock:
            if doc.doc_token in self._docs:
                return False
            self._docs[doc.doc_token] = doc
            return True

    def remove(self, doc_token: str) -> TrackedDocument | None:
        with self._lock:
            return self._docs.pop(doc_token, None)

    def get(self, doc_token: str) -> TrackedDocument | None:
        with self._lock:
            return self._docs.get(doc_token)

    def replace_if_present(self, doc: TrackedDocument) -> bool:
        """Overwrite the entry for ``doc.doc_token`` only if it still exists."""
        with self._lock:
            if doc.doc_token not in self._docs:
                return False
            self._docs[doc.doc_token] = doc
            return True

    def values(self) -> list[TrackedDocument]:
        with self._lock:
            return list(self._docs.values())

    def clear(self) -> None:
        with self._lock:
            self._docs.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._docs)

    def __contains__(self, doc_token: object) -> bool:
        with self._lock:
            return doc_token in self._docs


class PollOutcome(Enum):
    SUCCESS = "success"
    FAILED = "failed"  # transient failure, retries exhausted
    PERMANENT = "permanent"  # not found / permission denied


@dataclass
class PollResult:
    """What happened to one document in one cycle."""

    doc_token: str
    outcome: PollOutcome
    detection: ChangeDetectionResult | None = None
    event: ChangeEvent | None = None
    error: str | None = None


@dataclass
class CycleSummary:
    polled: int = 0
    succeeded: int = 0
    failed: int = 0
    permanent_failures: int = 0
    changes: int = 0
    debounced: int = 0
    duration_ms: float = 0.0


@dataclass
class PollerMetrics:
    docs_tracked: int
    success_rate: float
    last_poll_duration_ms: float
    errors_in_last_hour: int
    notifications_in_last_hour: int
    last_poll_time: int | None
    average_poll_duration_ms: float
    poll_cycles: int
    changes_detected: int
    debounced_changes: int
    permanent_failures: int
    failed_notifications: int

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class HealthStatus:
    status: Literal["healthy", "degraded"]
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"status": self.status, "reason": self.reason}


class _MetricsState:
    def __init__(self, window: int) -> None:
        self.outcomes: deque[bool] = deque(maxlen=window)
        self.durations: deque[float] = deque(maxlen=window)
        self.error_times: deque[int] = deque()
        self.notification_times: deque[int] = deque()
        self.last_poll_time: int | None = None
        self.poll_cycles = 0
        self.changes_detected = 0
        self.debounced_changes = 0
        self.permanent_failures = 0
        self.failed_notifications = 0

    @staticmethod
    def prune(times: deque[int], cutoff: int) -> None:
        while times and times[0] <= cutoff:
            times.popleft()


class DocPoller:
    """Polls tracked documents and reacts to confirmed changes.

    Example:
        poller = DocPoller(source, config=PollingConfig(interval_ms=30_000))
        poller.start_tracking_doc("doccnABC", "docx", "chat-1")
        poller.start()
        ...
        await poller.stop()
    """

    def __init__(
        self,
        source: DocumentSource,
        *,
        config: PollingConfig | None = None,
        snapshots: DocSnapshotService | None = None,
        rules: RulesIntegration | None = None,
        persistence: DocumentPersistence | None = None,
        notify_sink: NotifySink | None = None,
        clock: Clock | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._source = source
        self._config = config or PollingConfig()
        self._snapshots = snapshots
        self._rules = rules
        self._persistence = persistence
        self._notify_sink = notify_sink
        self._clock = clock or SystemClock()
        self._sleep = sleep

        self._registry = TrackedDocumentRegistry()
        self._metrics = _MetricsState(self._config.metrics_window)

        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def config(self) -> PollingConfig:
        return self._config

    @property
    def registry(self) -> TrackedDocumentRegistry:
        return self._registry

    # -- tracking ----------------------------------------------------------

    def start_tracking_doc(self, doc_token: str, doc_type: str, notify_target: str) -> bool:
        """Track a document. Tracking an already tracked token is a no-op.

        Returns:
            True if the document was newly added.
        """
        doc = TrackedDocument(doc_token=doc_token, doc_type=doc_type, notify_target=notify_target)
        if not self._registry.add(doc):
            log.debug("Already tracking %s", doc_token)
            return False
        if self._persistence is not None:
            try:
                self._persistence.start_tracking(doc)
            except Exception:
                self._registry.remove(doc_token)
                raise
        log.info("Started tracking %s -> %s", doc_token, notify_target)
        return True

    def stop_tracking_doc(self, doc_token: str) -> bool:
        """Stop tracking. Stopping an untracked token is a no-op.

        Returns:
            True if the document was tracked.
        """
        removed = self._registry.remove(doc_token)
        if removed is None:
            log.debug("Not tracking %s", doc_token)
            return False
        if self._persistence is not None:
            try:
                self._persistence.stop_tracking(doc_token)
            except Exception:
                self._registry.add(removed)
                raise
        log.info("Stopped tracking %s", doc_token)
        return True

    def get_tracked_docs(self) -> list[TrackedDocument]:
        return self._registry.values()

    def get_tracked_doc(self, doc_token: str) -> TrackedDocument | None:
        return self._registry.get(doc_token)

    def restore(self) -> int:
        """Load active tracked documents from persistence into the registry.

        Returns:
            Number of documents added.
        """
        if self._persistence is None:
            return 0
        added = sum(1 for doc in self._persistence.get_tracked_docs() if self._registry.add(doc))
        log.info("Restored %d tracked documents", added)
        return added

    # -- loop --------------------------------------------------------------

    def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._running:
            log.warning("DocPoller already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="docwatch-poller")
        log.info("Polling started every %dms", self._config.interval_ms)

    async def _run(self) -> None:
        try:
            while self._running:
                try:
                    await self.poll_once()
                except Exception as e:
                    log.error("Unexpected error during poll cycle: %s", e)
                await self._sleep(self._config.interval_ms / 1000)
        except asyncio.CancelledError:
            log.info("Polling cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the polling loop and wait for it to exit."""
        self._running = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        log.info("Polling stopped")

    def is_running(self) -> bool:
        return self._running

    # -- cycle -------------------------------------------------------------

    async def poll_once(self) -> CycleSummary:
        """Run one poll cycle over every tracked document."""
        docs = self._registry.values()
        summary = CycleSummary(polled=len(docs))
        if not docs:
            await self._flush_aggregates()
            return summary

        start = time.perf_counter()
        self._metrics.poll_cycles += 1
        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrent_polls))

        async def bounded(doc: TrackedDocument) -> PollResult:
            async with semaphore:
                return await self._poll_document(doc)

        results = await asyncio.gather(*(bounded(d) for d in docs), return_exceptions=True)

        for doc, result in zip(docs, results):
            if isinstance(result, BaseException):
                log.error("Error polling %s: %s", doc.doc_token, result)
                result = PollResult(doc.doc_token, PollOutcome.FAILED, error=str(result))
                self._record_outcome(result.outcome)
            if result.outcome is PollOutcome.SUCCESS:
                summary.succeeded += 1
            elif result.outcome is PollOutcome.FAILED:
                summary.failed += 1
            else:
                summary.permanent_failures += 1
            if result.detection is not None and result.detection.has_changed:
                summary.changes += 1
                if result.detection.debounced:
                    summary.debounced += 1

        summary.duration_ms = round((time.perf_counter() - start) * 1000, 3)
        self._metrics.durations.append(summary.duration_ms)
        self._metrics.last_poll_time = self._clock.now_ms()
        log.info(
            "Poll completed in %.0fms (%d ok, %d failed, %d unavailable, %d changes)",
            summary.duration_ms,
            summary.succeeded,
            summary.failed,
            summary.permanent_failures,
            summary.changes,
        )
        await self._flush_aggregates()
        return summary

    async def _flush_aggregates(self) -> None:
        if self._rules is None:
            return
        try:
            sent = await self._rules.flush_aggregated()
        except Exception as e:
            log.error("Aggregate flush failed: %s", e)
            return
        if sent:
            log.info("Sent %d aggregated summaries", len(sent))

    def _record_outcome(self, outcome: PollOutcome) -> None:
        if outcome is PollOutcome.FAILED:
            self._metrics.outcomes.append(False)
            self._metrics.error_times.append(self._clock.now_ms())
        elif outcome is PollOutcome.PERMANENT:
            self._metrics.permanent_failures += 1
            self._metrics.outcomes.append(True)
        else:
            self._metrics.outcomes.append(True)

    async def _fetch_with_retry(self, doc: TrackedDocument) -> tuple[bool, DocMetadata | None]:
        """Fetch metadata with retry/backoff.

        Returns:
            (ok, metadata). ``ok`` is False once every attempt failed;
            (True, None) is a permanent failure reported by the source.
        """
        attempts = max(1, self._config.retry_attempts)
        backoff = self._config.retry_backoff_ms or [0]
        timeout = self._config.fetch_timeout_ms / 1000

        for attempt in range(attempts):
            try:
                metadata = await asyncio.wait_for(
                    self._source.fetch_metadata(doc.doc_token, doc.doc_type), timeout
                )
                return True, metadata
            except Exception as e:
                log.warning(
                    "Metadata fetch for %s failed (attempt %d/%d): %s",
                    doc.doc_token,
                    attempt + 1,
                    attempts,
                    str(e) or type(e).__name__,
                )
                if attempt + 1 < attempts:
                    await self._sleep(backoff[min(attempt, len(backoff) - 1)] / 1000)
        return False, None

    async def _poll_document(self, doc: TrackedDocument) -> PollResult:
        ok, metadata = await self._fetch_with_retry(doc)
        if not ok:
            self._record_outcome(PollOutcome.FAILED)
            return PollResult(doc.doc_token, PollOutcome.FAILED, error="retries exhausted")
        if metadata is None:
            log.warning("Metadata for %s unavailable (not found or no permission)", doc.doc_token)
            self._record_outcome(PollOutcome.PERMANENT)
            return PollResult(doc.doc_token, PollOutcome.PERMANENT)

        self._record_outcome(PollOutcome.SUCCESS)
        detection = detect_change(
            metadata,
            doc,
            debounce_window_ms=self._config.debounce_window_ms,
            enable_logging=self._config.enable_logging,
            clock=self._clock,
        )
        result = PollResult(doc.doc_token, PollOutcome.SUCCESS, detection=detection)
        if not detection.has_changed:
            return result

        self._metrics.changes_detected += 1
        if detection.debounced:
            self._metrics.debounced_changes += 1
            log.info("Change debounced for %s: %s", doc.doc_token, detection.reason)
            return result

        updated = create_updated_tracked_state(
            doc.doc_token, doc.doc_type, doc.notify_target, metadata, clock=self._clock
        )
        if not self._registry.replace_if_present(updated):
            log.info("Discarding update for %s: no longer tracked", doc.doc_token)
            return result

        if self._persistence is not None:
            try:
                self._persistence.update_tracked_doc_state(updated)
            except Exception as e:
                log.error("Failed to persist state for %s: %s", doc.doc_token, e)

        result.event = await self._handle_change(doc, metadata, detection)
        return result

    # -- pipeline ----------------------------------------------------------

    async def _handle_change(
        self,
        doc: TrackedDocument,
        metadata: DocMetadata,
        detection: ChangeDetectionResult,
    ) -> ChangeEvent:
        notified, message_id = await self._notify_change(doc, metadata, detection)
        diff = await self._snapshot_and_diff(doc, metadata)

        event_metadata: dict[str, Any] = {
            TITLE_KEY: metadata.title,
            "notify_target": doc.notify_target,
            "reason": detection.reason,
        }
        if diff is not None:
            event_metadata[DIFF_SUMMARY_KEY] = diff.summary.summary
            event_metadata[DIFF_TEXT_KEY] = changed_text(diff)
            event_metadata["previous_revision"] = diff.previous_revision
            event_metadata["new_revision"] = diff.new_revision

        event = ChangeEvent(
            id=uuid.uuid4().hex,
            doc_token=doc.doc_token,
            previous_modified_user=detection.previous_user,
            previous_modified_time=detection.previous_time,
            new_modified_user=metadata.last_modified_user,
            new_modified_time=metadata.last_modified_time,
            change_type=detection.change_type,
            change_detected_at=detection.changed_at,
            debounced=False,
            notification_sent=notified,
            notification_message_id=message_id,
            metadata=event_metadata,
        )

        if self._persistence is not None:
            try:
                event = self._persistence.record_change(event)
            except Exception as e:
                log.error("Failed to record change for %s: %s", doc.doc_token, e)

        if self._rules is not None:
            try:
                await self._rules.evaluate_change_rules(event)
            except Exception as e:
                log.error("Rule hand-off failed for change %s: %s", event.id, e)

        return event

    async def _notify_change(
        self,
        doc: TrackedDocument,
        metadata: DocMetadata,
        detection: ChangeDetectionResult,
    ) -> tuple[bool, str | None]:
        if (
            self._notify_sink is None
            or not self._config.notify_on_change
            or detection.change_type is ChangeType.NEW_DOCUMENT
        ):
            return False, None

        modified_at = ms_to_datetime(metadata.last_modified_time).strftime("%Y-%m-%d %H:%M:%S UTC")
        message = (
            f"Document changed: {metadata.title or doc.doc_token}\n"
            f"Modified by: {metadata.last_modified_user}\n"
            f"Modified at: {modified_at}\n"
            f"Document type: {metadata.doc_type}"
        )
        try:
            message_id = await self._notify_sink.notify(doc.notify_target, message)
        except Exception as e:
            self._metrics.failed_notifications += 1
            log.error("Failed to send notification for %s: %s", doc.doc_token, e)
            return False, None
        self._metrics.notification_times.append(self._clock.now_ms())
        log.info("Notification sent for %s to %s", doc.doc_token, doc.notify_target)
        return True, message_id

    async def _snapshot_and_diff(
        self, doc: TrackedDocument, metadata: DocMetadata
    ) -> DiffResult | None:
        service = self._snapshots
        if service is None or not service.config.enabled:
            return None
        if not service.is_supported_doc_type(doc.doc_type):
            return None

        try:
            content = await self._source.fetch_content(doc.doc_token, doc.doc_type)
        except Exception as e:
            log.warning("Could not download content for %s: %s", doc.doc_token, e)
            return None
        if content is None:
            log.warning("No content for %s, skipping snapshot", doc.doc_token)
            return None

        try:
            previous = service.get_latest_snapshot(doc.doc_token)
            snapshot = service.create_snapshot(
                doc.doc_token,
                content,
                revision_number=metadata.last_modified_time,
                modified_by=metadata.last_modified_user,
                modified_at=metadata.last_modified_time,
                doc_type=doc.doc_type,
            )
            if snapshot is None:
                return None
            previous_content = None
            if (
                previous is not None
                and previous.revision_number != snapshot.revision_number
                and service.config.enable_semantic_diff
            ):
                previous_content = service.get_snapshot_content(
                    doc.doc_token, previous.revision_number
                )
        except Exception as e:
            log.error("Snapshot failed for %s: %s", doc.doc_token, e)
            return None

        # The previous revision is read before retention may remove it
        try:
            service.prune_old_snapshots(doc.doc_token)
        except Exception as e:
            log.warning("Snapshot pruning failed for %s: %s", doc.doc_token, e)

        if previous is None or previous_content is None:
            return None
        diff = compute_diff(
            previous_content,
            serialize_content(content),
            previous.revision_number,
            snapshot.revision_number,
        )
        log.info("Computed diff for %s: %s", doc.doc_token, diff.summary.summary)
        return diff

    # -- metrics -----------------------------------------------------------

    def get_metrics(self) -> PollerMetrics:
        m = self._metrics
        cutoff = self._clock.now_ms() - HOUR_MS
        m.prune(m.error_times, cutoff)
        m.prune(m.notification_times, cutoff)

        success_rate = sum(m.outcomes) / len(m.outcomes) if m.outcomes else 1.0
        durations = list(m.durations)
        return PollerMetrics(
            docs_tracked=len(self._registry),
            success_rate=round(success_rate, 2),
            last_poll_duration_ms=durations[-1] if durations else 0.0,
            errors_in_last_hour=len(m.error_times),
            notifications_in_last_hour=len(m.notification_times),
            last_poll_time=m.last_poll_time,
            average_poll_duration_ms=round(sum(durations) / len(durations), 3) if durations else 0.0,
            poll_cycles=m.poll_cycles,
            changes_detected=m.changes_detected,
            debounced_changes=m.debounced_changes,
            permanent_failures=m.permanent_failures,
            failed_notifications=m.failed_notifications,
        )

    def get_health_status(self) -> HealthStatus:
        metrics = self.get_metrics()
        threshold = self._config.success_rate_threshold

        if metrics.docs_tracked > 0 and metrics.success_rate < threshold:
            return HealthStatus(
                "degraded", f"Success rate {metrics.success_rate:.2f} < {threshold:.2f}"
            )
        if metrics.errors_in_last_hour > self._config.max_errors_per_hour:
            return HealthStatus("degraded", f"{metrics.errors_in_last_hour} errors in last hour")
        if metrics.docs_tracked == 0:
            return HealthStatus("healthy", "No documents tracked")
        return HealthStatus("healthy", "All systems operational")

    async def reset(self) -> None:
        """Stop the loop, then clear the registry and metrics (process-local)."""
        await self.stop()
        self._registry.clear()
        self._metrics = _MetricsState(self._config.metrics_window)
        log.info("Poller reset")
