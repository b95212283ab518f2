"""Command surface for the chat layer.

DocWatchService wires the store, source, sinks, snapshot service, rules
engine and poller from a Config, binds them all to one user scope, and
translates internal failures into the user-visible errors in
``docwatch.errors``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from filelock import Timeout

from docwatch.clock import Clock, SystemClock
from docwatch.config import Config, fetch_secret, get_config
from docwatch.errors import (
    DocwatchError,
    NotTrackedError,
    RuleNotFoundError,
    TemporarilyUnavailableError,
    TransientFetchError,
)
from docwatch.logging import get_logger
from docwatch.models import ChangeEvent, DocumentSnapshot, TrackedDocument
from docwatch.persistence import ChangeStats, DocumentPersistence
from docwatch.poller import CycleSummary, DocPoller, PollerMetrics, Sleep
from docwatch.rules.engine import RulesEngine
from docwatch.rules.integration import RulesIntegration
from docwatch.rules.schema import ChangeRule
from docwatch.sinks import (
    HttpNotifySink,
    HttpTaskSink,
    HttpWebhookSink,
    LoggingNotifySink,
    LoggingTaskSink,
    NotifySink,
    TaskSink,
    WebhookSink,
)
from docwatch.snapshots import ChangeHistoryEntry, DocSnapshotService, SnapshotStats
from docwatch.sources import DocumentSource, HttpDocumentSource
from docwatch.store import Store, create_store

log = get_logger("service")

DEFAULT_USER = "default"
SINK_TOKEN_ENV = "DOCWATCH_SINK_TOKEN"


@contextmanager
def unavailable_on_io_error(what: str) -> Iterator[None]:
    """Re-raise store/fetch failures as TemporarilyUnavailableError."""
    try:
        yield
    except (OSError, Timeout, TransientFetchError) as e:
        log.error("%s failed: %s", what, e)
        raise TemporarilyUnavailableError(f"{what} is temporarily unavailable") from e


class DocWatchService:
    """One user's document-watching service.

    Example:
        service = DocWatchService(load_config())
        service.restore()
        service.start_tracking("doccnABC", notify_target="chat-1")
        await service.start()
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        store: Store | None = None,
        source: DocumentSource | None = None,
        notify_sink: NotifySink | None = None,
        webhook_sink: WebhookSink | None = None,
        task_sink: TaskSink | None = None,
        clock: Clock | None = None,
        sleep: Sleep = asyncio.sleep,
        user_id: str | None = None,
    ) -> None:
        self._config = config or get_config()
        self._clock = clock or SystemClock()
        self._user_id = user_id or self._config.user.id or DEFAULT_USER

        self._store = store or create_store(self._config.store)
        self._source = source or self._build_source()
        sinks_token = fetch_secret(SINK_TOKEN_ENV)
        sinks = self._config.sinks
        self._notify_sink = notify_sink or (
            HttpNotifySink(sinks.notify_url, token=sinks_token)
            if sinks.notify_url
            else LoggingNotifySink()
        )
        task_sink = task_sink or (
            HttpTaskSink(sinks.task_url, token=sinks_token) if sinks.task_url else LoggingTaskSink()
        )
        webhook_sink = webhook_sink or HttpWebhookSink(timeout=sinks.webhook_timeout)

        self.persistence = DocumentPersistence(self._store, self._clock, user_id=self._user_id)
        self.snapshots = DocSnapshotService(
            self._store, self._config.snapshots, self._clock, user_id=self._user_id
        )
        self.engine = RulesEngine(
            self._store,
            notify_sink=self._notify_sink,
            webhook_sink=webhook_sink,
            task_sink=task_sink,
            clock=self._clock,
        )
        self.rules = RulesIntegration(self.engine, self._config.rules)
        self.rules.initialize_rules_system(self._user_id)

        self.poller: DocPoller | None = None
        if self._source is not None:
            self.poller = DocPoller(
                self._source,
                config=self._config.polling,
                snapshots=self.snapshots,
                rules=self.rules,
                persistence=self.persistence,
                notify_sink=self._notify_sink,
                clock=self._clock,
                sleep=sleep,
            )

    def _build_source(self) -> DocumentSource | None:
        source = self._config.source
        if not source.base_url:
            log.info("No document source configured; polling disabled")
            return None
        return HttpDocumentSource(
            source.base_url, timeout=source.timeout, token=fetch_secret(source.token_env)
        )

    @property
    def config(self) -> Config:
        return self._config

    @property
    def user_id(self) -> str:
        return self._user_id

    def _require_poller(self) -> DocPoller:
        if self.poller is None:
            raise DocwatchError("No document source configured (set source.base_url)")
        return self.poller

    # -- lifecycle ---------------------------------------------------------

    def restore(self) -> int:
        """Reload tracked documents persisted by an earlier run."""
        if self.poller is None:
            return 0
        with unavailable_on_io_error("Tracked document store"):
            return self.poller.restore()

    async def start(self) -> None:
        self._require_poller().start()

    async def stop(self) -> None:
        """Stop polling, drain queued rule work and flush aggregated summaries."""
        if self.poller is not None:
            await self.poller.stop()
        await self.rules.shutdown()
        await self.flush_aggregated()

    async def poll_once(self) -> CycleSummary:
        return await self._require_poller().poll_once()

    async def flush_aggregated(self) -> dict[str, str | None]:
        return await self.rules.flush_aggregated(force=True)

    # -- tracking ----------------------------------------------------------

    def start_tracking(self, doc_token: str, notify_target: str, doc_type: str = "docx") -> bool:
        poller = self._require_poller()
        with unavailable_on_io_error("Tracked document store"):
            return poller.start_tracking_doc(doc_token, doc_type, notify_target)

    def stop_tracking(self, doc_token: str) -> None:
        if self.poller is not None:
            with unavailable_on_io_error("Tracked document store"):
                if self.poller.stop_tracking_doc(doc_token):
                    return
            raise NotTrackedError(doc_token)
        with unavailable_on_io_error("Tracked document store"):
            if not self.persistence.stop_tracking(doc_token):
                raise NotTrackedError(doc_token)

    def list_tracked(self) -> list[TrackedDocument]:
        if self.poller is not None:
            return self.poller.get_tracked_docs()
        with unavailable_on_io_error("Tracked document store"):
            return self.persistence.get_tracked_docs()

    def get_tracked(self, doc_token: str) -> TrackedDocument:
        if self.poller is not None:
            doc = self.poller.get_tracked_doc(doc_token)
        else:
            with unavailable_on_io_error("Tracked document store"):
                doc = self.persistence.get_tracked_doc(doc_token)
        if doc is None:
            raise NotTrackedError(doc_token)
        return doc

    # -- status ------------------------------------------------------------

    def metrics(self) -> PollerMetrics | None:
        return self.poller.get_metrics() if self.poller is not None else None

    def health(self) -> dict[str, Any]:
        """Poller health plus a reachability probe per subsystem."""
        poller = self.poller.get_health_status().to_dict() if self.poller is not None else None
        return {
            "poller": poller,
            "store": self.persistence.health_check(),
            "snapshots": self.snapshots.health_check(),
            "rules": self.engine.health_check(),
            "rule_queue": self.rules.get_rule_queue_stats(),
        }

    # -- rules -------------------------------------------------------------

    def create_rule(
        self,
        doc_token: str,
        name: str,
        condition: Any,
        action: Any,
        description: str | None = None,
    ) -> ChangeRule:
        with unavailable_on_io_error("Rule store"):
            return self.engine.create_rule(doc_token, name, condition, action, description)

    def list_rules(self, doc_token: str | None = None) -> list[ChangeRule]:
        with unavailable_on_io_error("Rule store"):
            if doc_token is None:
                return self.engine.get_all_rules()
            return self.engine.get_rules_for_doc(doc_token, enabled_only=False)

    def get_rule(self, rule_id: str) -> ChangeRule:
        with unavailable_on_io_error("Rule store"):
            rule = self.engine.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def update_rule(self, rule_id: str, **changes: Any) -> ChangeRule:
        with unavailable_on_io_error("Rule store"):
            return self.engine.update_rule(rule_id, **changes)

    def delete_rule(self, rule_id: str) -> None:
        with unavailable_on_io_error("Rule store"):
            deleted = self.engine.delete_rule(rule_id)
        if not deleted:
            raise RuleNotFoundError(rule_id)

    def rule_statistics(self) -> dict[str, Any]:
        with unavailable_on_io_error("Rule store"):
            return self.engine.get_rule_statistics()

    # -- snapshots and changes ---------------------------------------------

    def snapshot_history(self, doc_token: str, limit: int = 20) -> list[DocumentSnapshot]:
        with unavailable_on_io_error("Snapshot store"):
            return self.snapshots.get_snapshot_history(doc_token, limit)

    def snapshot_stats(self, doc_token: str) -> SnapshotStats:
        with unavailable_on_io_error("Snapshot store"):
            return self.snapshots.get_snapshot_stats(doc_token)

    def prune_snapshots(self, doc_token: str | None = None) -> int:
        """Apply snapshot retention to one document, or to all of them."""
        with unavailable_on_io_error("Snapshot store"):
            return self.snapshots.prune_old_snapshots(doc_token)

    def change_history_with_diffs(self, doc_token: str, limit: int = 10) -> list[ChangeHistoryEntry]:
        with unavailable_on_io_error("Snapshot store"):
            return self.snapshots.get_change_history_with_diffs(doc_token, limit)

    def recent_changes(self, doc_token: str | None = None, limit: int = 20) -> list[ChangeEvent]:
        with unavailable_on_io_error("Change store"):
            return self.persistence.get_change_history(doc_token, limit)

    def change_stats(self, doc_token: str) -> ChangeStats:
        with unavailable_on_io_error("Change store"):
            return self.persistence.get_change_stats(doc_token)
