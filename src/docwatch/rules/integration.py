"""Queueing facade over the rules engine.

In async mode the poll pipeline only enqueues change events on a bounded
``asyncio.Queue``; a single background worker evaluates them in batches.
Rule delivery never blocks polling: a full queue or a slow engine is
logged and the change is dropped from rule evaluation.
"""

from __future__ import annotations

import asyncio
from typing import Any

from docwatch.config.schema import RulesConfig
from docwatch.logging import get_logger
from docwatch.models import ChangeEvent
from docwatch.rules.engine import RulesEngine
from docwatch.rules.schema import RuleExecutionResult

log = get_logger("rules.queue")


class RulesIntegration:
    """Sync or queued-async rule evaluation with an explicit drain barrier."""

    def __init__(self, engine: RulesEngine, config: RulesConfig | None = None) -> None:
        self._engine = engine
        self._config = config or RulesConfig()
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=self._config.queue_maxsize)
        self._batch_size = self._config.batch_size
        self._worker: asyncio.Task[None] | None = None
        self._processed = 0
        self._failed = 0
        self._dropped = 0

    @property
    def engine(self) -> RulesEngine:
        return self._engine

    @property
    def config(self) -> RulesConfig:
        return self._config

    def initialize_rules_system(self, user_id: str) -> None:
        """Bind the user scope used by every subsequent engine call."""
        self._engine.set_user_id(user_id)
        log.info("Rules system initialized for user %s", user_id)

    async def evaluate_change_rules(
        self,
        change: ChangeEvent,
        *,
        enabled: bool | None = None,
        async_mode: bool | None = None,
        timeout_ms: int | None = None,
        batch_size: int | None = None,
    ) -> list[RuleExecutionResult]:
        """Evaluate ``change`` now, or enqueue it for the background worker.

        Keyword arguments override the configured values for this call.
        Returns the engine's results in sync mode and ``[]`` otherwise.
        """
        if not (self._config.enabled if enabled is None else enabled):
            return []

        if batch_size is not None:
            self._batch_size = max(1, batch_size)

        if self._config.async_mode if async_mode is None else async_mode:
            self._ensure_worker()
            try:
                self._queue.put_nowait(change)
            except asyncio.QueueFull:
                self._dropped += 1
                log.warning(
                    "Rule queue full (%d), dropping change %s", self._queue.maxsize, change.id
                )
                return []
            log.debug("Queued change %s for async rule evaluation", change.id)
            return []

        timeout = (self._config.timeout_ms if timeout_ms is None else timeout_ms) / 1000
        try:
            return await asyncio.wait_for(
                self._engine.evaluate_change_against_rules(change), timeout
            )
        except asyncio.TimeoutError:
            log.error("Rule evaluation for change %s timed out after %.1fs", change.id, timeout)
        except Exception as e:
            log.error("Rule evaluation for change %s failed: %s", change.id, e)
        return []

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_worker(), name="docwatch-rules-worker")

    async def _run_worker(self) -> None:
        while True:
            batch = [await self._queue.get()]
            while len(batch) < self._batch_size:
                try:
                    batch.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break

            for change in batch:
                try:
                    results = await self._engine.evaluate_change_against_rules(change)
                    self._processed += 1
                    if results:
                        log.debug("Executed %d rules for change %s", len(results), change.id)
                except Exception as e:
                    self._failed += 1
                    log.error("Failed to process queued change %s: %s", change.id, e)
                finally:
                    self._queue.task_done()

    async def flush_aggregated(self, force: bool = False) -> dict[str, str | None]:
        """Send aggregate summaries older than ``aggregate_interval_ms`` (all if ``force``)."""
        min_age = None if force else self._config.aggregate_interval_ms
        return await self._engine.aggregation.flush(min_age)

    def get_rule_queue_stats(self) -> dict[str, Any]:
        return {
            "queue_size": self._queue.qsize(),
            "is_async_enabled": self._config.async_mode,
            "worker_running": self._worker is not None and not self._worker.done(),
            "processed": self._processed,
            "failed": self._failed,
            "dropped": self._dropped,
        }

    async def drain_rule_queue(self, timeout_ms: int = 30000) -> bool:
        """Wait until every queued change has been evaluated.

        Returns False when ``timeout_ms`` elapsed first; the backlog stays
        queued. In sync mode there is nothing to wait for.
        """
        if not self._config.async_mode and self._queue.empty():
            return True
        if self._queue.qsize() and (self._worker is None or self._worker.done()):
            self._ensure_worker()
        try:
            await asyncio.wait_for(self._queue.join(), timeout_ms / 1000)
        except asyncio.TimeoutError:
            log.warning(
                "Rule queue drain timed out after %dms, %d items remaining",
                timeout_ms,
                self._queue.qsize(),
            )
            return False
        log.debug("Rule queue drained")
        return True

    async def shutdown(self, timeout_ms: int = 5000) -> None:
        """Drain the queue (bounded by ``timeout_ms``) and stop the worker."""
        await self.drain_rule_queue(timeout_ms)
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None


class EXAMPLE_RULES:
    """Rule payloads for common cases, ready for ``RulesEngine.create_rule(**...)``."""

    @staticmethod
    def notify_user(doc_token: str, user_id: str, chat_id: str) -> dict[str, Any]:
        return {
            "doc_token": doc_token,
            "name": f"Notify {user_id} of changes",
            "condition": {"type": "modified_by_user", "value": user_id},
            "action": {"type": "notify", "target": chat_id},
        }

    @staticmethod
    def business_hours_only(doc_token: str, chat_id: str) -> dict[str, Any]:
        return {
            "doc_token": doc_token,
            "name": "Notify during business hours (9-17)",
            "condition": {"type": "time_range", "value": "9-17"},
            "action": {"type": "notify", "target": chat_id},
        }

    @staticmethod
    def create_task_on_major_change(doc_token: str) -> dict[str, Any]:
        return {
            "doc_token": doc_token,
            "name": "Create task on major changes",
            "condition": {"type": "change_type", "value": "user_changed"},
            "action": {
                "type": "create_task",
                "template": "Review document changes for {{doc_title}}",
            },
        }

    @staticmethod
    def webhook_notification(doc_token: str, webhook_url: str) -> dict[str, Any]:
        return {
            "doc_token": doc_token,
            "name": "Webhook notification",
            "condition": {"type": "any"},
            "action": {"type": "webhook", "target": webhook_url},
        }

    @staticmethod
    def hourly_summary(doc_token: str, chat_id: str) -> dict[str, Any]:
        return {
            "doc_token": doc_token,
            "name": "Hourly change summary",
            "condition": {"type": "any"},
            "action": {"type": "aggregate", "target": chat_id},
        }
