"""Persistence for tracked documents and the change audit trail.

Tracked-document rows outlive the process: stopping tracking only marks a
row inactive, and a poller can rebuild its registry from the active rows.
Change events are append-only.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from docwatch.clock import Clock, SystemClock
from docwatch.errors import ScopeNotBoundError
from docwatch.logging import get_logger
from docwatch.models import ChangeEvent, TrackedDocument
from docwatch.store import CHANGE_EVENTS, TRACKED_DOCUMENTS, Record, Store, scoped

log = get_logger("persistence")


@dataclass
class ChangeStats:
    total_changes: int = 0
    notified_changes: int = 0
    debounced_changes: int = 0
    unique_modifiers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_changes": self.total_changes,
            "notified_changes": self.notified_changes,
            "debounced_changes": self.debounced_changes,
            "unique_modifiers": list(self.unique_modifiers),
        }


class DocumentPersistence:
    """User-scoped store access for tracked documents and change events."""

    def __init__(
        self,
        store: Store,
        clock: Clock | None = None,
        user_id: str | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._user_id = user_id

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def set_user_id(self, user_id: str) -> None:
        self._user_id = user_id
        log.debug("Persistence scope bound to user %s", user_id)

    def _require_user(self) -> str:
        if self._user_id is None:
            raise ScopeNotBoundError("User scope not bound; call set_user_id() first")
        return self._user_id

    def _is_row(self, record: Record, user_id: str, doc_token: str) -> bool:
        return record.get("user_id", "") == user_id and record["doc_token"] == doc_token

    # -- tracked documents -------------------------------------------------

    def start_tracking(self, doc: TrackedDocument, notes: str | None = None) -> TrackedDocument:
        """Insert or reactivate the row for ``doc``.

        An already active row is left as is and returned.
        """
        user_id = self._require_user()
        now = self._clock.now().isoformat()
        result = doc

        def modifier(records: list[Record]) -> list[Record]:
            nonlocal result
            for index, record in enumerate(records):
                if not self._is_row(record, user_id, doc.doc_token):
                    continue
                if record.get("is_active"):
                    result = TrackedDocument.from_dict(record)
                    return records
                records[index] = {
                    **record,
                    "doc_type": doc.doc_type,
                    "notify_target": doc.notify_target,
                    "is_active": True,
                    "updated_at": now,
                }
                result = TrackedDocument.from_dict(records[index])
                return records

            records.append(
                {
                    **doc.to_dict(),
                    "user_id": user_id,
                    "is_active": True,
                    "notes": notes,
                    "started_tracking_at": now,
                    "updated_at": now,
                }
            )
            return records

        self._store.atomic_update(TRACKED_DOCUMENTS, modifier)
        log.info("Started tracking %s -> %s", doc.doc_token, doc.notify_target)
        return result

    def stop_tracking(self, doc_token: str) -> bool:
        """Mark the row inactive. Returns False when no active row existed."""
        user_id = self._require_user()
        found = False

        def modifier(records: list[Record]) -> list[Record]:
            nonlocal found
            for record in records:
                if self._is_row(record, user_id, doc_token) and record.get("is_active"):
                    record["is_active"] = False
                    record["updated_at"] = self._clock.now().isoformat()
                    found = True
            return records

        self._store.atomic_update(TRACKED_DOCUMENTS, modifier)
        if found:
            log.info("Stopped tracking %s", doc_token)
        return found

    def update_tracked_doc_state(self, state: TrackedDocument) -> bool:
        """Persist the poller's new state for an active row.

        Returns False (and writes nothing) when the row is gone or inactive.
        """
        user_id = self._require_user()
        updated = False

        def modifier(records: list[Record]) -> list[Record]:
            nonlocal updated
            for record in records:
                if self._is_row(record, user_id, state.doc_token) and record.get("is_active"):
                    record.update(
                        last_known_user=state.last_known_user,
                        last_known_modified_time=state.last_known_modified_time,
                        last_notification_time=state.last_notification_time,
                        updated_at=self._clock.now().isoformat(),
                    )
                    updated = True
            return records

        self._store.atomic_update(TRACKED_DOCUMENTS, modifier)
        return updated

    def get_tracked_docs(self, active_only: bool = True) -> list[TrackedDocument]:
        records = scoped(self._store.load(TRACKED_DOCUMENTS), self._require_user())
        if active_only:
            records = [r for r in records if r.get("is_active")]
        return [TrackedDocument.from_dict(r) for r in records]

    def get_tracked_doc(self, doc_token: str) -> TrackedDocument | None:
        for record in scoped(self._store.load(TRACKED_DOCUMENTS), self._require_user()):
            if record["doc_token"] == doc_token and record.get("is_active"):
                return TrackedDocument.from_dict(record)
        return None

    # -- change events -----------------------------------------------------

    def record_change(self, event: ChangeEvent) -> ChangeEvent:
        """Append ``event`` to the audit trail under the bound user."""
        user_id = self._require_user()
        event = replace(event, user_id=user_id)

        def modifier(records: list[Record]) -> list[Record]:
            records.append(event.to_dict())
            return records

        self._store.atomic_update(CHANGE_EVENTS, modifier)
        log.debug("Recorded %s change for %s", event.change_type, event.doc_token)
        return event

    def get_change_history(
        self, doc_token: str | None = None, limit: int | None = 50
    ) -> list[ChangeEvent]:
        """Change events, newest first; all documents when ``doc_token`` is None."""
        records = scoped(self._store.load(CHANGE_EVENTS), self._require_user())
        events = [
            ChangeEvent.from_dict(r)
            for r in records
            if doc_token is None or r["doc_token"] == doc_token
        ]
        events.sort(key=lambda e: e.change_detected_at, reverse=True)
        return events if limit is None else events[:limit]

    def get_change_stats(self, doc_token: str) -> ChangeStats:
        events = self.get_change_history(doc_token, limit=None)
        modifiers: list[str] = []
        for event in events:
            if event.new_modified_user not in modifiers:
                modifiers.append(event.new_modified_user)
        return ChangeStats(
            total_changes=len(events),
            notified_changes=sum(1 for e in events if e.notification_sent),
            debounced_changes=sum(1 for e in events if e.debounced),
            unique_modifiers=modifiers,
        )

    def health_check(self) -> bool:
        try:
            return self._store.ping()
        except Exception as e:
            log.error("Persistence health check failed: %s", e)
            return False
