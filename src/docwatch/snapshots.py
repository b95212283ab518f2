"""Compressed content snapshots per document revision.

Snapshots are gzip-compressed and hashed (sha256). A snapshot is only kept
when it passes the storage policy:
- the document type is in ``include_doc_types``
- the content is at most ``max_doc_size_bytes``
- gzip achieves at least ``min_compression_ratio``

A policy rejection is a normal outcome: ``create_snapshot`` returns None.

For every document exactly one stored snapshot has ``is_latest`` set. The
flag moves to the new snapshot inside the same atomic store update that
inserts it.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from docwatch.clock import Clock, SystemClock
from docwatch.config.schema import SnapshotConfig
from docwatch.diff import DiffResult, compute_diff
from docwatch.errors import ScopeNotBoundError
from docwatch.logging import get_logger
from docwatch.models import DocumentSnapshot
from docwatch.store import DOCUMENT_SNAPSHOTS, Record, Store, scoped

log = get_logger("snapshots")


@dataclass
class SnapshotStats:
    """Storage statistics for one document's snapshots."""

    total_snapshots: int = 0
    total_original_size: int = 0
    total_compressed_size: int = 0
    average_compression_ratio: float = 0.0
    oldest_snapshot: datetime | None = None
    newest_snapshot: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_snapshots": self.total_snapshots,
            "total_original_size": self.total_original_size,
            "total_compressed_size": self.total_compressed_size,
            "average_compression_ratio": round(self.average_compression_ratio, 2),
            "oldest_snapshot": self.oldest_snapshot.isoformat() if self.oldest_snapshot else None,
            "newest_snapshot": self.newest_snapshot.isoformat() if self.newest_snapshot else None,
        }


@dataclass
class ChangeHistoryEntry:
    """A snapshot paired with the diff from the snapshot before it."""

    snapshot: DocumentSnapshot
    diff: DiffResult | None = None
    diff_summary: str = "Unable to compute diff"


def serialize_content(content: str | bytes | dict[str, Any] | list[Any]) -> str:
    """Normalize fetched content to the text that gets snapshotted."""
    if isinstance(content, str):
        return content
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return json.dumps(content, ensure_ascii=False, sort_keys=True)


class DocSnapshotService:
    """Stores, queries and prunes document snapshots for one user."""

    def __init__(
        self,
        store: Store,
        config: SnapshotConfig | None = None,
        clock: Clock | None = None,
        user_id: str | None = None,
    ) -> None:
        self._store = store
        self._config = config or SnapshotConfig()
        self._clock = clock or SystemClock()
        self._user_id = user_id

    @property
    def config(self) -> SnapshotConfig:
        return self._config

    def set_user_id(self, user_id: str) -> None:
        self._user_id = user_id
        log.debug("Snapshot scope bound to user %s", user_id)

    def _require_user(self) -> str:
        if self._user_id is None:
            raise ScopeNotBoundError("User scope not bound; call set_user_id() first")
        return self._user_id

    def _records(self, doc_token: str | None = None) -> list[Record]:
        records = scoped(self._store.load(DOCUMENT_SNAPSHOTS), self._require_user())
        if doc_token is not None:
            records = [r for r in records if r["doc_token"] == doc_token]
        return records

    def is_supported_doc_type(self, doc_type: str) -> bool:
        return doc_type in self._config.include_doc_types

    def is_within_size_limit(self, size_bytes: int) -> bool:
        return size_bytes <= self._config.max_doc_size_bytes

    def create_snapshot(
        self,
        doc_token: str,
        content: str | bytes | dict[str, Any] | list[Any],
        *,
        revision_number: int,
        modified_by: str,
        modified_at: int,
        doc_type: str,
    ) -> DocumentSnapshot | None:
        """Compress and store a snapshot of ``content``.

        Returns:
            The stored snapshot, or None when the storage policy rejects it.
            Storing a revision that already exists replaces that snapshot.
        """
        user_id = self._require_user()

        if not self.is_supported_doc_type(doc_type):
            log.info("Document type %r not snapshotted, skipping %s", doc_type, doc_token)
            return None

        text = serialize_content(content)
        raw = text.encode("utf-8")

        if not self.is_within_size_limit(len(raw)):
            log.warning(
                "Document %s is %d bytes, exceeds limit of %d, skipping snapshot",
                doc_token,
                len(raw),
                self._config.max_doc_size_bytes,
            )
            return None

        compressed = gzip.compress(raw)
        ratio = len(raw) / len(compressed)
        if ratio < self._config.min_compression_ratio:
            log.info(
                "Compression ratio %.2fx below threshold %.2fx, skipping snapshot of %s",
                ratio,
                self._config.min_compression_ratio,
                doc_token,
            )
            return None

        snapshot = DocumentSnapshot(
            id=uuid.uuid4().hex,
            user_id=user_id,
            doc_token=doc_token,
            revision_number=revision_number,
            content_hash=hashlib.sha256(raw).hexdigest(),
            compressed_content=compressed,
            content_size=len(raw),
            compression_ratio=ratio,
            modified_by=modified_by,
            modified_at=modified_at,
            stored_at=self._clock.now(),
            is_latest=True,
            metadata={
                "original_size": len(raw),
                "compressed_size": len(compressed),
                "doc_type": doc_type,
            },
        )

        def modifier(records: list[Record]) -> list[Record]:
            kept: list[Record] = []
            for record in records:
                same_doc = record.get("user_id", "") == user_id and record["doc_token"] == doc_token
                if same_doc and record["revision_number"] == revision_number:
                    continue
                if same_doc and record.get("is_latest"):
                    record = {**record, "is_latest": False}
                kept.append(record)
            kept.append(snapshot.to_dict())
            return kept

        self._store.atomic_update(DOCUMENT_SNAPSHOTS, modifier)
        log.info(
            "Stored snapshot for %s (rev %d, compressed %.2fx)",
            doc_token,
            revision_number,
            ratio,
        )
        return snapshot

    def get_snapshot(self, doc_token: str, revision_number: int) -> DocumentSnapshot | None:
        for record in self._records(doc_token):
            if record["revision_number"] == revision_number:
                return DocumentSnapshot.from_dict(record)
        return None

    def get_snapshot_content(self, doc_token: str, revision_number: int) -> str | None:
        """Decompressed text of a stored revision."""
        snapshot = self.get_snapshot(doc_token, revision_number)
        if snapshot is None:
            return None
        return gzip.decompress(snapshot.compressed_content).decode("utf-8")

    def get_latest_snapshot(self, doc_token: str) -> DocumentSnapshot | None:
        for record in self._records(doc_token):
            if record.get("is_latest"):
                return DocumentSnapshot.from_dict(record)
        return None

    def get_snapshot_history(self, doc_token: str, limit: int = 20) -> list[DocumentSnapshot]:
        """Snapshots for ``doc_token``, newest revision first."""
        snapshots = [DocumentSnapshot.from_dict(r) for r in self._records(doc_token)]
        snapshots.sort(key=lambda s: (s.revision_number, s.stored_at), reverse=True)
        return snapshots[:limit]

    def get_snapshot_stats(self, doc_token: str) -> SnapshotStats:
        snapshots = [DocumentSnapshot.from_dict(r) for r in self._records(doc_token)]
        if not snapshots:
            return SnapshotStats()

        original = sum(s.content_size for s in snapshots)
        compressed = sum(s.compressed_size for s in snapshots)
        stored = sorted(s.stored_at for s in snapshots)
        return SnapshotStats(
            total_snapshots=len(snapshots),
            total_original_size=original,
            total_compressed_size=compressed,
            average_compression_ratio=original / compressed if compressed else 0.0,
            oldest_snapshot=stored[0],
            newest_snapshot=stored[-1],
        )

    def prune_old_snapshots(self, doc_token: str | None = None) -> int:
        """Apply the retention policy and return how many snapshots were removed.

        Snapshots stored more than ``retention_days`` ago are removed, then
        each document keeps at most ``max_snapshots_per_doc`` of its newest
        revisions. The latest snapshot of a document is always kept.
        """
        user_id = self._require_user()
        cutoff = self._clock.now() - timedelta(days=self._config.retention_days)
        max_per_doc = self._config.max_snapshots_per_doc
        removed = 0

        def modifier(records: list[Record]) -> list[Record]:
            nonlocal removed
            others: list[Record] = []
            by_doc: dict[str, list[Record]] = {}
            for record in records:
                in_scope = record.get("user_id", "") == user_id and (
                    doc_token is None or record["doc_token"] == doc_token
                )
                if in_scope:
                    by_doc.setdefault(record["doc_token"], []).append(record)
                else:
                    others.append(record)

            kept = others
            for doc_records in by_doc.values():
                doc_records.sort(key=lambda r: r["revision_number"], reverse=True)
                survivors = []
                for record in doc_records:
                    if record.get("is_latest"):
                        survivors.append(record)
                        continue
                    too_old = datetime.fromisoformat(record["stored_at"]) < cutoff
                    if too_old or len(survivors) >= max_per_doc:
                        removed += 1
                        continue
                    survivors.append(record)
                kept.extend(survivors)
            return kept

        self._store.atomic_update(DOCUMENT_SNAPSHOTS, modifier)
        log.info(
            "Pruned %d snapshots (older than %d days or beyond %d per document)",
            removed,
            self._config.retention_days,
            max_per_doc,
        )
        return removed

    def get_change_history_with_diffs(
        self, doc_token: str, limit: int = 10
    ) -> list[ChangeHistoryEntry]:
        """Newest snapshots, each with the diff from its predecessor."""
        history = self.get_snapshot_history(doc_token, limit + 1)
        entries: list[ChangeHistoryEntry] = []

        for newer, older in zip(history, history[1:]):
            previous_content = self.get_snapshot_content(doc_token, older.revision_number)
            current_content = self.get_snapshot_content(doc_token, newer.revision_number)
            if previous_content is None or current_content is None:
                entries.append(ChangeHistoryEntry(snapshot=newer))
                continue
            diff = compute_diff(
                previous_content,
                current_content,
                older.revision_number,
                newer.revision_number,
            )
            entries.append(
                ChangeHistoryEntry(snapshot=newer, diff=diff, diff_summary=diff.summary.summary)
            )

        return entries[:limit]

    def health_check(self) -> bool:
        try:
            return self._store.ping()
        except Exception as e:
            log.error("Snapshot store health check failed: %s", e)
            return False

