"""Core data model for document tracking.

Records that cross the store boundary provide ``to_dict``/``from_dict`` so
any backend can persist them as plain mappings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ChangeType(Enum):
    """Classification of a detected metadata change."""

    NEW_DOCUMENT = "new_document"
    TIME_UPDATED = "time_updated"
    USER_CHANGED = "user_changed"
    NONE = "none"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DocMetadata:
    """Read-only metadata fetched from the document host on every poll."""

    doc_token: str
    last_modified_user: str
    last_modified_time: int
    doc_type: str = "doc"
    title: str = ""
    owner_id: str = ""
    created_time: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DocMetadata:
        return cls(
            doc_token=data["doc_token"],
            last_modified_user=data.get("last_modified_user", ""),
            last_modified_time=int(data.get("last_modified_time", 0)),
            doc_type=data.get("doc_type", "doc"),
            title=data.get("title", ""),
            owner_id=data.get("owner_id", ""),
            created_time=int(data.get("created_time", 0)),
        )


@dataclass(frozen=True)
class TrackedDocument:
    """The poller's bookkeeping for one tracked document.

    ``last_known_modified_time`` is None until the first successful poll;
    such a document has no baseline and its first detection is a
    ``new_document`` change.
    """

    doc_token: str
    doc_type: str
    notify_target: str
    last_known_user: str | None = None
    last_known_modified_time: int | None = None
    last_notification_time: int = 0  # epoch ms

    @property
    def has_baseline(self) -> bool:
        return self.last_known_modified_time is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "doc_token": self.doc_token,
            "doc_type": self.doc_type,
            "notify_target": self.notify_target,
            "last_known_user": self.last_known_user,
            "last_known_modified_time": self.last_known_modified_time,
            "last_notification_time": self.last_notification_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackedDocument:
        return cls(
            doc_token=data["doc_token"],
            doc_type=data.get("doc_type", "doc"),
            notify_target=data.get("notify_target", ""),
            last_known_user=data.get("last_known_user"),
            last_known_modified_time=data.get("last_known_modified_time"),
            last_notification_time=data.get("last_notification_time", 0),
        )


@dataclass(frozen=True)
class ChangeDetectionResult:
    """Outcome of comparing fresh metadata against tracked state."""

    has_changed: bool
    change_type: ChangeType
    debounced: bool
    current_user: str
    current_time: int
    changed_at: datetime
    reason: str
    previous_user: str | None = None
    previous_time: int | None = None


@dataclass(frozen=True)
class ChangeEvent:
    """Immutable audit record of one confirmed, non-debounced change."""

    id: str
    doc_token: str
    new_modified_user: str
    new_modified_time: int
    change_type: ChangeType
    change_detected_at: datetime
    user_id: str = ""
    previous_modified_user: str | None = None
    previous_modified_time: int | None = None
    debounced: bool = False
    notification_sent: bool = False
    notification_message_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "doc_token": self.doc_token,
            "previous_modified_user": self.previous_modified_user,
            "previous_modified_time": self.previous_modified_time,
            "new_modified_user": self.new_modified_user,
            "new_modified_time": self.new_modified_time,
            "change_type": self.change_type.value,
            "change_detected_at": self.change_detected_at.isoformat(),
            "debounced": self.debounced,
            "notification_sent": self.notification_sent,
            "notification_message_id": self.notification_message_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeEvent:
        return cls(
            id=data["id"],
            user_id=data.get("user_id", ""),
            doc_token=data["doc_token"],
            previous_modified_user=data.get("previous_modified_user"),
            previous_modified_time=data.get("previous_modified_time"),
            new_modified_user=data["new_modified_user"],
            new_modified_time=data["new_modified_time"],
            change_type=ChangeType(data["change_type"]),
            change_detected_at=datetime.fromisoformat(data["change_detected_at"]),
            debounced=data.get("debounced", False),
            notification_sent=data.get("notification_sent", False),
            notification_message_id=data.get("notification_message_id"),
            metadata=data.get("metadata") or {},
        )


@dataclass(frozen=True)
class DocumentSnapshot:
    """A compressed content snapshot for one document revision."""

    id: str
    doc_token: str
    revision_number: int
    content_hash: str
    compressed_content: bytes
    content_size: int
    compression_ratio: float
    modified_by: str
    modified_at: int
    stored_at: datetime
    is_latest: bool = True
    user_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def compressed_size(self) -> int:
        return len(self.compressed_content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "doc_token": self.doc_token,
            "revision_number": self.revision_number,
            "content_hash": self.content_hash,
            "compressed_content": self.compressed_content,
            "content_size": self.content_size,
            "compression_ratio": self.compression_ratio,
            "modified_by": self.modified_by,
            "modified_at": self.modified_at,
            "stored_at": self.stored_at.isoformat(),
            "is_latest": self.is_latest,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DocumentSnapshot:
        return cls(
            id=data["id"],
            user_id=data.get("user_id", ""),
            doc_token=data["doc_token"],
            revision_number=data["revision_number"],
            content_hash=data["content_hash"],
            compressed_content=data["compressed_content"],
            content_size=data["content_size"],
            compression_ratio=data["compression_ratio"],
            modified_by=data.get("modified_by", ""),
            modified_at=data.get("modified_at", 0),
            stored_at=datetime.fromisoformat(data["stored_at"]),
            is_latest=data.get("is_latest", False),
            metadata=data.get("metadata") or {},
        )
