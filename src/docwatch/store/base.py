"""Logical persisted schema.

Every collection is a list of plain mappings (each record's ``to_dict``)
and every record carries a ``user_id`` for multi-tenant isolation. Backends
only need to load a table and apply a read-modify-write atomically.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

Record = dict[str, Any]
Modifier = Callable[[list[Record]], list[Record]]

TRACKED_DOCUMENTS = "tracked_documents"
DOCUMENT_SNAPSHOTS = "document_snapshots"
CHANGE_RULES = "change_rules"
CHANGE_EVENTS = "change_events"

TABLES = (TRACKED_DOCUMENTS, DOCUMENT_SNAPSHOTS, CHANGE_RULES, CHANGE_EVENTS)


@runtime_checkable
class Store(Protocol):
    """Backend for the logical tables."""

    def load(self, table: str) -> list[Record]:
        """Return a copy of every record in ``table``."""
        ...

    def atomic_update(self, table: str, modifier: Modifier) -> list[Record]:
        """Read-modify-write ``table`` under the backend's lock.

        The modifier receives the current records and returns the new list.
        """
        ...

    def ping(self) -> bool:
        """Reachability probe."""
        ...


def scoped(records: list[Record], user_id: str) -> list[Record]:
    """Records owned by ``user_id``."""
    return [r for r in records if r.get("user_id", "") == user_id]
