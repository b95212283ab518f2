"""In-process store, the default backend."""

from __future__ import annotations

import copy
import threading

from docwatch.store.base import Modifier, Record


class MemoryStore:
    """Tables held in a dict, guarded by a single lock.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._tables: dict[str, list[Record]] = {}
        self._lock = threading.Lock()

    def load(self, table: str) -> list[Record]:
        with self._lock:
            return copy.deepcopy(self._tables.get(table, []))

    def atomic_update(self, table: str, modifier: Modifier) -> list[Record]:
        with self._lock:
            records = copy.deepcopy(self._tables.get(table, []))
            records = modifier(records)
            self._tables[table] = copy.deepcopy(records)
            return records

    def ping(self) -> bool:
        return True

    def clear(self) -> None:
        with self._lock:
            self._tables.clear()
