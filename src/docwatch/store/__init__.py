"""Persistence backends for tracked documents, snapshots, rules and events."""

from __future__ import annotations

from pathlib import Path

from docwatch.config.paths import get_default_data_dir
from docwatch.config.schema import StoreConfig
from docwatch.store.base import (
    CHANGE_EVENTS,
    CHANGE_RULES,
    DOCUMENT_SNAPSHOTS,
    TABLES,
    TRACKED_DOCUMENTS,
    Record,
    Store,
    scoped,
)
from docwatch.store.memory import MemoryStore
from docwatch.store.yaml_store import CorruptTableError, YamlStore


def create_store(config: StoreConfig | None = None) -> Store:
    """Build the backend selected by ``config.backend``."""
    config = config or StoreConfig()
    if config.backend == "memory":
        return MemoryStore()
    if config.backend == "yaml":
        return YamlStore(Path(config.path) if config.path else get_default_data_dir())
    raise ValueError(f"Unknown store backend: {config.backend!r}")


__all__ = [
    "CHANGE_EVENTS",
    "CHANGE_RULES",
    "CorruptTableError",
    "DOCUMENT_SNAPSHOTS",
    "MemoryStore",
    "Record",
    "Store",
    "TABLES",
    "TRACKED_DOCUMENTS",
    "YamlStore",
    "create_store",
    "scoped",
]
