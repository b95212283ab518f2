"""File-backed store: one YAML file per table under a data directory.

Writers take a per-table FileLock around the read-modify-write cycle, so a
CLI invocation and a running poller can share the same directory.
"""

from __future__ import annotations

from pathlib import Path

import yaml
from filelock import FileLock

from docwatch.logging import get_logger
from docwatch.store.base import Modifier, Record

log = get_logger("store")

LOCK_TIMEOUT = 10


class CorruptTableError(OSError):
    """A table file exists but does not parse as YAML."""


class YamlStore:
    """Tables stored as ``<data_dir>/<table>.yaml``."""

    def __init__(self, data_dir: str | Path) -> None:
        self._dir = Path(data_dir)

    @property
    def data_dir(self) -> Path:
        return self._dir

    def _path(self, table: str) -> Path:
        return self._dir / f"{table}.yaml"

    def _lock(self, table: str) -> FileLock:
        return FileLock(self._path(table).with_suffix(".lock"), timeout=LOCK_TIMEOUT)

    def _read(self, table: str, strict: bool = False) -> list[Record]:
        """Parse a table file. A corrupt file reads as empty unless ``strict``."""
        path = self._path(table)
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                if strict:
                    raise CorruptTableError(f"Corrupt table {path}: {e}") from e
                log.warning("Corrupt table %s, reading as empty: %s", path, e)
                return []
        if data is None:
            return []
        if not isinstance(data, list):
            if strict:
                raise CorruptTableError(f"Table {path} is not a list of records")
            log.warning("Table %s is not a list of records, reading as empty", path)
            return []
        return data

    def _write(self, table: str, records: list[Record]) -> None:
        path = self._path(table)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            yaml.safe_dump(records, f, default_flow_style=False, sort_keys=False)
        tmp.replace(path)

    def load(self, table: str) -> list[Record]:
        self._dir.mkdir(parents=True, exist_ok=True)
        with self._lock(table):
            return self._read(table)

    def atomic_update(self, table: str, modifier: Modifier) -> list[Record]:
        """Read-modify-write with file locking.

        Raises:
            CorruptTableError: The table does not parse; the file is left as is.
        """
        self._dir.mkdir(parents=True, exist_ok=True)
        with self._lock(table):
            records = modifier(self._read(table, strict=True))
            self._write(table, records)
            return records

    def ping(self) -> bool:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            probe = self._dir / ".ping"
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
        except OSError as e:
            log.warning("Store at %s unreachable: %s", self._dir, e)
            return False
        return True
