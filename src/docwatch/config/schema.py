"""Configuration schema dataclasses for docwatch.

Defines the structure of configuration at all levels (system, user, project).
Every field has a default so partial configs merge cleanly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class PollingConfig:
    """Document polling configuration.

    Example config.yaml:
        polling:
          interval_ms: 30000
          max_concurrent_polls: 100
          debounce_window_ms: 5000
          retry_attempts: 3
          retry_backoff_ms: [100, 500, 2000]
    """

    interval_ms: int = 30000  # Time between poll cycles
    max_concurrent_polls: int = 100  # In-flight metadata fetches per cycle
    retry_attempts: int = 3  # Attempts per document per cycle
    retry_backoff_ms: list[int] = field(default_factory=lambda: [100, 500, 2000])
    fetch_timeout_ms: int = 10000  # Per-attempt metadata fetch timeout
    debounce_window_ms: int = 5000
    enable_logging: bool = True
    notify_on_change: bool = True  # Send the default change message to notify_target
    success_rate_threshold: float = 0.9  # Below this health is degraded
    max_errors_per_hour: int = 5  # Above this health is degraded
    metrics_window: int = 100  # Poll outcomes kept for the rolling success rate


@dataclass
class SnapshotConfig:
    """Content snapshot configuration."""

    enabled: bool = True
    max_doc_size_bytes: int = 10 * 1024 * 1024
    min_compression_ratio: float = 1.5
    retention_days: int = 90
    max_snapshots_per_doc: int = 50
    include_doc_types: list[str] = field(
        default_factory=lambda: ["doc", "docx", "sheet", "bitable"]
    )
    enable_semantic_diff: bool = True


@dataclass
class RulesConfig:
    """Rules evaluation configuration.

    With ``async_mode`` the poll loop only enqueues changes; a background
    worker evaluates them in batches of ``batch_size``.
    """

    enabled: bool = True
    async_mode: bool = True
    timeout_ms: int = 5000  # Synchronous evaluation timeout
    batch_size: int = 100
    queue_maxsize: int = 1000
    aggregate_interval_ms: int = 3_600_000  # Age at which an aggregate bucket is sent


@dataclass
class StoreConfig:
    """Persistence backend configuration."""

    backend: str = "memory"  # "memory" or "yaml"
    path: str | None = None  # Data directory for the yaml backend


@dataclass
class SourceConfig:
    """Remote document host configuration."""

    base_url: str | None = None
    timeout: float = 10.0
    token_env: str = "DOCWATCH_API_TOKEN"  # Secret holding the bearer token


@dataclass
class SinksConfig:
    """Outbound notification/task endpoints."""

    notify_url: str | None = None
    task_url: str | None = None
    webhook_timeout: float = 10.0


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, overrides level
    file: str | None = None  # Log file path


@dataclass
class UserConfig:
    """Owning user for all scoped records."""

    id: str | None = None


@dataclass
class Config:
    """Root configuration object."""

    polling: PollingConfig = field(default_factory=PollingConfig)
    snapshots: SnapshotConfig = field(default_factory=SnapshotConfig)
    rules: RulesConfig = field(default_factory=RulesConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    sinks: SinksConfig = field(default_factory=SinksConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    user: UserConfig = field(default_factory=UserConfig)

    # Extension point for future config sections
    extra: dict[str, Any] = field(default_factory=dict)
