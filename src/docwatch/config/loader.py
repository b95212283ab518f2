"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching with reload support
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any, TypeVar

import yaml

from docwatch.config.merge import merge_configs
from docwatch.config.paths import get_config_paths
from docwatch.config.schema import (
    Config,
    LoggingConfig,
    PollingConfig,
    RulesConfig,
    SinksConfig,
    SnapshotConfig,
    SourceConfig,
    StoreConfig,
    UserConfig,
)

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("docwatch.config")

_cached_config: Config | None = None

_SECTIONS: dict[str, type] = {
    "polling": PollingConfig,
    "snapshots": SnapshotConfig,
    "rules": RulesConfig,
    "store": StoreConfig,
    "source": SourceConfig,
    "sinks": SinksConfig,
    "logging": LoggingConfig,
    "user": UserConfig,
}

T = TypeVar("T")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build config dict from environment variables.

    Recognized variables:
        DOCWATCH_LOG: log file path
        DOCWATCH_USER: owning user id
        DOCWATCH_DATA_DIR: data directory (selects the yaml store)
        DOCWATCH_SOURCE_URL: document host base URL
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("DOCWATCH_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    user_id = os.environ.get("DOCWATCH_USER")
    if user_id:
        overrides.setdefault("user", {})["id"] = user_id

    data_dir = os.environ.get("DOCWATCH_DATA_DIR")
    if data_dir:
        overrides["store"] = {"backend": "yaml", "path": data_dir}

    source_url = os.environ.get("DOCWATCH_SOURCE_URL")
    if source_url:
        overrides.setdefault("source", {})["base_url"] = source_url

    return overrides


def _build_section(cls: type[T], data: Any) -> T:
    """Instantiate a section dataclass from a dict, ignoring unknown keys."""
    if not isinstance(data, dict):
        return cls()
    known = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    unknown = set(data) - known
    if unknown:
        _log.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**{k: v for k, v in data.items() if k in known})


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass."""
    sections = {name: _build_section(cls, data.get(name, {})) for name, cls in _SECTIONS.items()}
    extra = {k: v for k, v in data.items() if k not in _SECTIONS}
    return Config(**sections, extra=extra)


def load_config(project_root: str | None = None, reload: bool = False) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Project config ($project_root/.docwatch/config.yaml)
    3. User config (~/.config/docwatch/ or ~/.docwatch/ or %APPDATA%)
    4. System config (/etc/docwatch/ or %PROGRAMDATA%)

    Args:
        project_root: Project directory for project-level config.
        reload: Force reload even if cached.

    Returns:
        Merged Config object.
    """
    global _cached_config

    if _cached_config is not None and not reload and project_root is None:
        return _cached_config

    configs: list[dict[str, Any]] = []

    for path in get_config_paths(project_root):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    config = dict_to_config(merge_configs(*configs))

    # Cache only global config (no project_root)
    if project_root is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Reset cached config (tests, forced reload)."""
    global _cached_config
    _cached_config = None
