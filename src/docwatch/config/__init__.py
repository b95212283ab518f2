"""Configuration management for docwatch.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/docwatch/ or %PROGRAMDATA%)
- User-level config (~/.config/docwatch/, ~/.docwatch/ or %APPDATA%)
- Project-level config ($project_root/.docwatch/)
- Environment variable overrides (highest priority)

Example usage:
    from docwatch.config import load_config

    config = load_config(project_root="/path/to/project")
    print(config.polling.interval_ms)
"""

from docwatch.config.loader import (
    get_config,
    load_config,
    reset_config,
)
from docwatch.config.paths import (
    get_config_paths,
    get_default_data_dir,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
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
from docwatch.config.secrets import clear_secret_cache, fetch_secret

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    # Schema types
    "LoggingConfig",
    "PollingConfig",
    "RulesConfig",
    "SinksConfig",
    "SnapshotConfig",
    "SourceConfig",
    "StoreConfig",
    "UserConfig",
    # Secret management
    "fetch_secret",
    "clear_secret_cache",
    # Path utilities
    "get_config_paths",
    "get_default_data_dir",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
]
