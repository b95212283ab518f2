"""Secret lookup for API tokens.

Tokens for the document host and outbound sinks are never stored in
config.yaml. They come from the process environment first and then from a
project-local ``.env.secrets`` file (parsed with python-dotenv and cached).
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import dotenv_values

SECRETS_FILE = ".env.secrets"


@lru_cache(maxsize=4)
def _load_secrets(secrets_path: Path | None = None) -> dict[str, str | None]:
    path = secrets_path or Path(SECRETS_FILE)
    if path.exists():
        return dotenv_values(path)
    return {}


def fetch_secret(
    key: str,
    default: str | None = None,
    secrets_path: Path | None = None,
) -> str | None:
    """Fetch a secret from the environment or ``.env.secrets``.

    Args:
        key: Variable name (e.g., "DOCWATCH_API_TOKEN")
        default: Value returned when the secret is not set anywhere
        secrets_path: Explicit secrets file instead of ./.env.secrets

    Returns:
        Secret value or default.
    """
    value = os.environ.get(key)
    if value is not None:
        return value

    secrets = _load_secrets(secrets_path)
    found = secrets.get(key)
    if found is not None:
        return found

    return default


def clear_secret_cache() -> None:
    """Forget cached ``.env.secrets`` contents."""
    _load_secrets.cache_clear()
