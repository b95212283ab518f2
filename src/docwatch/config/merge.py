"""Deep merge for layered configuration.

Layers are merged lowest priority first (system, user, project, env).
"""

from __future__ import annotations

from typing import Any


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` overlaid with ``override``.

    - Nested dicts merge recursively
    - Lists and scalars from ``override`` replace the base value
    - None in ``override`` leaves the base value untouched

    Neither input is mutated.
    """
    result = dict(base)

    for key, value in override.items():
        if value is None:
            continue
        existing = result.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            result[key] = deep_merge(existing, value)
        else:
            result[key] = value

    return result


def merge_configs(*configs: dict[str, Any]) -> dict[str, Any]:
    """Merge config layers in order; later layers win."""
    result: dict[str, Any] = {}
    for layer in configs:
        if layer:
            result = deep_merge(result, layer)
    return result
