from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any, Protocol


class DurableStore(Protocol):
    """Key/value persistence with per-key atomicity.

    Values are JSON-compatible. No ordering or transaction guarantees across keys.
    """

    def get(self, key: str) -> Any | None:
        """Return the stored value or None when the key is absent."""

    def set(self, key: str, value: Any) -> None:
        """Store *value* under *key*, replacing any previous value."""

    def remove(self, keys: str | Iterable[str]) -> None:
        """Delete one or more keys. Missing keys are ignored."""

    def keys(self) -> list[str]:
        """Return all stored keys."""

    def bytes_in_use(self, keys: Iterable[str] | None = None) -> int:
        """Approximate bytes used by *keys* (all keys when None)."""


def encoded_size(value: Any) -> int:
    """Size in bytes of *value* serialized as compact UTF-8 JSON."""
    if value is None:
        return 0
    try:
        return len(json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))
    except (TypeError, ValueError):
        return 0


def as_key_list(keys: str | Iterable[str]) -> list[str]:
    if isinstance(keys, str):
        return [keys]
    return [str(k) for k in keys]
