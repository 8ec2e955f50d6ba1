from __future__ import annotations

import json
from collections.abc import Iterable
from threading import RLock
from typing import Any

from markdesk.core.storage.base import as_key_list, encoded_size


class MemoryDurableStore:
    """In-process store with the copy semantics of a real one.

    Values go through a JSON round-trip on write and on read, so callers can
    never mutate stored state by holding on to a reference.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._lock = RLock()
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str) -> Any | None:
        with self._lock:
            raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        raw = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._data[key] = raw

    def remove(self, keys: str | Iterable[str]) -> None:
        with self._lock:
            for key in as_key_list(keys):
                self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data.keys())

    def bytes_in_use(self, keys: Iterable[str] | None = None) -> int:
        wanted = self.keys() if keys is None else as_key_list(keys)
        return sum(encoded_size(self.get(key)) for key in wanted)
