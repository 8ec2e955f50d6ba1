from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Iterable
from pathlib import Path
from threading import RLock
from typing import Any

from markdesk.core.errors import InfrastructureError
from markdesk.core.storage.base import as_key_list

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonFileDurableStore:
    """Directory-backed store: one ``<key>.json`` file per key.

    Writes go to a temp file which is then moved over the target, so every key
    is replaced atomically. Unreadable files are treated as absent on read.
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise InfrastructureError(f"Unsupported storage key: {key!r}")
        return self._root / f"{key}.json"

    def get(self, key: str) -> Any | None:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                with path.open("r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, json.JSONDecodeError):
                logger.warning("Unreadable store file %s; treating as absent", path, exc_info=True)
                return None

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_name(f".{path.name}.tmp")
        with self._lock:
            try:
                with tmp.open("w", encoding="utf-8") as f:
                    json.dump(value, f, ensure_ascii=False)
                os.replace(tmp, path)
            except (OSError, TypeError, ValueError) as e:
                tmp.unlink(missing_ok=True)
                raise InfrastructureError(f"Failed to write {key}", cause=e) from e

    def remove(self, keys: str | Iterable[str]) -> None:
        with self._lock:
            for key in as_key_list(keys):
                try:
                    self._path(key).unlink(missing_ok=True)
                except OSError as e:
                    raise InfrastructureError(f"Failed to remove {key}", cause=e) from e

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(p.stem for p in self._root.glob("*.json") if not p.name.startswith("."))

    def bytes_in_use(self, keys: Iterable[str] | None = None) -> int:
        wanted = self.keys() if keys is None else as_key_list(keys)
        total = 0
        with self._lock:
            for key in wanted:
                try:
                    total += self._path(key).stat().st_size
                except (OSError, InfrastructureError):
                    continue
        return total
