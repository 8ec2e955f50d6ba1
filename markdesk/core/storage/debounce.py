from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import RLock, Timer, current_thread
from typing import Any

logger = logging.getLogger(__name__)

WriteFn = Callable[[str, Any], None]


@dataclass(slots=True)
class _Pending:
    value: Any
    timer: Timer


class DebouncedWriter:
    """Per-key coalescing writes.

    ``schedule`` parks the newest value for a key and (re)arms a timer; only the
    last parked value is ever written. ``write_now`` drops anything parked for
    the key and writes synchronously. Writes for all keys are serialized.
    """

    def __init__(
        self,
        write: WriteFn,
        delay_sec: float,
        *,
        name: str = "debounce",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._write = write
        self._delay = max(0.0, float(delay_sec))
        self._name = name
        self._clock = clock
        self._lock = RLock()
        self._pending: dict[str, _Pending] = {}
        self._last_flush: dict[str, float] = {}

    @property
    def delay_sec(self) -> float:
        return self._delay

    def schedule(self, key: str, value: Any) -> None:
        with self._lock:
            previous = self._pending.pop(key, None)
            if previous is not None:
                previous.timer.cancel()
            timer = Timer(self._delay, self._on_timer, args=(key,))
            timer.daemon = True
            timer.name = f"{self._name}:{key}"
            self._pending[key] = _Pending(value=value, timer=timer)
            timer.start()

    def write_now(self, key: str, value: Any) -> None:
        with self._lock:
            previous = self._pending.pop(key, None)
            if previous is not None:
                previous.timer.cancel()
            self._do_write(key, value)

    def is_due(self, key: str) -> bool:
        """True when the last flush of *key* is older than the debounce window."""
        with self._lock:
            last = self._last_flush.get(key)
        return last is None or (self._clock() - last) >= self._delay

    def has_pending(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def pending_value(self, key: str) -> Any:
        with self._lock:
            pending = self._pending.get(key)
            return None if pending is None else pending.value

    def flush(self, key: str | None = None) -> None:
        with self._lock:
            keys = list(self._pending) if key is None else [key]
            for k in keys:
                pending = self._pending.pop(k, None)
                if pending is None:
                    continue
                pending.timer.cancel()
                self._do_write(k, pending.value)

    def cancel(self, key: str | None = None) -> None:
        with self._lock:
            keys = list(self._pending) if key is None else [key]
            for k in keys:
                pending = self._pending.pop(k, None)
                if pending is not None:
                    pending.timer.cancel()
            if key is None:
                self._last_flush.clear()
            else:
                self._last_flush.pop(key, None)

    def _on_timer(self, key: str) -> None:
        with self._lock:
            pending = self._pending.get(key)
            # A newer schedule/write_now/cancel replaced this timer.
            if pending is None or pending.timer is not current_thread():
                return
            del self._pending[key]
            self._do_write(key, pending.value)

    def _do_write(self, key: str, value: Any) -> None:
        try:
            self._write(key, value)
        except Exception:
            logger.exception("Deferred write failed", extra={"event": "store_write_failed"})
        finally:
            self._last_flush[key] = self._clock()
