from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from threading import Event
from typing import Any, Protocol, runtime_checkable

from markdesk.core.errors import CancelledError


class CancelToken:
    """Cooperative cancellation token scoped to one stage invocation.

    The runner creates a fresh token every time it (re)starts a stage, so a
    token cancelled by an earlier pause can never stop a later resume.
    """

    def __init__(self) -> None:
        self._evt = Event()

    def cancel(self) -> None:
        self._evt.set()

    def is_cancelled(self) -> bool:
        return self._evt.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; return True early if cancelled."""
        return self._evt.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._evt.is_set():
            raise CancelledError("Stage cancelled")


ProgressCallback = Callable[[float, float | None], None]
ActivityCallback = Callable[..., None]


@dataclass(slots=True)
class StageContext:
    job_id: str
    stage: str
    processed_units: float
    total_units: float | None
    cancel_token: CancelToken
    progress_callback: ProgressCallback
    activity_callback: ActivityCallback

    def report_progress(self, processed: float, total: float | None = None) -> None:
        self.progress_callback(processed, total)

    def log(self, level: str, message: str, context: Mapping[str, Any] | None = None) -> None:
        self.activity_callback(level, message, context)


@dataclass(slots=True)
class StageResult:
    completed: bool
    processed_units: float | None = None
    total_units: float | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def coerce(cls, raw: Any) -> StageResult:
        """Accept a StageResult, a mapping, or anything else (treated as incomplete)."""
        if isinstance(raw, StageResult):
            return raw
        if not isinstance(raw, Mapping):
            return cls(completed=False, error=f"Stage returned unsupported result: {type(raw).__name__}")
        summary = raw.get("summary")
        error = raw.get("error")
        return cls(
            completed=bool(raw.get("completed", False)),
            processed_units=_number_or_none(raw.get("processed_units")),
            total_units=_number_or_none(raw.get("total_units")),
            summary=dict(summary) if isinstance(summary, Mapping) else {},
            error=None if error is None else str(error),
        )


def _number_or_none(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return None


@runtime_checkable
class StageExecutor(Protocol):
    """Business logic bound to one stage id.

    Only ``execute`` is required. The runner also calls ``prepare()`` and
    ``teardown()`` and consults ``can_pause()`` / ``can_cancel()`` when an
    executor defines them.
    """

    def execute(self, context: StageContext) -> StageResult | Mapping[str, Any]:
        ...


def call_optional(executor: object, name: str, default: Any = None) -> Any:
    hook = getattr(executor, name, None)
    if not callable(hook):
        return default
    return hook()
