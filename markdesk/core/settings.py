"""Typed settings for the job system.

Settings are stored as YAML and treated as a loose mapping on disk. They are
normalized through dataclass models:

- missing keys are filled with defaults
- basic type coercion is applied (e.g. "30" -> 30.0)
- unknown keys are ignored (forward compatibility)

Durations are in seconds.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"true", "1", "yes", "y", "on"}:
            return True
        if v in {"false", "0", "no", "n", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return default


def _as_int(value: Any, default: int, *, minimum: int = 0) -> int:
    try:
        if isinstance(value, bool):
            return default
        return max(minimum, int(value))
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float, *, minimum: float = 0.0) -> float:
    try:
        if isinstance(value, bool):
            return default
        return max(minimum, float(value))
    except (TypeError, ValueError):
        return default


def _as_optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = int(value)
    except (TypeError, ValueError):
        return None
    return out if out > 0 else None


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


@dataclass(slots=True)
class RunnerSettings:
    max_retries: int = 3
    retry_delay_sec: float = 1.0
    auto_pause_on_error: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RunnerSettings:
        m = _mapping(data)
        return cls(
            max_retries=_as_int(m.get("max_retries"), 3),
            retry_delay_sec=_as_float(m.get("retry_delay_sec"), 1.0),
            auto_pause_on_error=_as_bool(m.get("auto_pause_on_error"), True),
        )


@dataclass(slots=True)
class BusSettings:
    heartbeat_interval_sec: float = 30.0
    max_message_queue: int = 100
    retry_attempts: int = 3
    retry_delay_sec: float = 1.0
    storage_debounce_sec: float = 0.3
    heartbeat_enabled: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BusSettings:
        m = _mapping(data)
        return cls(
            heartbeat_interval_sec=_as_float(m.get("heartbeat_interval_sec"), 30.0, minimum=0.01),
            max_message_queue=_as_int(m.get("max_message_queue"), 100, minimum=1),
            retry_attempts=_as_int(m.get("retry_attempts"), 3),
            retry_delay_sec=_as_float(m.get("retry_delay_sec"), 1.0),
            storage_debounce_sec=_as_float(m.get("storage_debounce_sec"), 0.3),
            heartbeat_enabled=_as_bool(m.get("heartbeat_enabled"), True),
        )


@dataclass(slots=True)
class StoreSettings:
    max_activity_entries: int = 100
    max_history: int = 10
    debounce_delay_sec: float = 0.5
    retry_attempts: int = 3
    retry_delay_sec: float = 1.0
    quota_bytes: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StoreSettings:
        m = _mapping(data)
        return cls(
            max_activity_entries=_as_int(m.get("max_activity_entries"), 100, minimum=1),
            max_history=_as_int(m.get("max_history"), 10, minimum=1),
            debounce_delay_sec=_as_float(m.get("debounce_delay_sec"), 0.5),
            retry_attempts=_as_int(m.get("retry_attempts"), 3),
            retry_delay_sec=_as_float(m.get("retry_delay_sec"), 1.0),
            quota_bytes=_as_optional_int(m.get("quota_bytes")),
        )


@dataclass(slots=True)
class JobSystemSettings:
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    bus: BusSettings = field(default_factory=BusSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    state_dir: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> JobSystemSettings:
        m = _mapping(data)
        state_dir = m.get("state_dir")
        return cls(
            runner=RunnerSettings.from_dict(_mapping(m.get("runner"))),
            bus=BusSettings.from_dict(_mapping(m.get("bus"))),
            store=StoreSettings.from_dict(_mapping(m.get("store"))),
            state_dir=str(state_dir) if isinstance(state_dir, (str, Path)) and str(state_dir) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_settings(path: Path | None) -> JobSystemSettings:
    """Load settings from a YAML file.

    Returns defaults if the file is missing or unreadable.
    """
    if path is None or not path.exists():
        return JobSystemSettings()
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError):
        logger.warning("Could not read settings from %s; using defaults", path, exc_info=True)
        return JobSystemSettings()
    return JobSystemSettings.from_dict(raw)


def save_settings(settings: JobSystemSettings, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(settings.to_dict(), sort_keys=False), encoding="utf-8")
