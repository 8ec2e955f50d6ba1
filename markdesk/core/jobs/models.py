"""Job snapshot, activity and command types shared by the runner, store and bus.

The durable schema is the ``to_dict()`` form of these classes; ``from_dict()``
tolerates unknown keys so older records keep loading after fields are added.
Structural checks live in ``is_valid_snapshot`` / ``is_valid_activity`` and
operate on the raw mapping, before any coercion.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.CANCELLING})


class ActivityLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class JobCommand(str, Enum):
    START_JOB = "START_JOB"
    PAUSE_JOB = "PAUSE_JOB"
    RESUME_JOB = "RESUME_JOB"
    CANCEL_JOB = "CANCEL_JOB"
    GET_JOB_STATUS = "GET_JOB_STATUS"
    GET_ACTIVITY_LOG = "GET_ACTIVITY_LOG"


_STATUS_VALUES = frozenset(s.value for s in JobStatus)
_LEVEL_VALUES = frozenset(level.value for level in ActivityLevel)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat(timespec="milliseconds")


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


@dataclass(slots=True)
class StageUnits:
    processed: float = 0
    total: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"processed": self.processed, "total": self.total}

    @classmethod
    def from_dict(cls, data: Any) -> StageUnits:
        if not isinstance(data, Mapping):
            return cls()
        processed = data.get("processed")
        total = data.get("total")
        return cls(
            processed=processed if _is_number(processed) else 0,
            total=total if _is_number(total) else None,
        )


def empty_summary() -> dict[str, Any]:
    """Blank bookmark summary so stages can merge counters into it."""
    return {
        "total_bookmarks": 0,
        "duplicates_found": 0,
        "duplicates_resolved": 0,
        "conflicts_detected": 0,
        "conflicts_resolved": 0,
        "auto_applied": False,
        "runtime_ms": 0,
        "started_at": None,
        "completed_at": None,
        "review_queue_size": 0,
    }


@dataclass(slots=True)
class JobSnapshot:
    job_id: str
    status: JobStatus
    stage: str
    stage_index: int
    stage_units: StageUnits = field(default_factory=StageUnits)
    weighted_percent: int = 0
    indeterminate: bool = True
    activity: str = ""
    timestamp: str = field(default_factory=utc_now_iso)
    created_at: str = field(default_factory=utc_now_iso)
    started_at: str | None = None
    completed_at: str | None = None
    summary: dict[str, Any] = field(default_factory=empty_summary)
    error: str | None = None
    queue_meta: dict[str, Any] = field(default_factory=dict)
    stage_order: list[str] = field(default_factory=list)
    stage_weights: dict[str, float] = field(default_factory=dict)

    @property
    def job_type(self) -> str | None:
        value = self.queue_meta.get("job_type")
        return value if isinstance(value, str) else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "stage": self.stage,
            "stage_index": self.stage_index,
            "stage_units": self.stage_units.to_dict(),
            "weighted_percent": self.weighted_percent,
            "indeterminate": self.indeterminate,
            "activity": self.activity,
            "timestamp": self.timestamp,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "summary": dict(self.summary),
            "error": self.error,
            "queue_meta": dict(self.queue_meta),
            "stage_order": list(self.stage_order),
            "stage_weights": dict(self.stage_weights),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> JobSnapshot:
        """Build a snapshot from a mapping that passed ``is_valid_snapshot``."""
        summary = data.get("summary")
        queue_meta = data.get("queue_meta")
        stage_order = data.get("stage_order")
        stage_weights = data.get("stage_weights")
        created_at = data.get("created_at")
        return cls(
            job_id=str(data["job_id"]),
            status=JobStatus(data["status"]),
            stage=str(data["stage"]),
            stage_index=int(data["stage_index"]),
            stage_units=StageUnits.from_dict(data.get("stage_units")),
            weighted_percent=int(round(float(data.get("weighted_percent", 0)))),
            indeterminate=bool(data.get("indeterminate", True)),
            activity=str(data.get("activity", "")),
            timestamp=str(data["timestamp"]),
            created_at=created_at if isinstance(created_at, str) else str(data["timestamp"]),
            started_at=data.get("started_at") if isinstance(data.get("started_at"), str) else None,
            completed_at=data.get("completed_at") if isinstance(data.get("completed_at"), str) else None,
            summary=dict(summary) if isinstance(summary, Mapping) else empty_summary(),
            error=data.get("error") if isinstance(data.get("error"), str) else None,
            queue_meta=dict(queue_meta) if isinstance(queue_meta, Mapping) else {},
            stage_order=[str(s) for s in stage_order] if isinstance(stage_order, list) else [],
            stage_weights=(
                {str(k): float(v) for k, v in stage_weights.items() if _is_number(v)}
                if isinstance(stage_weights, Mapping)
                else {}
            ),
        )

    def copy(self) -> JobSnapshot:
        return JobSnapshot.from_dict(self.to_dict())


@dataclass(slots=True)
class ActivityEntry:
    job_id: str
    timestamp: str
    level: ActivityLevel
    message: str
    stage: str | None = None
    context: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "job_id": self.job_id,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
        }
        if self.stage is not None:
            out["stage"] = self.stage
        if self.context is not None:
            out["context"] = dict(self.context)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ActivityEntry:
        context = data.get("context")
        stage = data.get("stage")
        return cls(
            job_id=str(data["job_id"]),
            timestamp=str(data["timestamp"]),
            level=ActivityLevel(data["level"]),
            message=str(data["message"]),
            stage=stage if isinstance(stage, str) else None,
            context=dict(context) if isinstance(context, Mapping) else None,
        )


def is_valid_snapshot(data: Any) -> bool:
    if not isinstance(data, Mapping):
        return False
    units = data.get("stage_units")
    stage_index = data.get("stage_index")
    return (
        isinstance(data.get("job_id"), str)
        and bool(data.get("job_id"))
        and data.get("status") in _STATUS_VALUES
        and isinstance(data.get("stage"), str)
        and isinstance(stage_index, int)
        and not isinstance(stage_index, bool)
        and stage_index >= 0
        and isinstance(units, Mapping)
        and _is_number(units.get("processed"))
        and (units.get("total") is None or _is_number(units.get("total")))
        and _is_number(data.get("weighted_percent"))
        and isinstance(data.get("activity"), str)
        and isinstance(data.get("timestamp"), str)
    )


def is_valid_activity(data: Any) -> bool:
    if not isinstance(data, Mapping):
        return False
    context = data.get("context")
    stage = data.get("stage")
    return (
        isinstance(data.get("job_id"), str)
        and isinstance(data.get("timestamp"), str)
        and isinstance(data.get("message"), str)
        and data.get("level") in _LEVEL_VALUES
        and (stage is None or isinstance(stage, str))
        and (context is None or isinstance(context, Mapping))
    )


def snapshot_to_dict(snapshot: JobSnapshot | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(snapshot, JobSnapshot):
        return snapshot.to_dict()
    return dict(snapshot)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Structured reply to a command. Never raised, always returned."""

    success: bool
    job_id: str | None = None
    snapshot: dict[str, Any] | None = None
    activity: list[dict[str, Any]] | None = None
    error: str | None = None
    # Status replies carry "snapshot" even when it is None.
    is_status: bool = field(default=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.job_id is not None:
            out["job_id"] = self.job_id
        if self.is_status or self.snapshot is not None:
            out["snapshot"] = self.snapshot
        if self.activity is not None:
            out["activity"] = self.activity
        if self.error is not None:
            out["error"] = self.error
        return out

    @classmethod
    def ok(cls, **kwargs: Any) -> CommandResult:
        return cls(success=True, **kwargs)

    @classmethod
    def status(cls, snapshot: dict[str, Any] | None) -> CommandResult:
        return cls(success=True, snapshot=snapshot, is_status=True)

    @classmethod
    def fail(cls, error: str) -> CommandResult:
        return cls(success=False, error=error)


@dataclass(slots=True)
class QueueSummary:
    """Counts over the single active slot plus the most recent archived jobs."""

    total: int = 0
    pending: int = 0
    running: int = 0
    paused: int = 0
    recent_jobs: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "running": self.running,
            "paused": self.paused,
            "recent_jobs": [dict(job) for job in self.recent_jobs],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> QueueSummary:
        recent = data.get("recent_jobs")
        return cls(
            total=int(data.get("total", 0)),
            pending=int(data.get("pending", 0)),
            running=int(data.get("running", 0)),
            paused=int(data.get("paused", 0)),
            recent_jobs=[dict(j) for j in recent if isinstance(j, Mapping)] if isinstance(recent, list) else [],
        )


def is_valid_queue(data: Any) -> bool:
    if not isinstance(data, Mapping):
        return False
    return all(_is_number(data.get(k)) for k in ("total", "pending", "running", "paused")) and isinstance(
        data.get("recent_jobs"), list
    )
