from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

JOB_STATUS = "jobStatus"
STAGE_PROGRESS = "stageProgress"
JOB_ACTIVITY = "jobActivity"
JOB_CONNECTED = "jobConnected"
JOB_DISCONNECTED = "jobDisconnected"
JOB_COMMAND = "jobCommand"
JOB_QUEUE = "jobQueue"
JOB_COMMAND_RESULT = "jobCommandResult"
PING = "ping"
PONG = "pong"


@dataclass(frozen=True, slots=True)
class JobStatusEvent:
    """Full snapshot of the current job."""

    type: ClassVar[str] = JOB_STATUS
    job: dict[str, Any]

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "job": dict(self.job)}


@dataclass(frozen=True, slots=True)
class StageProgressEvent:
    type: ClassVar[str] = STAGE_PROGRESS
    stage: str
    processed: float
    total: float | None
    job: dict[str, Any]

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "stage": self.stage,
            "processed": self.processed,
            "total": self.total,
            "job": dict(self.job),
        }


@dataclass(frozen=True, slots=True)
class JobActivityEvent:
    type: ClassVar[str] = JOB_ACTIVITY
    activity: dict[str, Any]

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "activity": dict(self.activity)}


@dataclass(frozen=True, slots=True)
class JobConnectedEvent:
    type: ClassVar[str] = JOB_CONNECTED
    port_name: str

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "port_name": self.port_name}


@dataclass(frozen=True, slots=True)
class JobDisconnectedEvent:
    type: ClassVar[str] = JOB_DISCONNECTED
    port_name: str

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "port_name": self.port_name}


@dataclass(frozen=True, slots=True)
class JobCommandEvent:
    """A command relayed over the bus; ``port_name`` is set when a channel sent it."""

    type: ClassVar[str] = JOB_COMMAND
    command: str
    payload: dict[str, Any] = field(default_factory=dict)
    port_name: str | None = None

    def to_message(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "command": self.command, "payload": dict(self.payload)}
        if self.port_name is not None:
            out["port_name"] = self.port_name
        return out


@dataclass(frozen=True, slots=True)
class JobQueueEvent:
    type: ClassVar[str] = JOB_QUEUE
    queue: dict[str, Any]

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "queue": dict(self.queue)}


@dataclass(frozen=True, slots=True)
class JobCommandResultEvent:
    """Reply sent back to the channel that issued a command."""

    type: ClassVar[str] = JOB_COMMAND_RESULT
    command: str
    result: dict[str, Any]

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "command": self.command, "result": dict(self.result)}


JobBusEvent = (
    JobStatusEvent
    | StageProgressEvent
    | JobActivityEvent
    | JobConnectedEvent
    | JobDisconnectedEvent
    | JobCommandEvent
    | JobQueueEvent
    | JobCommandResultEvent
)

# Events that refresh the replay cache, and events mirrored to the durable
# fallback record.
REPLAY_TYPES = frozenset({JOB_STATUS, STAGE_PROGRESS})
FALLBACK_TYPES = frozenset({JOB_STATUS, JOB_QUEUE})


def _dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def event_from_message(message: Mapping[str, Any]) -> JobBusEvent | None:
    """Rebuild an event from its wire form; unknown or malformed messages give None."""
    kind = message.get("type")
    try:
        if kind == JOB_STATUS:
            return JobStatusEvent(job=_dict(message["job"]))
        if kind == STAGE_PROGRESS:
            return StageProgressEvent(
                stage=str(message["stage"]),
                processed=message.get("processed", 0),
                total=message.get("total"),
                job=_dict(message.get("job")),
            )
        if kind == JOB_ACTIVITY:
            return JobActivityEvent(activity=_dict(message["activity"]))
        if kind == JOB_CONNECTED:
            return JobConnectedEvent(port_name=str(message["port_name"]))
        if kind == JOB_DISCONNECTED:
            return JobDisconnectedEvent(port_name=str(message["port_name"]))
        if kind == JOB_COMMAND:
            port_name = message.get("port_name")
            return JobCommandEvent(
                command=str(message["command"]),
                payload=_dict(message.get("payload")),
                port_name=port_name if isinstance(port_name, str) else None,
            )
        if kind == JOB_QUEUE:
            return JobQueueEvent(queue=_dict(message["queue"]))
        if kind == JOB_COMMAND_RESULT:
            return JobCommandResultEvent(command=str(message["command"]), result=_dict(message["result"]))
    except KeyError:
        return None
    return None
