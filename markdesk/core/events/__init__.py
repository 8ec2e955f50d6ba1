"""Job event bus.

The runner publishes job events; in-process subscribers and connected
channels (UI surfaces) receive them.
"""

from .channels import Channel, ChannelInfo, LocalChannel
from .job_bus import JobBus, Subscription
from .job_events import (
    JobActivityEvent,
    JobBusEvent,
    JobCommandEvent,
    JobCommandResultEvent,
    JobConnectedEvent,
    JobDisconnectedEvent,
    JobQueueEvent,
    JobStatusEvent,
    StageProgressEvent,
    event_from_message,
)

__all__ = [
    "Channel",
    "ChannelInfo",
    "JobActivityEvent",
    "JobBus",
    "JobBusEvent",
    "JobCommandEvent",
    "JobCommandResultEvent",
    "JobConnectedEvent",
    "JobDisconnectedEvent",
    "JobQueueEvent",
    "JobStatusEvent",
    "LocalChannel",
    "StageProgressEvent",
    "Subscription",
    "event_from_message",
]
