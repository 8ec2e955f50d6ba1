from __future__ import annotations

import logging
import time
from typing import Any

from markdesk.core.errors import ChannelDeliveryError
from markdesk.core.events import (
    JobBus,
    JobCommandEvent,
    JobDisconnectedEvent,
    JobQueueEvent,
    JobStatusEvent,
    LocalChannel,
    StageProgressEvent,
)
from markdesk.core.events.job_events import JobBusEvent, event_from_message
from markdesk.core.jobs.job_store import JobStore
from markdesk.core.settings import BusSettings
from markdesk.core.storage import MemoryDurableStore


def _bus(**kwargs: Any) -> JobBus:
    settings = BusSettings(heartbeat_enabled=False, retry_delay_sec=0.01, **kwargs)
    return JobBus(None, settings)


class _FlakyChannel(LocalChannel):
    def __init__(self, name: str, failures: int) -> None:
        super().__init__(name)
        self.failures = failures
        self.attempts = 0

    def post_message(self, message: dict[str, Any]) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ChannelDeliveryError("transport busy")
        super().post_message(message)


class _StubbornChannel(LocalChannel):
    """Ignores engine-side disconnects so a later close() still reaches listeners."""

    def disconnect(self) -> None:
        pass


def test_subscriber_failure_does_not_stop_others() -> None:
    bus = _bus()
    received: list[JobBusEvent] = []

    def broken(_event: JobBusEvent) -> None:
        raise RuntimeError("boom")

    bus.subscribe("broken", broken)
    bus.subscribe("healthy", received.append)
    bus.publish(JobStatusEvent(job={"job_id": "j1"}))

    assert len(received) == 1
    assert isinstance(received[0], JobStatusEvent)


def test_unsubscribe_by_name_and_by_subscription() -> None:
    bus = _bus()
    received: list[JobBusEvent] = []
    sub = bus.subscribe("ui", received.append)
    bus.subscribe("other", received.append)

    bus.unsubscribe(sub)
    assert bus.get_subscribers() == ["other"]
    bus.unsubscribe("other")
    bus.publish(JobStatusEvent(job={"job_id": "j1"}))
    assert received == []


def test_connected_channel_gets_ack_then_latest_status_once() -> None:
    bus = _bus()
    bus.publish(JobStatusEvent(job={"job_id": "j1", "weighted_percent": 10}))
    bus.publish(JobStatusEvent(job={"job_id": "j1", "weighted_percent": 20}))

    channel = LocalChannel("popup")
    assert bus.register_channel(channel) is True

    assert channel.received_types() == ["jobConnected", "jobStatus"]
    assert channel.received[0]["port_name"] == "popup"
    assert channel.received[1]["job"]["weighted_percent"] == 20


def test_channel_without_cached_status_only_gets_ack() -> None:
    bus = _bus()
    channel = LocalChannel("popup")
    bus.register_channel(channel)
    assert channel.received_types() == ["jobConnected"]


def test_stage_progress_is_replayed_as_job_status() -> None:
    bus = _bus()
    job = {"job_id": "j1", "stage": "scanning", "weighted_percent": 12}
    bus.publish(StageProgressEvent(stage="scanning", processed=3, total=10, job=job))

    channel = LocalChannel("dashboard")
    bus.register_channel(channel)
    assert channel.received[-1] == {"type": "jobStatus", "job": job}


def test_live_events_reach_connected_channels() -> None:
    bus = _bus()
    channel = LocalChannel("popup")
    bus.register_channel(channel)
    bus.publish(JobQueueEvent(queue={"total": 0}))
    assert channel.received_types() == ["jobConnected", "jobQueue"]


def test_failed_delivery_is_retried() -> None:
    bus = _bus(retry_attempts=3)
    channel = _FlakyChannel("popup", failures=2)
    bus.register_channel(channel)

    assert channel.wait_for(lambda msgs: any(m["type"] == "jobConnected" for m in msgs), timeout=2.0)
    assert channel.attempts == 3


def test_delivery_gives_up_after_retry_budget() -> None:
    bus = _bus(retry_attempts=2)
    channel = _FlakyChannel("popup", failures=100)
    bus.register_channel(channel)

    deadline = time.monotonic() + 2.0
    while channel.attempts < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    time.sleep(0.1)
    assert channel.attempts == 3
    assert channel.received == []


def test_channel_close_publishes_disconnect() -> None:
    bus = _bus()
    events: list[JobBusEvent] = []
    bus.subscribe("ui", events.append)
    channel = LocalChannel("popup")
    bus.register_channel(channel)

    channel.close()

    assert bus.get_connected_channels() == []
    assert events == [JobDisconnectedEvent(port_name="popup")]


def test_replaced_channel_disconnect_is_ignored() -> None:
    bus = _bus()
    events: list[JobBusEvent] = []
    bus.subscribe("ui", events.append)
    first = _StubbornChannel("popup")
    second = LocalChannel("popup")
    bus.register_channel(first)
    bus.register_channel(second)

    first.close()

    assert bus.get_connected_channels() == ["popup"]
    assert events == []
    bus.publish(JobStatusEvent(job={"job_id": "j1"}))
    assert second.received_types() == ["jobConnected", "jobStatus"]


def test_explicit_disconnect_does_not_publish() -> None:
    bus = _bus()
    events: list[JobBusEvent] = []
    bus.subscribe("ui", events.append)
    channel = LocalChannel("popup")
    bus.register_channel(channel)

    assert bus.disconnect("popup") is True
    assert bus.disconnect("popup") is False
    assert channel.closed is True
    assert events == []


def test_channel_command_is_published_with_port_name() -> None:
    bus = _bus()
    events: list[JobBusEvent] = []
    bus.subscribe("ui", events.append)
    channel = LocalChannel("popup")
    bus.register_channel(channel)

    channel.send({"type": "jobCommand", "command": "PAUSE_JOB", "payload": {"why": "x"}})
    channel.send({"type": "ping"})

    assert events == [JobCommandEvent(command="PAUSE_JOB", payload={"why": "x"}, port_name="popup")]
    assert channel.received_types()[-1] == "pong"
    assert bus.get_channel_info("popup")["message_count"] == 2


def test_send_command_to_channel() -> None:
    bus = _bus()
    channel = LocalChannel("worker")
    bus.register_channel(channel)
    assert bus.send_command_to_channel("worker", "START_JOB", {"job_type": "cleanup"}) is True
    assert bus.send_command_to_channel("missing", "START_JOB") is False
    last = channel.received[-1]
    assert last["type"] == "jobCommand"
    assert last["payload"] == {"job_type": "cleanup"}
    assert "timestamp" in last


def test_heartbeat_disconnects_stale_channels_and_pings_the_rest() -> None:
    now = [0.0]
    bus = JobBus(None, BusSettings(heartbeat_interval_sec=30.0, heartbeat_enabled=False), clock=lambda: now[0])
    events: list[JobBusEvent] = []
    bus.subscribe("ui", events.append)

    stale = LocalChannel("old")
    bus.register_channel(stale)
    now[0] = 50.0
    fresh = LocalChannel("new")
    bus.register_channel(fresh)

    now[0] = 100.0
    bus.perform_heartbeat()

    assert bus.get_connected_channels() == ["new"]
    assert stale.closed is True
    assert events == [JobDisconnectedEvent(port_name="old")]
    assert fresh.received_types()[-1] == "ping"


def test_heartbeat_spares_a_channel_reregistered_under_the_stale_name() -> None:
    now = [0.0]
    bus = JobBus(None, BusSettings(heartbeat_interval_sec=1.0, heartbeat_enabled=False), clock=lambda: now[0])
    events: list[JobBusEvent] = []
    bus.subscribe("ui", events.append)
    stale = LocalChannel("popup")
    bus.register_channel(stale)
    fresh = LocalChannel("popup")

    class _Reconnect(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            if "appears stale" in record.getMessage():
                bus.register_channel(fresh)

    handler = _Reconnect(level=logging.WARNING)
    bus_logger = logging.getLogger("markdesk.core.events.job_bus")
    bus_logger.addHandler(handler)
    try:
        now[0] = 10.0
        bus.perform_heartbeat()
    finally:
        bus_logger.removeHandler(handler)

    assert bus.get_connected_channels() == ["popup"]
    assert stale.closed is True
    assert fresh.closed is False
    assert events == []
    assert fresh.received_types() == ["jobConnected", "ping"]


def test_reconnect_under_same_name_gets_one_replay_before_new_events() -> None:
    bus = _bus()
    bus.publish(JobStatusEvent(job={"job_id": "j1"}))
    first = LocalChannel("popup")
    bus.register_channel(first)
    first.close()
    assert bus.get_connected_channels() == []

    second = LocalChannel("popup")
    bus.register_channel(second)
    bus.publish(JobStatusEvent(job={"job_id": "j2"}))

    assert second.received_types() == ["jobConnected", "jobStatus", "jobStatus"]
    assert [m["job"]["job_id"] for m in second.received[1:]] == ["j1", "j2"]


def test_message_queue_is_bounded() -> None:
    bus = _bus(max_message_queue=2)
    for i in range(3):
        bus.publish(JobStatusEvent(job={"job_id": f"j{i}"}))
    queue = bus.get_message_queue()
    assert [item["event"]["job"]["job_id"] for item in queue] == ["j1", "j2"]
    assert bus.get_stats()["message_queue_size"] == 2
    bus.clear_queue()
    assert bus.get_message_queue() == []


def test_fallback_record_seeds_replay_after_restart() -> None:
    store = JobStore(MemoryDurableStore())
    settings = BusSettings(heartbeat_enabled=False, storage_debounce_sec=60.0)
    bus = JobBus(store, settings)
    bus.publish(JobStatusEvent(job={"job_id": "j1", "status": "running"}))
    bus.publish(JobCommandEvent(command="PAUSE_JOB"))
    bus.flush()
    assert store.load_last_event("jobStatus") == {"type": "jobStatus", "job": {"job_id": "j1", "status": "running"}}

    restarted = JobBus(store, settings)
    assert restarted.restore_last_event() is True
    channel = LocalChannel("popup")
    restarted.register_channel(channel)
    assert channel.received[-1]["job"]["job_id"] == "j1"


def test_disposed_bus_ignores_publish_and_registration() -> None:
    bus = _bus()
    received: list[JobBusEvent] = []
    bus.subscribe("ui", received.append)
    channel = LocalChannel("popup")
    bus.register_channel(channel)

    bus.dispose()

    bus.publish(JobStatusEvent(job={"job_id": "j1"}))
    assert received == []
    assert channel.closed is True
    assert bus.register_channel(LocalChannel("late")) is False


def test_event_from_message_rebuilds_known_shapes_only() -> None:
    assert event_from_message({"type": "jobStatus", "job": {"job_id": "j1"}}) == JobStatusEvent(job={"job_id": "j1"})
    assert event_from_message({"type": "jobCommand", "command": "PAUSE_JOB", "port_name": "popup"}) == JobCommandEvent(
        command="PAUSE_JOB", payload={}, port_name="popup"
    )
    assert event_from_message({"type": "jobQueue"}) is None
    assert event_from_message({"type": "mystery"}) is None


def test_malformed_fallback_record_is_not_replayed() -> None:
    store = JobStore(MemoryDurableStore())
    store.save_last_event({"type": "jobStatus", "job": "junk"})
    bus = JobBus(store, BusSettings(heartbeat_enabled=False))
    assert bus.restore_last_event() is False
    channel = LocalChannel("popup")
    bus.register_channel(channel)
    assert channel.received_types() == ["jobConnected"]
