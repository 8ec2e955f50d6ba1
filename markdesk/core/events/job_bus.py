from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Event, RLock, Thread, Timer, current_thread
from typing import Any

from markdesk.core.errors import ChannelDeliveryError
from markdesk.core.events.channels import Channel, ChannelInfo
from markdesk.core.events.job_events import (
    FALLBACK_TYPES,
    JOB_COMMAND,
    JOB_STATUS,
    PING,
    PONG,
    REPLAY_TYPES,
    JobBusEvent,
    JobCommandEvent,
    JobConnectedEvent,
    JobDisconnectedEvent,
    JobStatusEvent,
    event_from_message,
)
from markdesk.core.jobs.job_store import JobStore
from markdesk.core.jobs.models import utc_now_iso
from markdesk.core.settings import BusSettings
from markdesk.core.storage.debounce import DebouncedWriter

logger = logging.getLogger(__name__)

Listener = Callable[[JobBusEvent], None]

STALE_HEARTBEATS = 3


@dataclass(frozen=True, slots=True)
class Subscription:
    name: str
    listener: Listener


class JobBus:
    """Fan-out of job events to subscribers, channels and a durable fallback record.

    - Subscribers are called synchronously in the publisher's thread; one
      failing subscriber never stops the others.
    - Channel delivery is best effort: a failed post is retried on a timer
      with linear backoff, then dropped with a warning.
    - The latest ``jobStatus`` (a ``stageProgress`` counts as one) is cached and
      replayed to every channel right after its ``jobConnected`` ack.
    """

    def __init__(
        self,
        store: JobStore | None = None,
        settings: BusSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._settings = settings or BusSettings()
        self._clock = clock
        self._lock = RLock()
        self._subs: dict[str, list[Listener]] = {}
        self._channels: dict[str, ChannelInfo] = {}
        self._queue: deque[dict[str, Any]] = deque(maxlen=self._settings.max_message_queue)
        self._last_event: dict[str, Any] | None = None
        self._retry_timers: set[Timer] = set()
        self._started_at = clock()
        self._disposed = False

        self._fallback = DebouncedWriter(
            self._write_fallback, self._settings.storage_debounce_sec, name="job-bus"
        )
        self._hb_stop = Event()
        self._hb_thread: Thread | None = None

    @property
    def settings(self) -> BusSettings:
        return self._settings

    @property
    def last_event(self) -> dict[str, Any] | None:
        with self._lock:
            return None if self._last_event is None else dict(self._last_event)

    # ------------------------------------------------------------ subscribers

    def subscribe(self, name: str, listener: Listener) -> Subscription:
        with self._lock:
            self._subs.setdefault(name, []).append(listener)
        return Subscription(name=name, listener=listener)

    def unsubscribe(self, target: str | Subscription) -> None:
        """Drop a single subscription, or every listener registered under a name."""
        with self._lock:
            if isinstance(target, str):
                self._subs.pop(target, None)
                return
            listeners = self._subs.get(target.name)
            if not listeners:
                return
            try:
                listeners.remove(target.listener)
            except ValueError:
                return
            if not listeners:
                del self._subs[target.name]

    def get_subscribers(self) -> list[str]:
        with self._lock:
            return list(self._subs)

    # ---------------------------------------------------------------- publish

    def publish(self, event: JobBusEvent) -> None:
        message = event.to_message()
        with self._lock:
            if self._disposed:
                return
            if message["type"] in REPLAY_TYPES:
                self._last_event = {"type": JOB_STATUS, "job": dict(message["job"])}
            self._queue.append({"event": message, "timestamp": utc_now_iso()})
            listeners = [listener for group in self._subs.values() for listener in group]
            # Channel fan-out stays under the lock so a channel registering
            # concurrently sees its replay before any newer event.
            for info in list(self._channels.values()):
                self._send(info.channel, message)

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Job bus subscriber failed",
                    extra={"event": message["type"], "handler": repr(listener)},
                )

        if self._store is not None and message["type"] in FALLBACK_TYPES:
            self._fallback.schedule(message["type"], message)

    def _send(self, channel: Channel, message: dict[str, Any], attempt: int = 1) -> None:
        try:
            channel.post_message(message)
        except Exception as exc:
            with self._lock:
                info = self._channels.get(channel.name)
                retry = (
                    not self._disposed
                    and attempt <= self._settings.retry_attempts
                    and info is not None
                    and info.channel is channel
                )
                if retry:
                    timer = Timer(
                        self._settings.retry_delay_sec * attempt,
                        self._retry_send,
                        args=(channel, message, attempt + 1),
                    )
                    timer.daemon = True
                    self._retry_timers.add(timer)
                    timer.start()
                    return
            err = ChannelDeliveryError(
                f"Failed to deliver {message.get('type')} to {channel.name} after {attempt - 1} retries",
                cause=exc,
            )
            logger.warning(str(err), extra={"event": "channel_delivery_failed", "channel": channel.name})

    def _retry_send(self, channel: Channel, message: dict[str, Any], attempt: int) -> None:
        with self._lock:
            self._retry_timers.discard(current_thread())
        self._send(channel, message, attempt)

    # --------------------------------------------------------------- channels

    def register_channel(self, channel: Channel) -> bool:
        name = channel.name
        if not name:
            logger.error("Cannot register a channel without a name")
            return False
        with self._lock:
            if self._disposed:
                return False
            if name in self._channels:
                logger.info("Replacing channel %s", name, extra={"channel": name})
                self.disconnect(name)
            now = self._clock()
            self._channels[name] = ChannelInfo(channel=channel, name=name, connected_at=now, last_seen=now)
            channel.add_message_listener(lambda message: self._on_channel_message(channel, message))
            channel.add_disconnect_listener(lambda: self._on_channel_disconnect(channel))
            self._send(channel, JobConnectedEvent(port_name=name).to_message())
            if self._last_event is not None:
                self._send(channel, dict(self._last_event))
        logger.info("Channel %s connected", name, extra={"event": "channel_connected", "channel": name})
        return True

    def disconnect(self, name: str) -> bool:
        with self._lock:
            info = self._channels.get(name)
        return info is not None and self._evict(info.channel)

    def get_connected_channels(self) -> list[str]:
        with self._lock:
            return list(self._channels)

    def get_channel_info(self, name: str) -> dict[str, Any] | None:
        with self._lock:
            info = self._channels.get(name)
            return None if info is None else info.to_dict()

    def send_command_to_channel(self, name: str, command: str, payload: dict[str, Any] | None = None) -> bool:
        with self._lock:
            info = self._channels.get(name)
            if info is None:
                return False
            event = JobCommandEvent(command=command, payload=dict(payload or {}))
            message = event.to_message()
            message["timestamp"] = utc_now_iso()
            self._send(info.channel, message)
        return True

    def send_to_channel(self, name: str, event: JobBusEvent) -> bool:
        with self._lock:
            info = self._channels.get(name)
            if info is None:
                return False
            self._send(info.channel, event.to_message())
        return True

    def _is_current(self, channel: Channel) -> ChannelInfo | None:
        info = self._channels.get(channel.name)
        return info if info is not None and info.channel is channel else None

    def _on_channel_message(self, channel: Channel, message: Any) -> None:
        if not isinstance(message, dict):
            return
        with self._lock:
            info = self._is_current(channel)
            if info is None:
                return
            info.last_seen = self._clock()
            info.message_count += 1

        kind = message.get("type")
        if kind == JOB_COMMAND and message.get("command"):
            payload = message.get("payload")
            self.publish(
                JobCommandEvent(
                    command=str(message["command"]),
                    payload=dict(payload) if isinstance(payload, dict) else {},
                    port_name=channel.name,
                )
            )
        elif kind == PING:
            self._send(channel, {"type": PONG, "timestamp": utc_now_iso()})

    def _evict(self, channel: Channel) -> bool:
        with self._lock:
            # Only the exact channel that went stale; a re-registration under its name stays.
            if self._is_current(channel) is None:
                return False
            del self._channels[channel.name]
        try:
            channel.disconnect()
        except Exception:
            logger.warning("Error disconnecting channel %s", channel.name, exc_info=True)
        return True

    def _on_channel_disconnect(self, channel: Channel) -> None:
        with self._lock:
            # A replaced channel hanging up must not evict its successor.
            if self._is_current(channel) is None:
                return
            del self._channels[channel.name]
        logger.info("Channel %s disconnected", channel.name, extra={"event": "channel_disconnected", "channel": channel.name})
        self.publish(JobDisconnectedEvent(port_name=channel.name))

    # -------------------------------------------------------------- heartbeat

    def perform_heartbeat(self) -> None:
        now = self._clock()
        threshold = self._settings.heartbeat_interval_sec * STALE_HEARTBEATS
        with self._lock:
            stale = [info.channel for info in self._channels.values() if now - info.last_seen > threshold]
        for channel in stale:
            logger.warning("Channel %s appears stale, disconnecting", channel.name, extra={"channel": channel.name})
            if self._evict(channel):
                self.publish(JobDisconnectedEvent(port_name=channel.name))

        with self._lock:
            survivors = list(self._channels.values())
        ping = {"type": PING, "timestamp": utc_now_iso()}
        for info in survivors:
            try:
                info.channel.post_message(dict(ping))
            except Exception:
                logger.warning("Failed to ping channel %s", info.name, extra={"channel": info.name})

    def start_heartbeat(self) -> None:
        if not self._settings.heartbeat_enabled:
            return
        with self._lock:
            if self._hb_thread is not None and self._hb_thread.is_alive():
                return
            self._hb_stop.clear()
            self._hb_thread = Thread(target=self._heartbeat_loop, name="job-bus-heartbeat", daemon=True)
            self._hb_thread.start()

    def stop_heartbeat(self) -> None:
        self._hb_stop.set()
        thread = self._hb_thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=2.0)
        self._hb_thread = None

    def _heartbeat_loop(self) -> None:
        while not self._hb_stop.wait(self._settings.heartbeat_interval_sec):
            try:
                self.perform_heartbeat()
            except Exception:
                logger.exception("Heartbeat failed")

    # --------------------------------------------------------------- fallback

    def _write_fallback(self, _key: str, message: dict[str, Any]) -> None:
        if self._store is not None:
            self._store.save_last_event(message)

    def load_last_event(self) -> dict[str, Any] | None:
        if self._store is None:
            return None
        return self._store.load_last_event(JOB_STATUS)

    def restore_last_event(self) -> bool:
        """Seed the replay cache from the fallback record when nothing newer is cached."""
        message = self.load_last_event()
        event = None if message is None else event_from_message(message)
        if not isinstance(event, JobStatusEvent) or not event.job:
            return False
        with self._lock:
            if self._last_event is not None:
                return False
            self._last_event = event.to_message()
        return True

    def flush(self) -> None:
        self._fallback.flush()

    # ----------------------------------------------------------- introspection

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "connected_channels": len(self._channels),
                "subscriber_count": len(self._subs),
                "message_queue_size": len(self._queue),
                "uptime_sec": self._clock() - self._started_at,
            }

    def get_message_queue(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._queue)
        return items[-limit:] if limit > 0 else []

    def clear_queue(self) -> None:
        with self._lock:
            self._queue.clear()

    def dispose(self) -> None:
        self.stop_heartbeat()
        with self._lock:
            self._disposed = True
            timers = list(self._retry_timers)
            self._retry_timers.clear()
            names = list(self._channels)
        for timer in timers:
            timer.cancel()
        for name in names:
            self.disconnect(name)
        self._fallback.flush()
        with self._lock:
            self._subs.clear()
            self._queue.clear()
