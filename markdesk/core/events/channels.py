from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from threading import Condition
from typing import Any, Protocol

from markdesk.core.errors import ChannelDeliveryError

logger = logging.getLogger(__name__)

MessageListener = Callable[[dict[str, Any]], None]
DisconnectListener = Callable[[], None]


class Channel(Protocol):
    """Named duplex transport between the engine and one observer.

    The channel may go away at any time; ``post_message`` raises when the
    message cannot be handed to the transport.
    """

    @property
    def name(self) -> str: ...

    def post_message(self, message: dict[str, Any]) -> None: ...

    def disconnect(self) -> None: ...

    def add_message_listener(self, listener: MessageListener) -> None: ...

    def add_disconnect_listener(self, listener: DisconnectListener) -> None: ...


@dataclass(slots=True)
class ChannelInfo:
    channel: Channel
    name: str
    connected_at: float
    last_seen: float
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "connected_at": self.connected_at,
            "last_seen": self.last_seen,
            "message_count": self.message_count,
        }


class LocalChannel:
    """In-process channel.

    Messages the engine posts are collected in ``received``; the observer side
    talks back with ``send()`` and hangs up with ``close()``.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._cond = Condition()
        self._received: list[dict[str, Any]] = []
        self._message_listeners: list[MessageListener] = []
        self._disconnect_listeners: list[DisconnectListener] = []
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    # Engine side

    def post_message(self, message: dict[str, Any]) -> None:
        with self._cond:
            if self._closed:
                raise ChannelDeliveryError(f"Channel {self._name} is closed")
            self._received.append(dict(message))
            self._cond.notify_all()

    def disconnect(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def add_message_listener(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._disconnect_listeners.append(listener)

    # Observer side

    @property
    def received(self) -> list[dict[str, Any]]:
        with self._cond:
            return list(self._received)

    def received_types(self) -> list[str]:
        return [str(m.get("type")) for m in self.received]

    def wait_for(self, predicate: Callable[[list[dict[str, Any]]], bool], timeout: float = 2.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self._received), timeout=timeout)

    def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ChannelDeliveryError(f"Channel {self._name} is closed")
        for listener in list(self._message_listeners):
            listener(dict(message))

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        for listener in list(self._disconnect_listeners):
            try:
                listener()
            except Exception:
                logger.exception("Channel disconnect listener failed", extra={"channel": self._name})
