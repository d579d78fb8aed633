"""Tenant-scoped pub/sub channels used to sync store instances."""
from __future__ import annotations

from collections import defaultdict
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from datasync.core.logging import logger


Handler = Callable[[Dict[str, Any]], None]


class Subscription:
    """Handle returned by ``subscribe``; closing it stops delivery."""

    def __init__(self, on_close: Optional[Callable[[], None]] = None) -> None:
        self._on_close = on_close
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            self._on_close()


class BroadcastChannel:
    """Message-passing interface shared by every transport."""

    name: str = ""

    def publish(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError

    def subscribe(self, handler: Handler) -> Subscription:
        raise NotImplementedError


class NullChannel(BroadcastChannel):
    """Transport for environments without cross-instance sync."""

    def __init__(self, name: str = "") -> None:
        self.name = name

    def publish(self, event: Dict[str, Any]) -> None:
        return None

    def subscribe(self, handler: Handler) -> Subscription:
        return Subscription()


class LocalBroadcastHub:
    """Process-local registry of named channels with synchronous fan-out.

    Every subscriber of a channel receives every published event, including
    the subscriber that published it.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def channel(self, name: str) -> "LocalChannel":
        return LocalChannel(self, name)

    def subscriber_count(self, name: str) -> int:
        with self._lock:
            return len(self._handlers.get(name, []))

    def _subscribe(self, name: str, handler: Handler) -> Subscription:
        with self._lock:
            self._handlers[name].append(handler)

        def _remove() -> None:
            with self._lock:
                handlers = self._handlers.get(name, [])
                if handler in handlers:
                    handlers.remove(handler)
                if not handlers:
                    self._handlers.pop(name, None)

        return Subscription(_remove)

    def _publish(self, name: str, event: Dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._handlers.get(name, []))
        for handler in handlers:
            try:
                handler(dict(event))
            except Exception as exc:
                logger.warning(
                    "Broadcast handler failed",
                    channel=name,
                    event_type=event.get("type"),
                    error=str(exc),
                )


class LocalChannel(BroadcastChannel):
    def __init__(self, hub: LocalBroadcastHub, name: str) -> None:
        self._hub = hub
        self.name = name

    def publish(self, event: Dict[str, Any]) -> None:
        self._hub._publish(self.name, event)

    def subscribe(self, handler: Handler) -> Subscription:
        return self._hub._subscribe(self.name, handler)


ChannelFactory = Callable[[str], BroadcastChannel]


def open_channel(factory: Optional[ChannelFactory], name: str) -> BroadcastChannel:
    """Build a channel, degrading to single-instance mode if construction fails."""
    if factory is None:
        return NullChannel(name)
    try:
        channel = factory(name)
    except Exception as exc:
        logger.warning("Broadcast channel unavailable; sync disabled", channel=name, error=str(exc))
        return NullChannel(name)
    if channel is None:
        return NullChannel(name)
    return channel
