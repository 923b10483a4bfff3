"""
Dispatch sink - delivers notifications to listeners and channels in order.

Listeners are routed by notification type (``"open"``, ``"error"``, or the
event type of a message, ``"message"`` by default). Channels receive every
notification and are the preferred way to consume an event source::

    for note in source.notifications():
        if note.type == "error":
            ...
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Union

from .types import Notification

logger = logging.getLogger(__name__)


# ============================================================================
# Event Emitter
# ============================================================================

class EventEmitter:
    """Thread-safe typed event emitter."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable]] = {}
        self._once_wrappers: Dict[Callable, Callable] = {}
        self._lock = threading.Lock()

    def on(self, event: str, callback: Optional[Callable] = None) -> Any:
        """Register event listener. Can be used as decorator."""
        if callback is None:
            def decorator(fn: Callable) -> Callable:
                self._add_listener(event, fn)
                return fn
            return decorator
        self._add_listener(event, callback)
        return self

    def off(self, event: str, callback: Callable) -> Any:
        """Remove event listener."""
        with self._lock:
            listeners = self._listeners.get(event)
            if listeners:
                target = self._once_wrappers.pop(callback, callback)
                try:
                    listeners.remove(target)
                except ValueError:
                    pass
        return self

    def once(self, event: str, callback: Callable) -> Any:
        """Register one-time event listener."""
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            self.off(event, callback)
            return callback(*args, **kwargs)

        with self._lock:
            self._once_wrappers[callback] = wrapper
        self._add_listener(event, wrapper)
        return self

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, []))

    def _add_listener(self, event: str, callback: Callable) -> None:
        with self._lock:
            self._listeners.setdefault(event, []).append(callback)

    def _snapshot(self, event: str) -> List[Callable]:
        with self._lock:
            return list(self._listeners.get(event, []))

    def _emit(self, event: str, payload: Any = None) -> None:
        for cb in self._snapshot(event):
            try:
                cb(payload)
            except Exception:
                logger.exception("Listener for %r raised", event)

    async def _emit_async(self, event: str, payload: Any = None) -> None:
        for cb in self._snapshot(event):
            try:
                result = cb(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Listener for %r raised", event)


# ============================================================================
# Notification Channels
# ============================================================================

_CLOSED = object()


class NotificationQueue:
    """Blocking, ordered channel of notifications. Iteration stops once closed."""

    def __init__(self) -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._closed = False

    def put(self, notification: Notification) -> None:
        if not self._closed:
            self._queue.put(notification)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put(_CLOSED)

    def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        """Next notification; None once the channel is closed and drained.

        Raises ``queue.Empty`` if ``timeout`` elapses first.
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # Keep the marker for other readers and later calls.
            self._queue.put(_CLOSED)
            return None
        return item

    def __iter__(self) -> Iterator[Notification]:
        while True:
            item = self.get()
            if item is None:
                return
            yield item


class AsyncNotificationQueue:
    """Asyncio counterpart of :class:`NotificationQueue`. Bound to one event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False

    def put(self, notification: Notification) -> None:
        if not self._closed:
            self._call(self._queue.put_nowait, notification)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._call(self._queue.put_nowait, _CLOSED)

    async def get(self) -> Optional[Notification]:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[Notification]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Notification]:
        while True:
            item = await self.get()
            if item is None:
                return
            yield item

    def _call(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            fn(*args)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(fn, *args)


Channel = Union[NotificationQueue, AsyncNotificationQueue]


# ============================================================================
# Dispatch Sink
# ============================================================================

class DispatchSink(EventEmitter):
    """Delivers each notification to its listeners, then to every channel."""

    def __init__(self) -> None:
        super().__init__()
        self._channels: List[Channel] = []
        self._finished = False

    def subscribe(self, channel: Channel) -> Channel:
        with self._lock:
            finished = self._finished
            if not finished:
                self._channels.append(channel)
        if finished:
            channel.close()
        return channel

    def deliver(self, notification: Notification) -> None:
        self._emit(notification.type, notification)
        self._publish(notification)

    async def deliver_async(self, notification: Notification) -> None:
        await self._emit_async(notification.type, notification)
        self._publish(notification)

    def finish(self) -> None:
        """Close every channel. Later subscribers are closed immediately."""
        with self._lock:
            self._finished = True
            channels = list(self._channels)
            self._channels.clear()
        for channel in channels:
            channel.close()

    def _publish(self, notification: Notification) -> None:
        with self._lock:
            channels = list(self._channels)
        for channel in channels:
            channel.put(notification)
