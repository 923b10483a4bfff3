"""
ssewire event sources - auto-reconnecting Server-Sent Events clients.

Example (sync)::

    source = EventSource.open("https://example.com/stream", start=False)
    source.on("message", lambda event: print(event.data, event.last_event_id))
    source.start()
    ...
    source.close()

Example (async)::

    async with AsyncEventSource.open("https://example.com/stream") as source:
        async for note in source.notifications():
            if note.type == "message":
                print(note.data)
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Optional, Union

import httpx

from .dispatch import AsyncNotificationQueue, DispatchSink, NotificationQueue
from .session import AsyncConnectionSession, ConnectionSession, SessionResult, task_canceller
from .transport import AsyncTransport, CancelToken, HttpxAsyncTransport, HttpxTransport, Transport
from .types import (
    ConnectionState,
    ErrorEvent,
    EventRecord,
    EventSourceConfig,
    MessageEvent,
    Notification,
    OpenEvent,
    ParserOutput,
    RetryHint,
    TerminalOutcome,
)

logger = logging.getLogger(__name__)


def _parse_url(url: str) -> httpx.URL:
    invalid = ValueError(f"Cannot open an EventSource to '{url}'. The URL is invalid.")
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise invalid from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise invalid
    return parsed


def origin_of(url: Union[str, httpx.URL]) -> str:
    """``scheme://host[:port]`` of a URL, the port omitted when it is the default."""
    parsed = httpx.URL(url) if isinstance(url, str) else url
    host = parsed.host
    if ":" in host:
        host = f"[{host}]"
    origin = f"{parsed.scheme}://{host}"
    if parsed.port is not None:
        origin += f":{parsed.port}"
    return origin


# ============================================================================
# Shared Controller State
# ============================================================================

class _BaseEventSource(DispatchSink):
    """State owned by a reconnection controller, shared by both flavours."""

    def __init__(
        self,
        url: str,
        *,
        with_credentials: bool = False,
        config: Optional[EventSourceConfig] = None,
        **overrides: Any,
    ) -> None:
        super().__init__()
        if with_credentials:
            raise ValueError(
                "The with_credentials option is not supported. It must be False or omitted."
            )
        parsed = _parse_url(url)
        config = config or EventSourceConfig()
        if overrides:
            config = EventSourceConfig(**{**config.model_dump(), **overrides})
        self._config = config
        self._url = str(parsed)
        self._origin = origin_of(parsed)
        self._memory = config.new_memory()
        self._state = ConnectionState.CONNECTING
        self._cancel = CancelToken()
        self._close_called = False
        self._started = False
        self._state_lock = threading.Lock()
        # Held while a notification is delivered; close() waits on it.
        self._deliver_lock = threading.RLock()

    # --- Public state ---

    @property
    def url(self) -> str:
        return self._url

    @property
    def with_credentials(self) -> bool:
        return False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def ready_state(self) -> int:
        return int(self._state)

    @property
    def last_event_id(self) -> str:
        return self._memory.last_event_id

    @property
    def retry_ms(self) -> int:
        return self._memory.retry_ms

    @property
    def config(self) -> EventSourceConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._state == ConnectionState.CLOSED

    def close(self) -> None:
        """Stop permanently. Idempotent, safe from any thread or listener.

        No notification is delivered once this returns. Called from another
        thread, it waits for a delivery already in progress to finish.
        """
        with self._deliver_lock, self._state_lock:
            if self._close_called:
                return
            self._close_called = True
            self._state = ConnectionState.CLOSED
        logger.info("Closing stream %s", self._url)
        self._cancel.cancel()
        self.finish()

    # --- Transitions (the only writers of _state) ---

    def _mark_started(self) -> None:
        with self._state_lock:
            if self._started:
                raise RuntimeError("EventSource is already running")
            self._started = True

    def _enter_open(self, final_url: str) -> bool:
        with self._state_lock:
            if self._close_called:
                return False
            self._state = ConnectionState.OPEN
            if final_url and final_url != self._url:
                logger.debug("Stream %s redirected to %s", self._url, final_url)
                self._url = final_url
                self._origin = origin_of(final_url)
        logger.info("Stream %s open", self._url)
        return True

    def _enter_connecting(self) -> bool:
        with self._state_lock:
            if self._close_called:
                return False
            self._state = ConnectionState.CONNECTING
            return True

    def _enter_closed(self) -> bool:
        """Fatal termination. False if close() got there first."""
        with self._state_lock:
            if self._close_called:
                return False
            self._state = ConnectionState.CLOSED
            return True

    # --- Session output handling ---

    def _apply_retry(self, hint: RetryHint) -> None:
        self._memory.retry_ms = self._config.clamp_retry(hint.ms)
        logger.debug("Reconnection delay for %s set to %d ms", self._url, self._memory.retry_ms)

    def _message_for(self, record: EventRecord) -> MessageEvent:
        self._memory.record(record)
        return MessageEvent(
            type=record.type,
            data=record.data,
            last_event_id=self._memory.last_event_id,
            origin=self._origin,
        )

    def _error_for(self, result: SessionResult, fatal: bool) -> ErrorEvent:
        return ErrorEvent(
            message=result.message or result.outcome.value,
            status_code=result.status_code,
            fatal=fatal,
        )

    def _suppressed(self) -> bool:
        return self._close_called

    def _session_kwargs(self) -> dict:
        return {"headers": self._config.headers, "retry_statuses": self._config.retry_statuses}


# ============================================================================
# Blocking Event Source
# ============================================================================

class EventSource(_BaseEventSource):
    """Event source driven by a blocking loop, on the caller's thread or a daemon thread."""

    def __init__(
        self,
        url: str,
        *,
        with_credentials: bool = False,
        config: Optional[EventSourceConfig] = None,
        transport: Optional[Transport] = None,
        **overrides: Any,
    ) -> None:
        super().__init__(url, with_credentials=with_credentials, config=config, **overrides)
        self._owns_transport = transport is None
        self._transport: Transport = transport or HttpxTransport(self._config)
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def open(
        cls,
        url: str,
        *,
        with_credentials: bool = False,
        config: Optional[EventSourceConfig] = None,
        transport: Optional[Transport] = None,
        start: bool = True,
        **overrides: Any,
    ) -> "EventSource":
        """Create an event source and, unless ``start`` is False, connect in the background."""
        source = cls(url, with_credentials=with_credentials, config=config, transport=transport, **overrides)
        if start:
            source.start()
        return source

    def start(self) -> "EventSource":
        """Run the reconnection loop on a daemon thread."""
        self._mark_started()
        self._thread = threading.Thread(target=self._run, name="ssewire-eventsource", daemon=True)
        self._thread.start()
        return self

    def run(self) -> None:
        """Run the reconnection loop on this thread until the source is closed."""
        self._mark_started()
        self._run()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the background loop to finish. True once it has."""
        if self._thread is None:
            return self.closed
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def notifications(self) -> NotificationQueue:
        """Ordered channel of every notification from now on."""
        return self.subscribe(NotificationQueue())

    def __enter__(self) -> "EventSource":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # --- Internal ---

    def _notify(self, notification: Notification) -> None:
        with self._deliver_lock:
            if not self._suppressed():
                self.deliver(notification)

    def _on_open(self, final_url: str) -> None:
        if self._enter_open(final_url):
            self._notify(OpenEvent())

    def _on_output(self, output: ParserOutput) -> None:
        if isinstance(output, RetryHint):
            self._apply_retry(output)
        else:
            self._notify(self._message_for(output))

    def _run(self) -> None:
        session = ConnectionSession(self._transport, **self._session_kwargs())
        try:
            while not self._cancel.cancelled:
                result = session.run(
                    self._url,
                    self._memory.last_event_id,
                    self._on_output,
                    self._cancel,
                    self._on_open,
                )
                if result.outcome is TerminalOutcome.CANCELLED:
                    break

                if result.outcome.retryable:
                    if not self._enter_connecting():
                        break
                    delay = self._memory.retry_ms
                    self._notify(self._error_for(result, fatal=False))
                    logger.debug("Reconnecting to %s in %d ms", self._url, delay)
                    if self._cancel.wait(delay / 1000.0):
                        break
                    continue

                if self._enter_closed():
                    logger.error("Stream %s failed: %s", self._url, result.message)
                    self._notify(self._error_for(result, fatal=True))
                break
        finally:
            self._finalize()

    def _finalize(self) -> None:
        with self._state_lock:
            self._state = ConnectionState.CLOSED
        self.finish()
        if self._owns_transport:
            self._transport.close()
        logger.info("Stream %s closed", self._url)


# ============================================================================
# Asyncio Event Source
# ============================================================================

class AsyncEventSource(_BaseEventSource):
    """Event source driven by an asyncio task."""

    def __init__(
        self,
        url: str,
        *,
        with_credentials: bool = False,
        config: Optional[EventSourceConfig] = None,
        transport: Optional[AsyncTransport] = None,
        **overrides: Any,
    ) -> None:
        super().__init__(url, with_credentials=with_credentials, config=config, **overrides)
        self._owns_transport = transport is None
        self._transport: Optional[AsyncTransport] = transport
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional["asyncio.Task[None]"] = None

    @classmethod
    def open(
        cls,
        url: str,
        *,
        with_credentials: bool = False,
        config: Optional[EventSourceConfig] = None,
        transport: Optional[AsyncTransport] = None,
        start: bool = True,
        **overrides: Any,
    ) -> "AsyncEventSource":
        """Create an event source and schedule its first connection on the running loop."""
        source = cls(url, with_credentials=with_credentials, config=config, transport=transport, **overrides)
        if start:
            source.start()
        return source

    def start(self) -> "AsyncEventSource":
        loop = asyncio.get_running_loop()
        self._mark_started()
        self._loop = loop
        if self._transport is None:
            self._transport = HttpxAsyncTransport(self._config)
        self._task = loop.create_task(self._run())
        return self

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            # A close() from another thread can land after the loop already finished.
            if not (self._task.cancelled() and self._cancel.cancelled):
                raise

    async def aclose(self) -> None:
        self.close()
        await self.wait_closed()

    def notifications(self) -> AsyncNotificationQueue:
        """Ordered channel of every notification from now on."""
        return self.subscribe(AsyncNotificationQueue(self._loop))

    async def __aenter__(self) -> "AsyncEventSource":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # --- Internal ---

    async def _notify(self, notification: Notification) -> None:
        with self._deliver_lock:
            if not self._suppressed():
                await self.deliver_async(notification)

    async def _on_open(self, final_url: str) -> None:
        if self._enter_open(final_url):
            await self._notify(OpenEvent())

    async def _on_output(self, output: ParserOutput) -> None:
        if isinstance(output, RetryHint):
            self._apply_retry(output)
        else:
            await self._notify(self._message_for(output))

    async def _run(self) -> None:
        assert self._transport is not None
        session = AsyncConnectionSession(self._transport, **self._session_kwargs())
        try:
            while not self._cancel.cancelled:
                result = await session.run(
                    self._url,
                    self._memory.last_event_id,
                    self._on_output,
                    self._cancel,
                    self._on_open,
                )
                if result.outcome is TerminalOutcome.CANCELLED:
                    break

                if result.outcome.retryable:
                    if not self._enter_connecting():
                        break
                    delay = self._memory.retry_ms
                    await self._notify(self._error_for(result, fatal=False))
                    logger.debug("Reconnecting to %s in %d ms", self._url, delay)
                    if await self._wait(delay / 1000.0):
                        break
                    continue

                if self._enter_closed():
                    logger.error("Stream %s failed: %s", self._url, result.message)
                    await self._notify(self._error_for(result, fatal=True))
                break
        except asyncio.CancelledError:
            if not self._cancel.cancelled:
                raise
        finally:
            await self._finalize()

    async def _wait(self, seconds: float) -> bool:
        """Backoff sleep that close() interrupts. True if interrupted."""
        if self._cancel.cancelled:
            return True
        task = asyncio.current_task()
        assert task is not None
        unregister = self._cancel.add_callback(task_canceller(task, asyncio.get_running_loop()))
        try:
            await asyncio.sleep(seconds)
            return False
        except asyncio.CancelledError:
            if self._cancel.cancelled:
                return True
            raise
        finally:
            unregister()

    async def _finalize(self) -> None:
        with self._state_lock:
            self._state = ConnectionState.CLOSED
        self.finish()
        if self._owns_transport and self._transport is not None:
            try:
                await asyncio.shield(self._transport.aclose())
            except asyncio.CancelledError:
                if not self._cancel.cancelled:
                    raise
        logger.info("Stream %s closed", self._url)
