"""
Connection sessions - one HTTP stream attempt each.

A session issues a single streaming request, validates the response, feeds
the body to a fresh :class:`~ssewire.parser.StreamParser` and forwards every
parser output to the caller. It never retries; it reports how the attempt
ended and leaves the decision to the reconnection controller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, FrozenSet, Mapping, Optional

from .parser import StreamParser
from .transport import TRANSPORT_ERRORS, AsyncTransport, CancelToken, Transport
from .types import ParserOutput, TerminalOutcome

logger = logging.getLogger(__name__)

EVENT_STREAM = "text/event-stream"

_RESERVED_HEADERS = {"accept", "cache-control", "last-event-id"}


@dataclass
class SessionResult:
    """Terminal outcome of one session plus whatever diagnostic is available."""
    outcome: TerminalOutcome
    message: str = ""
    status_code: Optional[int] = None
    opened: bool = False


# ============================================================================
# Request / Response Helpers
# ============================================================================

def request_headers(last_event_id: str, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Headers sent on every (re)connection attempt."""
    headers = {k: v for k, v in (extra or {}).items() if k.lower() not in _RESERVED_HEADERS}
    headers["Accept"] = EVENT_STREAM
    headers["Cache-Control"] = "no-cache"
    if last_event_id:
        headers["Last-Event-ID"] = last_event_id
    return headers


def is_event_stream(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    essence = content_type.split(";", 1)[0].strip().lower()
    return essence == EVENT_STREAM


def check_response(
    status_code: int,
    headers: Mapping[str, str],
    retry_statuses: FrozenSet[int] = frozenset(),
) -> Optional[SessionResult]:
    """Return a failed result if the response cannot carry an event stream."""
    if status_code == 204:
        return SessionResult(
            TerminalOutcome.FATAL_STATUS,
            "The server responded with 204 No Content.",
            status_code,
        )
    if not 200 <= status_code < 300:
        outcome = (
            TerminalOutcome.NETWORK_ERROR if status_code in retry_statuses
            else TerminalOutcome.FATAL_STATUS
        )
        return SessionResult(outcome, f"The response status code was {status_code}", status_code)

    content_type = headers.get("content-type")
    if content_type is None:
        return SessionResult(
            TerminalOutcome.FATAL_STATUS,
            "No content type header was present in the response.",
            status_code,
        )
    if not is_event_stream(content_type):
        return SessionResult(
            TerminalOutcome.FATAL_STATUS,
            f"The content type '{content_type}' is invalid.",
            status_code,
        )
    return None


def _failure(exc: BaseException, url: str) -> SessionResult:
    if isinstance(exc, TRANSPORT_ERRORS):
        logger.warning("Stream %s failed: %s", url, exc)
    else:
        logger.exception("Unexpected error reading stream %s", url)
    return SessionResult(TerminalOutcome.NETWORK_ERROR, str(exc) or type(exc).__name__)


# ============================================================================
# Blocking Session
# ============================================================================

class ConnectionSession:
    """Runs one stream attempt on the calling thread."""

    def __init__(
        self,
        transport: Transport,
        headers: Optional[Mapping[str, str]] = None,
        retry_statuses: FrozenSet[int] = frozenset(),
    ) -> None:
        self._transport = transport
        self._headers = dict(headers or {})
        self._retry_statuses = retry_statuses

    def run(
        self,
        url: str,
        last_event_id: str,
        on_output: Callable[[ParserOutput], None],
        cancel: CancelToken,
        on_open: Optional[Callable[[str], None]] = None,
    ) -> SessionResult:
        if cancel.cancelled:
            return SessionResult(TerminalOutcome.CANCELLED)

        parser = StreamParser()
        opened = False
        unregister: Callable[[], None] = lambda: None
        logger.debug("Connecting to %s", url)
        try:
            headers = request_headers(last_event_id, self._headers)
            with self._transport.stream(url, headers, cancel=cancel) as response:
                # Transports without socket-level abort stop once the response is closed.
                unregister = cancel.add_callback(response.close)
                if cancel.cancelled:
                    return SessionResult(TerminalOutcome.CANCELLED)

                failure = check_response(response.status_code, response.headers, self._retry_statuses)
                if failure is not None:
                    return failure

                opened = True
                if on_open is not None:
                    on_open(str(response.url))

                for chunk in response.iter_bytes():
                    for output in parser.feed(chunk):
                        if cancel.cancelled:
                            return SessionResult(TerminalOutcome.CANCELLED, opened=True)
                        on_output(output)
                    if cancel.cancelled:
                        return SessionResult(TerminalOutcome.CANCELLED, opened=True)
        except Exception as exc:
            if cancel.cancelled:
                return SessionResult(TerminalOutcome.CANCELLED, opened=opened)
            result = _failure(exc, url)
            result.opened = opened
            return result
        finally:
            unregister()
            parser.end()

        if cancel.cancelled:
            return SessionResult(TerminalOutcome.CANCELLED, opened=True)
        logger.debug("Stream %s ended", url)
        return SessionResult(TerminalOutcome.CLEAN_EOF, "The server disconnected.", opened=True)


# ============================================================================
# Asyncio Session
# ============================================================================

def task_canceller(task: "asyncio.Task[object]", loop: asyncio.AbstractEventLoop) -> Callable[[], None]:
    """Build a CancelToken callback that cancels ``task`` from any thread.

    When the token is raised by ``task`` itself nothing is cancelled: the task
    is running, not blocked, and notices the token at its next check.
    """
    def callback() -> None:
        if loop.is_closed() or task.done():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            if asyncio.current_task(loop) is not task:
                task.cancel()
        else:
            loop.call_soon_threadsafe(task.cancel)
    return callback


class AsyncConnectionSession:
    """Runs one stream attempt inside the current asyncio task."""

    def __init__(
        self,
        transport: AsyncTransport,
        headers: Optional[Mapping[str, str]] = None,
        retry_statuses: FrozenSet[int] = frozenset(),
    ) -> None:
        self._transport = transport
        self._headers = dict(headers or {})
        self._retry_statuses = retry_statuses

    async def run(
        self,
        url: str,
        last_event_id: str,
        on_output: Callable[[ParserOutput], Awaitable[None]],
        cancel: CancelToken,
        on_open: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> SessionResult:
        if cancel.cancelled:
            return SessionResult(TerminalOutcome.CANCELLED)

        task = asyncio.current_task()
        assert task is not None, "AsyncConnectionSession.run() must run inside a task"
        unregister = cancel.add_callback(task_canceller(task, asyncio.get_running_loop()))

        parser = StreamParser()
        opened = False
        logger.debug("Connecting to %s", url)
        try:
            async with self._transport.stream(url, request_headers(last_event_id, self._headers)) as response:
                failure = check_response(response.status_code, response.headers, self._retry_statuses)
                if failure is not None:
                    return failure

                opened = True
                if on_open is not None:
                    await on_open(str(response.url))

                async for chunk in response.aiter_bytes():
                    for output in parser.feed(chunk):
                        if cancel.cancelled:
                            return SessionResult(TerminalOutcome.CANCELLED, opened=True)
                        await on_output(output)
        except asyncio.CancelledError:
            if cancel.cancelled:
                return SessionResult(TerminalOutcome.CANCELLED, opened=opened)
            raise
        except Exception as exc:
            if cancel.cancelled:
                return SessionResult(TerminalOutcome.CANCELLED, opened=opened)
            result = _failure(exc, url)
            result.opened = opened
            return result
        finally:
            unregister()
            parser.end()

        if cancel.cancelled:
            return SessionResult(TerminalOutcome.CANCELLED, opened=True)
        logger.debug("Stream %s ended", url)
        return SessionResult(TerminalOutcome.CLEAN_EOF, "The server disconnected.", opened=True)
