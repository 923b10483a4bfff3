"""
ssewire - Server-Sent Events client for Python.

Maintains a long-lived, auto-reconnecting ``text/event-stream`` connection
and delivers decoded events in order.

Example:
    >>> from ssewire import EventSource
    >>> source = EventSource.open("https://example.com/stream", start=False)
    >>> events = source.notifications()
    >>> source.start()
    >>> for note in events:
    ...     print(note.type, getattr(note, "data", ""))
"""

import logging

from .client import AsyncEventSource, EventSource, origin_of
from .dispatch import AsyncNotificationQueue, DispatchSink, EventEmitter, NotificationQueue
from .parser import StreamParser
from .session import (
    AsyncConnectionSession,
    ConnectionSession,
    SessionResult,
    check_response,
    request_headers,
)
from .transport import (
    AsyncStreamResponse,
    AsyncTransport,
    CancelToken,
    HttpxAsyncTransport,
    HttpxTransport,
    StreamResponse,
    Transport,
)
from .types import (
    DEFAULT_RETRY_MS,
    ConnectionState,
    ErrorEvent,
    EventRecord,
    EventSourceConfig,
    MessageEvent,
    Notification,
    OpenEvent,
    ParserOutput,
    RetryHint,
    SessionMemory,
    TerminalOutcome,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
__all__ = [
    # Event sources
    "EventSource",
    "AsyncEventSource",
    "origin_of",
    # Dispatch
    "DispatchSink",
    "EventEmitter",
    "NotificationQueue",
    "AsyncNotificationQueue",
    # Parser
    "StreamParser",
    # Sessions
    "ConnectionSession",
    "AsyncConnectionSession",
    "SessionResult",
    "check_response",
    "request_headers",
    # Transport
    "Transport",
    "AsyncTransport",
    "StreamResponse",
    "AsyncStreamResponse",
    "HttpxTransport",
    "HttpxAsyncTransport",
    "CancelToken",
    # Types
    "DEFAULT_RETRY_MS",
    "ConnectionState",
    "TerminalOutcome",
    "EventRecord",
    "RetryHint",
    "ParserOutput",
    "SessionMemory",
    "OpenEvent",
    "MessageEvent",
    "ErrorEvent",
    "Notification",
    "EventSourceConfig",
]
