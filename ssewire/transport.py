"""
HTTP transport capability used by connection sessions.

A transport starts one streaming GET request and hands back a response that
exposes the status code, headers, final URL and the body as byte chunks. The
default implementations wrap httpx; tests inject fakes with the same shape.
"""

from __future__ import annotations

import contextlib
import logging
import socket
import threading
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Callable,
    ContextManager,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
)

import httpx

from .types import EventSourceConfig

logger = logging.getLogger(__name__)


# Exceptions a transport may raise while connecting or reading.
TRANSPORT_ERRORS = (httpx.HTTPError, httpx.StreamError, OSError)


# ============================================================================
# Cancellation
# ============================================================================

class CancelToken:
    """Thread-safe, one-shot cancellation signal with callbacks."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Raise the signal. Returns False if it was already raised."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            cb()
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (immediately if already cancelled).

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove(callback)
        callback()
        return lambda: None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. True if cancelled."""
        return self._event.wait(timeout)

    def _remove(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass


# ============================================================================
# Transport Protocols
# ============================================================================

class StreamResponse(Protocol):
    status_code: int
    headers: Mapping[str, str]
    url: Any

    def iter_bytes(self) -> Iterator[bytes]: ...

    def close(self) -> None: ...


class AsyncStreamResponse(Protocol):
    status_code: int
    headers: Mapping[str, str]
    url: Any

    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class Transport(Protocol):
    def stream(
        self, url: str, headers: Dict[str, str], cancel: Optional[CancelToken] = None
    ) -> ContextManager[StreamResponse]: ...

    def close(self) -> None: ...


class AsyncTransport(Protocol):
    def stream(self, url: str, headers: Dict[str, str]) -> AsyncContextManager[AsyncStreamResponse]: ...

    async def aclose(self) -> None: ...


# ============================================================================
# httpx Implementations
# ============================================================================

def _timeout(config: EventSourceConfig) -> httpx.Timeout:
    return httpx.Timeout(
        connect=config.connect_timeout,
        read=config.read_timeout,
        write=config.connect_timeout,
        pool=config.connect_timeout,
    )


class _SocketAborter:
    """Remembers the socket of an in-flight request so another thread can shut it down.

    Closing a socket does not wake a thread blocked reading from it; shutting
    it down does, whether the request is still waiting for the response
    headers or already reading the body. The socket is learned from httpx's
    ``trace`` request extension when the TCP connection is made.
    """

    def __init__(self) -> None:
        self._sock: Optional[socket.socket] = None
        self._aborted = False
        self._lock = threading.Lock()

    def trace(self, event_name: str, info: Dict[str, Any]) -> None:
        if event_name != "connection.connect_tcp.complete":
            return
        stream = info.get("return_value")
        sock = stream.get_extra_info("socket") if stream is not None else None
        if sock is None:
            return
        with self._lock:
            self._sock = sock
            aborted = self._aborted
        if aborted:
            self._shutdown(sock)

    def abort(self) -> None:
        with self._lock:
            self._aborted = True
            sock = self._sock
        if sock is not None:
            self._shutdown(sock)

    @staticmethod
    def _shutdown(sock: socket.socket) -> None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            # Already closed by httpx.
            logger.debug("Socket shutdown skipped: %s", exc)


class HttpxTransport:
    """Blocking transport on top of ``httpx.Client``.

    A request started with a ``cancel`` token is aborted when the token is
    raised, including while it waits for the response headers. The owned
    client keeps no idle connections, so every request opens its own socket;
    an injected client that reuses a pooled connection can only be aborted
    once the response has arrived.
    """

    def __init__(self, config: Optional[EventSourceConfig] = None, client: Optional[httpx.Client] = None) -> None:
        config = config or EventSourceConfig()
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=_timeout(config),
            follow_redirects=config.follow_redirects,
            limits=httpx.Limits(max_keepalive_connections=0),
        )

    @contextlib.contextmanager
    def stream(
        self, url: str, headers: Dict[str, str], cancel: Optional[CancelToken] = None
    ) -> Iterator[httpx.Response]:
        aborter = _SocketAborter()
        unregister = cancel.add_callback(aborter.abort) if cancel is not None else (lambda: None)
        try:
            with self._client.stream(
                "GET", url, headers=headers, extensions={"trace": aborter.trace}
            ) as response:
                yield response
        finally:
            unregister()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class HttpxAsyncTransport:
    """Asyncio transport on top of ``httpx.AsyncClient``."""

    def __init__(self, config: Optional[EventSourceConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        config = config or EventSourceConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=_timeout(config),
            follow_redirects=config.follow_redirects,
        )

    def stream(self, url: str, headers: Dict[str, str]) -> AsyncContextManager[httpx.Response]:
        return self._client.stream("GET", url, headers=headers)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
