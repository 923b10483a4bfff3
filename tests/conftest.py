"""Shared fakes and fixtures for ssewire tests."""

import asyncio
import threading
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
import pytest

from ssewire import EventSourceConfig

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STREAM_URL = "http://events.test/stream"
EVENT_STREAM_HEADERS = {"content-type": "text/event-stream"}


# ---------------------------------------------------------------------------
# Scripted responses
# ---------------------------------------------------------------------------

class FakeResponse:
    """One scripted HTTP response.

    ``chunks`` are delivered in order; then ``error`` is raised if given, or
    the read blocks until the response is closed if ``block`` is set, or the
    body ends cleanly.
    """

    def __init__(
        self,
        chunks: Sequence[Union[bytes, str]] = (),
        status_code: int = 200,
        headers: Optional[Dict[str, str]] = None,
        error: Optional[BaseException] = None,
        block: bool = False,
        url: str = STREAM_URL,
    ) -> None:
        self.status_code = status_code
        self.headers = httpx.Headers(EVENT_STREAM_HEADERS if headers is None else headers)
        self.url = httpx.URL(url)
        self.chunks = [c.encode("utf-8") if isinstance(c, str) else c for c in chunks]
        self.error = error
        self.block = block
        self.closed = False
        self._released = threading.Event()

    # --- blocking side ---

    def iter_bytes(self):
        for chunk in self.chunks:
            if self.closed:
                raise httpx.ReadError("response closed")
            yield chunk
        if self.error is not None:
            raise self.error
        if self.block:
            self._released.wait()
            raise httpx.ReadError("response closed")

    def close(self) -> None:
        self.closed = True
        self._released.set()

    # --- asyncio side ---

    async def aiter_bytes(self):
        for chunk in self.chunks:
            await asyncio.sleep(0)
            yield chunk
        if self.error is not None:
            raise self.error
        if self.block:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.close()


def no_content() -> FakeResponse:
    return FakeResponse(status_code=204, headers={})


class _FakeTransportBase:
    """Serves scripted responses in order; a 204 once they run out."""

    def __init__(self, *responses: Union[FakeResponse, BaseException]) -> None:
        self.responses: List[Union[FakeResponse, BaseException]] = list(responses)
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def _next(self, url: str, headers: Dict[str, str]) -> FakeResponse:
        self.requests.append({"url": url, "headers": dict(headers)})
        item = self.responses.pop(0) if self.responses else no_content()
        if isinstance(item, BaseException):
            raise item
        return item


class FakeTransport(_FakeTransportBase):
    @contextmanager
    def stream(self, url: str, headers: Dict[str, str], cancel=None):
        response = self._next(url, headers)
        try:
            yield response
        finally:
            response.close()

    def close(self) -> None:
        self.closed = True


class FakeAsyncTransport(_FakeTransportBase):
    @asynccontextmanager
    async def stream(self, url: str, headers: Dict[str, str]):
        response = self._next(url, headers)
        try:
            yield response
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        self.closed = True


class Recorder:
    """Collects notifications as ``(kind, payload)`` tuples."""

    def __init__(self) -> None:
        self.items: List[Any] = []

    def __call__(self, note: Any) -> None:
        self.items.append(note)

    @property
    def kinds(self) -> List[str]:
        return [n.type for n in self.items]

    def summary(self) -> List[Any]:
        out = []
        for n in self.items:
            if n.type == "open":
                out.append("open")
            elif n.type == "error":
                out.append("error")
            else:
                out.append((n.type, n.data, n.last_event_id))
        return out


def record_all(source, recorder: Recorder, types=("open", "message", "error")) -> Recorder:
    for name in types:
        source.on(name, recorder)
    return recorder


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fast_config():
    """Config with a near-zero reconnection delay."""
    return EventSourceConfig(retry_ms=0)


@pytest.fixture
def recorder():
    return Recorder()
