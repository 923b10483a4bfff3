"""
EventSource (blocking reconnection controller) tests
"""

import socket
import threading

import httpx
import pytest

from ssewire import ConnectionState, EventSource, EventSourceConfig, origin_of

from .conftest import (
    STREAM_URL,
    FakeResponse,
    FakeTransport,
    Recorder,
    no_content,
    record_all,
)


def make_source(*responses, config=None, **kwargs):
    transport = FakeTransport(*responses)
    source = EventSource(STREAM_URL, config=config or EventSourceConfig(retry_ms=0), transport=transport, **kwargs)
    return source, transport


def close_on(source, predicate):
    def listener(note):
        if predicate(note):
            source.close()
    return listener


class HangingServer:
    """Accepts one connection, reads the request, sends ``preamble`` and then goes silent."""

    def __init__(self, preamble=b""):
        self.preamble = preamble
        self.request_received = threading.Event()
        self.peer_closed = threading.Event()
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(1)
        self._listener.settimeout(5)
        self.url = "http://127.0.0.1:%d/stream" % self._listener.getsockname()[1]
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self):
        try:
            conn, _ = self._listener.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(5)
            request = b""
            try:
                while b"\r\n\r\n" not in request:
                    chunk = conn.recv(4096)
                    if not chunk:
                        return
                    request += chunk
                if self.preamble:
                    conn.sendall(self.preamble)
                self.request_received.set()
                if conn.recv(4096) == b"":
                    self.peer_closed.set()
            except ConnectionResetError:
                self.peer_closed.set()
            except OSError:
                pass

    def close(self):
        self._listener.close()


@pytest.fixture
def hanging_server(monkeypatch):
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    servers = []

    def start(preamble=b""):
        server = HangingServer(preamble)
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.close()


# ============================================================================
# Construction
# ============================================================================


class TestConstruction:
    def test_initial_state(self):
        source, _ = make_source()
        assert source.state is ConnectionState.CONNECTING
        assert source.ready_state == 0
        assert source.url == STREAM_URL
        assert source.last_event_id == ""
        assert source.retry_ms == 0
        assert source.with_credentials is False

    @pytest.mark.parametrize("url", ["not a url", "ftp://example.com/x", "http://", ""])
    def test_invalid_url(self, url):
        with pytest.raises(ValueError, match="URL is invalid"):
            EventSource(url, transport=FakeTransport())

    def test_with_credentials_rejected(self):
        with pytest.raises(ValueError, match="with_credentials"):
            EventSource(STREAM_URL, with_credentials=True, transport=FakeTransport())

    def test_overrides_apply_on_top_of_config(self):
        source = EventSource(
            STREAM_URL,
            config=EventSourceConfig(retry_ms=100, last_event_id="9"),
            transport=FakeTransport(),
            retry_ms=250,
        )
        assert source.retry_ms == 250
        assert source.last_event_id == "9"

    def test_unknown_override_rejected(self):
        with pytest.raises(ValueError, match="retry"):
            EventSource(STREAM_URL, transport=FakeTransport(), retry=5000)

    def test_default_retry(self):
        source = EventSource(STREAM_URL, transport=FakeTransport())
        assert source.retry_ms == 3000

    def test_run_twice_rejected(self):
        source, _ = make_source(no_content())
        source.run()
        with pytest.raises(RuntimeError):
            source.run()

    def test_origin(self):
        assert origin_of("https://example.com/a?b") == "https://example.com"
        assert origin_of("http://example.com:8080/a") == "http://example.com:8080"
        assert origin_of("http://[::1]:9000/") == "http://[::1]:9000"


# ============================================================================
# End-to-end sequences
# ============================================================================


class TestReconnection:
    def test_resume_with_last_event_id(self, recorder):
        source, transport = make_source(
            FakeResponse(["id: 1\ndata: hello\n\n"]),
            FakeResponse(["id: 2\ndata: world\n\n"], block=True),
        )
        record_all(source, recorder)
        source.on("message", close_on(source, lambda n: n.data == "world"))
        source.run()

        assert recorder.summary() == [
            "open",
            ("message", "hello", "1"),
            "error",
            "open",
            ("message", "world", "2"),
        ]
        assert "Last-Event-ID" not in transport.requests[0]["headers"]
        assert transport.requests[1]["headers"]["Last-Event-ID"] == "1"
        assert source.state is ConnectionState.CLOSED

    def test_event_without_id_keeps_last_event_id(self, recorder):
        source, transport = make_source(
            FakeResponse(["id: 5\ndata: a\n\ndata: b\n\n"]),
        )
        record_all(source, recorder)
        source.run()
        assert recorder.summary()[1:3] == [("message", "a", "5"), ("message", "b", "5")]
        assert transport.requests[1]["headers"]["Last-Event-ID"] == "5"

    def test_nul_id_leaves_last_event_id(self, recorder):
        source, _ = make_source(FakeResponse(["id: 1\ndata: a\n\nid: x\0y\ndata: b\n\n"]))
        record_all(source, recorder)
        source.run()
        assert recorder.summary()[1:3] == [("message", "a", "1"), ("message", "b", "1")]
        assert source.last_event_id == "1"

    def test_empty_id_clears_last_event_id(self, recorder):
        source, transport = make_source(FakeResponse(["id: 1\ndata: a\n\nid\ndata: b\n\n"]))
        record_all(source, recorder)
        source.run()
        assert recorder.summary()[2] == ("message", "b", "")
        assert "Last-Event-ID" not in transport.requests[1]["headers"]

    def test_initial_last_event_id_sent(self):
        source, transport = make_source(no_content(), config=EventSourceConfig(last_event_id="abc"))
        source.run()
        assert transport.requests[0]["headers"]["Last-Event-ID"] == "abc"

    def test_typed_events_route_by_type(self):
        source, _ = make_source(FakeResponse(["event: tick\ndata: 1\n\ndata: 2\n\n"]))
        ticks, messages = Recorder(), Recorder()
        source.on("tick", ticks)
        source.on("message", messages)
        source.run()
        assert [(n.type, n.data) for n in ticks.items] == [("tick", "1")]
        assert [(n.type, n.data) for n in messages.items] == [("message", "2")]

    def test_message_origin(self, recorder):
        source, _ = make_source(FakeResponse(["data: a\n\n"]))
        source.on("message", recorder)
        source.run()
        assert recorder.items[0].origin == "http://events.test"

    def test_redirect_updates_url(self):
        moved = "http://other.test/moved"
        source, transport = make_source(FakeResponse(["data: a\n\n"], url=moved))
        opened_urls = []
        source.on("open", lambda n: opened_urls.append(source.url))
        messages = Recorder()
        source.on("message", messages)
        source.run()
        assert opened_urls == [moved]
        assert messages.items[0].origin == "http://other.test"
        assert transport.requests[1]["url"] == moved


# ============================================================================
# Failure classification
# ============================================================================


class TestFailureClassification:
    def test_no_content_closes(self, recorder):
        states = []
        source, transport = make_source(no_content())
        record_all(source, recorder)
        source.on("error", lambda n: states.append(source.state))
        source.run()
        assert recorder.kinds == ["error"]
        assert recorder.items[0].fatal is True
        assert recorder.items[0].status_code == 204
        assert states == [ConnectionState.CLOSED]
        assert len(transport.requests) == 1

    def test_connection_reset_reconnects(self, recorder):
        states = []
        source, transport = make_source(
            httpx.ConnectError("connection reset"),
            FakeResponse(block=True),
        )
        record_all(source, recorder)
        source.on("error", lambda n: states.append(source.state))
        source.on("open", close_on(source, lambda n: True))
        source.run()
        assert recorder.kinds == ["error", "open"]
        assert recorder.items[0].fatal is False
        assert "connection reset" in recorder.items[0].message
        assert states == [ConnectionState.CONNECTING]
        assert len(transport.requests) == 2

    def test_reset_after_open_reconnects(self, recorder):
        source, _ = make_source(
            FakeResponse(["data: a\n\n"], error=httpx.ReadError("reset")),
        )
        record_all(source, recorder)
        source.run()
        assert recorder.kinds == ["open", "message", "error", "error"]
        assert [n.fatal for n in recorder.items if n.type == "error"] == [False, True]

    @pytest.mark.parametrize("status", [400, 404, 500])
    def test_error_status_closes(self, recorder, status):
        source, transport = make_source(FakeResponse(status_code=status))
        record_all(source, recorder)
        source.run()
        assert recorder.kinds == ["error"]
        assert recorder.items[0].status_code == status
        assert source.state is ConnectionState.CLOSED
        assert len(transport.requests) == 1

    def test_wrong_content_type_closes(self, recorder):
        source, _ = make_source(FakeResponse(headers={"content-type": "text/plain"}))
        record_all(source, recorder)
        source.run()
        assert recorder.kinds == ["error"]
        assert recorder.items[0].fatal is True

    def test_retry_statuses_reconnect(self, recorder):
        source, transport = make_source(
            FakeResponse(status_code=503),
            config=EventSourceConfig(retry_ms=0, retry_statuses={503}),
        )
        record_all(source, recorder)
        source.run()
        assert [n.fatal for n in recorder.items] == [False, True]
        assert len(transport.requests) == 2

    def test_retries_have_no_limit(self):
        source, transport = make_source(*[httpx.ConnectError("down")] * 25)
        source.run()
        assert len(transport.requests) == 26


# ============================================================================
# Retry delay
# ============================================================================


class TestRetryDelay:
    def test_hint_applies_to_next_wait(self):
        waits = []
        source, _ = make_source(
            httpx.ConnectError("down"),
            FakeResponse(["retry: 5000\n"]),
            config=EventSourceConfig(retry_ms=10),
        )

        def fake_wait(timeout=None):
            waits.append(timeout)
            return False

        source._cancel.wait = fake_wait
        source.run()
        assert waits == [0.01, 5.0]
        assert source.retry_ms == 5000

    def test_hint_is_clamped(self):
        source, _ = make_source(
            FakeResponse(["retry: 5\n"]),
            FakeResponse(["retry: 999999\n"]),
            config=EventSourceConfig(retry_ms=0, min_retry_ms=100, max_retry_ms=2000),
        )
        seen = []
        source.on("error", lambda n: seen.append(source.retry_ms))
        source._cancel.wait = lambda timeout=None: False
        source.run()
        assert seen[:2] == [100, 2000]

    def test_close_interrupts_backoff(self, recorder):
        source, transport = make_source(FakeResponse(), config=EventSourceConfig(retry_ms=60000))
        record_all(source, recorder)
        errored = threading.Event()
        source.on("error", lambda n: errored.set())
        source.start()
        assert errored.wait(2)
        source.close()
        assert source.join(2)
        assert recorder.kinds == ["open", "error"]
        assert len(transport.requests) == 1


# ============================================================================
# Close
# ============================================================================


class TestClose:
    def test_close_twice(self, recorder):
        source, _ = make_source(FakeResponse(block=True))
        record_all(source, recorder)
        source.on("open", close_on(source, lambda n: True))
        source.run()
        source.close()
        source.close()
        assert recorder.kinds == ["open"]
        assert source.state is ConnectionState.CLOSED

    def test_close_after_fatal(self, recorder):
        source, _ = make_source(no_content())
        record_all(source, recorder)
        source.run()
        source.close()
        assert recorder.kinds == ["error"]

    def test_close_before_start(self, recorder):
        source, transport = make_source(FakeResponse())
        record_all(source, recorder)
        source.close()
        source.run()
        assert recorder.items == []
        assert transport.requests == []

    def test_close_aborts_blocked_read_from_other_thread(self, recorder):
        opened = threading.Event()
        source, transport = make_source(FakeResponse(["data: a\n\n"], block=True))
        record_all(source, recorder)
        source.on("message", lambda n: opened.set())
        source.start()
        assert opened.wait(2)
        source.close()
        assert source.join(2)
        assert recorder.kinds == ["open", "message"]
        assert source.state is ConnectionState.CLOSED

    def test_close_aborts_request_waiting_for_headers(self, hanging_server, recorder):
        server = hanging_server()
        source = EventSource(server.url)
        record_all(source, recorder)
        source.start()
        assert server.request_received.wait(2)
        source.close()
        assert source.join(3)
        assert source.state is ConnectionState.CLOSED
        assert server.peer_closed.wait(2)
        assert recorder.items == []

    def test_close_aborts_socket_read_mid_stream(self, hanging_server, recorder):
        server = hanging_server(b"HTTP/1.1 200 OK\r\nContent-Type: text/event-stream\r\n\r\ndata: a\n\n")
        got = threading.Event()
        source = EventSource(server.url)
        record_all(source, recorder)
        source.on("message", lambda n: got.set())
        source.start()
        assert got.wait(2)
        source.close()
        assert source.join(3)
        assert server.peer_closed.wait(2)
        assert recorder.kinds == ["open", "message"]

    def test_close_waits_for_delivery_in_progress(self, recorder):
        entered, release = threading.Event(), threading.Event()
        source, _ = make_source(FakeResponse(["data: 1\n\ndata: 2\n\n"], block=True))

        def slow(note):
            if note.data == "1":
                entered.set()
                release.wait(2)

        source.on("message", slow)
        source.on("message", recorder)
        source.start()
        assert entered.wait(2)
        closer = threading.Thread(target=source.close)
        closer.start()
        closer.join(0.1)
        assert closer.is_alive()
        release.set()
        closer.join(2)
        seen_when_closed = [n.data for n in recorder.items]
        assert source.join(2)
        assert seen_when_closed[0] == "1"
        assert [n.data for n in recorder.items] == seen_when_closed

    def test_close_from_listener_stops_remaining_events(self, recorder):
        source, _ = make_source(FakeResponse(["data: 1\n\ndata: 2\n\ndata: 3\n\n"]))
        source.on("message", recorder)
        source.on("message", close_on(source, lambda n: n.data == "1"))
        source.run()
        assert [n.data for n in recorder.items] == ["1"]

    def test_context_manager_closes(self):
        source, _ = make_source(FakeResponse(block=True))
        with source:
            source.start()
        assert source.join(2)
        assert source.state is ConnectionState.CLOSED

    def test_owned_transport_closed(self, monkeypatch):
        transport = FakeTransport(no_content())
        monkeypatch.setattr("ssewire.client.HttpxTransport", lambda config: transport)
        EventSource(STREAM_URL).run()
        assert transport.closed

    def test_injected_transport_left_open(self):
        source, transport = make_source(no_content())
        source.run()
        assert not transport.closed


# ============================================================================
# Notification channel
# ============================================================================


class TestNotifications:
    def test_channel_sees_everything_in_order(self):
        source, _ = make_source(
            FakeResponse(["id: 1\ndata: hello\n\n"]),
            FakeResponse(["event: custom\nid: 2\ndata: world\n\n"]),
        )
        events = source.notifications()
        source.start()
        seen = [(n.type, getattr(n, "data", None)) for n in events]
        assert seen == [
            ("open", None),
            ("message", "hello"),
            ("error", None),
            ("open", None),
            ("custom", "world"),
            ("error", None),
            ("error", None),
        ]
        assert source.join(2)

    def test_channel_ends_on_close(self):
        source, _ = make_source(FakeResponse(block=True))
        events = source.notifications()
        source.start()
        first = events.get(timeout=2)
        assert first.type == "open"
        source.close()
        assert list(events) == []
