import io
import json
import socket
import threading
import time

import httpx
import pytest

from ingestion.listeners import (
    FluentHTTPListener,
    SocketListener,
    build_listener,
    delimited_frames,
    is_port_in_use,
    syslog_frames,
)


class Recorder:
    def __init__(self, expected=1):
        self.calls = []
        self.expected = expected
        self.done = threading.Event()

    def __call__(self, protocol, transport, data, source_ip, **extra):
        self.calls.append((protocol, transport, data, source_ip, extra))
        if len(self.calls) >= self.expected:
            self.done.set()


# ==================== FRAMING ====================

def test_syslog_newline_framing():
    stream = io.BytesIO(b"<13>first message\n<14>second\r\n\n")
    assert list(syslog_frames(stream)) == [b"<13>first message", b"<14>second"]


def test_syslog_octet_counting():
    stream = io.BytesIO(b"11 <13>abc\ndef5 <14>x")
    assert list(syslog_frames(stream)) == [b"<13>abc\ndef", b"<14>x"]


def test_syslog_leading_digits_without_length():
    stream = io.BytesIO(b"2024-01-01 boot complete\n")
    assert list(syslog_frames(stream)) == [b"2024-01-01 boot complete"]


def test_syslog_truncated_octet_frame_is_dropped():
    stream = io.BytesIO(b"50 <13>short")
    assert list(syslog_frames(stream)) == []


def test_delimited_frames():
    stream = io.BytesIO(b'{"a": 1}\x00{"b": 2}\n\n{"c": 3}')
    assert list(delimited_frames(stream)) == [b'{"a": 1}', b'{"b": 2}', b'{"c": 3}']


# ==================== SOCKET LISTENERS ====================

def test_udp_listener_dispatches_datagrams():
    recorder = Recorder()
    listener = SocketListener("syslog_udp", "syslog", "udp", "127.0.0.1", 0, recorder)
    listener.start()
    try:
        assert listener.port > 0
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.sendto(b"<13>udp hello", ("127.0.0.1", listener.port))
        assert recorder.done.wait(5)
        protocol, transport, data, source_ip, extra = recorder.calls[0]
        assert (protocol, transport, data, source_ip) == ("syslog", "udp", b"<13>udp hello", "127.0.0.1")
        assert extra == {"listener": "syslog_udp"}
    finally:
        listener.stop()
    assert listener.status == "stopped"


def test_tcp_listener_frames_stream():
    recorder = Recorder(expected=2)
    listener = SocketListener("syslog_tcp", "syslog", "tcp", "127.0.0.1", 0, recorder, framing="syslog")
    listener.start()
    try:
        with socket.create_connection(("127.0.0.1", listener.port)) as s:
            s.sendall(b"<13>one\n8 <14>two\n")
        assert recorder.done.wait(5)
        assert [call[2] for call in recorder.calls] == [b"<13>one", b"<14>two\n"]
    finally:
        listener.stop()


def test_bind_conflict_raises():
    holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    holder.bind(("127.0.0.1", 0))
    holder.listen()
    port = holder.getsockname()[1]
    try:
        assert is_port_in_use("127.0.0.1", port, "tcp")
        listener = FluentHTTPListener("fluent_http", "fluent", "http", "127.0.0.1", port, Recorder())
        with pytest.raises(OSError):
            listener.start()
        assert listener.status == "stopped"
    finally:
        holder.close()


# ==================== FLUENT HTTP ====================

@pytest.fixture
def fluent():
    recorder = Recorder()
    listener = FluentHTTPListener("fluent_http", "fluent", "http", "127.0.0.1", 0, recorder, max_message_size=1024)
    listener.start()
    assert listener.wait_started(10)
    yield listener, recorder
    listener.stop()


def test_fluent_post_is_dispatched_with_tag(fluent):
    listener, recorder = fluent
    body = json.dumps([[1700000000, {"log": "hello"}]])
    response = httpx.post(f"http://127.0.0.1:{listener.port}/app.web", content=body, trust_env=False)
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert recorder.done.wait(5)
    _, transport, data, _, extra = recorder.calls[0]
    assert transport == "http"
    assert json.loads(data) == [[1700000000, {"log": "hello"}]]
    assert extra == {"tag": "app.web", "listener": "fluent_http"}


def test_fluent_rejects_bad_requests(fluent):
    listener, recorder = fluent
    base = f"http://127.0.0.1:{listener.port}"
    assert httpx.get(f"{base}/x", trust_env=False).status_code == 405
    assert httpx.post(f"{base}/x", content=b"{not json", trust_env=False).status_code == 400
    assert httpx.post(f"{base}/x", content=b'"' + b"a" * 2000 + b'"', trust_env=False).status_code == 413
    time.sleep(0.1)
    assert recorder.calls == []


def test_build_listener_by_transport():
    assert isinstance(build_listener("a", {"protocol": "fluent", "transport": "http", "port": 1}, "0.0.0.0", Recorder(), 10),
                      FluentHTTPListener)
    tcp = build_listener("b", {"protocol": "syslog", "transport": "tcp", "port": 1}, "0.0.0.0", Recorder(), 10)
    assert tcp.framing == "syslog"
    gelf = build_listener("c", {"protocol": "gelf", "transport": "tcp", "port": 1}, "0.0.0.0", Recorder(), 10)
    assert gelf.framing == "line"
    with pytest.raises(ValueError):
        build_listener("d", {"protocol": "x", "transport": "sctp"}, "0.0.0.0", Recorder(), 10)
