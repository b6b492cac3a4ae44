import gzip
import json

import pytest

from ingestion import engine as engine_module
from ingestion.engine import IngestionEngine
from ingestion.listeners import build_listener
from ingestion.sink import LogSink


@pytest.fixture
def collected():
    return []


@pytest.fixture
def engine(collected):
    sink = LogSink(writer=lambda batch: collected.extend(batch) or len(batch))
    config = {
        "enabled": True,
        "rate_limit": 1000,
        "max_message_size": 4096,
        "listeners": {
            "syslog_udp": {"protocol": "syslog", "transport": "udp", "port": 0},
            "gelf_udp": {"protocol": "gelf", "transport": "udp", "port": 0},
            "beats_tcp": {"protocol": "beats", "transport": "tcp", "port": 0, "enabled": False},
        },
    }
    return IngestionEngine(config=config, sink=sink)


def test_handle_syslog_message(engine, collected):
    entries = engine.handle_message("syslog", "udp", b"<13>Oct 11 22:14:15 host app: hi", "10.1.1.1")
    assert len(entries) == 1
    entry = entries[0]
    assert entry["protocol"] == "syslog"
    assert entry["transport"] == "udp"
    assert entry["source_ip"] == "10.1.1.1"
    assert entry["received_at"].endswith("Z")

    engine.sink.flush()
    assert collected[0]["message"] == "hi"

    stats = engine.get_stats()
    assert stats["totalMessages"] == 1
    assert stats["messagesByProtocol"] == {"syslog": 1}
    assert stats["bytesReceived"] == len(b"<13>Oct 11 22:14:15 host app: hi")


def test_parse_errors_are_counted(engine):
    assert engine.handle_message("gelf", "udp", b'{"host": "h"}', "10.1.1.1") == []
    stats = engine.get_stats()
    assert stats["errors"] == 1
    gelf = next(e for e in engine.status()["engines"] if e["key"] == "gelf_udp")
    assert gelf["errors"] == 1
    assert gelf["messages_processed"] == 0


def test_oversized_message_is_an_error(engine):
    assert engine.handle_message("syslog", "udp", b"x" * 5000, "10.1.1.1") == []
    assert engine.get_stats()["errors"] == 1


def test_gelf_chunks_are_reassembled(engine):
    payload = gzip.compress(json.dumps({"version": "1.1", "host": "h", "short_message": "chunked"}).encode())
    half = len(payload) // 2
    first = b"\x1e\x0f" + b"msgid001" + bytes([0, 2]) + payload[:half]
    second = b"\x1e\x0f" + b"msgid001" + bytes([1, 2]) + payload[half:]

    assert engine.handle_message("gelf", "udp", first, "10.1.1.1") == []
    (entry,) = engine.handle_message("gelf", "udp", second, "10.1.1.1")
    assert entry["message"] == "chunked"


def test_per_listener_rate_limit(collected):
    engine = IngestionEngine(
        config={"rate_limit": 1, "listeners": {}},
        sink=LogSink(writer=lambda batch: len(batch)),
    )
    for _ in range(3):
        engine.handle_message("syslog", "udp", b"<13>hello", "10.1.1.1")
    stats = engine.get_stats()
    assert stats["droppedMessages"] >= 1
    assert stats["totalMessages"] == 3


def test_stats_and_rate_windows_are_per_listener_name(monkeypatch):
    monkeypatch.setattr(engine_module.time, "time", lambda: 1000.0)
    specs = {
        "edge_syslog": {"protocol": "syslog", "transport": "udp", "port": 0},
        "core_syslog": {"protocol": "syslog", "transport": "udp", "port": 0},
    }
    engine = IngestionEngine(
        config={"rate_limit": 1, "listeners": specs},
        sink=LogSink(writer=lambda batch: len(batch)),
    )
    edge, core = (
        build_listener(name, spec, "127.0.0.1", engine.handle_message, 4096) for name, spec in specs.items()
    )

    edge.dispatch(b"<13>from edge", "10.1.1.1")
    edge.dispatch(b"<13>edge again", "10.1.1.1")
    core.dispatch(b"<13>from core", "10.1.1.2")

    assert engine.listener_stats["edge_syslog"]["processed"] == 1
    assert engine.listener_stats["edge_syslog"]["dropped"] == 1
    assert engine.listener_stats["core_syslog"]["processed"] == 1
    assert engine.listener_stats["core_syslog"]["dropped"] == 0
    assert "syslog_udp" not in engine.listener_stats


def test_batch_formats_yield_many_entries(engine):
    body = b'{"message": "a"}\n{"message": "b"}'
    entries = engine.handle_message("beats", "tcp", body, "10.1.1.1")
    assert [e["message"] for e in entries] == ["a", "b"]


def test_status_before_start(engine):
    status = engine.status()
    assert status["mode"] == "stopped"
    assert {e["key"] for e in status["engines"]} == {"syslog_udp", "gelf_udp", "beats_tcp"}
    beats = next(e for e in status["engines"] if e["key"] == "beats_tcp")
    assert beats["status"] == "disabled"
    assert beats["name"] == "Beats TCP"
    assert status["health"] == "down"


def test_disabled_by_configuration():
    engine = IngestionEngine(config={"enabled": False, "listeners": {}}, sink=LogSink(writer=len))
    assert engine.initialize() == "disabled"
    assert engine.status()["mode"] == "disabled"


def test_initialize_binds_ephemeral_ports(engine):
    config = dict(engine.config, host="127.0.0.1")
    engine = IngestionEngine(config=config, sink=engine.sink)
    try:
        assert engine.initialize() == "running"
        assert engine.health() == "healthy"
        ports = {p["key"]: p for p in engine.ports_status()}
        assert ports["syslog_udp"]["bound"] is True
        assert ports["syslog_udp"]["port"] > 0
        assert ports["beats_tcp"]["bound"] is False
    finally:
        engine.shutdown()
    assert engine.mode == "stopped"
