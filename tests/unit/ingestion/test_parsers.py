import gzip
import json
from datetime import datetime, timezone

import pytest

from ingestion.parsers import (
    GelfChunkAssembler,
    ParseError,
    detect_format,
    normalize_level,
    parse,
    parse_beats,
    parse_fluent,
    parse_gelf,
    parse_json,
    parse_raw,
    parse_structured_data,
    parse_syslog,
    rfc3164_timestamp,
    to_timestamp,
)


# ==================== SYSLOG ====================

def test_rfc5424_message():
    entry = parse_syslog(
        "<34>1 2003-10-11T22:14:15.003Z mymachine.example.com su - ID47 - 'su root' failed for lonvick"
    )
    assert entry["syslog_format"] == "rfc5424"
    assert entry["level"] == "critical"
    assert entry["facility"] == "auth"
    assert entry["source"] == "mymachine.example.com"
    assert entry["app_name"] == "su"
    assert entry["proc_id"] is None
    assert entry["msg_id"] == "ID47"
    assert entry["timestamp"] == "2003-10-11T22:14:15.003Z"
    assert entry["message"] == "'su root' failed for lonvick"


def test_rfc5424_structured_data():
    entry = parse_syslog(
        '<165>1 2003-10-11T22:14:15.003Z host app 1234 ID1 '
        '[exampleSDID@32473 iut="3" eventSource="Application"] An application event'
    )
    assert entry["level"] == "notice"
    assert entry["facility"] == "local4"
    assert entry["proc_id"] == "1234"
    assert entry["structured_data_parsed"] == {
        "exampleSDID@32473": {"iut": "3", "eventSource": "Application"}
    }
    assert entry["message"] == "An application event"


def test_rfc5424_nil_hostname_is_unknown():
    entry = parse_syslog("<14>1 2024-01-01T00:00:00Z - app - - - hello")
    assert entry["source"] == "unknown"
    assert entry["message"] == "hello"


def test_structured_data_escapes():
    parsed = parse_structured_data('[a@1 msg="say \\"hi\\""][b@2]')
    assert parsed == {"a@1": {"msg": 'say "hi"'}, "b@2": {}}


def test_rfc3164_message():
    now = datetime(2024, 10, 12, tzinfo=timezone.utc)
    entry = parse_syslog("<13>Oct 11 22:14:15 mymachine su[123]: hello world", now=now)
    assert entry["syslog_format"] == "rfc3164"
    assert entry["timestamp"] == "2024-10-11T22:14:15.000Z"
    assert entry["level"] == "notice"
    assert entry["facility"] == "user"
    assert entry["tag"] == "su"
    assert entry["proc_id"] == "123"
    assert entry["message"] == "hello world"


def test_rfc3164_year_rollover():
    now = datetime(2025, 1, 1, 0, 0, 10, tzinfo=timezone.utc)
    assert rfc3164_timestamp("Dec", 31, "23:59:59", now) == "2024-12-31T23:59:59.000Z"


def test_rfc3164_single_digit_day():
    now = datetime(2024, 3, 5, 12, tzinfo=timezone.utc)
    entry = parse_syslog("<30>Mar  5 10:00:00 host cron: job done", now=now)
    assert entry["timestamp"] == "2024-03-05T10:00:00.000Z"
    assert entry["app_name"] == "cron"


def test_syslog_fallback_keeps_priority():
    entry = parse_syslog("<11>something unstructured")
    assert entry["syslog_format"] == "unknown"
    assert entry["level"] == "error"
    assert entry["source"] == "unknown"
    assert entry["message"] == "something unstructured"


def test_syslog_never_raises_on_garbage():
    entry = parse_syslog(b"\xff\xfe not syslog at all")
    assert entry["level"] == "info"
    assert entry["source"] == "unknown"


# ==================== GELF ====================

GELF = {
    "version": "1.1",
    "host": "web-1",
    "short_message": "Disk almost full",
    "level": 3,
    "timestamp": 1700000000,
    "_disk": "/dev/sda1",
    "_id": "dropped",
}


def test_gelf_message():
    entry = parse_gelf(json.dumps(GELF).encode())
    assert entry["level"] == "error"
    assert entry["source"] == "web-1"
    assert entry["message"] == "Disk almost full"
    assert entry["timestamp"] == "2023-11-14T22:13:20.000Z"
    assert entry["fields"] == {"disk": "/dev/sda1"}


def test_gelf_gzip():
    entry = parse_gelf(gzip.compress(json.dumps(GELF).encode()))
    assert entry["message"] == "Disk almost full"


@pytest.mark.parametrize("field", ["version", "host", "short_message"])
def test_gelf_requires_fields(field):
    record = dict(GELF)
    del record[field]
    with pytest.raises(ParseError):
        parse_gelf(json.dumps(record))


def _chunk(message_id: bytes, number: int, count: int, data: bytes) -> bytes:
    return b"\x1e\x0f" + message_id + bytes([number, count]) + data


def test_gelf_chunk_reassembly_out_of_order():
    payload = json.dumps(GELF).encode()
    half = len(payload) // 2
    assembler = GelfChunkAssembler()
    assert assembler.add(_chunk(b"abcdefgh", 1, 2, payload[half:]), now=1.0) is None
    assert assembler.add(_chunk(b"abcdefgh", 0, 2, payload[:half]), now=1.5) == payload
    assert assembler.pending == {}


def test_gelf_incomplete_chunks_expire():
    assembler = GelfChunkAssembler(timeout=5)
    assembler.add(_chunk(b"11111111", 0, 2, b"{"), now=0.0)
    assembler.add(_chunk(b"22222222", 0, 2, b"{"), now=10.0)
    assert assembler.expired == 1
    assert list(assembler.pending) == [b"22222222"]


def test_gelf_invalid_chunk():
    with pytest.raises(ParseError):
        GelfChunkAssembler().add(_chunk(b"abcdefgh", 3, 2, b"x"))


# ==================== BEATS / FLUENT / JSON / RAW ====================

def test_beats_batch():
    lines = "\n".join([
        json.dumps({"@timestamp": "2024-01-01T00:00:00Z", "message": "one", "beat": {"hostname": "node-a"}}),
        "",
        json.dumps({"message": "two", "host": {"name": "node-b"}, "log": {"level": "WARN"}}),
    ])
    entries = parse_beats(lines)
    assert [e["message"] for e in entries] == ["one", "two"]
    assert entries[0]["source"] == "node-a"
    assert entries[0]["timestamp"] == "2024-01-01T00:00:00.000Z"
    assert entries[1]["source"] == "node-b"
    assert entries[1]["level"] == "warning"


def test_beats_invalid_line():
    with pytest.raises(ParseError):
        parse_beats('{"message": "ok"}\nnot json')


def test_fluent_forward_pairs():
    entries = parse_fluent(json.dumps([[1700000000, {"log": "a"}], [1700000001, {"log": "b", "level": "err"}]]), tag="app")
    assert [e["message"] for e in entries] == ["a", "b"]
    assert entries[0]["timestamp"] == "2023-11-14T22:13:20.000Z"
    assert entries[1]["level"] == "error"
    assert entries[0]["tag"] == "app"


def test_fluent_single_record():
    entry = parse_fluent({"message": "hi", "host": "box"})
    assert entry["source"] == "box"


def test_fluent_rejects_empty_array():
    with pytest.raises(ParseError):
        parse_fluent("[]")


def test_json_log():
    entry = parse_json('{"msg": "started", "level": "WARN", "time": 1700000000000, "source": "api"}')
    assert entry["message"] == "started"
    assert entry["level"] == "warning"
    assert entry["timestamp"] == "2023-11-14T22:13:20.000Z"
    assert entry["source"] == "api"


def test_json_rejects_non_object():
    with pytest.raises(ParseError):
        parse_json("[1, 2]")


def test_raw():
    assert parse_raw(b"  plain text \n")["message"] == "plain text"
    with pytest.raises(ParseError):
        parse_raw("   ")


# ==================== DISPATCH / HELPERS ====================

@pytest.mark.parametrize("text, expected", [
    ("<13>Oct 11 22:14:15 host app: x", "syslog"),
    ('{"version": "1.1", "host": "h", "short_message": "m"}', "gelf"),
    ('{"message": "m"}', "json"),
    ('[[1, {"log": "x"}]]', "fluent"),
    ("{broken", "raw"),
    ("hello", "raw"),
])
def test_detect_format(text, expected):
    assert detect_format(text) == expected


def test_parse_auto_and_unknown_format():
    assert parse("auto", '{"message": "m"}')["message"] == "m"
    with pytest.raises(ParseError):
        parse("xml", "<a/>")


@pytest.mark.parametrize("value, expected", [
    ("WARN", "warning"),
    ("crit", "critical"),
    (3, "error"),
    ("7", "debug"),
    (None, "info"),
    ("custom", "custom"),
])
def test_normalize_level(value, expected):
    assert normalize_level(value) == expected


def test_to_timestamp_variants():
    assert to_timestamp(1700000000) == "2023-11-14T22:13:20.000Z"
    assert to_timestamp(1700000000000) == "2023-11-14T22:13:20.000Z"
    assert to_timestamp("2024-01-01T10:00:00+02:00") == "2024-01-01T08:00:00.000Z"
    assert to_timestamp("not a date").endswith("Z")
