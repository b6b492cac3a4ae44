"""
Protocol parsers for the ingestion engine.

Every parser turns raw payloads into normalized entries (dicts with at least
timestamp, message, level and source). Batch formats return a list.
Malformed input raises ParseError; syslog never fails and degrades to a
best-effort entry instead.
"""

import gzip
import json
import re
import threading
import time
import zlib
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

Entry = Dict[str, Any]
ParseResult = Union[Entry, List[Entry]]


class ParseError(ValueError):
    """Raised when a payload cannot be parsed in the requested format"""


SEVERITY_LEVELS = {
    0: "emergency",
    1: "alert",
    2: "critical",
    3: "error",
    4: "warning",
    5: "notice",
    6: "info",
    7: "debug",
}

LEVEL_ALIASES = {
    "emerg": "emergency",
    "panic": "emergency",
    "crit": "critical",
    "fatal": "critical",
    "err": "error",
    "warn": "warning",
    "information": "info",
    "informational": "info",
    "trace": "debug",
}

FACILITIES = [
    "kern", "user", "mail", "daemon", "auth", "syslog", "lpr", "news",
    "uucp", "cron", "authpriv", "ftp", "ntp", "security", "console", "solaris-cron",
    "local0", "local1", "local2", "local3", "local4", "local5", "local6", "local7",
]

MONTHS = {name: i for i, name in enumerate(
    ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"], start=1
)}

FORMATS = ("syslog", "json", "gelf", "beats", "fluent", "raw")

RFC5424_PATTERN = re.compile(
    r"^<(?P<pri>\d{1,3})>(?P<version>\d{1,2}) "
    r"(?P<timestamp>\S+) (?P<hostname>\S+) (?P<app>\S+) (?P<procid>\S+) (?P<msgid>\S+) "
    r"(?P<sd>-|(?:\[(?:[^\]\\]|\\.)*\])+)"
    r"(?: (?P<msg>.*))?$",
    re.DOTALL,
)
SD_ELEMENT_PATTERN = re.compile(r"\[(?P<id>[^\s\]]+)(?P<params>(?:\s+[^\s=\]]+=\"(?:[^\"\\]|\\.)*\")*)\s*\]")
SD_PARAM_PATTERN = re.compile(r"([^\s=\]]+)=\"((?:[^\"\\]|\\.)*)\"")

RFC3164_PATTERN = re.compile(
    r"^<(?P<pri>\d{1,3})>(?P<month>[A-Z][a-z]{2}) {1,2}(?P<day>\d{1,2}) "
    r"(?P<time>\d{2}:\d{2}:\d{2}) (?P<hostname>\S+) (?P<rest>.*)$",
    re.DOTALL,
)
TAG_PATTERN = re.compile(r"^(?P<tag>[^\s:\[\]]+)(?:\[(?P<pid>[^\]]*)\])?: ?(?P<msg>.*)$", re.DOTALL)
PRI_PATTERN = re.compile(r"^<(?P<pri>\d{1,3})>(?P<msg>.*)$", re.DOTALL)

GELF_CHUNK_MAGIC = b"\x1e\x0f"
GELF_MAX_CHUNKS = 128
GELF_CHUNK_TIMEOUT = 5.0


# ==================== HELPERS ====================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """ISO 8601 in UTC with a Z suffix"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return iso(utc_now())


def severity_to_level(severity: Any) -> str:
    try:
        return SEVERITY_LEVELS.get(int(severity), "info")
    except (TypeError, ValueError):
        return "info"


def normalize_level(value: Any, default: str = "info") -> str:
    """Map names, aliases and syslog numbers to a canonical level"""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return severity_to_level(value)
    text = str(value).strip().lower()
    if text.isdigit():
        return severity_to_level(text)
    return LEVEL_ALIASES.get(text, text)


def to_timestamp(value: Any) -> str:
    """Epoch seconds, epoch milliseconds or ISO strings to ISO 8601; now when missing or invalid"""
    if value is None or value == "":
        return now_iso()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        if seconds > 1e11:
            seconds /= 1000.0
        try:
            return iso(datetime.fromtimestamp(seconds, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            return now_iso()
    if isinstance(value, str):
        raw = value.strip()
        try:
            return to_timestamp(float(raw))
        except ValueError:
            pass
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return iso(datetime.fromisoformat(raw))
        except ValueError:
            return now_iso()
    return now_iso()


def _decode_text(data: Union[bytes, str]) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseError(f"Invalid JSON: {e}") from e


def _get_path(record: Dict[str, Any], path: str) -> Any:
    value: Any = record
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _message_or_dump(record: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        if record.get(key) not in (None, ""):
            return str(record[key])
    return json.dumps(record, default=str)


# ==================== SYSLOG ====================

def _split_pri(pri: int) -> Tuple[int, int]:
    if pri > 191:
        raise ParseError(f"Invalid syslog priority: {pri}")
    return pri // 8, pri % 8


def _facility_name(facility: int) -> str:
    return FACILITIES[facility] if facility < len(FACILITIES) else str(facility)


def parse_structured_data(sd: str) -> Dict[str, Dict[str, str]]:
    """'[id@1 a="1" b="x"]' -> {'id@1': {'a': '1', 'b': 'x'}}"""
    result: Dict[str, Dict[str, str]] = {}
    if not sd or sd == "-":
        return result
    for element in SD_ELEMENT_PATTERN.finditer(sd):
        params = {}
        for name, value in SD_PARAM_PATTERN.findall(element.group("params")):
            params[name] = re.sub(r"\\([\"\\\]])", r"\1", value)
        result[element.group("id")] = params
    return result


def parse_rfc5424(text: str) -> Optional[Entry]:
    match = RFC5424_PATTERN.match(text)
    if not match:
        return None

    pri = int(match.group("pri"))
    facility, severity = _split_pri(pri)

    def nil(value: str) -> Optional[str]:
        return None if value == "-" else value

    hostname = nil(match.group("hostname")) or "unknown"
    sd = match.group("sd")
    message = (match.group("msg") or "").lstrip("\ufeff").strip()

    return {
        "timestamp": to_timestamp(nil(match.group("timestamp"))),
        "message": message,
        "level": severity_to_level(severity),
        "source": hostname,
        "hostname": hostname,
        "priority": pri,
        "facility": _facility_name(facility),
        "severity": severity,
        "version": int(match.group("version")),
        "app_name": nil(match.group("app")),
        "proc_id": nil(match.group("procid")),
        "msg_id": nil(match.group("msgid")),
        "structured_data": nil(sd),
        "structured_data_parsed": parse_structured_data(sd),
        "syslog_format": "rfc5424",
    }


def rfc3164_timestamp(month: str, day: int, clock: str, now: Optional[datetime] = None) -> str:
    """
    RFC 3164 timestamps carry no year: use the current one, or the previous
    one when that would put the message more than a day in the future.
    """
    now = now or utc_now()
    hour, minute, second = (int(part) for part in clock.split(":"))
    month_number = MONTHS.get(month)
    if month_number is None:
        raise ValueError(f"Unknown month: {month}")

    for year in (now.year, now.year - 1):
        try:
            candidate = datetime(year, month_number, day, hour, minute, second, tzinfo=timezone.utc)
        except ValueError:
            # Feb 29 outside a leap year
            continue
        if candidate - now <= timedelta(days=1):
            return iso(candidate)
    raise ValueError(f"Invalid date: {month} {day}")


def parse_rfc3164(text: str, now: Optional[datetime] = None) -> Optional[Entry]:
    match = RFC3164_PATTERN.match(text)
    if not match:
        return None

    pri = int(match.group("pri"))
    facility, severity = _split_pri(pri)
    try:
        timestamp = rfc3164_timestamp(match.group("month"), int(match.group("day")), match.group("time"), now)
    except ValueError:
        return None

    rest = match.group("rest")
    tag, pid, message = None, None, rest
    tag_match = TAG_PATTERN.match(rest)
    if tag_match:
        tag, pid, message = tag_match.group("tag"), tag_match.group("pid"), tag_match.group("msg")

    hostname = match.group("hostname")
    return {
        "timestamp": timestamp,
        "message": message.strip(),
        "level": severity_to_level(severity),
        "source": hostname,
        "hostname": hostname,
        "priority": pri,
        "facility": _facility_name(facility),
        "severity": severity,
        "app_name": tag,
        "tag": tag,
        "proc_id": pid or None,
        "syslog_format": "rfc3164",
    }


def parse_syslog(data: Union[bytes, str], now: Optional[datetime] = None) -> Entry:
    """RFC 5424, then RFC 3164, then a best-effort entry. Never raises."""
    text = _decode_text(data).strip("\r\n\x00")

    try:
        entry = parse_rfc5424(text) or parse_rfc3164(text, now)
    except ParseError:
        entry = None
    if entry:
        return entry

    pri_match = PRI_PATTERN.match(text)
    if pri_match and int(pri_match.group("pri")) <= 191:
        pri = int(pri_match.group("pri"))
        facility, severity = pri // 8, pri % 8
        return {
            "timestamp": now_iso(),
            "message": pri_match.group("msg").strip(),
            "level": severity_to_level(severity),
            "source": "unknown",
            "priority": pri,
            "facility": _facility_name(facility),
            "severity": severity,
            "syslog_format": "unknown",
        }

    return {
        "timestamp": now_iso(),
        "message": text.strip(),
        "level": "info",
        "source": "unknown",
        "syslog_format": "unknown",
    }


# ==================== GELF ====================

def decompress_gelf(payload: bytes) -> bytes:
    """Undo gzip or zlib compression; plain payloads pass through"""
    try:
        if payload[:2] == b"\x1f\x8b":
            return gzip.decompress(payload)
        if payload[:1] == b"\x78" and len(payload) > 1 and (payload[0] * 256 + payload[1]) % 31 == 0:
            return zlib.decompress(payload)
    except (OSError, zlib.error, EOFError) as e:
        raise ParseError(f"Invalid compressed GELF payload: {e}") from e
    return payload


def parse_gelf(data: Union[bytes, str, Dict[str, Any]]) -> Entry:
    if isinstance(data, dict):
        record = data
    else:
        if isinstance(data, bytes):
            data = decompress_gelf(data)
        record = _loads(_decode_text(data).strip("\x00\r\n "))

    if not isinstance(record, dict):
        raise ParseError("GELF payload must be a JSON object")
    missing = [k for k in ("version", "host", "short_message") if record.get(k) in (None, "")]
    if missing:
        raise ParseError(f"GELF message missing required field(s): {', '.join(missing)}")

    fields = {key[1:]: value for key, value in record.items() if key.startswith("_") and key != "_id"}
    level = record.get("level", 6)

    entry = {
        "timestamp": to_timestamp(record.get("timestamp")),
        "message": str(record["short_message"]),
        "level": severity_to_level(level if level is not None else 6),
        "source": str(record["host"]),
        "hostname": str(record["host"]),
        "version": str(record["version"]),
        "facility": record.get("facility") or "gelf",
        "full_message": record.get("full_message"),
        "line": record.get("line"),
        "file": record.get("file"),
        "fields": fields,
    }
    return entry


class GelfChunkAssembler:
    """
    Reassembles chunked GELF datagrams.

    Chunk layout: magic (2) | message id (8) | seq number (1) | seq count (1) | data.
    Incomplete messages are discarded after GELF_CHUNK_TIMEOUT seconds.
    """

    def __init__(self, timeout: float = GELF_CHUNK_TIMEOUT):
        self.timeout = timeout
        self.pending: Dict[bytes, Dict[str, Any]] = {}
        self.expired = 0
        self.lock = threading.Lock()

    @staticmethod
    def is_chunk(datagram: bytes) -> bool:
        return datagram[:2] == GELF_CHUNK_MAGIC

    def _expire(self, now: float):
        stale = [mid for mid, p in self.pending.items() if now - p["started"] > self.timeout]
        for mid in stale:
            del self.pending[mid]
        self.expired += len(stale)

    def add(self, datagram: bytes, now: Optional[float] = None) -> Optional[bytes]:
        """Feed one chunk; returns the full payload once every chunk arrived"""
        if len(datagram) < 12:
            raise ParseError("GELF chunk too short")
        message_id = datagram[2:10]
        seq_number, seq_count = datagram[10], datagram[11]
        if seq_count == 0 or seq_count > GELF_MAX_CHUNKS:
            raise ParseError(f"Invalid GELF chunk count: {seq_count}")
        if seq_number >= seq_count:
            raise ParseError(f"Invalid GELF chunk number {seq_number} of {seq_count}")

        now = now if now is not None else time.monotonic()
        with self.lock:
            self._expire(now)
            pending = self.pending.setdefault(message_id, {"started": now, "count": seq_count, "chunks": {}})
            if pending["count"] != seq_count:
                del self.pending[message_id]
                raise ParseError("GELF chunk count mismatch")
            pending["chunks"][seq_number] = datagram[12:]
            if len(pending["chunks"]) < seq_count:
                return None
            del self.pending[message_id]

        return b"".join(pending["chunks"][i] for i in range(seq_count))


# ==================== BEATS / FLUENT / JSON / RAW ====================

def _beats_entry(record: Dict[str, Any]) -> Entry:
    beat = record.get("beat") if isinstance(record.get("beat"), dict) else {}
    agent = record.get("agent") if isinstance(record.get("agent"), dict) else {}
    source = (
        beat.get("hostname")
        or _get_path(record, "host.name")
        or agent.get("hostname")
        or "beats"
    )
    return {
        "timestamp": to_timestamp(record.get("@timestamp")),
        "message": _message_or_dump(record, "message"),
        "level": normalize_level(_get_path(record, "log.level") or record.get("level")),
        "source": str(source),
        "fields": record.get("fields") or {},
        "beat_type": beat.get("name") or agent.get("type"),
        "beat_version": beat.get("version") or agent.get("version"),
        "original": record,
    }


def parse_beats(data: Union[bytes, str]) -> ParseResult:
    """Newline-delimited JSON events"""
    entries = []
    for number, line in enumerate(_decode_text(data).splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON on line {number}: {e}") from e
        if not isinstance(record, dict):
            raise ParseError(f"Beats event on line {number} is not an object")
        entries.append(_beats_entry(record))

    if not entries:
        raise ParseError("No Beats events in payload")
    return entries[0] if len(entries) == 1 else entries


def _fluent_entry(record: Dict[str, Any], time_value: Any = None, tag: Optional[str] = None) -> Entry:
    if not isinstance(record, dict):
        raise ParseError("Fluent record must be a JSON object")
    return {
        "timestamp": to_timestamp(time_value if time_value is not None else (record.get("timestamp") or record.get("time"))),
        "message": _message_or_dump(record, "message", "log"),
        "level": normalize_level(record.get("level")),
        "source": str(record.get("source") or record.get("host") or "fluent"),
        "tag": record.get("tag") or tag,
        "original": record,
    }


def parse_fluent(data: Union[bytes, str, Any], tag: Optional[str] = None) -> ParseResult:
    """[[time, record], ...], a single record, or a list of records"""
    payload = data if isinstance(data, (dict, list)) else _loads(_decode_text(data))

    if isinstance(payload, dict):
        return _fluent_entry(payload, tag=tag)
    if not isinstance(payload, list) or not payload:
        raise ParseError("Fluent payload must be an object or a non-empty array")

    entries = []
    for item in payload:
        if isinstance(item, list) and len(item) == 2:
            entries.append(_fluent_entry(item[1], time_value=item[0], tag=tag))
        else:
            entries.append(_fluent_entry(item, tag=tag))
    return entries[0] if len(entries) == 1 else entries


def parse_json(data: Union[bytes, str, Dict[str, Any]]) -> Entry:
    record = data if isinstance(data, dict) else _loads(_decode_text(data))
    if not isinstance(record, dict):
        raise ParseError("JSON log must be an object")

    timestamp = record.get("timestamp") or record.get("time") or record.get("@timestamp")
    level = record.get("level") if record.get("level") is not None else record.get("severity")
    return {
        "timestamp": to_timestamp(timestamp),
        "message": _message_or_dump(record, "message", "msg"),
        "level": normalize_level(level),
        "source": str(record.get("source") or record.get("hostname") or record.get("host") or "json"),
        "original": record,
    }


def parse_raw(data: Union[bytes, str]) -> Entry:
    text = _decode_text(data).strip()
    if not text:
        raise ParseError("Empty message")
    return {
        "timestamp": now_iso(),
        "message": text,
        "level": "info",
        "source": "raw",
    }


# ==================== DISPATCH ====================

def detect_format(text: Union[bytes, str]) -> str:
    text = _decode_text(text).lstrip()
    if text.startswith("<"):
        return "syslog"
    if text.startswith("{") or text.startswith("["):
        try:
            record = json.loads(text)
        except json.JSONDecodeError:
            return "raw"
        if isinstance(record, dict) and "short_message" in record:
            return "gelf"
        return "json" if isinstance(record, dict) else "fluent"
    return "raw"


PARSERS = {
    "syslog": parse_syslog,
    "json": parse_json,
    "gelf": parse_gelf,
    "beats": parse_beats,
    "fluent": parse_fluent,
    "raw": parse_raw,
}


def parse(format: str, data: Union[bytes, str]) -> ParseResult:
    """Parse a payload in the named format ('auto' detects it)"""
    if format == "auto":
        format = detect_format(data)
    parser = PARSERS.get(format)
    if parser is None:
        raise ParseError(f"Unknown format: {format}")
    return parser(data)
