"""
Multi-protocol ingestion engine.

Owns the listeners, applies the per-listener rate limit, parses payloads,
keeps statistics and hands parsed entries to the log sink.
"""

import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from loguru import logger

from apps.config import platform_config
from ingestion.listeners import Listener, build_listener, is_port_in_use
from ingestion.parsers import (
    GelfChunkAssembler, ParseError, now_iso, parse, parse_beats, parse_fluent, parse_gelf, parse_syslog,
)
from ingestion.sink import LogSink

DISPLAY_NAMES = {
    "syslog_udp": "Syslog UDP",
    "syslog_tcp": "Syslog TCP",
    "gelf_udp": "GELF UDP",
    "gelf_tcp": "GELF TCP",
    "beats_tcp": "Beats TCP",
    "fluent_http": "Fluent HTTP",
}

RATE_WINDOW_SECONDS = 60


def _new_listener_stats() -> Dict[str, Any]:
    return {
        "received": 0,
        "processed": 0,
        "errors": 0,
        "dropped": 0,
        "bytes": 0,
        "last_message": None,
        "last_error": None,
    }


class IngestionEngine:
    """
    Listener lifecycle and message handling.

    Modes: "stopped" (never started), "running", "disabled" (ingestion
    switched off or no listener could start).
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, sink: Optional[LogSink] = None):
        self.config = config or platform_config.ingestion
        self.rate_limit = int(self.config.get("rate_limit", 1000))
        self.max_message_size = int(self.config.get("max_message_size", 1048576))
        self.sink = sink or LogSink(
            batch_size=int(self.config.get("batch_size", 100)),
            flush_interval=float(self.config.get("flush_interval", 1.0)),
        )
        self.gelf_chunks = GelfChunkAssembler()
        self.lock = threading.Lock()

        self.listeners: Dict[str, Listener] = {}
        self.listener_specs: Dict[str, Dict[str, Any]] = dict(self.config.get("listeners", {}))
        self.listener_stats: Dict[str, Dict[str, Any]] = {name: _new_listener_stats() for name in self.listener_specs}
        self._rate_windows: Dict[str, List[int]] = {}  # name -> [epoch second, count]
        self._recent: Dict[str, Deque[float]] = {}

        self.mode = "stopped"
        self.started_at: Optional[float] = None
        self.stats = {
            "totalMessages": 0,
            "messagesByProtocol": {},
            "errors": 0,
            "bytesReceived": 0,
            "droppedMessages": 0,
        }

    # ==================== LIFECYCLE ====================

    def initialize(self) -> str:
        """Start every enabled listener; returns the resulting mode"""
        if not self.config.get("enabled", True):
            self.mode = "disabled"
            logger.info("[INGEST] Ingestion disabled by configuration")
            return self.mode

        self.started_at = time.time()
        self.sink.start()
        host = self.config.get("host", "0.0.0.0")

        for name, spec in self.listener_specs.items():
            if not spec.get("enabled", True):
                continue
            try:
                listener = build_listener(name, spec, host, self.handle_message, self.max_message_size)
            except ValueError as e:
                logger.error(f"[INGEST] {e}")
                continue
            self.listeners[name] = listener
            try:
                listener.start()
            except OSError as e:
                listener.status = "error"
                listener.error = str(e)
                logger.error(f"[INGEST] {name} failed to bind port {listener.configured_port}: {e}")

        running = [l for l in self.listeners.values() if l.is_running]
        self.mode = "running" if running else "disabled"
        logger.info(f"[INGEST] Engine {self.mode}: {len(running)}/{len(self.listeners)} listeners up")
        return self.mode

    def shutdown(self):
        for listener in self.listeners.values():
            try:
                listener.stop()
            except Exception as e:
                logger.error(f"[INGEST] Error stopping {listener.name}: {e}")
        self.sink.stop()
        if self.mode == "running":
            self.mode = "stopped"
        logger.info("[INGEST] Engine shut down")

    # ==================== MESSAGE HANDLING ====================

    def _stats_for(self, name: str) -> Dict[str, Any]:
        stats = self.listener_stats.get(name)
        if stats is None:
            stats = self.listener_stats[name] = _new_listener_stats()
        return stats

    def _allow(self, name: str, now: float) -> bool:
        second = int(now)
        window = self._rate_windows.get(name)
        if window is None or window[0] != second:
            window = self._rate_windows[name] = [second, 0]
        if window[1] >= self.rate_limit:
            return False
        window[1] += 1
        return True

    def _record_error(self, name: str, stats: Dict[str, Any], error: str):
        with self.lock:
            stats["errors"] += 1
            stats["last_error"] = error
            self.stats["errors"] += 1

    def _parse(self, protocol: str, data: bytes, tag: Optional[str]):
        if protocol == "syslog":
            return parse_syslog(data)
        if protocol == "gelf":
            return parse_gelf(data)
        if protocol == "beats":
            return parse_beats(data)
        if protocol == "fluent":
            return parse_fluent(data, tag=tag)
        return parse(protocol, data)

    def handle_message(self, protocol: str, transport: str, data: bytes, source_ip: str,
                       tag: Optional[str] = None, listener: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Rate-limit, parse and queue one payload.

        Stats and the rate window are kept per listener name, which defaults
        to ``<protocol>_<transport>`` for direct calls.
        Returns the parsed entries (empty when dropped, incomplete or invalid).
        """
        name = listener or f"{protocol}_{transport}"
        if isinstance(data, str):
            data = data.encode("utf-8")
        now = time.time()
        size = len(data)

        with self.lock:
            stats = self._stats_for(name)
            stats["received"] += 1
            stats["bytes"] += size
            stats["last_message"] = now
            self.stats["totalMessages"] += 1
            self.stats["bytesReceived"] += size
            by_protocol = self.stats["messagesByProtocol"]
            by_protocol[protocol] = by_protocol.get(protocol, 0) + 1
            recent = self._recent.setdefault(name, deque())
            recent.append(now)
            while now - recent[0] > RATE_WINDOW_SECONDS:
                recent.popleft()

            if not self._allow(name, now):
                stats["dropped"] += 1
                self.stats["droppedMessages"] += 1
                return []

        if size > self.max_message_size:
            self._record_error(name, stats, f"Message too large ({size} bytes)")
            return []

        try:
            if protocol == "gelf" and transport == "udp" and GelfChunkAssembler.is_chunk(data):
                data = self.gelf_chunks.add(data)
                if data is None:
                    return []
            result = self._parse(protocol, data, tag)
        except ParseError as e:
            self._record_error(name, stats, str(e))
            logger.warning(f"[INGEST] {name} parse error from {source_ip}: {e}")
            return []

        entries = result if isinstance(result, list) else [result]
        received_at = now_iso()
        for entry in entries:
            entry["protocol"] = protocol
            entry["transport"] = transport
            entry["source_ip"] = source_ip
            entry["received_at"] = received_at

        with self.lock:
            stats["processed"] += 1

        self.sink.put(entries)
        return entries

    # ==================== STATUS ====================

    def _current_rate(self, name: str, now: float) -> float:
        recent = self._recent.get(name)
        if not recent:
            return 0.0
        while recent and now - recent[0] > RATE_WINDOW_SECONDS:
            recent.popleft()
        return round(len(recent) / RATE_WINDOW_SECONDS, 2)

    def listener_status(self, name: str) -> str:
        listener = self.listeners.get(name)
        if listener is not None:
            return listener.status
        spec = self.listener_specs.get(name, {})
        if self.mode == "disabled" or not spec.get("enabled", True):
            return "disabled"
        return "stopped"

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            stats = dict(self.stats)
            stats["messagesByProtocol"] = dict(self.stats["messagesByProtocol"])
        stats["connectionsActive"] = sum(l.active_connections for l in self.listeners.values())
        stats["uptime"] = round(time.time() - self.started_at, 1) if self.started_at else 0
        stats["mode"] = self.mode
        stats["sink"] = {"written": self.sink.written, "failed": self.sink.failed, "pending": self.sink.pending}
        return stats

    def health(self) -> str:
        enabled = [n for n, s in self.listener_specs.items() if s.get("enabled", True)]
        running = [n for n in enabled if self.listener_status(n) == "running"]
        if enabled and len(running) == len(enabled):
            return "healthy"
        if running:
            return "degraded"
        return "down"

    def status(self) -> Dict[str, Any]:
        now = time.time()
        engines = []
        with self.lock:
            for name, spec in self.listener_specs.items():
                stats = self._stats_for(name)
                listener = self.listeners.get(name)
                engines.append({
                    "name": DISPLAY_NAMES.get(name, name),
                    "key": name,
                    "protocol": spec.get("protocol"),
                    "transport": spec.get("transport"),
                    "port": listener.port if listener else spec.get("port"),
                    "status": self.listener_status(name),
                    "messages_received": stats["received"],
                    "messages_processed": stats["processed"],
                    "errors": stats["errors"],
                    "dropped": stats["dropped"],
                    "bytes": stats["bytes"],
                    "last_message": (
                        datetime.fromtimestamp(stats["last_message"], timezone.utc).isoformat().replace("+00:00", "Z")
                        if stats["last_message"] else None
                    ),
                    "rate_limit": self.rate_limit,
                    "current_rate": self._current_rate(name, now),
                    "error": listener.error if listener else None,
                })

        return {
            "mode": self.mode,
            "engines": engines,
            "summary": {
                "total_engines": len(engines),
                "active_engines": sum(1 for e in engines if e["status"] == "running"),
                "total_messages": self.stats["totalMessages"],
                "total_errors": self.stats["errors"],
                "bytes_received": self.stats["bytesReceived"],
                "dropped_messages": self.stats["droppedMessages"],
            },
            "health": self.health(),
        }

    def ports_status(self) -> List[Dict[str, Any]]:
        host = self.config.get("host", "0.0.0.0")
        ports = []
        for name, spec in self.listener_specs.items():
            listener = self.listeners.get(name)
            bound = bool(listener and listener.is_running)
            transport = "udp" if spec.get("transport") == "udp" else "tcp"
            port = listener.port if listener else int(spec.get("port", 0))
            ports.append({
                "key": name,
                "name": DISPLAY_NAMES.get(name, name),
                "port": port,
                "transport": transport,
                "enabled": bool(spec.get("enabled", True)),
                "bound": bound,
                "available": None if bound else not is_port_in_use(host, port, transport),
            })
        return ports


# Global instance
ingestion_engine = IngestionEngine()
