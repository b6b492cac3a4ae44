"""
In-memory distributed tracing: spans, traces, service dependencies and
bounded retention.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from apps.config import platform_config
from tracing.context import new_span_id, new_trace_id

# 9999-12-31T23:59:59Z
MAX_EPOCH_MS = 253402300799000.0


def _now_ms() -> float:
    return time.time() * 1000.0


def _to_ms(value: Any) -> Optional[float]:
    """Epoch seconds, epoch milliseconds or ISO strings to epoch milliseconds"""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) * 1000.0 if value < 1e11 else float(value)
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(raw).timestamp() * 1000.0
        except ValueError:
            return None
    return None


def _in_range(ms: Optional[float]) -> bool:
    return ms is not None and 0 <= ms <= MAX_EPOCH_MS


@dataclass
class TraceSpan:
    """One unit of work within a trace."""
    trace_id: str
    span_id: str
    operation_name: str
    service_name: str
    start_time: float  # epoch milliseconds
    parent_span_id: Optional[str] = None
    end_time: Optional[float] = None
    duration: Optional[float] = None  # milliseconds
    status: str = "ok"
    tags: Dict[str, Any] = field(default_factory=dict)
    logs: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "operation_name": self.operation_name,
            "service_name": self.service_name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "status": self.status,
            "tags": self.tags,
            "logs": self.logs,
            "timestamp": datetime.fromtimestamp(self.start_time / 1000.0, timezone.utc).isoformat().replace("+00:00", "Z"),
        }


class TracingEngine:
    """Stores spans per trace and derives statistics and dependencies"""

    def __init__(self, service_name: str = "logdeck-api", max_traces: int = 1000,
                 max_spans: int = 5000, enabled: bool = True):
        self.service_name = service_name
        self.max_traces = max_traces
        self.max_spans = max_spans
        self.enabled = enabled
        self.lock = threading.RLock()
        self.clear()

    def clear(self):
        with self.lock:
            self.spans: "OrderedDict[str, TraceSpan]" = OrderedDict()
            self.traces: "OrderedDict[str, List[str]]" = OrderedDict()
            self.dependencies: Dict[Tuple[str, str], Dict[str, float]] = {}
            self.services = set()
            self.total_traces = 0
            self.total_spans = 0
            self.finished_spans = 0
            self.errors_count = 0
            self.avg_duration = 0.0

    # ==================== SPAN LIFECYCLE ====================

    def _register(self, span: TraceSpan) -> TraceSpan:
        with self.lock:
            if span.span_id in self.spans:
                self.spans[span.span_id] = span
                return span
            if span.trace_id not in self.traces:
                self.traces[span.trace_id] = []
                self.total_traces += 1
            self.traces[span.trace_id].append(span.span_id)
            self.spans[span.span_id] = span
            self.total_spans += 1
            self.services.add(span.service_name)

            if len(self.traces) > self.max_traces or len(self.spans) > self.max_spans:
                self.cleanup()
        return span

    def start_trace(self, operation: str, service: Optional[str] = None,
                    tags: Optional[Dict[str, Any]] = None) -> TraceSpan:
        """Start a new trace; returns its root span"""
        return self.start_span(new_trace_id(), operation, service=service, tags=tags)

    def start_span(self, trace_id: str, operation: str, service: Optional[str] = None,
                   parent_span_id: Optional[str] = None,
                   tags: Optional[Dict[str, Any]] = None) -> TraceSpan:
        span = TraceSpan(
            trace_id=trace_id,
            span_id=new_span_id(),
            operation_name=operation,
            service_name=service or self.service_name,
            start_time=_now_ms(),
            parent_span_id=parent_span_id,
            tags=dict(tags or {}),
        )
        logger.debug(f"[TRACE] Started span {span.span_id} ({operation}) in trace {trace_id}")
        return self._register(span)

    def _record_finished(self, span: TraceSpan):
        self.finished_spans += 1
        self.avg_duration += ((span.duration or 0.0) - self.avg_duration) / self.finished_spans
        if span.status == "error":
            self.errors_count += 1

        parent = self.spans.get(span.parent_span_id) if span.parent_span_id else None
        if parent is not None and parent.service_name != span.service_name:
            edge = self.dependencies.setdefault(
                (parent.service_name, span.service_name),
                {"callCount": 0, "totalDuration": 0.0, "errorCount": 0},
            )
            edge["callCount"] += 1
            edge["totalDuration"] += span.duration or 0.0
            if span.status == "error":
                edge["errorCount"] += 1

    def finish_span(self, span_id: str, status: str = "ok",
                    tags: Optional[Dict[str, Any]] = None) -> Optional[TraceSpan]:
        with self.lock:
            span = self.spans.get(span_id)
            if span is None or span.finished:
                return None
            span.end_time = _now_ms()
            span.duration = round(span.end_time - span.start_time, 3)
            span.status = "error" if status == "error" else "ok"
            if tags:
                span.tags.update(tags)
            self._record_finished(span)
        logger.debug(f"[TRACE] Finished span {span_id}: {span.duration}ms ({span.status})")
        return span

    def log_event(self, span_id: str, message: str, **fields) -> bool:
        with self.lock:
            span = self.spans.get(span_id)
            if span is None:
                return False
            span.logs.append({"timestamp": _now_ms(), "message": message, **fields})
            return True

    @staticmethod
    def build_span(data: Dict[str, Any]) -> TraceSpan:
        """Turn an externally produced span dict into a TraceSpan; raises ValueError on bad input"""
        if not data.get("trace_id") or not data.get("span_id"):
            raise ValueError("trace_id and span_id are required")

        start = _to_ms(data.get("start_time"))
        if data.get("start_time") not in (None, "") and not _in_range(start):
            raise ValueError("start_time is not a valid timestamp")
        if start is None:
            start = _now_ms()

        end = _to_ms(data.get("end_time"))
        if data.get("end_time") not in (None, "") and not _in_range(end):
            raise ValueError("end_time is not a valid timestamp")

        duration = data.get("duration")
        if duration is not None:
            try:
                duration = float(duration)
            except (TypeError, ValueError):
                raise ValueError("duration must be a number")
            if not 0 <= duration <= MAX_EPOCH_MS:
                raise ValueError("duration is out of range")
        if end is None and duration is not None:
            end = start + duration
            if not _in_range(end):
                raise ValueError("start_time + duration is out of range")
        if end is not None and duration is None:
            duration = end - start
        if end is not None and end < start:
            raise ValueError("end_time is before start_time")

        tags = data.get("tags") or {}
        logs = data.get("logs") or []
        if not isinstance(tags, dict):
            raise ValueError("tags must be an object")
        if not isinstance(logs, list):
            raise ValueError("logs must be a list")

        return TraceSpan(
            trace_id=str(data["trace_id"]),
            span_id=str(data["span_id"]),
            operation_name=data.get("operation_name") or data.get("operation") or "unknown",
            service_name=data.get("service_name") or data.get("service") or "unknown",
            start_time=start,
            parent_span_id=data.get("parent_span_id"),
            end_time=end,
            duration=round(duration, 3) if duration is not None else None,
            status="error" if data.get("status") == "error" else "ok",
            tags=dict(tags),
            logs=list(logs),
        )

    def _record_external(self, span: TraceSpan):
        self._register(span)
        if span.finished and span.span_id in self.spans:
            self._record_finished(span)

    def add_span(self, data: Dict[str, Any]) -> TraceSpan:
        """Ingest one externally produced span; raises ValueError on bad input"""
        span = self.build_span(data)
        with self.lock:
            self._record_external(span)
        return span

    def add_spans(self, batch: Iterable[Dict[str, Any]]) -> List[TraceSpan]:
        """
        Ingest a batch of spans atomically.

        Every span is built before any is stored, so a bad span rejects the
        whole batch with ``ValueError("Span <index>: ...")``.
        """
        spans = []
        for index, data in enumerate(batch):
            try:
                spans.append(self.build_span(data))
            except ValueError as e:
                raise ValueError(f"Span {index}: {e}")
        with self.lock:
            for span in spans:
                self._record_external(span)
        return spans

    # ==================== QUERIES ====================

    def _trace_spans(self, trace_id: str) -> List[TraceSpan]:
        return sorted(
            (self.spans[sid] for sid in self.traces.get(trace_id, []) if sid in self.spans),
            key=lambda s: s.start_time,
        )

    @staticmethod
    def _total_duration(spans: List[TraceSpan]) -> float:
        root = next((s for s in spans if not s.parent_span_id and s.finished), None)
        if root is not None:
            return root.duration or 0.0
        ends = [s.end_time for s in spans if s.end_time is not None]
        if not ends:
            return 0.0
        return round(max(ends) - min(s.start_time for s in spans), 3)

    def get_trace(self, trace_id: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            spans = self._trace_spans(trace_id)
            if not spans:
                return None
            return {
                "traceId": trace_id,
                "spans": [s.to_dict() for s in spans],
                "spanCount": len(spans),
                "totalDuration": self._total_duration(spans),
                "errorCount": sum(1 for s in spans if s.status == "error"),
                "services": sorted({s.service_name for s in spans}),
            }

    def _summary(self, trace_id: str, spans: List[TraceSpan]) -> Dict[str, Any]:
        root = next((s for s in spans if not s.parent_span_id), spans[0])
        errors = sum(1 for s in spans if s.status == "error")
        return {
            "traceId": trace_id,
            "rootOperation": root.operation_name,
            "rootService": root.service_name,
            "startTime": spans[0].start_time,
            "duration": self._total_duration(spans),
            "spanCount": len(spans),
            "errorCount": errors,
            "status": "error" if errors else "ok",
            "services": sorted({s.service_name for s in spans}),
        }

    def search(self, service: Optional[str] = None, operation: Optional[str] = None,
               min_duration: Optional[float] = None, max_duration: Optional[float] = None,
               status: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Trace summaries matching every given filter, newest first"""
        results = []
        with self.lock:
            for trace_id in reversed(self.traces):
                spans = self._trace_spans(trace_id)
                if not spans:
                    continue
                if service and not any(s.service_name == service for s in spans):
                    continue
                if operation and not any(operation.lower() in s.operation_name.lower() for s in spans):
                    continue
                summary = self._summary(trace_id, spans)
                if min_duration is not None and summary["duration"] < min_duration:
                    continue
                if max_duration is not None and summary["duration"] > max_duration:
                    continue
                if status and summary["status"] != status:
                    continue
                results.append(summary)
                if len(results) >= limit:
                    break
        return results

    def get_dependencies(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [
                {
                    "parent": parent,
                    "child": child,
                    "callCount": int(edge["callCount"]),
                    "avgDuration": round(edge["totalDuration"] / edge["callCount"], 3) if edge["callCount"] else 0.0,
                    "errorRate": round(edge["errorCount"] / edge["callCount"] * 100, 2) if edge["callCount"] else 0.0,
                }
                for (parent, child), edge in sorted(self.dependencies.items())
            ]

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "totalTraces": self.total_traces,
                "totalSpans": self.total_spans,
                "avgDuration": round(self.avg_duration, 3),
                "errorsCount": self.errors_count,
                "services": sorted(self.services),
                "activeSpans": sum(1 for s in self.spans.values() if not s.finished),
                "storedTraces": len(self.traces),
                "storedSpans": len(self.spans),
            }

    # ==================== RETENTION ====================

    def cleanup(self) -> Dict[str, int]:
        """Drop the oldest traces until both retention bounds hold"""
        removed_traces = removed_spans = 0
        with self.lock:
            while self.traces and (len(self.traces) > self.max_traces or len(self.spans) > self.max_spans):
                _, span_ids = self.traces.popitem(last=False)
                removed_traces += 1
                for span_id in span_ids:
                    if self.spans.pop(span_id, None) is not None:
                        removed_spans += 1
        if removed_traces:
            logger.debug(f"[TRACE] Cleanup removed {removed_traces} traces / {removed_spans} spans")
        return {"traces": removed_traces, "spans": removed_spans}


def _from_config() -> TracingEngine:
    config = platform_config.tracing
    return TracingEngine(
        service_name=config.get("service_name", "logdeck-api"),
        max_traces=int(config.get("max_traces", 1000)),
        max_spans=int(config.get("max_spans", 5000)),
        enabled=bool(config.get("enabled", True)),
    )


# Global instance
tracing_engine = _from_config()
