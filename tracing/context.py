"""
Request-scoped trace context (contextvars), shared by the tracing
middleware and log record patching.
"""

import contextvars
import secrets
import uuid
from typing import Dict, Optional

TRACE_ID = contextvars.ContextVar("trace_id", default=None)
SPAN_ID = contextvars.ContextVar("span_id", default=None)


def new_trace_id() -> str:
    return uuid.uuid4().hex


def new_span_id() -> str:
    return secrets.token_hex(8)


def set_context(trace_id: str, span_id: str) -> Dict[str, contextvars.Token]:
    return {
        "trace_id": TRACE_ID.set(trace_id),
        "span_id": SPAN_ID.set(span_id),
    }


def reset_context(tokens: Dict[str, contextvars.Token]) -> None:
    TRACE_ID.reset(tokens["trace_id"])
    SPAN_ID.reset(tokens["span_id"])


def get_context() -> Dict[str, str]:
    out: Dict[str, str] = {}
    trace_id: Optional[str] = TRACE_ID.get()
    span_id: Optional[str] = SPAN_ID.get()
    if trace_id:
        out["trace_id"] = trace_id
    if span_id:
        out["span_id"] = span_id
    return out
