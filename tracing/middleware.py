"""
Traces each HTTP request as a span and propagates X-Trace-Id.
"""

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from tracing.context import reset_context, set_context
from tracing.engine import TracingEngine, tracing_engine as default_engine

logger = logging.getLogger(__name__)


class TracingMiddleware(BaseHTTPMiddleware):
    """
    One span per request. An incoming X-Trace-Id (and X-Parent-Span-Id)
    joins an existing trace; otherwise a new trace starts.
    """

    def __init__(self, app, engine: TracingEngine = None):
        super().__init__(app)
        self.engine = engine or default_engine

    async def dispatch(self, request: Request, call_next):
        if not self.engine.enabled:
            return await call_next(request)

        operation = f"{request.method} {request.url.path}"
        tags = {
            "http.method": request.method,
            "http.path": request.url.path,
            "client.ip": request.client.host if request.client else None,
        }
        trace_id = request.headers.get("x-trace-id")
        if trace_id:
            span = self.engine.start_span(
                trace_id, operation, parent_span_id=request.headers.get("x-parent-span-id"), tags=tags
            )
        else:
            span = self.engine.start_trace(operation, tags=tags)

        tokens = set_context(span.trace_id, span.span_id)
        try:
            response = await call_next(request)
        except Exception as e:
            self.engine.log_event(span.span_id, str(e), level="error", error=type(e).__name__)
            self.engine.finish_span(span.span_id, status="error", tags={"error": type(e).__name__})
            logger.error(f"Request {operation} failed in trace {span.trace_id}: {e}")
            raise
        finally:
            reset_context(tokens)

        self.engine.finish_span(
            span.span_id,
            status="error" if response.status_code >= 500 else "ok",
            tags={"http.status_code": response.status_code},
        )
        response.headers["X-Trace-Id"] = span.trace_id
        response.headers["X-Span-Id"] = span.span_id
        return response
