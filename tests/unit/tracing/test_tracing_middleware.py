import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tracing.context import get_context
from tracing.engine import TracingEngine
from tracing.middleware import TracingMiddleware


@pytest.fixture
def traced():
    engine = TracingEngine(service_name="test-api")
    app = FastAPI()
    app.add_middleware(TracingMiddleware, engine=engine)

    @app.get("/ping")
    async def ping():
        return get_context()

    @app.get("/boom")
    async def boom():
        from fastapi import HTTPException
        raise HTTPException(status_code=503, detail="down")

    @app.get("/crash")
    async def crash():
        raise RuntimeError("disk on fire")

    return engine, TestClient(app)


def test_new_trace_per_request(traced):
    engine, client = traced
    response = client.get("/ping")
    trace_id = response.headers["X-Trace-Id"]
    assert response.json()["trace_id"] == trace_id

    trace = engine.get_trace(trace_id)
    (span,) = trace["spans"]
    assert span["operation_name"] == "GET /ping"
    assert span["service_name"] == "test-api"
    assert span["tags"]["http.status_code"] == 200
    assert span["status"] == "ok"


def test_incoming_trace_header_is_joined(traced):
    engine, client = traced
    response = client.get("/ping", headers={"X-Trace-Id": "abc123", "X-Parent-Span-Id": "parent1"})
    assert response.headers["X-Trace-Id"] == "abc123"
    (span,) = engine.get_trace("abc123")["spans"]
    assert span["parent_span_id"] == "parent1"


def test_server_errors_mark_span(traced):
    engine, client = traced
    response = client.get("/boom")
    assert response.status_code == 503
    (span,) = engine.get_trace(response.headers["X-Trace-Id"])["spans"]
    assert span["status"] == "error"


def test_unhandled_exception_is_logged_on_span(traced):
    engine, client = traced
    with pytest.raises(RuntimeError):
        client.get("/crash", headers={"X-Trace-Id": "crash1"})

    (span,) = engine.get_trace("crash1")["spans"]
    assert span["status"] == "error"
    assert span["tags"]["error"] == "RuntimeError"
    (event,) = span["logs"]
    assert event["message"] == "disk on fire"
    assert event["level"] == "error"


def test_disabled_engine_passes_through():
    engine = TracingEngine(enabled=False)
    app = FastAPI()
    app.add_middleware(TracingMiddleware, engine=engine)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    response = TestClient(app).get("/ping")
    assert response.status_code == 200
    assert "X-Trace-Id" not in response.headers
    assert engine.get_stats()["totalSpans"] == 0
