import pytest

from tracing.engine import TracingEngine


@pytest.fixture
def engine():
    return TracingEngine(service_name="api", max_traces=50, max_spans=200)


def test_trace_with_child_span(engine):
    root = engine.start_trace("GET /orders")
    child = engine.start_span(root.trace_id, "SELECT orders", service="db", parent_span_id=root.span_id)
    engine.finish_span(child.span_id)
    engine.finish_span(root.span_id)

    trace = engine.get_trace(root.trace_id)
    assert trace["spanCount"] == 2
    assert trace["services"] == ["api", "db"]
    assert trace["errorCount"] == 0
    assert trace["totalDuration"] == trace["spans"][0]["duration"]

    (edge,) = engine.get_dependencies()
    assert (edge["parent"], edge["child"], edge["callCount"]) == ("api", "db", 1)
    assert edge["errorRate"] == 0.0


def test_finish_span_twice_is_ignored(engine):
    span = engine.start_trace("op")
    assert engine.finish_span(span.span_id, status="error") is not None
    assert engine.finish_span(span.span_id) is None
    stats = engine.get_stats()
    assert stats["errorsCount"] == 1
    assert stats["activeSpans"] == 0


def test_unknown_trace(engine):
    assert engine.get_trace("missing") is None


def test_search_filters(engine):
    ok = engine.start_trace("GET /health")
    engine.finish_span(ok.span_id)
    failed = engine.start_trace("POST /orders", service="orders")
    engine.finish_span(failed.span_id, status="error")

    assert [t["traceId"] for t in engine.search(status="error")] == [failed.trace_id]
    assert [t["traceId"] for t in engine.search(service="api")] == [ok.trace_id]
    assert [t["traceId"] for t in engine.search(operation="health")] == [ok.trace_id]
    assert engine.search(min_duration=10_000) == []
    assert [t["traceId"] for t in engine.search()] == [failed.trace_id, ok.trace_id]
    assert len(engine.search(limit=1)) == 1


def test_add_external_span(engine):
    span = engine.add_span({
        "trace_id": "t1",
        "span_id": "s1",
        "operation_name": "charge",
        "service_name": "billing",
        "start_time": "2024-01-01T00:00:00Z",
        "end_time": "2024-01-01T00:00:01.500Z",
        "status": "error",
    })
    assert span.duration == 1500.0
    assert engine.get_trace("t1")["errorCount"] == 1
    assert "billing" in engine.get_stats()["services"]


def test_add_span_duration_only(engine):
    span = engine.add_span({"trace_id": "t2", "span_id": "s2", "start_time": 1700000000, "duration": 25})
    assert span.end_time == span.start_time + 25


def test_add_span_requires_ids(engine):
    with pytest.raises(ValueError):
        engine.add_span({"trace_id": "t"})


def test_retention_drops_oldest_traces():
    engine = TracingEngine(max_traces=3, max_spans=100)
    traces = [engine.start_trace(f"op{i}").trace_id for i in range(5)]
    assert engine.get_trace(traces[0]) is None
    assert engine.get_trace(traces[1]) is None
    assert all(engine.get_trace(t) for t in traces[2:])
    assert engine.get_stats()["storedTraces"] == 3
    assert engine.get_stats()["totalTraces"] == 5


def test_span_retention_bound():
    engine = TracingEngine(max_traces=100, max_spans=4)
    first = engine.start_trace("a")
    for _ in range(2):
        engine.start_span(first.trace_id, "child", parent_span_id=first.span_id)
    second = engine.start_trace("b")
    engine.start_span(second.trace_id, "child", parent_span_id=second.span_id)
    assert engine.get_trace(first.trace_id) is None
    assert engine.get_stats()["storedSpans"] <= 4


def test_epoch_zero_is_a_real_start_time(engine):
    span = engine.add_span({"trace_id": "t0", "span_id": "s0", "start_time": 0, "duration": 5})
    assert span.start_time == 0.0
    assert engine.get_trace("t0")["spans"][0]["timestamp"] == "1970-01-01T00:00:00Z"


@pytest.mark.parametrize("bad", [
    {"duration": "abc"},
    {"duration": -1},
    {"tags": ["a", "b"]},
    {"logs": {"message": "x"}},
    {"start_time": 1e20},
    {"end_time": -5},
    {"start_time": "yesterday"},
    {"start_time": 1700000000000, "end_time": 1600000000000},
])
def test_build_span_rejects_bad_values(engine, bad):
    with pytest.raises(ValueError):
        engine.add_span({"trace_id": "t", "span_id": "s", **bad})
    assert engine.get_stats()["storedSpans"] == 0


def test_add_spans_is_all_or_nothing(engine):
    with pytest.raises(ValueError, match="Span 1"):
        engine.add_spans([
            {"trace_id": "t", "span_id": "ok", "duration": 10},
            {"trace_id": "t", "span_id": "bad", "duration": "abc"},
        ])
    assert engine.get_trace("t") is None

    stored = engine.add_spans([{"trace_id": "t", "span_id": "a"}, {"trace_id": "t", "span_id": "b"}])
    assert [s.span_id for s in stored] == ["a", "b"]
    assert engine.get_trace("t")["spanCount"] == 2
