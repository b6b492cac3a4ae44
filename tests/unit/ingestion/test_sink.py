import time

from ingestion.sink import LogSink


def test_flush_writes_in_batches():
    batches = []
    sink = LogSink(batch_size=2, writer=lambda batch: batches.append(list(batch)) or len(batch))
    sink.put([{"message": str(i)} for i in range(5)])
    assert sink.pending == 5
    assert sink.flush() == 5
    assert [len(b) for b in batches] == [2, 2, 1]
    assert sink.written == 5
    assert sink.pending == 0


def test_writer_failures_are_counted():
    def broken(batch):
        raise RuntimeError("database is locked")

    sink = LogSink(batch_size=10, writer=broken)
    sink.put([{"message": "a"}, {"message": "b"}])
    assert sink.flush() == 0
    assert sink.failed == 2
    assert sink.written == 0


def test_background_thread_drains_queue():
    written = []
    sink = LogSink(batch_size=100, flush_interval=0.05, writer=lambda batch: written.extend(batch) or len(batch))
    sink.start()
    try:
        assert sink.is_running
        sink.put([{"message": "x"}])
        deadline = time.monotonic() + 3
        while not written and time.monotonic() < deadline:
            time.sleep(0.02)
        assert written == [{"message": "x"}]
    finally:
        sink.stop()
    assert not sink.is_running


def test_stop_flushes_remaining_entries():
    written = []
    sink = LogSink(batch_size=100, flush_interval=10, writer=lambda batch: written.extend(batch) or len(batch))
    sink.put([{"message": "late"}])
    sink.stop()
    assert written == [{"message": "late"}]
