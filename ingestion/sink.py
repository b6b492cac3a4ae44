"""
Batched persistence of parsed log entries.

Entries are queued by the engine and written by a background thread in
batches (batch_size entries or flush_interval seconds, whichever first).
"""

import queue
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from store.database import get_db_session
from store.repository import LogRepository

Entry = Dict[str, Any]


def write_entries(entries: List[Entry]) -> int:
    session = get_db_session()
    try:
        return LogRepository.bulk_create(session, entries)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class LogSink:
    """Queue plus writer thread in front of LogRepository.bulk_create"""

    def __init__(self, batch_size: int = 100, flush_interval: float = 1.0,
                 writer: Optional[Callable[[List[Entry]], int]] = None):
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.writer = writer or write_entries
        self.queue: "queue.Queue[Entry]" = queue.Queue()
        self.written = 0
        self.failed = 0
        self._write_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def pending(self) -> int:
        return self.queue.qsize()

    def put(self, entries: Iterable[Entry]):
        for entry in entries:
            self.queue.put(entry)

    def start(self):
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="log-sink", daemon=True)
        self._thread.start()
        logger.info(f"[INGEST] Log sink started (batch={self.batch_size}, interval={self.flush_interval}s)")

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._thread = None
        self.flush()

    def _write(self, batch: List[Entry]) -> int:
        if not batch:
            return 0
        with self._write_lock:
            try:
                count = self.writer(batch)
                self.written += count
                return count
            except Exception as e:
                self.failed += len(batch)
                logger.error(f"[INGEST] Failed to persist {len(batch)} entries: {type(e).__name__}: {e}")
                return 0

    def _run(self):
        while not self._stop.is_set():
            batch: List[Entry] = []
            deadline = time.monotonic() + self.flush_interval
            while len(batch) < self.batch_size:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    batch.append(self.queue.get(timeout=remaining))
                except queue.Empty:
                    break
            self._write(batch)

    def flush(self) -> int:
        """Write everything queued right now; returns the number written"""
        total = 0
        while True:
            batch: List[Entry] = []
            while len(batch) < self.batch_size:
                try:
                    batch.append(self.queue.get_nowait())
                except queue.Empty:
                    break
            if not batch:
                return total
            total += self._write(batch)
