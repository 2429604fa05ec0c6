from __future__ import annotations

import contextlib
import queue
import sqlite3
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from drift_images.logger import get_logger

from ..metrics import metrics

_logger = get_logger("db_operator")


@dataclass
class _DbTask:
    fn: Callable[..., Any]
    args: tuple
    kwargs: dict
    future: Future
    retries: int = 3


class DbOperator:
    """Serialized DB operation queue / worker.

    One worker thread executes queued tasks against the database so the
    byte store never has two writers. It applies basic PRAGMAs (WAL,
    busy_timeout) and retries transient `sqlite3.OperationalError`.
    """

    def __init__(self, db_path: Path | str, busy_timeout_ms: int = 5000):
        self._db_path = Path(db_path)
        self._queue: queue.Queue[_DbTask] = queue.Queue()
        self._thread = threading.Thread(target=self._worker, name="drift-images-db", daemon=True)
        self._stop_event = threading.Event()
        self._busy_timeout_ms = int(busy_timeout_ms)
        self._thread.start()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _open_conn(self) -> sqlite3.Connection:
        # Fresh connection per task to avoid long locks/held file handles.
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error:
            _logger.debug("PRAGMA journal_mode=WAL failed", exc_info=True)
        try:
            conn.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout_ms)}")
        except sqlite3.Error:
            _logger.debug("PRAGMA busy_timeout failed", exc_info=True)
        return conn

    def schedule_write(self, fn: Callable[..., Any], *args, retries: int = 3, **kwargs) -> Future:
        fut: Future = Future()
        if self._stop_event.is_set():
            fut.set_exception(RuntimeError("db operator is shut down"))
            return fut
        self._queue.put(_DbTask(fn=fn, args=args, kwargs=kwargs, future=fut, retries=retries))
        metrics.inc("db_operator.write_queued")
        return fut

    def schedule_read(self, fn: Callable[..., Any], *args, **kwargs) -> Future:
        # Reads are serialized too to keep a single-threaded connection model.
        fut: Future = Future()
        if self._stop_event.is_set():
            fut.set_exception(RuntimeError("db operator is shut down"))
            return fut
        self._queue.put(_DbTask(fn=fn, args=args, kwargs=kwargs, future=fut, retries=1))
        metrics.inc("db_operator.read_queued")
        return fut

    def _worker(self) -> None:
        while not self._stop_event.is_set() or not self._queue.empty():
            try:
                task: _DbTask = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._run(task)
            finally:
                self._queue.task_done()

    def _run(self, task: _DbTask) -> None:
        attempt = 0
        while True:
            conn = None
            try:
                with metrics.timed("db_operator.task_duration"):
                    conn = self._open_conn()
                    res = task.fn(conn, *task.args, **task.kwargs)
                    conn.commit()
                task.future.set_result(res)
                return
            except sqlite3.OperationalError as exc:
                attempt += 1
                metrics.inc("db_operator.retries")
                if attempt > (task.retries or 0):
                    task.future.set_exception(exc)
                    return
                time.sleep(0.05 * attempt)
            except Exception as exc:
                task.future.set_exception(exc)
                return
            finally:
                if conn is not None:
                    with contextlib.suppress(sqlite3.Error):
                        conn.close()

    def shutdown(self, wait: bool = True) -> None:
        self._stop_event.set()
        if wait:
            self._thread.join(timeout=5)

    def is_alive(self) -> bool:
        return self._thread.is_alive()
