"""
Hand-off between the watcher and the upload workers.

The dispatcher is a bounded FIFO: the watcher blocks when it is full,
workers block when it is empty.  Each worker runs one upload at a time.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from typing import Any

from drop_sync.tasks import FileTask

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 50

_POLL_SECONDS = 0.5


class Dispatcher:
    """Bounded FIFO of FileTasks that can be closed to release waiters."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: queue.Queue[FileTask] = queue.Queue(maxsize=max(1, maxsize))
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def qsize(self) -> int:
        return self._queue.qsize()

    def enqueue(self, task: FileTask) -> bool:
        """Block until *task* is queued; return False if the dispatcher closed first."""
        while not self._closed.is_set():
            try:
                self._queue.put(task, timeout=_POLL_SECONDS)
            except queue.Full:
                continue
            return True
        return False

    def dequeue(self) -> FileTask | None:
        """Block until a task is available; return None once closed."""
        while not self._closed.is_set():
            try:
                return self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
        return None

    def close(self) -> None:
        """Stop handing out tasks; anything still queued is dropped."""
        self._closed.set()


class WorkerPool:
    """
    Fixed set of worker threads draining a Dispatcher.

    Usage:
        pool = WorkerPool(dispatcher, engine.upload, workers=4)
        pool.start()
        ...
        dispatcher.close()
        pool.stop()
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        handler: Callable[[FileTask], Any],
        workers: int = 1,
    ):
        self._dispatcher = dispatcher
        self._handler = handler
        self._size = max(1, workers)
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Start the worker threads."""
        for index in range(self._size):
            thread = threading.Thread(
                target=self._run,
                args=(index,),
                daemon=True,
                name=f"UploadWorker-{index}",
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Started %d upload worker(s).", self._size)

    def stop(self, timeout: float | None = None) -> None:
        """Close the dispatcher and wait for in-progress uploads to finish."""
        self._dispatcher.close()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = [t for t in self._threads if t.is_alive()]
        if self._threads:
            logger.warning("%d worker(s) still busy at shutdown.", len(self._threads))

    @property
    def alive_count(self) -> int:
        return sum(1 for t in self._threads if t.is_alive())

    def _run(self, index: int) -> None:
        logger.info("Worker %d start.", index)
        while True:
            task = self._dispatcher.dequeue()
            if task is None:
                break
            try:
                self._handler(task)
            except Exception:
                logger.exception("Worker %d: error handling %s", index, task.path)
        logger.info("Worker %d stopped.", index)
