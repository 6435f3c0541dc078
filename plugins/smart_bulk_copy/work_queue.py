"""
Work Queue

Thread-safe multi-producer/multi-consumer queue of CopyTasks. Every task
put on the queue is handed to exactly one try_get() caller.

Producers close() the queue once population is complete. An empty queue
is only treated as finished after close(), so a consumer that starts
early cannot mistake a not-yet-populated queue for drained work.
"""

from typing import Iterable, Optional
import queue
import threading
import time

from smart_bulk_copy.copy_task import CopyTask

_POLL_INTERVAL_SECONDS = 0.05


class WorkQueue:
    """Concurrent queue of CopyTasks with an explicit no-more-producers latch."""

    def __init__(self, tasks: Optional[Iterable[CopyTask]] = None):
        self._queue: queue.Queue = queue.Queue()
        self._closed = threading.Event()
        self._lock = threading.Lock()
        if tasks is not None:
            self.extend(tasks)

    def put(self, task: CopyTask) -> None:
        """
        Enqueue one task.

        Raises:
            RuntimeError: If the queue has been closed
        """
        with self._lock:
            if self._closed.is_set():
                raise RuntimeError("Cannot enqueue work on a closed queue")
            self._queue.put(task)

    def extend(self, tasks: Iterable[CopyTask]) -> None:
        for task in tasks:
            self.put(task)

    def close(self) -> None:
        """Signal that no more tasks will be enqueued."""
        with self._lock:
            self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def try_get(self) -> Optional[CopyTask]:
        """Take one task without blocking, or None if the queue is currently empty."""
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def get(self, timeout: Optional[float] = None) -> Optional[CopyTask]:
        """
        Take one task, waiting while producers may still add work.

        Args:
            timeout: Seconds to wait for work before giving up (None waits
                until a task arrives or the queue is closed and empty)

        Returns:
            A task, or None once the queue is closed and drained (or the
            timeout expired)
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._closed.is_set():
                return self.try_get()
            wait = _POLL_INTERVAL_SECONDS
            if deadline is not None:
                wait = min(wait, deadline - time.monotonic())
                if wait <= 0:
                    return self.try_get()
            try:
                return self._queue.get(timeout=wait)
            except queue.Empty:
                continue

    @property
    def drained(self) -> bool:
        """True once the queue is closed and no task is left."""
        return self._closed.is_set() and self._queue.empty()

    def qsize(self) -> int:
        return self._queue.qsize()

    def __len__(self) -> int:
        return self._queue.qsize()
