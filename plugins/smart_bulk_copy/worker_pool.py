"""
Worker Pool

Parallel copy workers draining a WorkQueue. Each worker takes one task at
a time, streams the partition's rows from the source into the destination
on connections of its own, and records a TaskResult.

A failed task is logged and recorded, never retried; the worker moves on
to the next task. Cancellation is observed between tasks only, so a task
that has started always runs to completion or failure.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging
import threading
import time

from smart_bulk_copy.bulk_sink import BulkSinkConfig
from smart_bulk_copy.copy_task import CopyTask
from smart_bulk_copy.errors import CopyError, error_chain
from smart_bulk_copy.work_queue import WorkQueue

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 7
APPLICATION_NAME_PREFIX = 'smart_bulk_copy'


@dataclass
class TaskResult:
    """Outcome of one CopyTask."""

    table_name: str
    partition_number: int
    success: bool
    rows_copied: int = 0
    elapsed_seconds: float = 0.0
    error: Optional[str] = None
    error_chain: List[str] = field(default_factory=list)
    worker_id: Optional[int] = None
    cancelled: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.table_name, self.partition_number)


def application_name(worker_id: int) -> str:
    return f"{APPLICATION_NAME_PREFIX}_{worker_id}"


def copy_task(
    task: CopyTask,
    source,
    destination,
    sink_config: BulkSinkConfig,
    worker_id: int = 0,
) -> TaskResult:
    """
    Copy one partition from source to destination.

    Opens a row source for the task's SELECT and a bulk sink on the
    destination table, streams rows until the source is exhausted and
    releases both connections. Any failure is captured in the result.

    Args:
        task: Partition to copy
        source: Source backend (open_row_source)
        destination: Destination backend (open_bulk_sink)
        sink_config: Destination bulk write settings
        worker_id: Worker number, used for the connections' application name

    Returns:
        TaskResult, successful or not
    """
    app_name = application_name(worker_id)
    start_time = time.monotonic()
    logger.info(f"[worker {worker_id}] Copying {task.describe()}")
    logger.debug(f"[worker {worker_id}] {task.select_sql()}")

    rows_copied = 0
    try:
        with source.open_row_source(task, application_name=app_name) as reader:
            with destination.open_bulk_sink(task.table_name, sink_config, application_name=app_name) as sink:
                rows_copied = sink.write_rows(reader.columns, reader.iter_rows())
    except Exception as e:
        elapsed = time.monotonic() - start_time
        chain = error_chain(e)
        if isinstance(e, CopyError):
            rows_copied = e.rows_committed

        logger.error(
            f"✗ {task.describe()} failed after {elapsed:.2f}s "
            f"({rows_copied:,} rows committed): {e}"
        )
        for cause in chain[1:]:
            logger.error(f"    caused by {cause}")

        return TaskResult(
            table_name=task.table_name,
            partition_number=task.partition_number,
            success=False,
            rows_copied=rows_copied,
            elapsed_seconds=elapsed,
            error=str(e),
            error_chain=chain,
            worker_id=worker_id,
        )

    elapsed = time.monotonic() - start_time
    rows_per_second = rows_copied / elapsed if elapsed > 0 else 0
    logger.info(
        f"✓ {task.describe()}: {rows_copied:,} rows in {elapsed:.2f}s "
        f"({rows_per_second:,.0f} rows/sec)"
    )
    return TaskResult(
        table_name=task.table_name,
        partition_number=task.partition_number,
        success=True,
        rows_copied=rows_copied,
        elapsed_seconds=elapsed,
        worker_id=worker_id,
    )


class WorkerPool:
    """Fixed set of copy workers sharing one WorkQueue."""

    def __init__(
        self,
        source,
        destination,
        sink_config: Optional[BulkSinkConfig] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            source: Source backend
            destination: Destination backend
            sink_config: Destination bulk write settings (defaults if None)
            max_workers: Number of parallel workers
            cancel_event: When set, workers stop taking new tasks
        """
        if max_workers < 1:
            raise ValueError(f"Worker count must be at least 1 (got {max_workers})")
        self.source = source
        self.destination = destination
        self.sink_config = sink_config or BulkSinkConfig()
        self.max_workers = max_workers
        self.cancel_event = cancel_event or threading.Event()

        self._results: List[TaskResult] = []
        self._results_lock = threading.Lock()

    def _record(self, result: TaskResult) -> None:
        with self._results_lock:
            self._results.append(result)

    def _worker(self, worker_id: int, work_queue: WorkQueue) -> int:
        tasks_done = 0
        while not self.cancel_event.is_set():
            task = work_queue.get()
            if task is None:
                break
            self._record(copy_task(task, self.source, self.destination, self.sink_config, worker_id))
            tasks_done += 1

        logger.debug(f"[worker {worker_id}] Finished after {tasks_done} task(s)")
        return tasks_done

    def run(self, work_queue: WorkQueue) -> List[TaskResult]:
        """
        Drain the queue with max_workers parallel workers.

        Returns after every worker has finished. Tasks left on the queue
        after a cancellation are reported as cancelled.

        Args:
            work_queue: Queue of tasks to copy

        Returns:
            One TaskResult per task taken from the queue
        """
        self._results = []
        logger.info(f"Starting {self.max_workers} copy worker(s)")

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='copy-worker') as executor:
            futures = [
                executor.submit(self._worker, worker_id, work_queue)
                for worker_id in range(1, self.max_workers + 1)
            ]
        # Workers handle task failures themselves; anything here is a bug
        for future in futures:
            future.result()

        if self.cancel_event.is_set():
            cancelled = 0
            while True:
                task = work_queue.try_get()
                if task is None:
                    break
                self._record(TaskResult(
                    table_name=task.table_name,
                    partition_number=task.partition_number,
                    success=False,
                    error='Cancelled before start',
                    cancelled=True,
                ))
                cancelled += 1
            if cancelled:
                logger.warning(f"Copy cancelled: {cancelled} task(s) not attempted")

        return list(self._results)
