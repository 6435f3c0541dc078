"""
Bulk Copy Orchestrator

Runs one copy end to end:

    IDLE → CONNECTIVITY_CHECKED → PLANNED → DESTINATION_TRUNCATED → COPYING → DONE

Connectivity and planning failures abort the run before the destination
is touched. Destination tables are truncated once, before any worker
starts, so a rerun of the same configuration starts from empty tables.
Per-partition failures do not stop the run; they are collected in the
CopyReport.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging
import threading
import time

from smart_bulk_copy.backends import build_destination, build_source
from smart_bulk_copy.bulk_sink import BulkSinkConfig
from smart_bulk_copy.config import CopyConfig
from smart_bulk_copy.copy_task import CopyTask
from smart_bulk_copy.errors import MonitorError
from smart_bulk_copy.partition_planner import PartitionPlanner
from smart_bulk_copy.throughput_monitor import ThroughputMonitor, ThroughputSample
from smart_bulk_copy.work_queue import WorkQueue
from smart_bulk_copy.worker_pool import TaskResult, WorkerPool

logger = logging.getLogger(__name__)

# Time allowed, on top of three monitor intervals, for the monitor to
# take its final sample once copying is done
MONITOR_JOIN_GRACE_SECONDS = 30.0


class OrchestratorState(Enum):
    IDLE = 'idle'
    CONNECTIVITY_CHECKED = 'connectivity_checked'
    PLANNED = 'planned'
    DESTINATION_TRUNCATED = 'destination_truncated'
    COPYING = 'copying'
    DONE = 'done'


@dataclass
class CopyReport:
    """Final outcome of a bulk copy run."""

    tables: List[str]
    total_tasks: int
    results: List[TaskResult] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    total_elapsed_seconds: float = 0.0
    throughput_samples: List[ThroughputSample] = field(default_factory=list)
    monitor_error: Optional[str] = None

    @property
    def success(self) -> bool:
        """True iff every planned task was copied successfully."""
        succeeded = sum(1 for r in self.results if r.success)
        return succeeded == self.total_tasks

    @property
    def failed_partitions(self) -> List[Tuple[str, int]]:
        return [r.key for r in self.results if not r.success and not r.cancelled]

    @property
    def cancelled_partitions(self) -> List[Tuple[str, int]]:
        return [r.key for r in self.results if r.cancelled]

    @property
    def rows_copied(self) -> int:
        return sum(r.rows_copied for r in self.results if r.success)

    @property
    def rows_by_table(self) -> Dict[str, int]:
        totals = {table: 0 for table in self.tables}
        for result in self.results:
            if result.success:
                totals[result.table_name] = totals.get(result.table_name, 0) + result.rows_copied
        return totals

    @property
    def peak_mb_per_second(self) -> float:
        return max((s.mb_per_second for s in self.throughput_samples), default=0.0)

    def summary(self) -> str:
        """Human-readable report of the run."""
        rows_per_second = self.rows_copied / self.elapsed_seconds if self.elapsed_seconds > 0 else 0
        lines = [
            f"Bulk copy {'completed' if self.success else 'completed with errors'}: "
            f"{self.rows_copied:,} rows in {self.elapsed_seconds:.2f}s "
            f"({rows_per_second:,.0f} rows/sec)",
            f"Tasks: {self.total_tasks} planned, "
            f"{sum(1 for r in self.results if r.success)} succeeded, "
            f"{len(self.failed_partitions)} failed, "
            f"{len(self.cancelled_partitions)} cancelled",
        ]
        for table, rows in self.rows_by_table.items():
            lines.append(f"  {table}: {rows:,} rows")
        for result in self.results:
            if not result.success and not result.cancelled:
                lines.append(f"  ✗ {result.table_name} partition {result.partition_number}: {result.error}")
        if self.cancelled_partitions:
            cancelled = ', '.join(f"{t}#{p}" for t, p in self.cancelled_partitions)
            lines.append(f"  Cancelled: {cancelled}")
        if self.throughput_samples:
            lines.append(f"Peak log flush speed: {self.peak_mb_per_second:.2f} MB/sec")
        if self.monitor_error:
            lines.append(f"Log flush monitor stopped early: {self.monitor_error}")
        lines.append(f"Total elapsed time: {self.total_elapsed_seconds:.2f}s")
        return '\n'.join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable form, for XCom."""
        return {
            'tables': list(self.tables),
            'total_tasks': self.total_tasks,
            'success': self.success,
            'rows_copied': self.rows_copied,
            'rows_by_table': self.rows_by_table,
            'failed_partitions': [list(key) for key in self.failed_partitions],
            'cancelled_partitions': [list(key) for key in self.cancelled_partitions],
            'elapsed_seconds': self.elapsed_seconds,
            'total_elapsed_seconds': self.total_elapsed_seconds,
            'peak_mb_per_second': self.peak_mb_per_second,
            'monitor_error': self.monitor_error,
            'results': [
                {
                    'table': r.table_name,
                    'partition': r.partition_number,
                    'success': r.success,
                    'rows_copied': r.rows_copied,
                    'elapsed_seconds': r.elapsed_seconds,
                    'error': r.error,
                    'error_chain': list(r.error_chain),
                    'cancelled': r.cancelled,
                }
                for r in self.results
            ],
        }


class CopyOrchestrator:
    """Drives a configured bulk copy through its phases."""

    def __init__(self, config: CopyConfig, source, destination, planner: Optional[PartitionPlanner] = None):
        """
        Args:
            config: Validated run configuration
            source: Source backend
            destination: Destination backend
            planner: Partition planner (built from the source metadata if None)
        """
        self.config = config
        self.source = source
        self.destination = destination
        self.planner = planner
        self.state = OrchestratorState.IDLE
        self.tasks: List[CopyTask] = []
        self.cancel_event = threading.Event()

    def _require(self, expected: OrchestratorState) -> None:
        if self.state is not expected:
            raise RuntimeError(f"Orchestrator is {self.state.name}, expected {expected.name}")

    def _transition(self, expected: OrchestratorState, new_state: OrchestratorState) -> None:
        self._require(expected)
        self.state = new_state
        logger.debug(f"Orchestrator state: {new_state.name}")

    def check_connectivity(self) -> None:
        """
        Raises:
            ConnectivityError: If either end cannot be reached
        """
        self._require(OrchestratorState.IDLE)
        self.source.check_connectivity()
        self.destination.check_connectivity()
        self._transition(OrchestratorState.IDLE, OrchestratorState.CONNECTIVITY_CHECKED)

    def plan(self) -> List[CopyTask]:
        """
        Plan the copy tasks of every configured table.

        Raises:
            MetadataError: If partition metadata cannot be read
        """
        self._require(OrchestratorState.CONNECTIVITY_CHECKED)
        if self.planner is None:
            self.planner = PartitionPlanner(
                self.source.metadata_provider(),
                logical_partition_count=self.config.logical_partition_count,
                surrogate_expression=self.config.surrogate_expression,
            )
        self.tasks = self.planner.plan_tables(self.config.tables)
        self._transition(OrchestratorState.CONNECTIVITY_CHECKED, OrchestratorState.PLANNED)
        return self.tasks

    def truncate_destination(self) -> None:
        self._require(OrchestratorState.PLANNED)
        for table_name in self.config.tables:
            self.destination.truncate_table(table_name)
        self._transition(OrchestratorState.PLANNED, OrchestratorState.DESTINATION_TRUNCATED)

    def _start_monitor(self, done_event: threading.Event) -> Optional[ThroughputMonitor]:
        if not self.config.monitor_enabled:
            logger.info("Log flush monitor disabled")
            return None
        monitor = ThroughputMonitor(
            self.destination.counter_source(),
            done_event,
            interval=self.config.monitor_interval,
        )
        monitor.start()
        return monitor

    def _stop_monitor(self, monitor: ThroughputMonitor) -> None:
        timeout = 3 * self.config.monitor_interval + MONITOR_JOIN_GRACE_SECONDS
        if monitor.join(timeout=timeout):
            return
        logger.warning(f"Log flush monitor did not stop within {timeout:.0f}s; leaving it behind")
        if monitor.error is None:
            monitor.error = MonitorError(f"Monitor did not stop within {timeout:.0f}s of the copy finishing")

    def copy(self) -> Tuple[List[TaskResult], float, Optional[ThroughputMonitor]]:
        """
        Copy all planned tasks with the worker pool.

        Returns:
            (results, copy phase seconds, monitor or None)
        """
        self._transition(OrchestratorState.DESTINATION_TRUNCATED, OrchestratorState.COPYING)

        work_queue = WorkQueue(self.tasks)
        work_queue.close()

        done_event = threading.Event()
        pool = WorkerPool(
            self.source,
            self.destination,
            sink_config=BulkSinkConfig(
                batch_size=self.config.batch_size,
                timeout=self.config.bulk_timeout,
                table_lock=self.config.table_lock,
            ),
            max_workers=self.config.max_workers,
            cancel_event=self.cancel_event,
        )

        start_time = time.monotonic()
        monitor = self._start_monitor(done_event)
        try:
            results = pool.run(work_queue)
        finally:
            done_event.set()
            if monitor is not None:
                self._stop_monitor(monitor)
        elapsed = time.monotonic() - start_time

        self._transition(OrchestratorState.COPYING, OrchestratorState.DONE)
        return results, elapsed, monitor

    def cancel(self) -> None:
        """Stop handing out tasks; running tasks finish normally."""
        logger.warning("Cancellation requested: workers will stop after their current task")
        self.cancel_event.set()

    def run(self) -> CopyReport:
        """
        Run every phase and report the outcome.

        Raises:
            ConnectivityError: Before any destination table is touched
            MetadataError: Before any destination table is touched
            BulkCopyError: If a destination table cannot be truncated
        """
        run_start = time.monotonic()
        logger.info(f"Starting bulk copy of {len(self.config.tables)} table(s): {', '.join(self.config.tables)}")

        self.check_connectivity()
        self.plan()
        self.truncate_destination()
        results, elapsed, monitor = self.copy()

        monitor_error: Optional[MonitorError] = monitor.error if monitor is not None else None
        report = CopyReport(
            tables=list(self.config.tables),
            total_tasks=len(self.tasks),
            results=results,
            elapsed_seconds=elapsed,
            total_elapsed_seconds=time.monotonic() - run_start,
            throughput_samples=list(monitor.samples) if monitor is not None else [],
            monitor_error=str(monitor_error) if monitor_error is not None else None,
        )

        for line in report.summary().splitlines():
            if report.success:
                logger.info(line)
            else:
                logger.warning(line)
        return report


def run_bulk_copy(config: CopyConfig, source=None, destination=None) -> CopyReport:
    """
    Validate the configuration, build any missing backends and run the copy.

    Args:
        config: Run configuration
        source: Source backend (built from config if None)
        destination: Destination backend (built from config if None)

    Returns:
        CopyReport
    """
    config.validate()
    logger.info(f"Bulk copy settings: {config.as_log_dict()}")
    if source is None:
        source = build_source(config)
    if destination is None:
        destination = build_destination(config)
    return CopyOrchestrator(config, source, destination).run()
