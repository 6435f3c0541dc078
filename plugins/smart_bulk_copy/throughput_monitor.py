"""
Log Flush Throughput Monitor

Samples the destination's transaction log flush counter while the copy
runs and logs the flush rate in MB/sec. A flush rate that stops growing
as workers are added means the destination log is the bottleneck.

The monitor is advisory: it never touches copy results, and a counter
that cannot be resolved or sampled only stops the monitor.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
import logging
import threading
import time

import psycopg2
import pyodbc

from smart_bulk_copy.errors import MonitorError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 5.0
BYTES_PER_MB = 1024 * 1024

LOG_FLUSH_COUNTER = 'Log Bytes Flushed/sec'

# Prefer the current database's instance; Azure SQL Database reports the
# physical database GUID instead of its name
RESOLVE_LOG_FLUSH_INSTANCE_QUERY = """
    SELECT TOP 1 RTRIM(instance_name)
    FROM sys.dm_os_performance_counters
    WHERE counter_name = ?
    AND (RTRIM(instance_name) = DB_NAME() OR instance_name LIKE '%-%-%-%-%')
    ORDER BY CASE WHEN RTRIM(instance_name) = DB_NAME() THEN 0 ELSE 1 END
"""

SAMPLE_LOG_FLUSH_QUERY = """
    SELECT cntr_value
    FROM sys.dm_os_performance_counters
    WHERE counter_name = ?
    AND RTRIM(instance_name) = ?
"""

RESOLVE_WAL_INSTANCE_QUERY = "SELECT current_database(), pg_current_wal_flush_lsn()"

SAMPLE_WAL_FLUSH_QUERY = "SELECT pg_wal_lsn_diff(pg_current_wal_flush_lsn(), '0/0')::bigint"


class MssqlLogFlushCounter:
    """CounterSource reading 'Log Bytes Flushed/sec' from sys.dm_os_performance_counters."""

    def __init__(self, odbc_helper):
        self.odbc_helper = odbc_helper
        self.instance_name: Optional[str] = None
        self._conn = None

    def resolve(self) -> str:
        """
        Find the counter instance of the destination database.

        Returns:
            The counter's instance_name

        Raises:
            MonitorError: If the connection fails or no instance is found
        """
        try:
            self._conn = self.odbc_helper.get_conn(autocommit=True)
            cursor = self._conn.cursor()
            cursor.execute(RESOLVE_LOG_FLUSH_INSTANCE_QUERY, [LOG_FLUSH_COUNTER])
            row = cursor.fetchone()
        except pyodbc.Error as e:
            raise MonitorError(f"Could not resolve log flush counter: {e}") from e

        if not row or not row[0]:
            raise MonitorError(
                f"No '{LOG_FLUSH_COUNTER}' counter instance found for the destination database"
            )

        self.instance_name = str(row[0]).strip()
        return self.instance_name

    def sample(self) -> int:
        """Read the cumulative bytes flushed so far."""
        if self._conn is None or self.instance_name is None:
            raise MonitorError("Log flush counter sampled before it was resolved")
        try:
            cursor = self._conn.cursor()
            cursor.execute(SAMPLE_LOG_FLUSH_QUERY, [LOG_FLUSH_COUNTER, self.instance_name])
            row = cursor.fetchone()
        except pyodbc.Error as e:
            raise MonitorError(f"Could not sample log flush counter: {e}") from e

        if not row or row[0] is None:
            raise MonitorError(f"Log flush counter instance {self.instance_name} disappeared")
        return int(row[0])

    def close(self) -> None:
        self.odbc_helper.release_conn(self._conn)
        self._conn = None


class PostgresWalFlushCounter:
    """CounterSource reading the WAL flush position of a PostgreSQL destination."""

    def __init__(self, connection_factory):
        self.connection_factory = connection_factory
        self.instance_name: Optional[str] = None
        self._conn = None

    def resolve(self) -> str:
        try:
            self._conn = self.connection_factory.get_conn()
            self._conn.autocommit = True
            with self._conn.cursor() as cursor:
                cursor.execute(RESOLVE_WAL_INSTANCE_QUERY)
                row = cursor.fetchone()
        except psycopg2.Error as e:
            raise MonitorError(f"Could not resolve WAL flush position: {e}") from e

        if not row or not row[0]:
            raise MonitorError("Could not determine the destination database name")

        self.instance_name = str(row[0])
        return self.instance_name

    def sample(self) -> int:
        if self._conn is None:
            raise MonitorError("WAL flush counter sampled before it was resolved")
        try:
            with self._conn.cursor() as cursor:
                cursor.execute(SAMPLE_WAL_FLUSH_QUERY)
                row = cursor.fetchone()
        except psycopg2.Error as e:
            raise MonitorError(f"Could not sample WAL flush position: {e}") from e

        if not row or row[0] is None:
            raise MonitorError("WAL flush position query returned no value")
        return int(row[0])

    def close(self) -> None:
        self.connection_factory.release_conn(self._conn)
        self._conn = None


@dataclass(frozen=True)
class ThroughputSample:
    """One log flush rate reading."""

    taken_at: datetime
    bytes_flushed: int
    elapsed_seconds: float
    mb_per_second: float


def flush_rate_mb_per_second(first: int, second: int, elapsed_seconds: float) -> float:
    """Convert two cumulative byte samples into MB/sec."""
    if elapsed_seconds <= 0:
        return 0.0
    return max(second - first, 0) / elapsed_seconds / BYTES_PER_MB


class ThroughputMonitor:
    """
    Background observer of destination log flush throughput.

    Runs sample → wait → sample cycles until done_event is set. The event is
    checked after each full cycle, so one extra reading may be logged after
    the copy finishes. The wait ends early when done_event is set; the rate
    is computed over the time actually elapsed.
    """

    def __init__(
        self,
        counter_source,
        done_event: threading.Event,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            counter_source: Object with resolve() and sample() (and optionally close())
            done_event: Set once all copy workers have finished
            interval: Seconds between the two samples of one reading
            clock: Monotonic clock, replaceable in tests
        """
        if interval <= 0:
            raise ValueError(f"Monitor interval must be positive (got {interval})")
        self.counter_source = counter_source
        self.done_event = done_event
        self.interval = interval
        self._clock = clock
        self.samples: List[ThroughputSample] = []
        self.error: Optional[MonitorError] = None
        self._thread: Optional[threading.Thread] = None

    def run(self) -> List[ThroughputSample]:
        """
        Monitor until done_event is set.

        Returns:
            Readings taken, in order

        Raises:
            MonitorError: If the counter cannot be resolved or sampled
        """
        try:
            instance = self.counter_source.resolve()
            logger.info(f"Monitoring log flush throughput of {instance}")

            while True:
                first = self.counter_source.sample()
                started = self._clock()
                self.done_event.wait(self.interval)
                second = self.counter_source.sample()
                elapsed = self._clock() - started

                rate = flush_rate_mb_per_second(first, second, elapsed)
                self.samples.append(ThroughputSample(
                    taken_at=datetime.now(),
                    bytes_flushed=max(second - first, 0),
                    elapsed_seconds=elapsed,
                    mb_per_second=rate,
                ))
                logger.info(f"Log flush speed: {rate:05.2f} MB/sec")

                if self.done_event.is_set():
                    break
        finally:
            close = getattr(self.counter_source, 'close', None)
            if close is not None:
                close()

        return self.samples

    def _run_in_thread(self) -> None:
        try:
            self.run()
        except MonitorError as e:
            self.error = e
            logger.warning(f"Log flush monitor stopped: {e}")
        except Exception as e:
            self.error = MonitorError(f"Log flush monitor failed: {e}")
            self.error.__cause__ = e
            logger.warning(f"Log flush monitor stopped: {e}")

    def start(self) -> None:
        """Run the monitor on a background thread."""
        self._thread = threading.Thread(
            target=self._run_in_thread,
            name='log-flush-monitor',
            daemon=True,
        )
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the background thread.

        Returns:
            True if the monitor has stopped, False if it is still running
        """
        if self._thread is not None:
            self._thread.join(timeout)
            return not self._thread.is_alive()
        return True

    @property
    def peak_mb_per_second(self) -> float:
        return max((s.mb_per_second for s in self.samples), default=0.0)
