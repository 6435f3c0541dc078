"""
In-memory source and destination backends.

The fake source holds each table as a list of row tuples whose first
column doubles as the partitioning value: logical partition n holds the
rows with abs(value) % L == n - 1, physical partition n the rows with
value % count == n - 1. The fake destination records every batch it
commits and can be told to fail on particular values.
"""

import contextlib
import threading
from typing import Dict, List, Optional, Set, Tuple

import pytest

from smart_bulk_copy.bulk_sink import iter_batches, next_batch
from smart_bulk_copy.copy_task import LogicalPartitionStrategy
from smart_bulk_copy.errors import ConnectivityError, CopyError, MetadataError
from smart_bulk_copy.metadata import PhysicalPartitionInfo


class FakeMetadata:
    def __init__(self, tables, physical):
        self.tables = tables
        self.physical = physical

    def is_physically_partitioned(self, table_name):
        if table_name not in self.tables:
            raise MetadataError(f"Source table {table_name} does not exist")
        return table_name in self.physical

    def physical_partition_info(self, table_name):
        return PhysicalPartitionInfo('PF_' + table_name.split('.')[1], 'KEY', self.physical[table_name])


class FakeReader:
    def __init__(self, columns, rows, fail_after: Optional[int] = None):
        self.columns = columns
        self._rows = rows
        self._fail_after = fail_after

    def iter_rows(self):
        for i, row in enumerate(self._rows):
            if self._fail_after is not None and i == self._fail_after:
                raise CopyError("Source read failed") from ConnectionResetError("connection reset by peer")
            yield row


class FakeSource:
    def __init__(self, tables: Dict[str, List[Tuple]], physical: Optional[Dict[str, int]] = None,
                 columns=('KEY', 'VALUE')):
        self.tables = tables
        self.physical = physical or {}
        self.columns = list(columns)
        self.reachable = True
        self.read_failures: Dict[Tuple[str, int], int] = {}
        self.application_names: List[str] = []
        self.open_sessions = 0
        self._lock = threading.Lock()

    def check_connectivity(self):
        if not self.reachable:
            raise ConnectivityError("Cannot connect to source: login timeout expired")

    def metadata_provider(self):
        return FakeMetadata(self.tables, self.physical)

    def rows_for(self, task):
        rows = self.tables[task.table_name]
        if isinstance(task.strategy, LogicalPartitionStrategy):
            count = task.strategy.partition_count
            return [r for r in rows if abs(r[0]) % count == task.partition_number - 1]
        count = self.physical[task.table_name]
        return [r for r in rows if r[0] % count == task.partition_number - 1]

    @contextlib.contextmanager
    def open_row_source(self, task, application_name=None):
        with self._lock:
            self.application_names.append(application_name)
            self.open_sessions += 1
        try:
            yield FakeReader(self.columns, self.rows_for(task), self.read_failures.get((task.table_name, task.partition_number)))
        finally:
            with self._lock:
                self.open_sessions -= 1


class FakeSink:
    def __init__(self, destination, table_name, config):
        self.destination = destination
        self.table_name = table_name
        self.config = config

    def write_rows(self, columns, rows):
        written = 0
        batches = iter_batches(rows, self.config.batch_size)
        while True:
            batch = next_batch(batches, self.table_name, written)
            if batch is None:
                break
            bad = [r for r in batch if r[0] in self.destination.fail_values]
            if bad:
                raise CopyError(
                    f"Bulk insert into {self.table_name} failed",
                    table_name=self.table_name,
                    rows_committed=written,
                ) from ValueError(f"Violation of PRIMARY KEY constraint, duplicate key ({bad[0][0]})")
            self.destination.commit(self.table_name, batch)
            written += len(batch)
        return written


class FakeCounter:
    def __init__(self, step=5 * 1024 * 1024):
        self.value = 0
        self.step = step

    def resolve(self):
        return 'fake-db'

    def sample(self):
        self.value += self.step
        return self.value


class FakeDestination:
    kind = 'fake'

    def __init__(self, tables):
        self.tables: Dict[str, List[Tuple]] = {t: [] for t in tables}
        self.reachable = True
        self.fail_values: Set = set()
        self.events: List[Tuple[str, str]] = []
        self.open_sessions = 0
        self._lock = threading.Lock()

    def check_connectivity(self):
        if not self.reachable:
            raise ConnectivityError("Cannot connect to destination: login timeout expired")

    def truncate_table(self, table_name):
        with self._lock:
            self.tables[table_name] = []
            self.events.append(('truncate', table_name))

    def commit(self, table_name, batch):
        with self._lock:
            self.tables[table_name].extend(batch)
            self.events.append(('write', table_name))

    @contextlib.contextmanager
    def open_bulk_sink(self, table_name, config, application_name=None):
        with self._lock:
            self.open_sessions += 1
        try:
            yield FakeSink(self, table_name, config)
        finally:
            with self._lock:
                self.open_sessions -= 1

    def counter_source(self):
        return FakeCounter()


def sample_rows(count, start=0):
    return [(i, f'row {i}') for i in range(start, start + count)]


@pytest.fixture
def source_tables():
    return {
        'dbo.ORDERS': sample_rows(1000),
        'dbo.LINEITEM': sample_rows(3000, start=5000),
    }


@pytest.fixture
def fake_source(source_tables):
    return FakeSource(source_tables, physical={'dbo.LINEITEM': 3})


@pytest.fixture
def fake_destination(source_tables):
    return FakeDestination(source_tables.keys())


@pytest.fixture
def fake_counter():
    return FakeCounter()
