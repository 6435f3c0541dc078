"""
Row Sources and Bulk Sinks

Streaming read side and batched write side of one partition copy.

Row sources run the partition's SELECT on a dedicated SQL Server
connection and hand rows out fetch_size at a time. Bulk sinks write a
row stream into one destination table in batches, committing each batch:

- MssqlBulkSink: pyodbc fast_executemany INSERTs, optionally WITH (TABLOCK)
- PostgresBulkSink: COPY FROM STDIN fed by a lazy tab-delimited CSV stream

A failing batch is rolled back and surfaces as a single CopyError chained
to the driver error.
"""

from dataclasses import dataclass
from datetime import datetime, date, time as dt_time
from decimal import Decimal
from io import StringIO, TextIOBase
from itertools import islice
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple
import contextlib
import csv
import logging
import math

import psycopg2
import pyodbc
from psycopg2 import sql

from smart_bulk_copy.errors import CopyError
from smart_bulk_copy.table_config import (
    parse_schema_table,
    quote_mssql_identifier,
    quote_mssql_table,
)

logger = logging.getLogger(__name__)

DEFAULT_FETCH_SIZE = 10000

COPY_NULL = '\\N'

HAS_IDENTITY_QUERY = "SELECT OBJECTPROPERTY(OBJECT_ID(?), 'TableHasIdentity')"


@dataclass(frozen=True)
class BulkSinkConfig:
    """
    Destination bulk write settings.

    Attributes:
        batch_size: Rows per committed batch
        timeout: Statement timeout in seconds (0 = unbounded)
        table_lock: Take a table-level lock instead of row locks
    """

    batch_size: int = 100000
    timeout: int = 0
    table_lock: bool = True

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"Batch size must be at least 1 (got {self.batch_size})")
        if self.timeout < 0:
            raise ValueError(f"Timeout cannot be negative (got {self.timeout})")


def iter_batches(rows: Iterable[Tuple[Any, ...]], batch_size: int) -> Iterator[List[Tuple[Any, ...]]]:
    """Group a row stream into lists of at most batch_size rows."""
    iterator = iter(rows)
    while True:
        batch = list(islice(iterator, batch_size))
        if not batch:
            return
        yield batch


def next_batch(batches: Iterator[List[Tuple[Any, ...]]], table_name: str,
               rows_committed: int) -> Optional[List[Tuple[Any, ...]]]:
    """
    Pull the next batch off a source row stream.

    Returns:
        The batch, or None once the stream is exhausted

    Raises:
        CopyError: If the source read fails, carrying rows_committed
    """
    try:
        return next(batches, None)
    except (CopyError, pyodbc.Error) as e:
        raise CopyError(
            f"Source read for {table_name} failed after {rows_committed:,} rows were committed: {e}",
            table_name=table_name,
            rows_committed=rows_committed,
        ) from e


class MssqlRowReader:
    """Forward-only reader over an executed pyodbc cursor."""

    def __init__(self, cursor, fetch_size: int = DEFAULT_FETCH_SIZE, table_name: Optional[str] = None):
        self._cursor = cursor
        self._fetch_size = fetch_size
        self.table_name = table_name
        self.columns: List[str] = [col[0] for col in (cursor.description or [])]
        self.rows_read = 0

    def iter_rows(self) -> Iterator[Tuple[Any, ...]]:
        """
        Yield source rows, fetch_size per round trip.

        Raises:
            CopyError: If a fetch fails mid-stream
        """
        while True:
            try:
                rows = self._cursor.fetchmany(self._fetch_size)
            except pyodbc.Error as e:
                raise CopyError(
                    f"Reading {self.table_name or 'source rows'} failed after {self.rows_read:,} rows: {e}",
                    table_name=self.table_name,
                ) from e
            if not rows:
                return
            for row in rows:
                self.rows_read += 1
                yield tuple(row)


@contextlib.contextmanager
def open_mssql_row_source(
    odbc_helper,
    select_sql: str,
    fetch_size: int = DEFAULT_FETCH_SIZE,
    table_name: Optional[str] = None,
):
    """
    Run a SELECT on a new connection and yield a reader over its rows.

    The connection has no query timeout and is closed when the block exits.

    Args:
        odbc_helper: OdbcConnectionHelper for the source
        select_sql: Query selecting the partition's rows
        fetch_size: Rows fetched per round trip
        table_name: Source table, for error messages

    Yields:
        MssqlRowReader

    Raises:
        CopyError: If the connection or the SELECT fails
    """
    conn = None
    try:
        try:
            conn = odbc_helper.get_conn(query_timeout=0)
            cursor = conn.cursor()
            cursor.execute(select_sql)
        except pyodbc.Error as e:
            raise CopyError(
                f"Source query for {table_name or 'partition'} failed: {e}",
                table_name=table_name,
            ) from e
        yield MssqlRowReader(cursor, fetch_size, table_name)
    finally:
        odbc_helper.release_conn(conn)


class MssqlBulkSink:
    """Batched INSERT writer for one SQL Server destination table."""

    def __init__(self, conn, table_name: str, config: BulkSinkConfig):
        """
        Args:
            conn: Open pyodbc connection, exclusive to this sink
            table_name: Canonical 'schema.table' destination name
            config: Bulk write settings
        """
        self.conn = conn
        self.table_name = table_name
        self.config = config
        self.rows_written = 0
        self.batches_committed = 0

    def _insert_sql(self, columns: Sequence[str]) -> str:
        hint = " WITH (TABLOCK)" if self.config.table_lock else ""
        column_list = ', '.join(quote_mssql_identifier(col) for col in columns)
        placeholders = ', '.join(['?'] * len(columns))
        return (
            f"INSERT INTO {quote_mssql_table(self.table_name)}{hint} "
            f"({column_list}) VALUES ({placeholders})"
        )

    def _enable_identity_insert(self, cursor) -> None:
        cursor.execute(HAS_IDENTITY_QUERY, [quote_mssql_table(self.table_name)])
        row = cursor.fetchone()
        if row and row[0] == 1:
            cursor.execute(f"SET IDENTITY_INSERT {quote_mssql_table(self.table_name)} ON")
            logger.debug(f"Enabled IDENTITY_INSERT for {self.table_name}")

    def write_rows(self, columns: Sequence[str], rows: Iterable[Tuple[Any, ...]]) -> int:
        """
        Insert a row stream, committing every batch_size rows.

        Args:
            columns: Column names, in row order
            rows: Row tuples

        Returns:
            Number of rows written

        Raises:
            CopyError: If a batch or the source read fails (already-committed batches stay)
        """
        if not columns:
            raise CopyError(f"No columns to write into {self.table_name}", table_name=self.table_name)

        insert_sql = self._insert_sql(columns)
        cursor = self.conn.cursor()
        try:
            self._enable_identity_insert(cursor)
        except pyodbc.Error as e:
            raise CopyError(
                f"Could not prepare bulk insert into {self.table_name}: {e}",
                table_name=self.table_name,
            ) from e

        cursor.fast_executemany = True

        batches = iter_batches(rows, self.config.batch_size)
        while True:
            batch = next_batch(batches, self.table_name, self.rows_written)
            if batch is None:
                break
            try:
                cursor.executemany(insert_sql, batch)
                self.conn.commit()
            except pyodbc.Error as e:
                try:
                    self.conn.rollback()
                except pyodbc.Error as rollback_error:
                    logger.warning(f"Rollback failed on {self.table_name}: {rollback_error}")
                raise CopyError(
                    f"Bulk insert into {self.table_name} failed after {self.rows_written:,} rows "
                    f"({len(batch):,} row batch rolled back): {e}",
                    table_name=self.table_name,
                    rows_committed=self.rows_written,
                ) from e

            self.rows_written += len(batch)
            self.batches_committed += 1
            logger.debug(
                f"Committed batch {self.batches_committed} into {self.table_name} "
                f"({self.rows_written:,} rows so far)"
            )

        return self.rows_written


@contextlib.contextmanager
def open_mssql_bulk_sink(odbc_helper, table_name: str, config: BulkSinkConfig):
    """Open a dedicated destination connection and yield an MssqlBulkSink on it."""
    conn = None
    try:
        conn = odbc_helper.get_conn(autocommit=False, query_timeout=config.timeout)
        yield MssqlBulkSink(conn, table_name, config)
    finally:
        odbc_helper.release_conn(conn)


def normalize_copy_value(value: Any) -> Any:
    """
    Normalize Python values for COPY consumption.

    NULL values are represented as the literal string '\\N' which
    PostgreSQL COPY interprets as NULL (via NULL '\\N' option). Empty strings
    remain as empty strings and are properly distinguished from NULL.
    """
    if value is None:
        return COPY_NULL

    if isinstance(value, datetime):
        return value.isoformat(sep=' ')
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dt_time):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return 't' if value else 'f'
    if isinstance(value, (bytes, bytearray, memoryview)):
        return '\\x' + bytes(value).hex()
    if isinstance(value, float) and not math.isfinite(value):
        return COPY_NULL

    return value


class CSVRowStream(TextIOBase):
    """Lazy text stream that feeds COPY FROM without large buffers."""

    def __init__(self, rows: Iterable[Tuple[Any, ...]], normalizer=normalize_copy_value):
        self._iterator = iter(rows)
        self._normalizer = normalizer
        self._buffer = ''
        self._exhausted = False

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> str:
        while (size is None or size < 0 or len(self._buffer) < size) and not self._exhausted:
            try:
                row = next(self._iterator)
            except StopIteration:
                self._exhausted = True
                break
            self._buffer += self._format_row(row)

        if size is None or size < 0:
            data = self._buffer
            self._buffer = ''
            return data

        data = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return data

    def _format_row(self, row: Tuple[Any, ...]) -> str:
        buffer = StringIO()
        writer = csv.writer(
            buffer,
            delimiter='\t',
            quoting=csv.QUOTE_MINIMAL,
            lineterminator='\n',
        )
        if not any(_is_null_marker_text(value) for value in row):
            writer.writerow([self._normalizer(value) for value in row])
            return buffer.getvalue()

        # COPY only reads an unquoted \N as NULL, so source text equal to
        # the marker is quoted field by field
        fields = []
        for value in row:
            if _is_null_marker_text(value):
                fields.append(f'"{COPY_NULL}"')
                continue
            writer.writerow([self._normalizer(value)])
            fields.append(buffer.getvalue()[:-1])
            buffer.seek(0)
            buffer.truncate()
        return '\t'.join(fields) + '\n'


def _is_null_marker_text(value: Any) -> bool:
    return isinstance(value, str) and value == COPY_NULL


class PostgresBulkSink:
    """COPY-based writer for one PostgreSQL destination table."""

    def __init__(self, conn, table_name: str, config: BulkSinkConfig):
        """
        Args:
            conn: Open psycopg2 connection, exclusive to this sink
            table_name: Canonical 'schema.table' destination name
            config: Bulk write settings (table_lock has no COPY equivalent;
                COPY's ROW EXCLUSIVE lock already lets loaders run side by side)
        """
        self.conn = conn
        self.table_name = table_name
        self.config = config
        self.rows_written = 0
        self.batches_committed = 0

    def _copy_sql(self, columns: Sequence[str]):
        schema, table = parse_schema_table(self.table_name)
        quoted_columns = sql.SQL(', ').join([sql.Identifier(col) for col in columns])
        return sql.SQL(
            'COPY {}.{} ({}) FROM STDIN WITH (FORMAT CSV, DELIMITER E\'\\t\', QUOTE \'"\', NULL \'\\N\')'
        ).format(
            sql.Identifier(schema),
            sql.Identifier(table),
            quoted_columns,
        )

    def write_rows(self, columns: Sequence[str], rows: Iterable[Tuple[Any, ...]]) -> int:
        """
        COPY a row stream, committing every batch_size rows.

        Args:
            columns: Column names, in row order
            rows: Row tuples

        Returns:
            Number of rows written

        Raises:
            CopyError: If a batch or the source read fails (already-committed batches stay)
        """
        if not columns:
            raise CopyError(f"No columns to write into {self.table_name}", table_name=self.table_name)

        copy_sql = self._copy_sql(columns)

        batches = iter_batches(rows, self.config.batch_size)
        while True:
            batch = next_batch(batches, self.table_name, self.rows_written)
            if batch is None:
                break
            try:
                with self.conn.cursor() as cursor:
                    cursor.copy_expert(copy_sql, CSVRowStream(batch))
                self.conn.commit()
            except psycopg2.Error as e:
                try:
                    self.conn.rollback()
                except psycopg2.Error as rollback_error:
                    logger.warning(f"Rollback failed on {self.table_name}: {rollback_error}")
                raise CopyError(
                    f"COPY into {self.table_name} failed after {self.rows_written:,} rows "
                    f"({len(batch):,} row batch rolled back): {e}",
                    table_name=self.table_name,
                    rows_committed=self.rows_written,
                ) from e

            self.rows_written += len(batch)
            self.batches_committed += 1
            logger.debug(
                f"Committed batch {self.batches_committed} into {self.table_name} "
                f"({self.rows_written:,} rows so far)"
            )

        return self.rows_written


@contextlib.contextmanager
def open_postgres_bulk_sink(connection_factory, table_name: str, config: BulkSinkConfig):
    """Open a dedicated destination connection and yield a PostgresBulkSink on it."""
    conn = None
    try:
        conn = connection_factory.get_conn(statement_timeout=config.timeout)
        yield PostgresBulkSink(conn, table_name, config)
    finally:
        connection_factory.release_conn(conn)
