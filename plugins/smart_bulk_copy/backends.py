"""
Source and Destination Backends

Bind the connection helpers to the operations the orchestrator and the
worker pool need: connectivity checks, destination truncation, per-task
row sources and bulk sinks, and the destination's log flush counter.

Every worker opens its own connections through open_row_source() and
open_bulk_sink(); nothing here shares a connection across threads.
"""

from typing import Optional
import logging

import psycopg2
import pyodbc
from psycopg2 import sql

from smart_bulk_copy.bulk_sink import (
    BulkSinkConfig,
    open_mssql_bulk_sink,
    open_mssql_row_source,
    open_postgres_bulk_sink,
)
from smart_bulk_copy.config import DEFAULT_FETCH_SIZE, CopyConfig, redact_connection_string
from smart_bulk_copy.copy_task import CopyTask
from smart_bulk_copy.errors import BulkCopyError, ConnectivityError
from smart_bulk_copy.metadata import MssqlMetadataProvider
from smart_bulk_copy.odbc_helper import OdbcConnectionHelper
from smart_bulk_copy.postgres_helper import PostgresConnectionFactory
from smart_bulk_copy.table_config import parse_schema_table, quote_mssql_table
from smart_bulk_copy.throughput_monitor import MssqlLogFlushCounter, PostgresWalFlushCounter

logger = logging.getLogger(__name__)


class MssqlSource:
    """SQL Server source of the copy."""

    def __init__(self, odbc_helper: OdbcConnectionHelper, fetch_size: int = DEFAULT_FETCH_SIZE):
        self.odbc_helper = odbc_helper
        self.fetch_size = fetch_size

    def check_connectivity(self) -> None:
        """
        Raises:
            ConnectivityError: If the source cannot be reached
        """
        try:
            self.odbc_helper.test_connection()
        except pyodbc.Error as e:
            raise ConnectivityError(f"Cannot connect to source: {e}") from e
        logger.info("✓ Source connection OK")

    def metadata_provider(self) -> MssqlMetadataProvider:
        return MssqlMetadataProvider(self.odbc_helper)

    def open_row_source(self, task: CopyTask, application_name: Optional[str] = None):
        """Context manager yielding a reader over the task's rows, on a new connection."""
        helper = self.odbc_helper
        if application_name:
            helper = helper.with_application_name(application_name)
        return open_mssql_row_source(helper, task.select_sql(), self.fetch_size, task.table_name)


class MssqlDestination:
    """SQL Server destination of the copy."""

    kind = 'mssql'

    def __init__(self, odbc_helper: OdbcConnectionHelper):
        self.odbc_helper = odbc_helper

    def check_connectivity(self) -> None:
        try:
            self.odbc_helper.test_connection()
        except pyodbc.Error as e:
            raise ConnectivityError(f"Cannot connect to destination: {e}") from e
        logger.info("✓ Destination connection OK")

    def truncate_table(self, table_name: str) -> None:
        """
        Remove all rows of a destination table.

        Raises:
            BulkCopyError: If the table cannot be truncated
        """
        try:
            self.odbc_helper.run(f"TRUNCATE TABLE {quote_mssql_table(table_name)}")
        except pyodbc.Error as e:
            raise BulkCopyError(f"Cannot truncate destination table {table_name}: {e}") from e
        logger.info(f"Truncated destination table {table_name}")

    def open_bulk_sink(self, table_name: str, config: BulkSinkConfig, application_name: Optional[str] = None):
        helper = self.odbc_helper
        if application_name:
            helper = helper.with_application_name(application_name)
        return open_mssql_bulk_sink(helper, table_name, config)

    def counter_source(self) -> MssqlLogFlushCounter:
        return MssqlLogFlushCounter(self.odbc_helper.with_application_name('smart_bulk_copy_monitor'))


class PostgresDestination:
    """PostgreSQL destination of the copy."""

    kind = 'postgres'

    def __init__(self, connection_factory: PostgresConnectionFactory):
        self.connection_factory = connection_factory

    def check_connectivity(self) -> None:
        try:
            self.connection_factory.test_connection()
        except psycopg2.Error as e:
            raise ConnectivityError(f"Cannot connect to destination: {e}") from e
        logger.info("✓ Destination connection OK")

    def truncate_table(self, table_name: str) -> None:
        schema, table = parse_schema_table(table_name)
        query = sql.SQL('TRUNCATE TABLE {}.{}').format(
            sql.Identifier(schema),
            sql.Identifier(table),
        )
        conn = None
        try:
            conn = self.connection_factory.get_conn()
            with conn.cursor() as cursor:
                cursor.execute(query)
            conn.commit()
        except psycopg2.Error as e:
            raise BulkCopyError(f"Cannot truncate destination table {table_name}: {e}") from e
        finally:
            self.connection_factory.release_conn(conn)
        logger.info(f"Truncated destination table {table_name}")

    def open_bulk_sink(self, table_name: str, config: BulkSinkConfig, application_name: Optional[str] = None):
        factory = self.connection_factory
        if application_name:
            factory = factory.with_application_name(application_name)
        return open_postgres_bulk_sink(factory, table_name, config)

    def counter_source(self) -> PostgresWalFlushCounter:
        return PostgresWalFlushCounter(self.connection_factory.with_application_name('smart_bulk_copy_monitor'))


def build_source(config: CopyConfig) -> MssqlSource:
    logger.debug(f"Source: {redact_connection_string(config.source_connection)}")
    return MssqlSource(OdbcConnectionHelper(config.source_connection), fetch_size=config.fetch_size)


def build_destination(config: CopyConfig):
    """
    Create the destination backend named by config.destination_kind.

    Raises:
        ValueError: On an unknown destination kind or malformed DSN
    """
    logger.debug(f"Destination ({config.destination_kind}): "
                 f"{redact_connection_string(config.destination_connection)}")
    if config.destination_kind == 'mssql':
        return MssqlDestination(OdbcConnectionHelper(config.destination_connection))
    if config.destination_kind == 'postgres':
        try:
            return PostgresDestination(PostgresConnectionFactory(config.destination_connection))
        except psycopg2.ProgrammingError as e:
            raise ValueError(f"Invalid PostgreSQL destination DSN: {e}") from e
    raise ValueError(f"Unknown destination kind '{config.destination_kind}'")
