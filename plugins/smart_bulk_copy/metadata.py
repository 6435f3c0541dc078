"""
Partition Metadata Provider

Reads SQL Server catalog views to decide whether a source table is
physically partitioned and, if it is, which partition function and
column slice it.
"""

from dataclasses import dataclass
from typing import Optional
import logging

import pyodbc

from smart_bulk_copy.errors import MetadataError
from smart_bulk_copy.odbc_helper import OdbcConnectionHelper
from smart_bulk_copy.table_config import quote_mssql_table

logger = logging.getLogger(__name__)

TABLE_OBJECT_QUERY = "SELECT OBJECT_ID(?, 'U')"

# Heap (0) or clustered index (1): the structures holding the table's rows
PARTITION_COUNT_QUERY = """
    SELECT COUNT(*)
    FROM sys.dm_db_partition_stats
    WHERE [object_id] = OBJECT_ID(?)
    AND index_id IN (0, 1)
"""

PARTITION_INFO_QUERY = """
    SELECT
        pf.[name] AS partition_function,
        c.[name] AS partition_column,
        pf.fanout AS partition_count
    FROM sys.indexes i
    INNER JOIN sys.partition_schemes ps ON i.data_space_id = ps.data_space_id
    INNER JOIN sys.partition_functions pf ON ps.function_id = pf.function_id
    INNER JOIN sys.index_columns ic ON i.[object_id] = ic.[object_id] AND i.index_id = ic.index_id
    INNER JOIN sys.columns c ON c.[object_id] = i.[object_id] AND c.column_id = ic.column_id
    WHERE i.[object_id] = OBJECT_ID(?)
    AND i.index_id IN (0, 1)
    AND ic.partition_ordinal = 1
"""


@dataclass(frozen=True)
class PhysicalPartitionInfo:
    """Partitioning of a natively partitioned table."""

    function_name: str
    column: str
    partition_count: int


class MssqlMetadataProvider:
    """MetadataProvider backed by SQL Server partition statistics and catalog views."""

    def __init__(self, odbc_helper: OdbcConnectionHelper):
        self.odbc_helper = odbc_helper

    def _ensure_table_exists(self, table_name: str) -> None:
        object_id = self.odbc_helper.get_scalar(TABLE_OBJECT_QUERY, [quote_mssql_table(table_name)])
        if object_id is None:
            raise MetadataError(f"Source table {table_name} does not exist")

    def _partition_count(self, table_name: str) -> int:
        count = self.odbc_helper.get_scalar(PARTITION_COUNT_QUERY, [quote_mssql_table(table_name)])
        return int(count or 0)

    def is_physically_partitioned(self, table_name: str) -> bool:
        """
        Check whether a source table is spread over more than one partition.

        Args:
            table_name: Canonical 'schema.table' name

        Returns:
            True if the heap/clustered index has more than one partition

        Raises:
            MetadataError: If the table does not exist or the query fails
        """
        try:
            self._ensure_table_exists(table_name)
            return self._partition_count(table_name) > 1
        except pyodbc.Error as e:
            raise MetadataError(f"Could not read partition statistics for {table_name}: {e}") from e

    def physical_partition_info(self, table_name: str) -> PhysicalPartitionInfo:
        """
        Read the partition function, partitioning column and partition count.

        The partition count is the function's fanout, so every ordinal that
        $partition can return is covered even when some partitions are empty.

        Args:
            table_name: Canonical 'schema.table' name

        Returns:
            PhysicalPartitionInfo

        Raises:
            MetadataError: If the catalog query fails or returns no usable row
        """
        try:
            row: Optional[tuple] = self.odbc_helper.get_first(
                PARTITION_INFO_QUERY, [quote_mssql_table(table_name)]
            )
            stats_count = self._partition_count(table_name)
        except pyodbc.Error as e:
            raise MetadataError(f"Could not read partition scheme for {table_name}: {e}") from e

        if not row or len(row) < 3:
            raise MetadataError(f"No partition scheme found for table {table_name}")

        function_name, column, fanout = row[0], row[1], row[2]
        if not function_name or not column or not fanout or int(fanout) < 1:
            raise MetadataError(
                f"Unexpected partition scheme for {table_name}: "
                f"function={function_name!r}, column={column!r}, fanout={fanout!r}"
            )

        if stats_count != int(fanout):
            logger.warning(
                f"Table {table_name}: partition statistics report {stats_count} partition(s) "
                f"but {function_name} has fanout {fanout}, planning {fanout}"
            )

        return PhysicalPartitionInfo(
            function_name=str(function_name),
            column=str(column),
            partition_count=int(fanout),
        )
