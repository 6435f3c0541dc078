"""
Copy Task Data Model

A CopyTask describes one independently-copyable slice of a table. The
slice is defined by a partition strategy which renders the WHERE clause
used to read it:

- PhysicalPartitionStrategy: the table is already partitioned by SQL
  Server; the slice is one physical partition, filtered with
  $partition.<function>(<column>) so the engine can eliminate the others.
- LogicalPartitionStrategy: the table is not partitioned; the slice is the
  set of rows whose per-row surrogate hashes to this partition's bucket.

For one table, the predicates of all of its tasks cover every row exactly
once. Tasks are immutable once planned.
"""

from dataclasses import dataclass
from typing import Union

from smart_bulk_copy.table_config import quote_mssql_identifier, quote_mssql_table

# Physical row locator, stable for the duration of one scan
DEFAULT_SURROGATE_EXPRESSION = '%%physloc%%'


@dataclass(frozen=True)
class PhysicalPartitionStrategy:
    """Slice a natively partitioned table by its partition function."""

    partition_function: str
    partition_column: str

    def __post_init__(self):
        if not self.partition_function:
            raise ValueError("Partition function name cannot be empty")
        if not self.partition_column:
            raise ValueError("Partitioning column name cannot be empty")


@dataclass(frozen=True)
class LogicalPartitionStrategy:
    """Slice any table into partition_count buckets by hashing a row surrogate."""

    partition_count: int
    surrogate_expression: str = DEFAULT_SURROGATE_EXPRESSION

    def __post_init__(self):
        if self.partition_count < 1:
            raise ValueError(f"Logical partition count must be at least 1 (got {self.partition_count})")
        if not self.surrogate_expression:
            raise ValueError("Surrogate expression cannot be empty")


PartitionStrategy = Union[PhysicalPartitionStrategy, LogicalPartitionStrategy]


def render_predicate(strategy: PartitionStrategy, partition_number: int) -> str:
    """
    Render the WHERE predicate selecting one partition of a table.

    Args:
        strategy: Partition strategy of the task
        partition_number: 1-based partition ordinal

    Returns:
        SQL Server predicate text

    Raises:
        ValueError: If the ordinal is out of range for the strategy
        TypeError: If the strategy is not a known partition strategy
    """
    if partition_number < 1:
        raise ValueError(f"Partition number must be at least 1 (got {partition_number})")

    if isinstance(strategy, PhysicalPartitionStrategy):
        function = quote_mssql_identifier(strategy.partition_function)
        column = quote_mssql_identifier(strategy.partition_column)
        return f"$partition.{function}({column}) = {partition_number}"

    if isinstance(strategy, LogicalPartitionStrategy):
        if partition_number > strategy.partition_count:
            raise ValueError(
                f"Partition number {partition_number} exceeds logical partition count "
                f"{strategy.partition_count}"
            )
        return (
            f"ABS(CAST({strategy.surrogate_expression} AS BIGINT)) "
            f"% {strategy.partition_count} = {partition_number - 1}"
        )

    raise TypeError(f"Unknown partition strategy: {type(strategy).__name__}")


@dataclass(frozen=True)
class CopyTask:
    """One unit of work: copy the rows of table_name matching this partition."""

    table_name: str
    partition_number: int
    strategy: PartitionStrategy

    def __post_init__(self):
        if not self.table_name:
            raise ValueError("Table name cannot be empty")
        # Fails fast on an ordinal the strategy cannot render
        render_predicate(self.strategy, self.partition_number)

    @property
    def predicate(self) -> str:
        return render_predicate(self.strategy, self.partition_number)

    @property
    def is_physical(self) -> bool:
        return isinstance(self.strategy, PhysicalPartitionStrategy)

    def select_sql(self) -> str:
        """SELECT statement reading this partition from the source."""
        return f"SELECT * FROM {quote_mssql_table(self.table_name)} WHERE {self.predicate}"

    def describe(self) -> str:
        kind = 'physical' if self.is_physical else 'logical'
        return f"{self.table_name} partition {self.partition_number} ({kind})"
