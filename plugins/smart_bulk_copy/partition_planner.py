"""
Partition Planner

Turns a source table into CopyTasks, one per slice. Natively partitioned
tables are sliced along their physical partitions so SQL Server can
eliminate the others on each read; every other table is sliced into a
fixed number of logical partitions by hashing a per-row surrogate.
"""

from typing import Iterable, List
import logging

from smart_bulk_copy.copy_task import (
    DEFAULT_SURROGATE_EXPRESSION,
    CopyTask,
    LogicalPartitionStrategy,
    PhysicalPartitionStrategy,
)
from smart_bulk_copy.errors import MetadataError

logger = logging.getLogger(__name__)

DEFAULT_LOGICAL_PARTITION_COUNT = 7


class PartitionPlanner:
    """Plan the CopyTasks of source tables from their partition metadata."""

    def __init__(
        self,
        metadata_provider,
        logical_partition_count: int = DEFAULT_LOGICAL_PARTITION_COUNT,
        surrogate_expression: str = DEFAULT_SURROGATE_EXPRESSION,
    ):
        """
        Args:
            metadata_provider: Object with is_physically_partitioned(table)
                and physical_partition_info(table)
            logical_partition_count: Slices per table without physical partitions
            surrogate_expression: Per-row value hashed for logical slices
        """
        if logical_partition_count < 1:
            raise ValueError(
                f"Logical partition count must be at least 1 (got {logical_partition_count})"
            )
        self.metadata_provider = metadata_provider
        self.logical_partition_count = logical_partition_count
        self.surrogate_expression = surrogate_expression

    def plan(self, table_name: str) -> List[CopyTask]:
        """
        Plan the copy of one table.

        Args:
            table_name: Canonical 'schema.table' name

        Returns:
            CopyTasks with dense partition numbers starting at 1

        Raises:
            MetadataError: If the metadata queries fail or the table is missing
        """
        if self.metadata_provider.is_physically_partitioned(table_name):
            info = self.metadata_provider.physical_partition_info(table_name)
            if info.partition_count < 1:
                raise MetadataError(
                    f"Table {table_name} reports {info.partition_count} partitions"
                )

            strategy = PhysicalPartitionStrategy(
                partition_function=info.function_name,
                partition_column=info.column,
            )
            logger.info(
                f"Table {table_name} is partitioned. Bulk copy will be parallelized using "
                f"{info.partition_count} partition(s) of {info.function_name}({info.column})."
            )
            return [
                CopyTask(table_name=table_name, partition_number=n, strategy=strategy)
                for n in range(1, info.partition_count + 1)
            ]

        strategy = LogicalPartitionStrategy(
            partition_count=self.logical_partition_count,
            surrogate_expression=self.surrogate_expression,
        )
        logger.info(
            f"Table {table_name} is NOT partitioned. Bulk copy will be parallelized using "
            f"{self.logical_partition_count} logical partitions."
        )
        return [
            CopyTask(table_name=table_name, partition_number=n, strategy=strategy)
            for n in range(1, self.logical_partition_count + 1)
        ]

    def plan_tables(self, table_names: Iterable[str]) -> List[CopyTask]:
        """Plan every table and concatenate the tasks in table order."""
        tasks: List[CopyTask] = []
        for table_name in table_names:
            tasks.extend(self.plan(table_name))
        logger.info(f"Planned {len(tasks)} copy task(s)")
        return tasks
