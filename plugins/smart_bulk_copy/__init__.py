"""
Smart Bulk Copy

Parallel, partition-aware bulk copy of large SQL Server tables into a
SQL Server or PostgreSQL destination, runnable from the command line or
as an Apache Airflow DAG.

Modules:
- copy_task: CopyTask and the partition predicates it reads by
- partition_planner: Slice tables into physical or logical partitions
- metadata: SQL Server partition catalog queries
- work_queue: Thread-safe queue of copy tasks
- worker_pool: Parallel workers streaming partitions source → destination
- bulk_sink: Row readers and batched destination writers
- throughput_monitor: Destination log flush speed in MB/sec
- orchestrator: Connectivity → plan → truncate → copy → report
- backends: Source and destination bindings
- config: Run configuration from arguments and environment
- cli: smart-bulk-copy command

Performance Options:
- MAX_PARALLEL_TASKS=N: Parallel copy workers
- LOGICAL_PARTITION_COUNT=N: Slices per non-partitioned table
- BULK_BATCH_SIZE=N: Rows per committed destination batch
"""

__version__ = "1.0.0"

from smart_bulk_copy.config import CopyConfig
from smart_bulk_copy.copy_task import CopyTask, LogicalPartitionStrategy, PhysicalPartitionStrategy
from smart_bulk_copy.errors import (
    BulkCopyError,
    ConnectivityError,
    CopyError,
    MetadataError,
    MonitorError,
)
from smart_bulk_copy.orchestrator import CopyOrchestrator, CopyReport, run_bulk_copy

__all__ = [
    "CopyConfig",
    "CopyTask",
    "LogicalPartitionStrategy",
    "PhysicalPartitionStrategy",
    "BulkCopyError",
    "ConnectivityError",
    "CopyError",
    "MetadataError",
    "MonitorError",
    "CopyOrchestrator",
    "CopyReport",
    "run_bulk_copy",
]
