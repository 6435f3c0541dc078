"""
Run Configuration

Settings for one bulk copy run. Values come from explicit arguments
(CLI flags, DAG params) and fall back to environment variables, the same
way the transfer tuning knobs have always been read.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional
import os
import re

from smart_bulk_copy.copy_task import DEFAULT_SURROGATE_EXPRESSION
from smart_bulk_copy.table_config import parse_table_list

DESTINATION_KINDS = ('mssql', 'postgres')

DEFAULT_MAX_WORKERS = 7
DEFAULT_LOGICAL_PARTITIONS = 7
DEFAULT_BATCH_SIZE = 100000
DEFAULT_FETCH_SIZE = 10000
DEFAULT_MONITOR_INTERVAL = 5.0


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() in ('true', '1', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name, '').strip()
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer (got '{val}')")


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name, '').strip()
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number (got '{val}')")


@dataclass
class CopyConfig:
    """
    Configuration of a bulk copy run.

    Attributes:
        source_connection: ODBC connection string of the SQL Server source
        destination_connection: Connection string of the destination
            (ODBC for mssql, libpq DSN for postgres)
        destination_kind: 'mssql' or 'postgres'
        tables: Canonical 'schema.table' names to copy
        max_workers: Number of parallel copy workers
        logical_partition_count: Slices per table when it is not partitioned
        batch_size: Rows per destination bulk batch
        bulk_timeout: Destination statement timeout in seconds (0 = none)
        table_lock: Take a table-level lock on the destination while loading
        fetch_size: Rows fetched per round trip from the source cursor
        monitor_enabled: Run the log flush throughput monitor
        monitor_interval: Seconds between the two samples of one reading
        surrogate_expression: Per-row value hashed for logical partitions
        strict_exit_code: Treat per-partition failures as a failed run
    """

    source_connection: str
    destination_connection: str
    tables: List[str]
    destination_kind: str = 'mssql'
    max_workers: int = DEFAULT_MAX_WORKERS
    logical_partition_count: int = DEFAULT_LOGICAL_PARTITIONS
    batch_size: int = DEFAULT_BATCH_SIZE
    bulk_timeout: int = 0
    table_lock: bool = True
    fetch_size: int = DEFAULT_FETCH_SIZE
    monitor_enabled: bool = True
    monitor_interval: float = DEFAULT_MONITOR_INTERVAL
    surrogate_expression: str = DEFAULT_SURROGATE_EXPRESSION
    strict_exit_code: bool = False

    def __post_init__(self):
        self.tables = parse_table_list(self.tables)
        self.destination_kind = (self.destination_kind or 'mssql').strip().lower()

    def validate(self) -> 'CopyConfig':
        """
        Check the configuration for values the engine cannot run with.

        Returns:
            self, so calls can be chained

        Raises:
            ValueError: On the first invalid setting found
        """
        if not self.source_connection:
            raise ValueError("Source connection string is required")
        if not self.destination_connection:
            raise ValueError("Destination connection string is required")
        if self.destination_kind not in DESTINATION_KINDS:
            raise ValueError(
                f"Unknown destination kind '{self.destination_kind}': "
                f"expected one of {', '.join(DESTINATION_KINDS)}"
            )
        if not self.tables:
            raise ValueError("At least one table must be configured")
        if self.max_workers < 1:
            raise ValueError(f"Worker count must be at least 1 (got {self.max_workers})")
        if self.logical_partition_count < 1:
            raise ValueError(
                f"Logical partition count must be at least 1 (got {self.logical_partition_count})"
            )
        if self.batch_size < 1:
            raise ValueError(f"Batch size must be at least 1 (got {self.batch_size})")
        if self.fetch_size < 1:
            raise ValueError(f"Fetch size must be at least 1 (got {self.fetch_size})")
        if self.bulk_timeout < 0:
            raise ValueError(f"Bulk timeout cannot be negative (got {self.bulk_timeout})")
        if self.monitor_interval <= 0:
            raise ValueError(f"Monitor interval must be positive (got {self.monitor_interval})")
        return self

    def with_overrides(self, **overrides) -> 'CopyConfig':
        """Return a copy with the given non-None settings replaced."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values)

    @classmethod
    def from_env(cls, **overrides) -> 'CopyConfig':
        """
        Build a configuration from environment variables.

        Environment:
            SBC_SOURCE, SBC_DESTINATION, SBC_DESTINATION_KIND,
            SBC_TABLES (comma-separated), MAX_PARALLEL_TASKS,
            LOGICAL_PARTITION_COUNT, BULK_BATCH_SIZE, SOURCE_FETCH_SIZE,
            MONITOR_INTERVAL_SECONDS, DISABLE_LOG_MONITOR, STRICT_EXIT_CODE

        Args:
            **overrides: Explicit values; None means "use the environment"

        Returns:
            CopyConfig (not yet validated)
        """
        tables_env = os.environ.get('SBC_TABLES', '')
        values: Dict[str, Any] = {
            'source_connection': os.environ.get('SBC_SOURCE', ''),
            'destination_connection': os.environ.get('SBC_DESTINATION', ''),
            'destination_kind': os.environ.get('SBC_DESTINATION_KIND', 'mssql'),
            'tables': [tables_env] if tables_env else [],
            'max_workers': _env_int('MAX_PARALLEL_TASKS', DEFAULT_MAX_WORKERS),
            'logical_partition_count': _env_int('LOGICAL_PARTITION_COUNT', DEFAULT_LOGICAL_PARTITIONS),
            'batch_size': _env_int('BULK_BATCH_SIZE', DEFAULT_BATCH_SIZE),
            'fetch_size': _env_int('SOURCE_FETCH_SIZE', DEFAULT_FETCH_SIZE),
            'monitor_interval': _env_float('MONITOR_INTERVAL_SECONDS', DEFAULT_MONITOR_INTERVAL),
            'monitor_enabled': not _env_bool('DISABLE_LOG_MONITOR'),
            'strict_exit_code': _env_bool('STRICT_EXIT_CODE'),
        }

        for key, value in overrides.items():
            if value is None:
                continue
            if key == 'tables' and not value:
                continue
            values[key] = value

        return cls(**values)

    def as_log_dict(self) -> Dict[str, Any]:
        """Settings safe to log (connection strings are left out)."""
        return {
            'destination_kind': self.destination_kind,
            'tables': list(self.tables),
            'max_workers': self.max_workers,
            'logical_partition_count': self.logical_partition_count,
            'batch_size': self.batch_size,
            'monitor_enabled': self.monitor_enabled,
            'monitor_interval': self.monitor_interval,
        }


_PASSWORD_PATTERN = re.compile(r'(?i)\b(pwd|password)(\s*=\s*)(\{[^}]*\}|[^;\s]*)')


def redact_connection_string(conn_str: Optional[str]) -> str:
    """Mask password values in an ODBC or libpq connection string."""
    if not conn_str:
        return ''
    return _PASSWORD_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}***", conn_str)
