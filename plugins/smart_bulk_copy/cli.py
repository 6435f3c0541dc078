"""
Command line entry point: smart-bulk-copy.

Options fall back to the environment variables read by
CopyConfig.from_env, so a run can be configured either way.

Exit codes:
    0  the copy ran (per-partition failures are listed in the report)
    1  invalid configuration, unreachable server, unreadable metadata
       or a destination table that could not be truncated
    2  --strict and at least one partition was not copied
"""

import logging
import signal
import sys

import click

from smart_bulk_copy.backends import build_destination, build_source
from smart_bulk_copy.config import DESTINATION_KINDS, CopyConfig
from smart_bulk_copy.errors import BulkCopyError, ConnectivityError, MetadataError
from smart_bulk_copy.orchestrator import CopyOrchestrator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTITION_FAILURES = 2

LOG_FORMAT = '%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s'


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)


@click.command(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--source', 'source_connection', help='ODBC connection string of the SQL Server source [SBC_SOURCE]')
@click.option('--destination', 'destination_connection',
              help='Destination connection string: ODBC for mssql, libpq DSN for postgres [SBC_DESTINATION]')
@click.option('--destination-kind', type=click.Choice(DESTINATION_KINDS, case_sensitive=False),
              help='Destination database type [SBC_DESTINATION_KIND, default mssql]')
@click.option('--table', 'tables', multiple=True,
              help='Table to copy as schema.table; repeatable [SBC_TABLES, comma-separated]')
@click.option('--workers', 'max_workers', type=click.IntRange(min=1),
              help='Parallel copy workers [MAX_PARALLEL_TASKS, default 7]')
@click.option('--logical-partitions', 'logical_partition_count', type=click.IntRange(min=1),
              help='Slices per non-partitioned table [LOGICAL_PARTITION_COUNT, default 7]')
@click.option('--batch-size', type=click.IntRange(min=1),
              help='Rows per committed destination batch [BULK_BATCH_SIZE, default 100000]')
@click.option('--monitor-interval', type=click.FloatRange(min=0, min_open=True),
              help='Seconds per log flush reading [MONITOR_INTERVAL_SECONDS, default 5]')
@click.option('--no-monitor', is_flag=True, default=False, help='Do not monitor destination log flush speed')
@click.option('--strict', is_flag=True, default=False,
              help='Exit with status 2 when any partition was not copied [STRICT_EXIT_CODE]')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              default='INFO', show_default=True)
def main(source_connection, destination_connection, destination_kind, tables, max_workers,
         logical_partition_count, batch_size, monitor_interval, no_monitor, strict, log_level):
    """Copy SQL Server tables in parallel, one partition per task."""
    configure_logging(log_level)

    try:
        config = CopyConfig.from_env(
            source_connection=source_connection,
            destination_connection=destination_connection,
            destination_kind=destination_kind,
            tables=list(tables),
            max_workers=max_workers,
            logical_partition_count=logical_partition_count,
            batch_size=batch_size,
            monitor_interval=monitor_interval,
            monitor_enabled=False if no_monitor else None,
            strict_exit_code=True if strict else None,
        ).validate()
        source = build_source(config)
        destination = build_destination(config)
    except ValueError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(EXIT_FATAL)

    logger.info(f"Bulk copy settings: {config.as_log_dict()}")
    orchestrator = CopyOrchestrator(config, source, destination)

    def handle_interrupt(signum, frame):
        orchestrator.cancel()

    previous_handler = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        report = orchestrator.run()
    except (ConnectivityError, MetadataError) as e:
        logger.error(f"✗ Bulk copy aborted: {e}")
        sys.exit(EXIT_FATAL)
    except BulkCopyError as e:
        logger.error(f"✗ Bulk copy failed: {e}")
        sys.exit(EXIT_FATAL)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    click.echo(report.summary())

    if not report.success and config.strict_exit_code:
        sys.exit(EXIT_PARTITION_FAILURES)
    sys.exit(EXIT_OK)


if __name__ == '__main__':
    main()
