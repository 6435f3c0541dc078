"""
Smart Bulk Copy DAG

Copies large SQL Server tables into a destination database as fast as
possible by splitting each table into partitions and loading them in
parallel:

1. Check that source and destination can be reached
2. Plan the partitions of every table (physical partitions when the table
   is natively partitioned, hashed logical slices otherwise)
3. Truncate the destination tables and bulk copy all partitions with a
   pool of parallel workers, monitoring destination log flush speed
4. Summarize the run

Destination tables must already exist with the source's column layout.
The DAG is triggered manually.
"""

from airflow.sdk import dag, task
from airflow.exceptions import AirflowFailException
from airflow.models.param import Param
from pendulum import datetime
from typing import Any, Dict, List, Tuple
import logging
import os

from smart_bulk_copy.backends import MssqlDestination, MssqlSource, PostgresDestination
from smart_bulk_copy.config import CopyConfig
from smart_bulk_copy.odbc_helper import OdbcConnectionHelper
from smart_bulk_copy.orchestrator import run_bulk_copy
from smart_bulk_copy.partition_planner import PartitionPlanner
from smart_bulk_copy.postgres_helper import PostgresConnectionFactory

MAX_ACTIVE_TASKS = int(os.environ.get('MAX_ACTIVE_TASKS', '4'))

logger = logging.getLogger(__name__)


def build_run(params: Dict[str, Any]) -> Tuple[CopyConfig, MssqlSource, Any]:
    """
    Build the run configuration and backends from DAG params.

    Connection strings come from the Airflow connections named in the params.
    """
    source_helper = OdbcConnectionHelper.from_airflow_connection(params["source_conn_id"])

    target_kind = params["target_kind"]
    if target_kind == "postgres":
        factory = PostgresConnectionFactory.from_airflow_connection(params["target_conn_id"])
        destination = PostgresDestination(factory)
        destination_connection = factory.dsn
    else:
        target_helper = OdbcConnectionHelper.from_airflow_connection(params["target_conn_id"])
        destination = MssqlDestination(target_helper)
        destination_connection = target_helper.connection_string

    config = CopyConfig.from_env(
        source_connection=source_helper.connection_string,
        destination_connection=destination_connection,
        destination_kind=target_kind,
        tables=params["tables"],
        max_workers=params["max_workers"],
        logical_partition_count=params["logical_partitions"],
        batch_size=params["batch_size"],
    ).validate()

    source = MssqlSource(source_helper, fetch_size=config.fetch_size)
    return config, source, destination


def preview_plan(config: CopyConfig, source: MssqlSource) -> List[Dict[str, Any]]:
    """Plan every configured table from the source catalog, as XCom-friendly dicts."""
    planner = PartitionPlanner(
        source.metadata_provider(),
        logical_partition_count=config.logical_partition_count,
        surrogate_expression=config.surrogate_expression,
    )
    return [
        {
            "table": t.table_name,
            "partition": t.partition_number,
            "physical": t.is_physical,
            "predicate": t.predicate,
        }
        for t in planner.plan_tables(config.tables)
    ]


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,
    catchup=False,
    max_active_runs=1,
    max_active_tasks=MAX_ACTIVE_TASKS,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        # A retry would truncate and reload every table
        "retries": 0,
    },
    params={
        "source_conn_id": Param(
            default="mssql_source",
            type="string",
            description="SQL Server source connection ID"
        ),
        "target_conn_id": Param(
            default="mssql_target",
            type="string",
            description="Destination connection ID"
        ),
        "target_kind": Param(
            default="mssql",
            type="string",
            enum=["mssql", "postgres"],
            description="Destination database type"
        ),
        "tables": Param(
            default=[],
            type="array",
            description="Tables to copy as schema.table (default schema dbo)"
        ),
        "max_workers": Param(
            default=7,
            type="integer",
            minimum=1,
            maximum=64,
            description="Number of parallel copy workers"
        ),
        "logical_partitions": Param(
            default=7,
            type="integer",
            minimum=1,
            maximum=1000,
            description="Slices per table when the table is not partitioned"
        ),
        "batch_size": Param(
            default=100000,
            type="integer",
            minimum=1000,
            maximum=1000000,
            description="Rows per committed destination batch"
        ),
        "fail_on_partition_errors": Param(
            default=True,
            type="boolean",
            description="Fail the DAG run when any partition could not be copied"
        ),
    },
    tags=["bulk-copy", "mssql", "postgres", "etl", "full-refresh"],
)
def smart_bulk_copy():
    """
    Parallel partitioned bulk copy of SQL Server tables.
    """

    @task
    def check_connectivity(**context) -> str:
        """Fail fast when either end cannot be reached."""
        config, source, destination = build_run(context["params"])
        source.check_connectivity()
        destination.check_connectivity()
        return f"{len(config.tables)} table(s) ready to copy"

    @task
    def plan_partitions(ready: str, **context) -> List[Dict[str, Any]]:
        """
        Preview the copy tasks of every table.

        The plan is for inspection only: bulk_copy plans again from the
        catalog when it runs, and warns if the partition count differs.

        Returns:
            One entry per partition, for inspection in XCom
        """
        logger.info(ready)
        config, source, destination = build_run(context["params"])
        return preview_plan(config, source)

    @task
    def bulk_copy(plan: List[Dict[str, Any]], **context) -> Dict[str, Any]:
        """Truncate the destination tables and copy every partition."""
        logger.info(f"Previewed plan has {len(plan)} partition(s)")
        config, source, destination = build_run(context["params"])
        report = run_bulk_copy(config, source=source, destination=destination)
        if report.total_tasks != len(plan):
            logger.warning(
                f"Copied with {report.total_tasks} partition(s), but the preview had {len(plan)}; "
                f"partition metadata changed between tasks"
            )
        return report.to_dict()

    @task
    def summarize(report: Dict[str, Any], **context) -> str:
        """Log the outcome and fail the run on partition errors if requested."""
        params = context["params"]

        logger.info(
            f"Copied {report['rows_copied']:,} rows in {report['elapsed_seconds']:.2f}s "
            f"across {report['total_tasks']} partition(s)"
        )
        for table, rows in report["rows_by_table"].items():
            logger.info(f"  {table}: {rows:,} rows")
        if report["peak_mb_per_second"]:
            logger.info(f"Peak log flush speed: {report['peak_mb_per_second']:.2f} MB/sec")

        failures = report["failed_partitions"] + report["cancelled_partitions"]
        if failures:
            for table, partition in failures:
                logger.error(f"✗ {table} partition {partition} was not copied")
            if params["fail_on_partition_errors"]:
                raise AirflowFailException(f"{len(failures)} partition(s) were not copied")

        return "Bulk copy complete" if report["success"] else "Bulk copy completed with errors"

    ready = check_connectivity()
    plan = plan_partitions(ready)
    report = bulk_copy(plan)
    summarize(report)


# Instantiate the DAG
smart_bulk_copy()
