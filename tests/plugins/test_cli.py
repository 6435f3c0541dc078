"""
Tests for the smart-bulk-copy command
"""

import pytest
from unittest.mock import patch
from click.testing import CliRunner

from smart_bulk_copy.cli import EXIT_FATAL, EXIT_OK, EXIT_PARTITION_FAILURES, main

BASE_ARGS = [
    '--source', 'DRIVER={ODBC Driver 18 for SQL Server};SERVER=src',
    '--destination', 'DRIVER={ODBC Driver 18 for SQL Server};SERVER=dst',
    '--table', 'dbo.ORDERS',
    '--table', 'dbo.LINEITEM',
    '--workers', '3',
    '--logical-partitions', '4',
    '--no-monitor',
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ('SBC_SOURCE', 'SBC_DESTINATION', 'SBC_TABLES', 'STRICT_EXIT_CODE', 'MAX_PARALLEL_TASKS'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def backends(fake_source, fake_destination):
    with patch('smart_bulk_copy.cli.build_source', return_value=fake_source), \
            patch('smart_bulk_copy.cli.build_destination', return_value=fake_destination):
        yield fake_source, fake_destination


class TestCli:
    def test_successful_run(self, backends):
        fake_source, fake_destination = backends

        result = CliRunner().invoke(main, BASE_ARGS)

        assert result.exit_code == EXIT_OK, result.output
        assert "Bulk copy completed: 4,000 rows" in result.output
        assert len(fake_destination.tables['dbo.ORDERS']) == 1000

    def test_partition_failures_exit_zero_by_default(self, backends):
        backends[1].fail_values = {2}

        result = CliRunner().invoke(main, BASE_ARGS)

        assert result.exit_code == EXIT_OK
        assert "✗ dbo.ORDERS partition 3" in result.output

    def test_strict_exit_code(self, backends):
        backends[1].fail_values = {2}

        result = CliRunner().invoke(main, BASE_ARGS + ['--strict'])

        assert result.exit_code == EXIT_PARTITION_FAILURES

    def test_strict_from_environment(self, backends, monkeypatch):
        backends[1].fail_values = {2}
        monkeypatch.setenv('STRICT_EXIT_CODE', 'true')

        result = CliRunner().invoke(main, BASE_ARGS)

        assert result.exit_code == EXIT_PARTITION_FAILURES

    def test_unreachable_source(self, backends):
        backends[0].reachable = False

        result = CliRunner().invoke(main, BASE_ARGS)

        assert result.exit_code == EXIT_FATAL

    def test_missing_table(self, backends):
        result = CliRunner().invoke(main, BASE_ARGS + ['--table', 'dbo.MISSING'])

        assert result.exit_code == EXIT_FATAL
        assert backends[1].events == []

    def test_missing_source(self, backends):
        args = [a for a in BASE_ARGS[2:]]

        result = CliRunner().invoke(main, args)

        assert result.exit_code == EXIT_FATAL
        assert "Source connection string is required" in result.output

    def test_tables_from_environment(self, backends, monkeypatch):
        monkeypatch.setenv('SBC_TABLES', 'dbo.ORDERS')
        args = [a for a in BASE_ARGS if a not in ('--table', 'dbo.ORDERS', 'dbo.LINEITEM')]

        result = CliRunner().invoke(main, args)

        assert result.exit_code == EXIT_OK, result.output
        assert backends[1].tables['dbo.LINEITEM'] == []

    def test_invalid_worker_count(self, backends):
        result = CliRunner().invoke(main, BASE_ARGS + ['--workers', '0'])

        assert result.exit_code != EXIT_OK
