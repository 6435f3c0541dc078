"""
Tests for the Partition Metadata Provider
"""

import logging

import pytest
from unittest.mock import Mock
import pyodbc

from smart_bulk_copy.errors import MetadataError
from smart_bulk_copy.metadata import (
    PARTITION_COUNT_QUERY,
    PARTITION_INFO_QUERY,
    TABLE_OBJECT_QUERY,
    MssqlMetadataProvider,
    PhysicalPartitionInfo,
)


@pytest.fixture
def odbc_helper():
    return Mock()


class TestIsPhysicallyPartitioned:
    """Test partition detection from sys.dm_db_partition_stats."""

    @pytest.mark.parametrize("partition_count,expected", [(1, False), (3, True), (0, False)])
    def test_partition_count(self, odbc_helper, partition_count, expected):
        odbc_helper.get_scalar.side_effect = [1429580131, partition_count]

        assert MssqlMetadataProvider(odbc_helper).is_physically_partitioned('dbo.LINEITEM') is expected

        odbc_helper.get_scalar.assert_any_call(TABLE_OBJECT_QUERY, ['[dbo].[LINEITEM]'])
        odbc_helper.get_scalar.assert_any_call(PARTITION_COUNT_QUERY, ['[dbo].[LINEITEM]'])

    def test_missing_table(self, odbc_helper):
        odbc_helper.get_scalar.return_value = None

        with pytest.raises(MetadataError, match="does not exist"):
            MssqlMetadataProvider(odbc_helper).is_physically_partitioned('dbo.MISSING')

    def test_driver_error_wrapped(self, odbc_helper):
        odbc_helper.get_scalar.side_effect = pyodbc.Error('08S01', 'Communication link failure')

        with pytest.raises(MetadataError) as exc_info:
            MssqlMetadataProvider(odbc_helper).is_physically_partitioned('dbo.ORDERS')
        assert isinstance(exc_info.value.__cause__, pyodbc.Error)


class TestPhysicalPartitionInfo:
    """Test partition scheme lookup."""

    def test_lineitem(self, odbc_helper):
        odbc_helper.get_first.return_value = ('PF_LINEITEM', 'L_ORDERKEY', 3)
        odbc_helper.get_scalar.return_value = 3

        info = MssqlMetadataProvider(odbc_helper).physical_partition_info('dbo.LINEITEM')

        assert info == PhysicalPartitionInfo('PF_LINEITEM', 'L_ORDERKEY', 3)
        odbc_helper.get_first.assert_called_once_with(PARTITION_INFO_QUERY, ['[dbo].[LINEITEM]'])

    def test_fanout_wins_over_statistics(self, odbc_helper, caplog):
        odbc_helper.get_first.return_value = ('PF_LINEITEM', 'L_ORDERKEY', 4)
        odbc_helper.get_scalar.return_value = 3

        with caplog.at_level(logging.WARNING):
            info = MssqlMetadataProvider(odbc_helper).physical_partition_info('dbo.LINEITEM')

        assert info.partition_count == 4
        assert "fanout 4" in caplog.text

    @pytest.mark.parametrize("row", [None, ('PF',), (None, 'C', 3), ('PF', 'C', 0)])
    def test_unexpected_shape(self, odbc_helper, row):
        odbc_helper.get_first.return_value = row
        odbc_helper.get_scalar.return_value = 3

        with pytest.raises(MetadataError):
            MssqlMetadataProvider(odbc_helper).physical_partition_info('dbo.LINEITEM')

    def test_driver_error_wrapped(self, odbc_helper):
        odbc_helper.get_first.side_effect = pyodbc.ProgrammingError('42000', 'permission denied')

        with pytest.raises(MetadataError):
            MssqlMetadataProvider(odbc_helper).physical_partition_info('dbo.LINEITEM')
