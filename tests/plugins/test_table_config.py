"""
Tests for Table Configuration Utility Module
"""

import pytest

from smart_bulk_copy.table_config import (
    normalize_table_name,
    parse_schema_table,
    parse_table_list,
    quote_mssql_identifier,
    quote_mssql_table,
)


class TestParseSchemaTable:
    """Test parsing of single table entries."""

    @pytest.mark.parametrize("entry,expected", [
        ('dbo.ORDERS', ('dbo', 'ORDERS')),
        (' sales.Customers ', ('sales', 'Customers')),
        ('ORDERS', ('dbo', 'ORDERS')),
        ('[dbo].[Order Lines]', ('dbo', 'Order Lines')),
        ('[odd]]schema].[t.1]', ('odd]schema', 't.1')),
        ('[LINEITEM]', ('dbo', 'LINEITEM')),
    ])
    def test_valid(self, entry, expected):
        assert parse_schema_table(entry) == expected

    def test_custom_default_schema(self):
        assert parse_schema_table('orders', default_schema='public') == ('public', 'orders')

    @pytest.mark.parametrize("entry", ['', '   ', '.ORDERS', 'dbo.', 'a.b.c', '[dbo.ORDERS', 'dbo].[x'])
    def test_invalid(self, entry):
        with pytest.raises(ValueError):
            parse_schema_table(entry)


class TestParseTableList:
    """Test parsing of configured table lists."""

    def test_comma_separated_and_repeated(self):
        assert parse_table_list(['dbo.ORDERS, LINEITEM', 'sales.Customers']) == [
            'dbo.ORDERS', 'dbo.LINEITEM', 'sales.Customers'
        ]

    def test_commas_inside_brackets(self):
        assert parse_table_list(['[dbo].[a,b], dbo.c']) == ['dbo.a,b', 'dbo.c']

    def test_duplicates_removed(self, caplog):
        assert parse_table_list(['dbo.ORDERS', 'ORDERS', '[dbo].[ORDERS]']) == ['dbo.ORDERS']
        assert "listed more than once" in caplog.text

    def test_empty(self):
        assert parse_table_list([]) == []
        assert parse_table_list([' , ']) == []


class TestQuoting:
    def test_identifier(self):
        assert quote_mssql_identifier('Order Lines') == '[Order Lines]'
        assert quote_mssql_identifier('a]b') == '[a]]b]'

    def test_table(self):
        assert quote_mssql_table('LINEITEM') == '[dbo].[LINEITEM]'
        assert quote_mssql_table('[s].[t]') == '[s].[t]'

    def test_normalize(self):
        assert normalize_table_name('[sales].[Orders]') == 'sales.Orders'
