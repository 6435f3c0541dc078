"""
Tests for the Copy Task Data Model

Logical partition predicates are evaluated against a real in-memory
SQLite table to check that the slices of a table cover every row exactly
once.
"""

import sqlite3

import pytest

from smart_bulk_copy.copy_task import (
    DEFAULT_SURROGATE_EXPRESSION,
    CopyTask,
    LogicalPartitionStrategy,
    PhysicalPartitionStrategy,
    render_predicate,
)


@pytest.fixture
def orders_db():
    """ORDERS table whose surrogate values are 0..7, plus some negative and large ones."""
    conn = sqlite3.connect(':memory:')
    conn.execute("CREATE TABLE orders (o_orderkey INTEGER PRIMARY KEY, surrogate INTEGER NOT NULL)")
    values = list(range(8)) + [-1, -6, -13, 2 ** 40 + 3, 1001]
    conn.executemany(
        "INSERT INTO orders (o_orderkey, surrogate) VALUES (?, ?)",
        [(i + 1, v) for i, v in enumerate(values)],
    )
    conn.commit()
    yield conn
    conn.close()


def select_keys(conn, predicate):
    return sorted(row[0] for row in conn.execute(f"SELECT o_orderkey FROM orders WHERE {predicate}"))


class TestPhysicalPredicate:
    """Test predicates of natively partitioned tables."""

    def test_lineitem_partitions(self):
        strategy = PhysicalPartitionStrategy('PF_LINEITEM', 'L_ORDERKEY')

        predicates = [render_predicate(strategy, n) for n in (1, 2, 3)]

        assert predicates == [
            "$partition.[PF_LINEITEM]([L_ORDERKEY]) = 1",
            "$partition.[PF_LINEITEM]([L_ORDERKEY]) = 2",
            "$partition.[PF_LINEITEM]([L_ORDERKEY]) = 3",
        ]

    def test_identifiers_are_bracket_escaped(self):
        strategy = PhysicalPartitionStrategy('pf]odd', 'order date')

        assert render_predicate(strategy, 2) == "$partition.[pf]]odd]([order date]) = 2"

    @pytest.mark.parametrize("function,column", [('', 'c'), ('pf', '')])
    def test_empty_names_rejected(self, function, column):
        with pytest.raises(ValueError):
            PhysicalPartitionStrategy(function, column)


class TestLogicalPredicate:
    """Test predicates of tables sliced by row surrogate."""

    def test_default_surrogate_is_physical_locator(self):
        strategy = LogicalPartitionStrategy(4)

        assert strategy.surrogate_expression == DEFAULT_SURROGATE_EXPRESSION
        assert render_predicate(strategy, 1) == "ABS(CAST(%%physloc%% AS BIGINT)) % 4 = 0"
        assert render_predicate(strategy, 4) == "ABS(CAST(%%physloc%% AS BIGINT)) % 4 = 3"

    def test_orders_scenario_buckets(self, orders_db):
        """Surrogates 0..7 with 4 partitions: partition n gets the values ≡ n-1 (mod 4)."""
        strategy = LogicalPartitionStrategy(4, surrogate_expression='surrogate')
        expected = {1: [0, 4], 2: [1, 5], 3: [2, 6], 4: [3, 7]}

        for n, surrogates in expected.items():
            rows = orders_db.execute(
                f"SELECT surrogate FROM orders WHERE surrogate BETWEEN 0 AND 7 "
                f"AND {render_predicate(strategy, n)} ORDER BY surrogate"
            ).fetchall()
            assert [r[0] for r in rows] == surrogates

    @pytest.mark.parametrize("partition_count", [1, 2, 3, 4, 7])
    def test_partitions_cover_every_row_exactly_once(self, orders_db, partition_count):
        strategy = LogicalPartitionStrategy(partition_count, surrogate_expression='surrogate')
        all_keys = select_keys(orders_db, "1 = 1")

        seen = []
        for n in range(1, partition_count + 1):
            seen.extend(select_keys(orders_db, render_predicate(strategy, n)))

        assert sorted(seen) == all_keys

    def test_single_partition_matches_everything(self):
        assert render_predicate(LogicalPartitionStrategy(1), 1).endswith("% 1 = 0")

    def test_partition_number_out_of_range(self):
        strategy = LogicalPartitionStrategy(4)

        with pytest.raises(ValueError, match="exceeds logical partition count"):
            render_predicate(strategy, 5)
        with pytest.raises(ValueError, match="at least 1"):
            render_predicate(strategy, 0)

    def test_invalid_partition_count(self):
        with pytest.raises(ValueError):
            LogicalPartitionStrategy(0)

    def test_unknown_strategy(self):
        with pytest.raises(TypeError):
            render_predicate(object(), 1)


class TestCopyTask:
    """Test the CopyTask value object."""

    def test_select_sql(self):
        task = CopyTask('dbo.LINEITEM', 2, PhysicalPartitionStrategy('PF_LINEITEM', 'L_ORDERKEY'))

        assert task.select_sql() == (
            "SELECT * FROM [dbo].[LINEITEM] WHERE $partition.[PF_LINEITEM]([L_ORDERKEY]) = 2"
        )
        assert task.is_physical
        assert task.describe() == "dbo.LINEITEM partition 2 (physical)"

    def test_logical_task(self):
        task = CopyTask('sales.Order Lines', 3, LogicalPartitionStrategy(7))

        assert not task.is_physical
        assert task.select_sql().startswith("SELECT * FROM [sales].[Order Lines] WHERE ABS(")
        assert task.predicate.endswith("% 7 = 2")

    def test_out_of_range_task_rejected_at_creation(self):
        with pytest.raises(ValueError):
            CopyTask('dbo.ORDERS', 8, LogicalPartitionStrategy(7))

    def test_empty_table_rejected(self):
        with pytest.raises(ValueError):
            CopyTask('', 1, LogicalPartitionStrategy(7))

    def test_tasks_are_immutable_and_hashable(self):
        task = CopyTask('dbo.ORDERS', 1, LogicalPartitionStrategy(4))

        with pytest.raises(AttributeError):
            task.partition_number = 2
        assert task == CopyTask('dbo.ORDERS', 1, LogicalPartitionStrategy(4))
        assert len({task, CopyTask('dbo.ORDERS', 1, LogicalPartitionStrategy(4))}) == 1
