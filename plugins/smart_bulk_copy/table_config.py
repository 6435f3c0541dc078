"""
Table Configuration Utility Module

This module handles parsing of configured table names in 'schema.table'
format and renders them as quoted SQL Server identifiers.
"""

import re
from typing import Iterable, List, Tuple
import logging

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = 'dbo'

_BRACKETED_PATTERN = re.compile(r'^\[((?:[^\]]|\]\])+)\]\.\[((?:[^\]]|\]\])+)\]$')
_BRACKETED_TABLE_PATTERN = re.compile(r'^\[((?:[^\]]|\]\])+)\]$')


def parse_schema_table(entry: str, default_schema: str = DEFAULT_SCHEMA) -> Tuple[str, str]:
    """
    Parse single 'schema.table' entry.

    Handles:
    - Simple format: "dbo.ORDERS" -> ("dbo", "ORDERS")
    - Bracketed format: "[dbo].[Order Lines]" -> ("dbo", "Order Lines")
    - Bare table name: "ORDERS" -> (default_schema, "ORDERS")

    Args:
        entry: Table name in one of the formats above
        default_schema: Schema used when the entry has none

    Returns:
        Tuple of (schema, table)

    Raises:
        ValueError: If the entry is empty or malformed
    """
    entry = (entry or '').strip()
    if not entry:
        raise ValueError("Invalid table name: cannot be empty")

    match = _BRACKETED_PATTERN.match(entry)
    if match:
        return (match.group(1).replace(']]', ']'), match.group(2).replace(']]', ']'))

    match = _BRACKETED_TABLE_PATTERN.match(entry)
    if match:
        return (default_schema, match.group(1).replace(']]', ']'))

    if '[' in entry or ']' in entry:
        raise ValueError(
            f"Invalid table format '{entry}': must be 'schema.table' or '[schema].[table]'"
        )

    if '.' not in entry:
        return (default_schema, entry)

    parts = entry.split('.', 1)
    if not parts[0].strip() or not parts[1].strip() or '.' in parts[1]:
        raise ValueError(
            f"Invalid table format '{entry}': must be 'schema.table' or '[schema].[table]'"
        )

    return (parts[0].strip(), parts[1].strip())


def normalize_table_name(entry: str, default_schema: str = DEFAULT_SCHEMA) -> str:
    """Return the canonical 'schema.table' form of a configured table name."""
    schema, table = parse_schema_table(entry, default_schema)
    return f"{schema}.{table}"


def parse_table_list(entries: Iterable[str], default_schema: str = DEFAULT_SCHEMA) -> List[str]:
    """
    Parse and de-duplicate configured table names, preserving order.

    Each entry may itself be a comma-separated list, so values coming from
    a single environment variable and from repeated CLI flags are handled
    the same way.

    Args:
        entries: Table names or comma-separated lists of table names
        default_schema: Schema used for bare table names

    Returns:
        Canonical 'schema.table' names in first-seen order

    Raises:
        ValueError: If any entry is malformed
    """
    tables: List[str] = []

    for entry in entries:
        for part in _split_table_list(entry):
            name = normalize_table_name(part, default_schema)
            if name in tables:
                logger.warning(f"Table {name} listed more than once, copying it once")
                continue
            tables.append(name)

    return tables


def _split_table_list(value: str) -> List[str]:
    parts = []
    current = ''
    in_brackets = False
    for char in value:
        if char == '[':
            in_brackets = True
        elif char == ']':
            in_brackets = False
        if char == ',' and not in_brackets:
            parts.append(current)
            current = ''
        else:
            current += char
    parts.append(current)
    return [p.strip() for p in parts if p.strip()]


def quote_mssql_identifier(identifier: str) -> str:
    """Bracket-quote a SQL Server identifier, escaping closing brackets."""
    return '[' + identifier.replace(']', ']]') + ']'


def quote_mssql_table(table_name: str) -> str:
    """
    Render a table name as a quoted SQL Server two-part name.

    Args:
        table_name: Table name in any format accepted by parse_schema_table

    Returns:
        "[schema].[table]"
    """
    schema, table = parse_schema_table(table_name)
    return f"{quote_mssql_identifier(schema)}.{quote_mssql_identifier(table)}"

