"""
PostgreSQL Connection Helper

Opens psycopg2 connections to a PostgreSQL destination from a libpq DSN
or an Airflow connection ID.
"""

from typing import Any, Dict, Optional
import logging

import psycopg2
from psycopg2.extensions import make_dsn, parse_dsn

logger = logging.getLogger(__name__)


class PostgresConnectionFactory:
    """Create PostgreSQL connections for one destination database."""

    def __init__(self, dsn: str, application_name: Optional[str] = None):
        """
        Args:
            dsn: libpq connection string or URI
            application_name: Optional application_name reported to the server
        """
        if not dsn:
            raise ValueError("PostgreSQL DSN cannot be empty")
        # Raises ProgrammingError on a malformed DSN
        parse_dsn(dsn)
        self._dsn = dsn
        self.application_name = application_name

    @classmethod
    def from_airflow_connection(cls, postgres_conn_id: str, application_name: Optional[str] = None) -> 'PostgresConnectionFactory':
        """Create a factory for an Airflow connection ID."""
        from airflow.hooks.base import BaseHook

        conn = BaseHook.get_connection(postgres_conn_id)
        params: Dict[str, Any] = {
            'host': conn.host,
            'port': conn.port or 5432,
            'dbname': conn.schema or conn.login,
            'user': conn.login,
            'password': conn.password,
        }
        return cls(make_dsn(**{k: v for k, v in params.items() if v}), application_name=application_name)

    @property
    def dsn(self) -> str:
        return self._dsn

    def with_application_name(self, application_name: str) -> 'PostgresConnectionFactory':
        return PostgresConnectionFactory(self._dsn, application_name=application_name)

    def get_conn(self, statement_timeout: int = 0):
        """
        Open a new connection with the given statement timeout.

        Args:
            statement_timeout: Timeout in seconds (0 disables it)

        Returns:
            psycopg2 connection, owned by the caller
        """
        kwargs = {}
        if self.application_name:
            kwargs['application_name'] = self.application_name
        conn = psycopg2.connect(self._dsn, **kwargs)
        with conn.cursor() as cursor:
            cursor.execute("SET statement_timeout = %s", (int(statement_timeout * 1000),))
        conn.commit()
        return conn

    def release_conn(self, conn) -> None:
        if conn is None:
            return
        try:
            conn.close()
        except psycopg2.Error as e:
            logger.debug(f"Error closing PostgreSQL connection: {e}")

    def test_connection(self) -> None:
        """
        Open and close one connection.

        Raises:
            psycopg2.Error: If the server cannot be reached or login fails
        """
        conn = None
        try:
            conn = self.get_conn()
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
                cursor.fetchone()
        finally:
            self.release_conn(conn)
