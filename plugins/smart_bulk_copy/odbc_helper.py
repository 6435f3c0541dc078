"""
ODBC Connection Helper

Opens pyodbc connections to SQL Server from either a raw ODBC connection
string or an Airflow connection ID, and wraps the handful of query shapes
the engine needs (scalar, first row, all rows, statement).

Every call opens its own connection and closes it afterwards. Connections
handed out by get_conn() belong to the caller.
"""

from typing import Any, Dict, List, Optional, Tuple
import logging

import pyodbc

logger = logging.getLogger(__name__)

DEFAULT_DRIVER = '{ODBC Driver 18 for SQL Server}'
LOGIN_TIMEOUT_SECONDS = 30


def build_odbc_connection_string(config: Dict[str, Any]) -> str:
    """Join ODBC key/value pairs into a connection string, skipping empty values."""
    return ';'.join([f"{k}={v}" for k, v in config.items() if v])


def odbc_config_from_airflow(odbc_conn_id: str) -> Dict[str, str]:
    """
    Build ODBC connection parameters from an Airflow connection.

    Args:
        odbc_conn_id: Airflow connection ID for the database

    Returns:
        Dictionary with ODBC connection parameters
    """
    from airflow.hooks.base import BaseHook

    conn = BaseHook.get_connection(odbc_conn_id)

    port = conn.port or 1433
    server = f"{conn.host},{port}" if port != 1433 else conn.host

    config = {
        'DRIVER': DEFAULT_DRIVER,
        'SERVER': server,
        'DATABASE': conn.schema,
        'TrustServerCertificate': 'yes',
    }

    if conn.login:
        # SQL Server Authentication
        config['UID'] = conn.login
        config['PWD'] = conn.password or ''
        config['Trusted_Connection'] = 'no'
    else:
        # Windows Authentication (Kerberos)
        config['Trusted_Connection'] = 'yes'

    return config


class OdbcConnectionHelper:
    """
    Helper for SQL Server connections over pyodbc.

    Provides get_scalar/get_first/get_records/run in the style of the
    Airflow DB-API hooks, plus a connectivity probe. Each helper carries an
    application name so concurrent sessions of one run can be told apart
    in sys.dm_exec_sessions.
    """

    def __init__(self, connection_string: str, application_name: Optional[str] = None):
        """
        Initialize the ODBC connection helper.

        Args:
            connection_string: ODBC connection string
            application_name: Optional APP name reported to the server
        """
        if not connection_string:
            raise ValueError("ODBC connection string cannot be empty")
        self._connection_string = connection_string
        self.application_name = application_name

    @classmethod
    def from_airflow_connection(cls, odbc_conn_id: str, application_name: Optional[str] = None) -> 'OdbcConnectionHelper':
        """Create a helper for an Airflow connection ID."""
        return cls(
            build_odbc_connection_string(odbc_config_from_airflow(odbc_conn_id)),
            application_name=application_name,
        )

    @property
    def connection_string(self) -> str:
        return self._connection_string

    def with_application_name(self, application_name: str) -> 'OdbcConnectionHelper':
        """Return a helper for the same server that reports a different application name."""
        return OdbcConnectionHelper(self._connection_string, application_name=application_name)

    def _build_connection_string(self) -> str:
        conn_str = self._connection_string.rstrip(';')
        if self.application_name:
            conn_str += f";APP={self.application_name}"
        return conn_str

    def get_conn(self, autocommit: bool = False, query_timeout: int = 0) -> pyodbc.Connection:
        """
        Open a new pyodbc connection.

        Args:
            autocommit: Put the connection in autocommit mode
            query_timeout: Per-statement timeout in seconds (0 disables it)

        Returns:
            pyodbc Connection object, owned by the caller
        """
        conn = pyodbc.connect(
            self._build_connection_string(),
            autocommit=autocommit,
            timeout=LOGIN_TIMEOUT_SECONDS,
        )
        conn.timeout = query_timeout
        return conn

    def release_conn(self, conn: Optional[pyodbc.Connection]) -> None:
        """Close a connection, ignoring a connection that never opened."""
        if conn is None:
            return
        try:
            conn.close()
        except pyodbc.Error as e:
            logger.debug(f"Error closing ODBC connection: {e}")

    def test_connection(self) -> None:
        """
        Open and close one connection.

        Raises:
            pyodbc.Error: If the server cannot be reached or login fails
        """
        conn = None
        try:
            conn = self.get_conn()
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            cursor.fetchone()
        finally:
            self.release_conn(conn)

    def get_records(
        self,
        sql: str,
        parameters: Optional[List[Any]] = None
    ) -> List[Tuple[Any, ...]]:
        """
        Execute a query and return all rows as a list of tuples.

        Args:
            sql: SQL query to execute
            parameters: Optional list of parameters for the query

        Returns:
            List of tuples, one per row
        """
        conn = None
        try:
            conn = self.get_conn()
            cursor = conn.cursor()

            if parameters:
                cursor.execute(sql, parameters)
            else:
                cursor.execute(sql)

            return [tuple(row) for row in cursor.fetchall()]
        except Exception as e:
            logger.error(f"Error executing query: {e}")
            logger.error(f"Query: {sql}")
            if parameters:
                logger.error(f"Parameters: {parameters}")
            raise
        finally:
            self.release_conn(conn)

    def get_first(
        self,
        sql: str,
        parameters: Optional[List[Any]] = None
    ) -> Optional[Tuple[Any, ...]]:
        """
        Execute a query and return the first row as a tuple.

        Args:
            sql: SQL query to execute
            parameters: Optional list of parameters for the query

        Returns:
            First row as a tuple, or None if no rows
        """
        conn = None
        try:
            conn = self.get_conn()
            cursor = conn.cursor()

            if parameters:
                cursor.execute(sql, parameters)
            else:
                cursor.execute(sql)

            row = cursor.fetchone()
            return tuple(row) if row is not None else None
        except Exception as e:
            logger.error(f"Error executing query: {e}")
            logger.error(f"Query: {sql}")
            if parameters:
                logger.error(f"Parameters: {parameters}")
            raise
        finally:
            self.release_conn(conn)

    def get_scalar(
        self,
        sql: str,
        parameters: Optional[List[Any]] = None
    ) -> Any:
        """Execute a query and return the first column of the first row (None if no rows)."""
        row = self.get_first(sql, parameters)
        return row[0] if row else None

    def run(
        self,
        sql: str,
        parameters: Optional[List[Any]] = None,
        autocommit: bool = False
    ) -> None:
        """
        Execute a SQL statement (typically DDL or DML).

        Args:
            sql: SQL statement to execute
            parameters: Optional list of parameters for the query
            autocommit: Whether to commit automatically
        """
        conn = None
        try:
            conn = self.get_conn(autocommit=autocommit)
            cursor = conn.cursor()

            if parameters:
                cursor.execute(sql, parameters)
            else:
                cursor.execute(sql)

            if not autocommit:
                conn.commit()
        except Exception as e:
            logger.error(f"Error executing statement: {e}")
            logger.error(f"SQL: {sql}")
            if parameters:
                logger.error(f"Parameters: {parameters}")
            if conn and not autocommit:
                conn.rollback()
            raise
        finally:
            self.release_conn(conn)
