"""
PostgreSQL connection management shared by the flow store and any other
SQL-backed component.
"""

from collections.abc import Sequence
from contextlib import contextmanager

import pandas as pd
import psycopg2
import structlog

logger = structlog.get_logger(__name__)


class PostgresConnection:
    """Owns one PostgreSQL connection and the cursor/transaction discipline around it"""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        connect_timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.connect_timeout = connect_timeout
        self.connection = None
        self._connect()

    def _connect(self):
        try:
            self.connection = psycopg2.connect(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
                connect_timeout=self.connect_timeout,
            )
            logger.info(
                "PostgreSQL connection established",
                host=self.host,
                database=self.database,
            )
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", host=self.host, error=str(e))
            raise

    @contextmanager
    def get_cursor(self):
        """Cursor scoped to one transaction: commit on success, rollback and re-raise on error"""
        cursor = self.connection.cursor()
        try:
            yield cursor
            self.connection.commit()
        except Exception as e:
            self.connection.rollback()
            logger.error("Database operation failed", error=str(e))
            raise
        finally:
            cursor.close()

    def fetch_frame(self, query: str, params: Sequence | dict | None = None) -> pd.DataFrame:
        """Run a SELECT and return the rows as a DataFrame keyed by column name"""
        with self.get_cursor() as cursor:
            cursor.execute(query, params)
            columns = [desc[0] for desc in cursor.description]
            rows = cursor.fetchall()
        return pd.DataFrame(rows, columns=columns)

    def execute(self, query: str, params: Sequence | dict | None = None) -> int:
        """Run a statement and return the affected row count"""
        with self.get_cursor() as cursor:
            cursor.execute(query, params)
            return cursor.rowcount

    def check_health(self) -> bool:
        try:
            with self.get_cursor() as cursor:
                cursor.execute("SELECT 1")
                return cursor.fetchone()[0] == 1
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def close(self):
        if self.connection:
            self.connection.close()
            logger.info("PostgreSQL connection closed", database=self.database)
