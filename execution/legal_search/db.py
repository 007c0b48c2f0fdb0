"""
PostgreSQL connection handling shared by the durable stores.

Each store owns one table; this base class manages the connection (pooled or
single), the pgvector extension, and a one-retry wrapper for operations that
hit a stale connection.
"""

import os
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)

DEFAULT_DSN = "postgresql://localhost:5432/legal_search"


@dataclass
class PostgresConfig:
    """Connection settings for a store."""
    connection_string: Optional[str] = None
    table_name: str = ""
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    use_pooling: bool = True  # Set to False for simple single-connection mode


def resolve_dsn(connection_string: Optional[str] = None) -> str:
    return (
        connection_string or
        os.getenv("POSTGRES_URL") or
        os.getenv("DATABASE_URL") or
        DEFAULT_DSN
    )


class PostgresStore:
    """
    Base class for a table-backed store.

    Subclasses implement ``initialize_schema`` and run their queries through
    ``_execute_with_retry`` with a ``_op(conn)`` closure.
    """

    def __init__(self, config: PostgresConfig):
        self.config = config
        self._conn = None
        self._pool = None
        self._connection_string = resolve_dsn(config.connection_string)

    @property
    def table_name(self) -> str:
        return self.config.table_name

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                conn = self._pool.getconn()
                try:
                    self._ensure_extension(conn)
                finally:
                    self._pool.putconn(conn)
                logger.info(
                    f"Connection pool initialized for {self.table_name} "
                    f"(min={self.config.pool_min_connections}, max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(self._connection_string, cursor_factory=RealDictCursor)
                self._conn.autocommit = False
                self._ensure_extension(self._conn)
                logger.info(f"Connected to PostgreSQL for {self.table_name} (single connection)")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    @staticmethod
    def _ensure_extension(conn) -> None:
        with conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
        conn.commit()

    def _get_connection(self):
        """Get a database connection (from pool or single connection)."""
        if self._pool:
            return self._pool.getconn()

        if self._conn is not None and self._conn.closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()

        return self._conn

    def _release_connection(self, conn) -> None:
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn is not None:
            self._pool.putconn(conn)

    def _ensure_connection(self):
        """Ensure we have a connection (pool or single) and return it."""
        if not self._conn and not self._pool:
            self.connect()
        return self._get_connection()

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        conn = self._ensure_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        if conn is None:
            return
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._ensure_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.close()
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def _run_ddl(self, sql: str, label: str) -> None:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
            conn.commit()

        try:
            self._execute_with_retry(_op, label)
            logger.info(f"Schema initialized for {self.table_name}")
        except Exception as e:
            logger.error(f"Schema initialization failed for {self.table_name}: {e}")
            raise

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info(f"Connection pool closed for {self.table_name}")
        if self._conn:
            self._conn.close()
            self._conn = None
