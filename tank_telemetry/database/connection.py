"""
Database connection management with connection pooling and request timeouts.
"""

import logging
import threading
from typing import Optional, Union

from psycopg2 import pool

from tank_telemetry.config import PipelineConfig
from tank_telemetry.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Manages PostgreSQL connections with connection pooling."""

    placeholder = '%s'

    def __init__(
        self,
        database_url: Optional[str],
        min_connections: int = 1,
        max_connections: int = 10,
        timeout_seconds: float = 10.0
    ):
        if not database_url:
            raise ConfigurationError("DATABASE_URL environment variable is required")

        self.database_url = database_url
        self.min_connections = min_connections
        self.max_connections = max_connections
        self.timeout_seconds = timeout_seconds
        self.connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.Lock()
        # ThreadedConnectionPool fails fast when exhausted; callers queue here instead.
        self._slots = threading.BoundedSemaphore(max_connections)

    def initialize_pool(self) -> None:
        """Initialize the connection pool."""
        statement_timeout_ms = int(self.timeout_seconds * 1000)
        try:
            self.connection_pool = pool.ThreadedConnectionPool(
                minconn=self.min_connections,
                maxconn=self.max_connections,
                dsn=self.database_url,
                connect_timeout=max(1, int(self.timeout_seconds)),
                options=f"-c statement_timeout={statement_timeout_ms}"
            )
            logger.info(
                f"Database connection pool initialized: {self.min_connections}-{self.max_connections} connections, "
                f"statement timeout {statement_timeout_ms}ms"
            )
        except Exception as e:
            logger.error(f"Failed to initialize database connection pool: {e}")
            raise

    def _ensure_pool(self) -> pool.ThreadedConnectionPool:
        if self.connection_pool is None:
            with self._pool_lock:
                if self.connection_pool is None:
                    self.initialize_pool()
        return self.connection_pool

    def get_connection(self):
        """Get a connection from the pool, waiting up to the timeout for a free one."""
        connection_pool = self._ensure_pool()

        if not self._slots.acquire(timeout=self.timeout_seconds):
            logger.error(f"No database connection became free within {self.timeout_seconds}s")
            raise pool.PoolError(f"Timed out waiting for a database connection after {self.timeout_seconds}s")

        try:
            return connection_pool.getconn()
        except Exception as e:
            self._slots.release()
            logger.error(f"Failed to get database connection: {e}")
            raise

    def return_connection(self, connection) -> None:
        """Return a connection to the pool."""
        if self.connection_pool and connection:
            try:
                self.connection_pool.putconn(connection)
            except Exception as e:
                logger.error(f"Failed to return connection to pool: {e}")
            finally:
                self._slots.release()

    def close_all_connections(self) -> None:
        """Close all connections in the pool."""
        if self.connection_pool:
            try:
                self.connection_pool.closeall()
                logger.info("All database connections closed")
            except Exception as e:
                logger.error(f"Error closing database connections: {e}")

    def execute_query(self, query: str, params: Optional[tuple] = None, fetch: bool = True):
        """Execute a query with automatic connection management.

        Returns a list of dict rows when ``fetch`` is set, otherwise the
        affected row count. Every statement is committed.
        """
        connection = None
        try:
            connection = self.get_connection()
            with connection.cursor() as cursor:
                cursor.execute(query, params)

                if fetch:
                    results = []
                    if cursor.description:
                        columns = [desc[0] for desc in cursor.description]
                        results = [dict(zip(columns, row)) for row in cursor.fetchall()]
                    connection.commit()
                    return results

                connection.commit()
                return cursor.rowcount

        except Exception as e:
            if connection:
                connection.rollback()
            logger.error(f"Database query failed: {e}")
            raise
        finally:
            if connection:
                self.return_connection(connection)

    def execute_script(self, script: str) -> None:
        """Execute a multi-statement SQL script in one transaction."""
        connection = None
        try:
            connection = self.get_connection()
            with connection.cursor() as cursor:
                cursor.execute(script)
            connection.commit()
        except Exception as e:
            if connection:
                connection.rollback()
            logger.error(f"Database script failed: {e}")
            raise
        finally:
            if connection:
                self.return_connection(connection)

    def health_check(self) -> bool:
        """Check if database is healthy and accessible."""
        try:
            result = self.execute_query("SELECT 1 as health_check")
            return len(result) > 0 and result[0]['health_check'] == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        self.close_all_connections()


def create_database_manager(config: PipelineConfig) -> Union['DatabaseManager', 'SQLiteManager']:
    """Build the store manager selected by the configuration."""
    config.validate_store()

    if config.database_backend == 'postgres':
        return DatabaseManager(
            config.database_url,
            min_connections=config.db_min_connections,
            max_connections=config.db_max_connections,
            timeout_seconds=config.store_timeout_seconds
        )

    from tank_telemetry.database.sqlite_connection import SQLiteManager

    return SQLiteManager(config.sqlite_db_path, timeout_seconds=config.store_timeout_seconds)
