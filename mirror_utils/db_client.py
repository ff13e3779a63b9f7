import os
import threading
import time
import psycopg2
from psycopg2 import pool, extras
from typing import List, Dict, Any, Optional, Sequence
from contextlib import contextmanager
from mirror_utils.logger import get_logger

# Module-level pool, reused by warm Lambda containers running the gateway.
# Dispatcher handler threads share it, so it is a ThreadedConnectionPool and
# is only created or replaced under _pool_lock.
_connection_pool = None
_pool_lock = threading.Lock()

DEFAULT_MAX_CONNECTIONS = 5
logger = get_logger(__name__)


class DatabaseClient:
    """
    PostgreSQL client shared by the remote gateway and the local dispatcher.

    Features:
    - Thread-safe module-level connection pool that survives warm Lambda invocations
    - Retry with exponential backoff on connection-level errors
    - Context manager that commits or rolls back
    """

    def __init__(self, database_url: Optional[str] = None, max_retries: int = 3,
                 max_connections: int = DEFAULT_MAX_CONNECTIONS):
        """
        Initialize database client.

        Args:
            database_url: PostgreSQL connection string (defaults to DATABASE_URL env var)
            max_retries: Maximum number of attempts for connection-level failures
            max_connections: Pool size; at least one per thread using the client
        """
        self.database_url = database_url or os.environ.get("DATABASE_URL")
        self.max_retries = max_retries
        self.max_connections = max(1, max_connections)

        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

        self._ensure_connection_pool()
        logger.debug("DatabaseClient initialized", max_retries=max_retries,
                     max_connections=self.max_connections)

    def _ensure_connection_pool(self):
        global _connection_pool

        with _pool_lock:
            if _connection_pool is not None:
                return _connection_pool
            try:
                logger.info("Creating new database connection pool",
                            max_connections=self.max_connections)
                _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=self.max_connections,
                    dsn=self.database_url,
                    cursor_factory=extras.RealDictCursor
                )
            except psycopg2.Error as e:
                logger.error("Failed to create connection pool", error=str(e))
                raise
            return _connection_pool

    def _replace_connection_pool(self, stale):
        """
        Swap out ``stale`` for a fresh pool.

        Only the first thread to notice a dead pool replaces it; connections
        still checked out of ``stale`` are returned to ``stale``.
        """
        global _connection_pool

        with _pool_lock:
            if _connection_pool is stale:
                _connection_pool = None
        return self._ensure_connection_pool()

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.

        Yields:
            A database connection from the pool

        Example:
            with db_client.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        connection_pool = self._ensure_connection_pool()
        conn = None
        try:
            conn = connection_pool.getconn()
            yield conn
            conn.commit()
        except Exception as e:
            if conn is not None and not conn.closed:
                conn.rollback()
            logger.error("Database operation failed", error=str(e))
            raise
        finally:
            if conn is not None:
                # Broken connections are dropped rather than pooled again
                connection_pool.putconn(conn, close=bool(conn.closed))

    def _execute_with_retry(self, operation, *args, **kwargs):
        """
        Execute a database operation with exponential backoff retry logic.

        Args:
            operation: function to execute
            *args, **kwargs: Arguments to pass to the operation

        Returns:
            Result of the operation

        Raises:
            Last exception if all retries fail
        """
        last_exception = None

        for attempt in range(self.max_retries):
            connection_pool = self._ensure_connection_pool()
            try:
                return operation(*args, **kwargs)
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                last_exception = e
                wait_time = 2 ** attempt

                logger.warning(
                    "Database operation failed, retrying...",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    wait_time=wait_time,
                    error=str(e)
                )

                if attempt < self.max_retries - 1:
                    time.sleep(wait_time)
                    # Connection errors usually mean the pooled sockets are dead
                    self._replace_connection_pool(connection_pool)
            except Exception as e:
                logger.error("Non-retryable database error", error=str(e))
                raise

        logger.error(
            "All retry attempts exhausted",
            max_retries=self.max_retries,
            final_error=str(last_exception)
        )
        raise last_exception

    def execute(self, query: str, params: Optional[Sequence[Any]] = None) -> int:
        """Run a statement and return the affected row count."""
        def _run():
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return cur.rowcount

        return self._execute_with_retry(_run)

    def fetch_all(self, query: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        def _run():
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return [dict(row) for row in cur.fetchall()]

        return self._execute_with_retry(_run)

    def fetch_one(self, query: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(query, params)
        return rows[0] if rows else None

    def execute_values(self, query: str, rows: Sequence[Sequence[Any]]) -> int:
        """
        Run a multi-row statement in a single round trip.

        The query must contain a single ``VALUES %s`` placeholder.
        """
        def _run():
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    extras.execute_values(cur, query, rows, page_size=len(rows) or 1)
                    return cur.rowcount

        return self._execute_with_retry(_run)
