import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

from mysql.connector import pooling

from .config import config

logger = logging.getLogger(__name__)


class Database:
    """Thin wrapper over a MySQL connection pool.

    The pool is opened lazily on the first query so that importing the
    application does not require a reachable server.
    """

    def __init__(self) -> None:
        self._pool: Optional[pooling.MySQLConnectionPool] = None

    @property
    def pool(self) -> pooling.MySQLConnectionPool:
        if self._pool is None:
            logger.info(
                "Opening MySQL pool to %s:%s/%s (size=%s)",
                config.DB_HOST,
                config.DB_PORT,
                config.DB_NAME,
                config.DB_POOL_SIZE,
            )
            self._pool = pooling.MySQLConnectionPool(
                pool_name="tripsplit_pool",
                pool_size=config.DB_POOL_SIZE,
                host=config.DB_HOST,
                port=config.DB_PORT,
                user=config.DB_USER,
                password=config.DB_PASSWORD,
                database=config.DB_NAME,
                auth_plugin="mysql_native_password",
            )
        return self._pool

    @contextmanager
    def connection(self):
        conn = self.pool.get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def cursor(self, dictionary: bool = True):
        with self.connection() as conn:
            cursor = conn.cursor(dictionary=dictionary)
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def fetch_one(self, query: str, params: Optional[Iterable[Any]] = None) -> Optional[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.fetchone()

    def fetch_all(self, query: str, params: Optional[Iterable[Any]] = None) -> List[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.fetchall()

    def fetch_snapshot(self, *statements: Tuple[str, Iterable[Any]]) -> List[List[Dict[str, Any]]]:
        """Run several SELECTs in one transaction and return each result set.

        Under InnoDB's REPEATABLE READ the first read fixes the snapshot, so
        rows committed by other connections in between are not seen.
        """
        results = []
        with self.cursor() as cursor:
            for query, params in statements:
                cursor.execute(query, params or ())
                results.append(cursor.fetchall())
        return results

    def execute(self, query: str, params: Optional[Iterable[Any]] = None) -> int:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.lastrowid


db = Database()
