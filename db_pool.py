"""SQLite connection pool shared by the store and the schema guardian."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are opened with ``check_same_thread=False`` because FastAPI
    runs sync routes on a worker thread pool and a connection may be handed
    to a different thread on its next checkout.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout_ms: int = 5000):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout_ms = busy_timeout_ms
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.DatabaseError as exc:
            # In-memory and some network filesystems refuse WAL.
            logger.debug("WAL unavailable for %s: %s", self.database, exc)
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Created new connection (total: %s)", self._created_connections)
                else:
                    connection = None
            if connection is None:
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                # Anything the caller did not commit is discarded.
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                self._discard(connection)

    def _discard(self, connection: sqlite3.Connection) -> None:
        try:
            connection.close()
        except sqlite3.Error:
            logger.debug("Ignoring close failure on discarded connection")
        with self._lock:
            self._created_connections -= 1

    def close_all(self) -> None:
        """Close every idle connection; used on shutdown and between tests."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            self._discard(connection)
