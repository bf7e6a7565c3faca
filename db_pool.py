"""SQLite connection pool shared by the request worker threads."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator, Optional

logger = logging.getLogger("elearn.db")

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are opened with ``check_same_thread=False`` because FastAPI runs
    sync routes on a worker pool and a connection may be returned by one thread
    and borrowed by another. A connection is only ever used by one borrower at a
    time.
    """

    def __init__(self, database: str, max_connections: int = 5, *, timeout: float = 30.0, echo: bool = False):
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self.echo = echo
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        if self.echo:
            conn.set_trace_callback(lambda statement: logger.debug("SQL: %s", statement))
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._pool.get(block=False)
        except Empty:
            pass
        with self._lock:
            if self._created_connections < self.max_connections:
                self._created_connections += 1
                logger.debug("Opening connection %d/%d to %s", self._created_connections, self.max_connections, self.database)
                return self._create_connection()
        # Every connection is borrowed; wait for one to come back.
        return self._pool.get(block=True, timeout=self.timeout)

    def _discard(self, connection: Optional[sqlite3.Connection]) -> None:
        with self._lock:
            self._created_connections -= 1
        if connection is None:
            return
        try:
            connection.close()
        except sqlite3.Error as exc:
            logger.warning("Failed to close pooled connection: %s", exc)

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back on return."""
        connection = self._acquire()
        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection, block=False)
            except Exception as e:
                logger.error("Error returning connection to pool: %s", e)
                self._discard(connection)

    def close_all(self) -> None:
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            self._discard(connection)
