"""SQLite connection handling shared by the job store, queue and catalog.

sqlite3 connections must not cross threads, so every thread (worker slot,
heartbeat, progress consumer) gets its own sqlite-utils ``Database`` on the
same file. WAL mode lets readers proceed while one writer holds the lock.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, List, TypeVar

from sqlite_utils import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")


def open_database(db_path: str) -> Database:
    """Open a database file with WAL enabled.

    Creates parent directories if needed.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    db = Database(sqlite3.connect(str(path), timeout=30))

    # Enable WAL mode for better concurrent performance
    db.conn.execute("PRAGMA journal_mode=WAL")
    db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
    db.conn.commit()
    return db


class ThreadLocalDatabase:
    """Hands each thread its own connection to one database file."""

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        self._local = threading.local()
        self._lock = threading.Lock()
        self._all: List[Database] = []

    @property
    def db(self) -> Database:
        db = getattr(self._local, "db", None)
        if db is None:
            db = open_database(self.db_path)
            self._local.db = db
            with self._lock:
                self._all.append(db)
        return db

    @property
    def open_connections(self) -> int:
        with self._lock:
            return len(self._all)

    def executescript(self, sql: str) -> None:
        self.db.executescript(sql)

    def release(self) -> None:
        """Close the calling thread's connection, if it opened one.

        Short-lived threads (heartbeats, drain workers, the progress consumer)
        must call this before exiting; the next access reopens lazily.
        """
        db = getattr(self._local, "db", None)
        if db is None:
            return
        self._local.db = None
        with self._lock:
            self._all = [other for other in self._all if other is not db]
        db.conn.close()

    def close(self) -> None:
        with self._lock:
            for db in self._all:
                try:
                    db.conn.close()
                except sqlite3.ProgrammingError:
                    # Owned by a thread that is already gone
                    pass
            self._all = []
        self._local = threading.local()


@contextmanager
def immediate_transaction(db: Database):
    """BEGIN IMMEDIATE ... COMMIT, rolling back on error.

    BEGIN IMMEDIATE takes the write lock up front so a read-then-write sequence
    cannot interleave with another writer.
    """
    conn = db.conn
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


def retry_on_lock(fn: Callable[[], T], max_retries: int = 3) -> T:
    """Run ``fn`` with exponential backoff on SQLITE_BUSY.

    Backoff: 100ms, 200ms, 400ms ...
    """
    for attempt in range(max_retries):
        try:
            return fn()
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                delay = 0.1 * (2 ** attempt)
                logger.debug("Database locked, retrying in %.1fs", delay)
                time.sleep(delay)
                continue
            raise
    raise RuntimeError("retry_on_lock exhausted without result")
