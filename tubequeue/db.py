import logging
import queue
import sqlite3
import threading
from contextlib import contextmanager
from typing import Optional

from .config import DB_FILE, DEFAULT_CONFIG, DB_POOL_SIZE, DB_POOL_TIMEOUT_SECONDS
from .models import JOB_DB_CLEAN, JOB_CHANNEL_FETCH
from .utils import now_iso

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    state TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    next_run_at TEXT,
    error_code INTEGER
);

CREATE INDEX IF NOT EXISTS idx_tasks_state_next ON tasks(state, next_run_at);

CREATE TABLE IF NOT EXISTS tasks_persistent (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    last_exec TEXT NOT NULL,
    interval_sec INTEGER NOT NULL DEFAULT 86400
);

CREATE TABLE IF NOT EXISTS channels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    domain TEXT NOT NULL,
    url TEXT UNIQUE NOT NULL,
    channel_id TEXT NOT NULL,
    channel_name TEXT NOT NULL,
    channel_name_normalized TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(domain, channel_id),
    UNIQUE(domain, channel_name_normalized)
);

CREATE TABLE IF NOT EXISTS videos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_ref INTEGER,
    domain TEXT NOT NULL,
    url TEXT NOT NULL,
    name TEXT NOT NULL,
    video_id TEXT NOT NULL,
    is_requested INTEGER NOT NULL DEFAULT 0,
    is_downloaded INTEGER NOT NULL DEFAULT 0,
    release_date TEXT,
    release_date_estimate TEXT,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (channel_ref) REFERENCES channels(id),
    UNIQUE(domain, video_id)
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# name -> interval in seconds
DEFAULT_PERSISTENT_JOBS = {
    JOB_DB_CLEAN: 14400,
    JOB_CHANNEL_FETCH: 28800,
}


class PoolExhausted(sqlite3.OperationalError):
    """No pooled connection became free within the timeout."""


class Database:
    """
    Bounded pool of SQLite connections shared by the dispatcher and workers.

    Borrow a connection with `with db.connect() as conn:` around a single
    statement or short transaction; never hold one across a worker's run.
    """

    def __init__(self, path: Optional[str] = None, size: int = DB_POOL_SIZE,
                 timeout: float = DB_POOL_TIMEOUT_SECONDS):
        self.path = str(path or DB_FILE)
        self.size = size
        self.timeout = timeout
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(size)
        self._lock = threading.Lock()
        self._all = []
        self._closed = False

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        with self._lock:
            self._all.append(conn)
        return conn

    @contextmanager
    def connect(self):
        if self._closed:
            raise sqlite3.ProgrammingError("Database pool is closed")
        if not self._slots.acquire(timeout=self.timeout):
            raise PoolExhausted(f"No database connection free after {self.timeout}s")
        conn = None
        try:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                conn = self._open()
            yield conn
        finally:
            if conn is not None:
                if conn.in_transaction:
                    conn.rollback()
                self._idle.put(conn)
            self._slots.release()

    def close(self):
        self._closed = True
        with self._lock:
            conns, self._all = self._all, []
        for conn in conns:
            conn.close()


def init_db(db: Database):
    """Create tables and seed default config and recurring jobs."""
    with db.connect() as conn:
        conn.executescript(SCHEMA)
        with conn:
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
            ts = now_iso()
            for name, interval in DEFAULT_PERSISTENT_JOBS.items():
                conn.execute(
                    "INSERT OR IGNORE INTO tasks_persistent(name, last_exec, interval_sec) "
                    "VALUES(?,?,?)",
                    (name, ts, interval),
                )
    logger.debug("Database ready at %s", db.path)
