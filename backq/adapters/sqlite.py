"""SQLite-backed broker with beanstalk-like lease semantics."""

import sqlite3
import time
import uuid
from pathlib import Path
from typing import Optional

from backq.adapters.base import JobId, Pick, PickError, QueueAdapter, put_params
from backq.log import component_logger

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue TEXT NOT NULL,
    body TEXT NOT NULL,
    priority INTEGER NOT NULL,
    ttr INTEGER NOT NULL,
    state TEXT NOT NULL,
    ready_at REAL NOT NULL,
    reserved_at REAL,
    reserved_by TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_jobs_queue_state
ON jobs(queue, state, priority, ready_at);

CREATE TABLE IF NOT EXISTS watchers (
    conn_id TEXT NOT NULL,
    queue TEXT NOT NULL,
    PRIMARY KEY (conn_id, queue)
);
"""

READY = "ready"
RESERVED = "reserved"

BUSY_TIMEOUT = 5.0


class SqliteAdapter(QueueAdapter):
    """Queue adapter storing jobs in a local SQLite file.

    Jobs are leased with a conditional UPDATE so several worker processes
    can share one database file. Reserved jobs whose TTR has elapsed are
    returned to the ready state before every lease attempt.
    """

    name = "sqlite"

    def __init__(
        self,
        db_path: str = "./data/backq.db",
        timeout: Optional[float] = 1,
        poll_interval: float = 0.1,
        logger=None,
    ) -> None:
        """Initialize the adapter without connecting.

        Args:
            db_path: Path to the SQLite database file
            timeout: Default lease wait in seconds (None waits forever)
            poll_interval: Sleep between lease attempts while waiting
            logger: Optional structlog logger to bind to
        """
        self.db_path = db_path
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.persistent = False
        self.logger = component_logger("sqlite", logger)
        self.conn_id = uuid.uuid4().hex
        self._conn: Optional[sqlite3.Connection] = None
        self._watched: list[str] = []
        self._used = "default"

    def _error(self, operation: str, error: Exception) -> None:
        self.logger.error(
            "sqlite_adapter_error",
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
            exc_info=True,
        )

    def _open(self) -> sqlite3.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT)
        conn.row_factory = sqlite3.Row
        conn.executescript(SCHEMA)
        with conn:
            for queue in self._watched:
                conn.execute(
                    "INSERT OR IGNORE INTO watchers (conn_id, queue) VALUES (?, ?)",
                    (self.conn_id, queue),
                )
        return conn

    def connect(
        self,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        persistent: bool = False,
    ) -> bool:
        if endpoint is not None:
            self.db_path = endpoint
        if timeout is not None:
            self.timeout = timeout
        self.persistent = persistent

        try:
            self._conn = self._open()
            self.logger.info("sqlite_connected", db_path=self.db_path, timeout=self.timeout)
            return True
        except (sqlite3.Error, OSError) as e:
            self._error("connect", e)
        return False

    def has_workers(self, queue: str) -> Optional[int]:
        if self._conn is None:
            return None
        try:
            row = self._conn.execute(
                "SELECT COUNT(DISTINCT conn_id) FROM watchers WHERE queue = ?",
                (queue,),
            ).fetchone()
            return int(row[0])
        except sqlite3.Error as e:
            self.logger.debug("sqlite_stats_unavailable", queue=queue, error=str(e))
        return None

    def ping(self, reconnect: bool = True) -> Optional[bool]:
        try:
            if self._conn is not None and self._conn.execute("SELECT 1").fetchone():
                return True
        except sqlite3.Error as e:
            self.logger.warning("sqlite_ping_failed", error=str(e), reconnect=reconnect)

        if not reconnect:
            return None

        self._close_quietly()
        try:
            self._conn = self._open()
        except (sqlite3.Error, OSError) as e:
            self._error("reconnect", e)
            return None

        self.logger.info("sqlite_reconnected", db_path=self.db_path)
        return self.ping(reconnect=False)

    def bind_read(self, queue: str) -> bool:
        if self._conn is None:
            return False
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT OR IGNORE INTO watchers (conn_id, queue) VALUES (?, ?)",
                    (self.conn_id, queue),
                )
            if queue not in self._watched:
                self._watched.append(queue)
            return True
        except sqlite3.Error as e:
            self._error("bind_read", e)
        return False

    def bind_write(self, queue: str) -> bool:
        if self._conn is None:
            return False
        self._used = queue
        return True

    def _reserve_one(self) -> Optional[sqlite3.Row]:
        now = time.time()
        placeholders = ", ".join("?" for _ in self._watched)
        with self._conn:
            self._conn.execute(
                """
                UPDATE jobs
                SET state = ?, reserved_at = NULL, reserved_by = NULL
                WHERE state = ? AND reserved_at + ttr <= ?
                """,
                (READY, RESERVED, now),
            )
            row = self._conn.execute(
                f"""
                SELECT id, body FROM jobs
                WHERE state = ? AND ready_at <= ? AND queue IN ({placeholders})
                ORDER BY priority ASC, id ASC
                LIMIT 1
                """,
                (READY, now, *self._watched),
            ).fetchone()
            if row is None:
                return None
            updated = self._conn.execute(
                """
                UPDATE jobs SET state = ?, reserved_at = ?, reserved_by = ?
                WHERE id = ? AND state = ?
                """,
                (RESERVED, now, self.conn_id, row["id"], READY),
            )
            if updated.rowcount != 1:
                return None
        return row

    def pick_task(self) -> Pick:
        if self._conn is None:
            return Pick.failed(PickError.DISCONNECTED)
        if not self._watched:
            return Pick.failed(PickError.EMPTY)

        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        try:
            while True:
                row = self._reserve_one()
                if row is not None:
                    return Pick(job_id=row["id"], payload=row["body"])
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return Pick.failed(PickError.EMPTY)
                    time.sleep(min(self.poll_interval, remaining))
                else:
                    time.sleep(self.poll_interval)
        except sqlite3.Error as e:
            self._error("pick_task", e)
        return Pick.failed(PickError.TRANSPORT)

    def put_task(self, payload: str, options: Optional[dict] = None) -> Optional[JobId]:
        if self._conn is None:
            return None
        try:
            priority, readywait, jobttr = put_params(options)
            with self._conn:
                cursor = self._conn.execute(
                    """
                    INSERT INTO jobs (queue, body, priority, ttr, state, ready_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (self._used, payload, priority, jobttr, READY, time.time() + readywait),
                )
            return cursor.lastrowid
        except (sqlite3.Error, ValueError, TypeError) as e:
            self._error("put_task", e)
        return None

    def after_work_failed(self, job_id: JobId) -> bool:
        if self._conn is None:
            return False
        try:
            with self._conn:
                updated = self._conn.execute(
                    """
                    UPDATE jobs SET state = ?, reserved_at = NULL, reserved_by = NULL
                    WHERE id = ? AND state = ? AND reserved_by = ?
                    """,
                    (READY, job_id, RESERVED, self.conn_id),
                )
            return updated.rowcount == 1
        except sqlite3.Error as e:
            self._error("after_work_failed", e)
        return False

    def after_work_success(self, job_id: JobId) -> bool:
        if self._conn is None:
            return False
        try:
            with self._conn:
                deleted = self._conn.execute(
                    "DELETE FROM jobs WHERE id = ? AND state = ? AND reserved_by = ?",
                    (job_id, RESERVED, self.conn_id),
                )
            return deleted.rowcount == 1
        except sqlite3.Error as e:
            self._error("after_work_success", e)
        return False

    def disconnect(self) -> bool:
        if self._conn is None:
            return False
        try:
            with self._conn:
                self._conn.execute("DELETE FROM watchers WHERE conn_id = ?", (self.conn_id,))
            self._conn.close()
            return True
        except sqlite3.Error as e:
            self._error("disconnect", e)
        finally:
            self._conn = None
        return False

    def _close_quietly(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        except sqlite3.Error:
            pass
        self._conn = None
