"""SQLite implementation of QueueBackend.

Local-first, crash-safe queue using:
- sqlite-utils for schema management
- WAL mode so the API can read while workers write
- BEGIN IMMEDIATE transactions for atomic dequeue
- Exponential backoff retry for database lock handling
"""

import json
import logging
import sqlite3
import threading
import time
from datetime import datetime, timedelta
from typing import Dict, Optional

from ..db import open_database
from ..models import utcnow
from .backends import QueueBackend
from .models import QueueEntry, QueueEntryStatus, WorkItem

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_entries (
    job_id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    delivery_count INTEGER NOT NULL DEFAULT 0,
    enqueued_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    last_heartbeat TEXT,
    worker_id TEXT,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_queue_status_enqueued ON queue_entries(status, enqueued_at);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS queue_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_queue_transitions_job ON queue_transitions(job_id, timestamp);
"""


def _now() -> str:
    return utcnow().isoformat()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteQueue(QueueBackend):
    """SQLite-based queue with atomic dequeue operations.

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      workers can never select the same pending entry
    - Exponential backoff handles transient lock contention
    - One instance per thread; the internal lock only covers the
      heartbeat thread sharing its worker's instance
    """

    def __init__(self, db_path: str, lock_retries: int = 5):
        """Open the queue, creating the schema if needed.

        Args:
            db_path: Path to SQLite database file (shared with the job store)
            lock_retries: Attempts before a "database is locked" error propagates
        """
        self.db_path = db_path
        self.lock_retries = lock_retries
        self.db = open_database(db_path)
        self._lock = threading.RLock()
        self.db.executescript(SCHEMA_SQL)

    def close(self) -> None:
        with self._lock:
            self.db.close()

    def enqueue(self, item: WorkItem) -> bool:
        now = _now()

        def op():
            with self.db.conn:
                cursor = self.db.execute(
                    """
                    INSERT OR IGNORE INTO queue_entries (job_id, payload, status, enqueued_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (item.job_id, item.model_dump_json(), QueueEntryStatus.PENDING.value, now),
                )
                created = cursor.rowcount == 1
                if created:
                    self._log_transition(item.job_id, None, QueueEntryStatus.PENDING.value)
                return created

        created = self._with_retry(op)
        if not created:
            logger.debug("Job %s already queued; enqueue ignored", item.job_id)
        return created

    def dequeue(self, worker_id: str) -> Optional[QueueEntry]:
        """Atomically claim the oldest pending entry.

        Atomicity: BEGIN IMMEDIATE + UPDATE...RETURNING
        Retry logic: exponential backoff on database lock
        """

        def op():
            conn = self.db.conn
            now = _now()
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    """
                    UPDATE queue_entries
                    SET status = ?,
                        worker_id = ?,
                        started_at = ?,
                        last_heartbeat = ?,
                        delivery_count = delivery_count + 1
                    WHERE job_id = (
                        SELECT job_id FROM queue_entries
                        WHERE status = ?
                        ORDER BY enqueued_at ASC, rowid ASC
                        LIMIT 1
                    )
                    RETURNING job_id, payload, status, delivery_count, enqueued_at,
                              started_at, last_heartbeat, worker_id, last_error
                    """,
                    (
                        QueueEntryStatus.RUNNING.value,
                        worker_id,
                        now,
                        now,
                        QueueEntryStatus.PENDING.value,
                    ),
                )
                rows = cursor.fetchall()
                row = rows[0] if rows else None
                if row:
                    self._log_transition(
                        row[0],
                        QueueEntryStatus.PENDING.value,
                        QueueEntryStatus.RUNNING.value,
                        worker_id=worker_id,
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            return self._row_to_entry(row) if row else None

        return self._with_retry(op)

    def ack_success(self, job_id: str) -> None:
        self._finish(job_id, QueueEntryStatus.DONE, None)

    def ack_fail(self, job_id: str, error: str) -> None:
        self._finish(job_id, QueueEntryStatus.FAILED, error[:500] if error else None)

    def heartbeat(self, job_id: str) -> None:
        """Only updates if the entry is still running."""

        def op():
            with self.db.conn:
                self.db.execute(
                    "UPDATE queue_entries SET last_heartbeat = ? WHERE job_id = ? AND status = ?",
                    (_now(), job_id, QueueEntryStatus.RUNNING.value),
                )

        self._with_retry(op)

    def requeue_stale(self, visibility_timeout_s: float) -> int:
        """Crash recovery: reset running entries whose heartbeat expired.

        The entry keeps its delivery_count; the next dequeue increments it,
        which is how a redelivery is recognized.
        """
        cutoff = (utcnow() - timedelta(seconds=visibility_timeout_s)).isoformat()

        def op():
            with self.db.conn:
                cursor = self.db.execute(
                    """
                    UPDATE queue_entries
                    SET status = ?, worker_id = NULL
                    WHERE status = ?
                      AND COALESCE(last_heartbeat, started_at, enqueued_at) < ?
                    RETURNING job_id
                    """,
                    (QueueEntryStatus.PENDING.value, QueueEntryStatus.RUNNING.value, cutoff),
                )
                rows = cursor.fetchall()
                for row in rows:
                    self._log_transition(
                        row[0],
                        QueueEntryStatus.RUNNING.value,
                        QueueEntryStatus.PENDING.value,
                        error="Heartbeat expired (redelivery)",
                    )
                return len(rows)

        count = self._with_retry(op)
        if count:
            logger.warning("Requeued %d stale queue entries", count)
        return count

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in QueueEntryStatus}
        with self._lock:
            rows = self.db.execute(
                "SELECT status, COUNT(*) FROM queue_entries GROUP BY status"
            ).fetchall()
        for status, count in rows:
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    def get_entry(self, job_id: str) -> Optional[QueueEntry]:
        with self._lock:
            row = self.db.execute(
                """
                SELECT job_id, payload, status, delivery_count, enqueued_at,
                       started_at, last_heartbeat, worker_id, last_error
                FROM queue_entries WHERE job_id = ?
                """,
                (job_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def _finish(self, job_id: str, status: QueueEntryStatus, error: Optional[str]) -> None:
        def op():
            with self.db.conn:
                cursor = self.db.execute(
                    """
                    UPDATE queue_entries
                    SET status = ?, finished_at = ?, last_error = ?
                    WHERE job_id = ? AND status = ?
                    """,
                    (status.value, _now(), error, job_id, QueueEntryStatus.RUNNING.value),
                )
                if cursor.rowcount:
                    self._log_transition(
                        job_id, QueueEntryStatus.RUNNING.value, status.value, error=error
                    )
                return cursor.rowcount

        if not self._with_retry(op):
            logger.warning("Ack %s for job %s ignored: entry not running", status.value, job_id)

    def _with_retry(self, op):
        """Run ``op`` under the instance lock, backing off on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms, ...
        """
        for attempt in range(self.lock_retries):
            try:
                with self._lock:
                    return op()
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.lock_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise
        return None

    def _log_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO queue_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _now(), worker_id, error[:200] if error else None),
        )

    @staticmethod
    def _row_to_entry(row) -> QueueEntry:
        (job_id, payload, status, delivery_count, enqueued_at,
         started_at, last_heartbeat, worker_id, last_error) = row
        return QueueEntry(
            job_id=job_id,
            item=WorkItem(**json.loads(payload)),
            status=QueueEntryStatus(status),
            delivery_count=delivery_count,
            worker_id=worker_id,
            enqueued_at=_parse_dt(enqueued_at),
            started_at=_parse_dt(started_at),
            last_heartbeat=_parse_dt(last_heartbeat),
            last_error=last_error,
        )
