"""SQLite job store.

Holds the persisted job record. Generated outputs are serialized as a JSON
array that the owning worker rewrites after every finished output; progress
only moves forward within an execution (``MAX(progress, ?)``).
"""

import json
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from .db import open_database
from .models import GeneratedOutput, Job, JobStatus, OutputSpec, utcnow

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS transcode_jobs (
    id TEXT PRIMARY KEY,
    media_ref TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    outputs TEXT NOT NULL,
    generated_outputs TEXT NOT NULL DEFAULT '[]',
    webhook_url TEXT,
    error TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_media_ref ON transcode_jobs(media_ref, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON transcode_jobs(status);
"""


class JobNotFound(LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


def _now() -> str:
    return utcnow().isoformat()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class JobStore:
    """Persistent job records in SQLite.

    Features:
    - WAL mode for concurrent readers alongside worker writes
    - Monotonic progress updates
    - Incremental persistence of generated outputs
    """

    def __init__(self, db_path: str):
        """Open the store, creating the schema if needed.

        Args:
            db_path: Path to SQLite database file (shared with the queue)
        """
        self.db_path = db_path
        self.db = open_database(db_path)
        self._lock = threading.RLock()
        self.db.executescript(SCHEMA_SQL)

    def close(self) -> None:
        with self._lock:
            self.db.close()

    def create(self, job: Job) -> Job:
        record = {
            "id": job.id,
            "media_ref": job.media_ref,
            "status": job.status.value,
            "progress": job.progress,
            "outputs": json.dumps([o.model_dump() for o in job.outputs]),
            "generated_outputs": json.dumps([g.model_dump() for g in job.generated_outputs]),
            "webhook_url": job.webhook_url,
            "error": job.error,
            "metadata": json.dumps(job.metadata),
            "created_at": job.created_at.isoformat(),
            "updated_at": job.created_at.isoformat(),
            "completed_at": None,
        }
        with self._lock:
            self.db["transcode_jobs"].insert(record, pk="id")
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            rows = list(self.db["transcode_jobs"].rows_where("id = ?", [job_id]))
        if not rows:
            return None
        return self._row_to_job(rows[0])

    def list_jobs(
        self,
        media_ref: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Job]:
        clauses, params = [], []
        if media_ref is not None:
            clauses.append("media_ref = ?")
            params.append(media_ref)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = " AND ".join(clauses) or None

        with self._lock:
            rows = list(self.db["transcode_jobs"].rows_where(
                where,
                params,
                order_by="created_at DESC",
                limit=limit,
                offset=offset,
            ))
        return [self._row_to_job(row) for row in rows]

    def mark_processing(self, job_id: str) -> None:
        """Enter ``processing``; a redelivered job starts over from output 0."""
        self._update(
            job_id,
            """
            UPDATE transcode_jobs
            SET status = ?, progress = 0, generated_outputs = '[]',
                error = NULL, completed_at = NULL, updated_at = ?
            WHERE id = ?
            """,
            (JobStatus.PROCESSING.value, _now(), job_id),
        )

    def update_progress(self, job_id: str, progress: int) -> None:
        progress = max(0, min(100, int(progress)))
        with self._lock, self.db.conn:
            self.db.execute(
                """
                UPDATE transcode_jobs
                SET progress = MAX(progress, ?), updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (progress, _now(), job_id, JobStatus.PROCESSING.value),
            )

    def set_generated_outputs(self, job_id: str, outputs: List[GeneratedOutput]) -> None:
        self._update(
            job_id,
            "UPDATE transcode_jobs SET generated_outputs = ?, updated_at = ? WHERE id = ?",
            (json.dumps([o.model_dump() for o in outputs]), _now(), job_id),
        )

    def mark_completed(
        self,
        job_id: str,
        outputs: List[GeneratedOutput],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        now = _now()
        self._update(
            job_id,
            """
            UPDATE transcode_jobs
            SET status = ?, progress = 100, generated_outputs = ?, metadata = ?,
                error = NULL, updated_at = ?, completed_at = ?
            WHERE id = ?
            """,
            (
                JobStatus.COMPLETED.value,
                json.dumps([o.model_dump() for o in outputs]),
                json.dumps(metadata or {}),
                now,
                now,
                job_id,
            ),
        )

    def mark_failed(self, job_id: str, error: str) -> None:
        now = _now()
        self._update(
            job_id,
            """
            UPDATE transcode_jobs
            SET status = ?, error = ?, updated_at = ?, completed_at = ?
            WHERE id = ?
            """,
            (JobStatus.FAILED.value, error, now, now, job_id),
        )

    def _update(self, job_id: str, sql: str, params) -> None:
        with self._lock, self.db.conn:
            cursor = self.db.execute(sql, params)
            if cursor.rowcount == 0:
                raise JobNotFound(job_id)

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> Job:
        return Job(
            id=row["id"],
            media_ref=row["media_ref"],
            status=JobStatus(row["status"]),
            progress=row["progress"],
            outputs=[OutputSpec(**o) for o in json.loads(row["outputs"] or "[]")],
            generated_outputs=[
                GeneratedOutput(**g) for g in json.loads(row["generated_outputs"] or "[]")
            ],
            webhook_url=row["webhook_url"],
            error=row["error"],
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            completed_at=_parse_dt(row["completed_at"]),
        )
