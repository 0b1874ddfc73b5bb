"""Job lifecycle controller: validate, persist, enqueue, look up."""

import logging
import sqlite3
import uuid
from typing import Any, List, Optional
from urllib.parse import urlparse

from pydantic import ValidationError

from .errors import (
    InvalidInput,
    ServiceUnavailable,
    SourceNotFound,
    SourceTypeUnsupported,
)
from .models import Job, JobStatus, OutputSpec
from .presets import PresetTable, resolve_outputs
from .queue.backends import QueueBackend
from .queue.models import WorkItem
from .storage import ObjectStorage, StorageError, guess_kind
from .store import JobStore

logger = logging.getLogger(__name__)


def _validate_webhook_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInput(f"webhookUrl must be an http(s) URL, got {url!r}")


class JobController:
    """Entry point for callers (HTTP API and CLI).

    The controller only ever writes the initial ``queued`` record; every
    later transition belongs to the worker that owns the job.
    """

    def __init__(
        self,
        store: JobStore,
        queue: QueueBackend,
        storage: ObjectStorage,
        presets: PresetTable,
    ):
        self.store = store
        self.queue = queue
        self.storage = storage
        self.presets = presets

    def submit(
        self,
        media_ref: str,
        outputs: Optional[List[Any]] = None,
        webhook_url: Optional[str] = None,
    ) -> Job:
        """Validate a transcoding request, persist it and queue it.

        Args:
            media_ref: Storage key of the source video
            outputs: Output requests (presets and/or explicit fields);
                None or empty selects the default presets
            webhook_url: Optional completion callback

        Returns:
            The persisted job (status queued, progress 0)

        Raises:
            InvalidInput: Malformed request or no supported output left
            SourceNotFound: media_ref does not exist
            SourceTypeUnsupported: media_ref is not a video
            ServiceUnavailable: Storage, job store or queue unreachable
        """
        if not isinstance(media_ref, str) or not media_ref.strip():
            raise InvalidInput("mediaRef is required")

        try:
            found = self.storage.exists(media_ref)
        except StorageError as e:
            raise ServiceUnavailable(f"Object storage unavailable: {e}") from e
        if not found:
            raise SourceNotFound(media_ref)

        if guess_kind(media_ref) != "video":
            raise SourceTypeUnsupported(media_ref)

        try:
            specs = resolve_outputs(outputs, self.presets)
        except ValidationError as e:
            raise InvalidInput(f"Invalid output specification: {e.errors()[0]['msg']}") from e
        if not specs:
            raise InvalidInput("No supported output formats requested")

        if webhook_url is not None:
            _validate_webhook_url(webhook_url)

        job = Job(
            id=uuid.uuid4().hex,
            media_ref=media_ref,
            outputs=specs,
            status=JobStatus.QUEUED,
            progress=0,
            webhook_url=webhook_url,
        )

        try:
            self.store.create(job)
        except sqlite3.Error as e:
            raise ServiceUnavailable(f"Job store unavailable: {e}") from e

        try:
            self.queue.enqueue(WorkItem(
                job_id=job.id,
                media_ref=media_ref,
                outputs=specs,
                webhook_url=webhook_url,
            ))
        except sqlite3.Error as e:
            self._abandon(job.id, f"Failed to enqueue job: {e}")
            raise ServiceUnavailable(f"Job queue unavailable: {e}") from e

        logger.info(
            "Job enqueued: %s -> %s", media_ref, ", ".join(s.id for s in specs),
            extra={"job_id": job.id},
        )
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self.store.get(job_id)

    def list_jobs(
        self,
        media_ref: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Job]:
        if status is not None and status not in {s.value for s in JobStatus}:
            raise InvalidInput(f"Unknown job status: {status}")
        if limit < 1 or offset < 0:
            raise InvalidInput("limit must be >= 1 and offset >= 0")
        return self.store.list_jobs(media_ref=media_ref, status=status, limit=limit, offset=offset)

    def supported_outputs(self) -> List[OutputSpec]:
        return self.presets.all()

    def _abandon(self, job_id: str, error: str) -> None:
        """Mark a job that never reached the queue as failed, if the store allows."""
        try:
            self.store.mark_failed(job_id, error)
        except sqlite3.Error:
            logger.error("Could not mark unqueued job as failed", extra={"job_id": job_id})
