"""Abstract queue interface.

The pipeline only talks to ``QueueBackend``; the SQLite implementation is the
local-first default and a broker-backed one can replace it without touching
the driver or the controller.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from .models import QueueEntry, WorkItem


class QueueBackend(ABC):
    """Durable, at-least-once queue of work items.

    Implementations must provide:
    - Atomic dequeue safe under concurrent workers
    - Idempotent enqueue (duplicate job_id is a no-op)
    - Redelivery of entries whose heartbeat expired
    """

    @abstractmethod
    def enqueue(self, item: WorkItem) -> bool:
        """Add item to queue.

        Returns:
            True if a new entry was created, False if job_id was already queued
        """

    @abstractmethod
    def dequeue(self, worker_id: str) -> Optional[QueueEntry]:
        """Atomically claim the oldest pending entry.

        Returns:
            The claimed entry (status running, delivery_count incremented)
            or None if nothing is pending
        """

    @abstractmethod
    def ack_success(self, job_id: str) -> None:
        """Mark a running entry as done."""

    @abstractmethod
    def ack_fail(self, job_id: str, error: str) -> None:
        """Mark a running entry as failed (terminal, no automatic retry)."""

    @abstractmethod
    def heartbeat(self, job_id: str) -> None:
        """Extend the visibility of a running entry."""

    @abstractmethod
    def requeue_stale(self, visibility_timeout_s: float) -> int:
        """Return running entries with an expired heartbeat to pending.

        Returns:
            Count of requeued entries
        """

    @abstractmethod
    def stats(self) -> Dict[str, int]:
        """Entry counts per state."""

    @abstractmethod
    def get_entry(self, job_id: str) -> Optional[QueueEntry]:
        """Look up an entry by job id."""

    def close(self) -> None:
        """Release backend resources."""
