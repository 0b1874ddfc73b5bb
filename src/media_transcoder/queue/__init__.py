"""Durable job queue and worker pool."""

from .backends import QueueBackend
from .models import QueueEntry, QueueEntryStatus, WorkItem
from .sqlite_backend import SQLiteQueue
from .worker import WorkerPool

__all__ = [
    "QueueBackend",
    "QueueEntry",
    "QueueEntryStatus",
    "WorkItem",
    "SQLiteQueue",
    "WorkerPool",
]
