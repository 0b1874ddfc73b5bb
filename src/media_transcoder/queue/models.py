"""Pydantic models for queue payloads and entries."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models import OutputSpec


class QueueEntryStatus(str, Enum):
    """Queue entry states.

    State transitions:
        pending → running  (worker dequeues)
        running → done     (driver returned, whatever the job outcome)
        running → failed   (driver raised outside the job state machine)
        running → pending  (heartbeat expired, redelivered)
    """

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class WorkItem(BaseModel):
    """Everything a worker needs to execute one job."""

    job_id: str = Field(..., description="Job identifier")
    media_ref: str = Field(..., description="Storage key of the source media")
    outputs: List[OutputSpec] = Field(..., min_length=1, description="Resolved outputs, in order")
    webhook_url: Optional[str] = Field(default=None, description="Completion callback URL")


class QueueEntry(BaseModel):
    """A claimed queue entry as returned by ``dequeue``."""

    job_id: str
    item: WorkItem
    status: QueueEntryStatus = QueueEntryStatus.PENDING
    delivery_count: int = Field(default=0, ge=0, description="Times handed to a worker")
    worker_id: Optional[str] = None
    enqueued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def is_redelivery(self) -> bool:
        return self.delivery_count > 1
