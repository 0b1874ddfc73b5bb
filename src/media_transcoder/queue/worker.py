"""Fixed-size worker pool.

Each worker is a thread that owns one job end to end:
- dequeues one work item from its own queue connection
- runs the driver synchronously while a heartbeat thread keeps the entry
  visible
- acks the entry and repeats; idle workers sleep ``poll_interval_s``
- requeues entries whose heartbeat expired, so a crashed worker's job is
  picked up again while the pool runs

FFmpeg runs as a subprocess, so threads are enough to keep N encodes busy.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from ..models import JobStatus
from .backends import QueueBackend
from .models import QueueEntry

logger = logging.getLogger(__name__)


class _Heartbeat:
    """Background thread extending a running entry's visibility."""

    def __init__(self, queue: QueueBackend, job_id: str, interval_s: float):
        self.queue = queue
        self.job_id = job_id
        self.interval_s = interval_s
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, name=f"heartbeat-{job_id[:8]}", daemon=True
        )

    def start(self) -> "_Heartbeat":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop_event.set()
        self._thread.join(timeout=5)

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            try:
                self.queue.heartbeat(self.job_id)
            except Exception as e:
                # A missed beat only risks a redelivery; keep beating
                logger.warning("Heartbeat failed for %s: %s", self.job_id, e)


class WorkerPool:
    """Thread pool consuming the job queue.

    Example:
        >>> pool = WorkerPool(
        ...     queue_factory=lambda: SQLiteQueue("transcoder.db"),
        ...     driver_factory=lambda: build_driver(config),
        ...     n_workers=2,
        ... )
        >>> with pool:
        ...     pool.wait()
    """

    def __init__(
        self,
        queue_factory: Callable[[], QueueBackend],
        driver_factory: Callable[[], object],
        n_workers: int = 2,
        poll_interval_s: float = 1.0,
        visibility_timeout_s: float = 600.0,
        heartbeat_interval_s: float = 30.0,
    ):
        """Initialize worker pool.

        Args:
            queue_factory: Creates a queue connection (called once per worker thread)
            driver_factory: Creates a driver with ``run(item)`` and ``close()``
                (called once per worker thread)
            n_workers: Number of worker threads (>= 1)
            poll_interval_s: Sleep between polls of an empty queue
            visibility_timeout_s: Heartbeat age after which an entry is redelivered
            heartbeat_interval_s: How often running entries are refreshed
        """
        if n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {n_workers}")

        self.queue_factory = queue_factory
        self.driver_factory = driver_factory
        self.n_workers = n_workers
        self.poll_interval_s = poll_interval_s
        self.visibility_timeout_s = visibility_timeout_s
        self.heartbeat_interval_s = heartbeat_interval_s

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._counts_lock = threading.Lock()
        self._counts = {"processed": 0, "completed": 0, "failed": 0, "errors": 0}
        self._max_jobs: Optional[int] = None
        self._claimed = 0

    def __enter__(self) -> "WorkerPool":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.stop(wait=True)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def counts(self) -> Dict[str, int]:
        with self._counts_lock:
            return dict(self._counts)

    def start(self) -> None:
        """Recover stale entries, then start the worker threads."""
        if self.running:
            raise RuntimeError("Worker pool already running")
        self._recover()
        self._spawn(stop_when_empty=False)
        logger.info("Worker pool started with %d workers", self.n_workers)

    def stop(self, wait: bool = True) -> None:
        """Ask workers to exit after their current job."""
        self._stop_event.set()
        if wait:
            for thread in self._threads:
                thread.join()
            self._threads = []
        logger.info("Worker pool stopped")

    def wait(self) -> None:
        """Block until every worker thread has exited."""
        for thread in self._threads:
            thread.join()

    def run_until_empty(self, max_jobs: Optional[int] = None) -> Dict[str, int]:
        """Process queued jobs until none are pending, then return counts.

        Args:
            max_jobs: Stop claiming new jobs after this many (None = no limit)
        """
        if self.running:
            raise RuntimeError("Worker pool already running")
        self._max_jobs = max_jobs
        self._recover()
        self._spawn(stop_when_empty=True)
        self.wait()
        self._threads = []
        self._max_jobs = None
        return self.counts

    def _recover(self) -> None:
        queue = self.queue_factory()
        try:
            queue.requeue_stale(self.visibility_timeout_s)
        finally:
            queue.close()

    def _spawn(self, stop_when_empty: bool) -> None:
        self._stop_event.clear()
        self._claimed = 0
        self._threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(f"worker-{i}", stop_when_empty),
                name=f"worker-{i}",
                daemon=True,
            )
            for i in range(self.n_workers)
        ]
        for thread in self._threads:
            thread.start()

    def _claim_slot(self) -> bool:
        with self._counts_lock:
            if self._max_jobs is not None and self._claimed >= self._max_jobs:
                return False
            self._claimed += 1
            return True

    def _release_slot(self) -> None:
        with self._counts_lock:
            self._claimed -= 1

    def _worker_loop(self, worker_id: str, stop_when_empty: bool) -> None:
        queue = self.queue_factory()
        driver = self.driver_factory()
        # Expired claims are reaped at least twice per visibility window
        reap_interval_s = min(self.heartbeat_interval_s, self.visibility_timeout_s / 2)
        next_reap = 0.0
        try:
            while not self._stop_event.is_set():
                if not self._claim_slot():
                    break

                try:
                    if time.monotonic() >= next_reap:
                        queue.requeue_stale(self.visibility_timeout_s)
                        next_reap = time.monotonic() + reap_interval_s
                    entry = queue.dequeue(worker_id)
                except Exception:
                    self._release_slot()
                    logger.exception("Worker %s could not poll the queue", worker_id)
                    self._stop_event.wait(self.poll_interval_s)
                    continue

                if entry is None:
                    self._release_slot()
                    if stop_when_empty:
                        break
                    self._stop_event.wait(self.poll_interval_s)
                    continue

                self._process(queue, driver, entry, worker_id)
        finally:
            driver.close()
            queue.close()

    def _process(self, queue: QueueBackend, driver, entry: QueueEntry, worker_id: str) -> None:
        job_id = entry.job_id
        log_extra = {"job_id": job_id, "worker_id": worker_id}
        if entry.is_redelivery:
            logger.warning(
                "Redelivered job (delivery %d), restarting from first output",
                entry.delivery_count, extra=log_extra,
            )

        heartbeat = _Heartbeat(queue, job_id, self.heartbeat_interval_s).start()
        try:
            result = driver.run(entry.item)
        except Exception as e:
            logger.exception("Driver raised for job %s", job_id, extra=log_extra)
            heartbeat.stop()
            error = f"{type(e).__name__}: {e}"
            try:
                driver.abandon(entry.item, error)
            except Exception:
                logger.exception("Could not record failure of job %s", job_id, extra=log_extra)
            self._ack(queue.ack_fail, job_id, error)
            self._record("errors")
            return
        heartbeat.stop()

        self._ack(queue.ack_success, job_id)
        self._record("completed" if result.status == JobStatus.COMPLETED else "failed")

    def _ack(self, ack, job_id: str, *args) -> None:
        # An entry left running is redelivered once its heartbeat expires
        try:
            ack(job_id, *args)
        except Exception:
            logger.exception("Could not acknowledge job %s", job_id, extra={"job_id": job_id})

    def _record(self, outcome: str) -> None:
        with self._counts_lock:
            self._counts["processed"] += 1
            self._counts[outcome] += 1
