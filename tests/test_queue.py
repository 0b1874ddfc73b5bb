"""Unit tests for the SQLite queue.

Tests cover:
- Idempotent enqueue and FIFO dequeue
- Acknowledgement state transitions
- Heartbeat and stale-entry redelivery
- Concurrent dequeue safety
"""

import threading
from datetime import timedelta

import pytest

from media_transcoder.models import OutputSpec, utcnow
from media_transcoder.queue import QueueEntryStatus, SQLiteQueue, WorkItem

SPEC = OutputSpec(id="720p_h264", format="mp4", video_codec="libx264", audio_codec="aac")


def make_item(job_id):
    return WorkItem(job_id=job_id, media_ref="uploads/clip.mp4", outputs=[SPEC])


@pytest.fixture
def queue(db_path):
    q = SQLiteQueue(db_path)
    yield q
    q.close()


def age_heartbeat(queue, job_id, seconds):
    stale = (utcnow() - timedelta(seconds=seconds)).isoformat()
    with queue.db.conn:
        queue.db.execute(
            "UPDATE queue_entries SET last_heartbeat = ? WHERE job_id = ?", (stale, job_id)
        )


class TestEnqueueDequeue:
    def test_enqueue_is_idempotent(self, queue):
        assert queue.enqueue(make_item("a")) is True
        assert queue.enqueue(make_item("a")) is False
        assert queue.stats()["pending"] == 1

    def test_dequeue_fifo(self, queue):
        for job_id in ("first", "second", "third"):
            queue.enqueue(make_item(job_id))

        claimed = [queue.dequeue("w1").job_id for _ in range(3)]
        assert claimed == ["first", "second", "third"]
        assert queue.dequeue("w1") is None

    def test_dequeue_marks_running(self, queue):
        queue.enqueue(make_item("a"))
        entry = queue.dequeue("worker-7")

        assert entry.status == QueueEntryStatus.RUNNING
        assert entry.worker_id == "worker-7"
        assert entry.delivery_count == 1
        assert not entry.is_redelivery
        assert entry.item.outputs == [SPEC]

    def test_dequeue_empty(self, queue):
        assert queue.dequeue("w1") is None

    def test_concurrent_dequeue_claims_each_entry_once(self, db_path, queue):
        for i in range(20):
            queue.enqueue(make_item(f"job-{i}"))

        claimed = []
        lock = threading.Lock()

        def worker(worker_id):
            own = SQLiteQueue(db_path)
            try:
                while True:
                    entry = own.dequeue(worker_id)
                    if entry is None:
                        return
                    with lock:
                        claimed.append(entry.job_id)
            finally:
                own.close()

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == sorted(f"job-{i}" for i in range(20))


class TestAcknowledgement:
    def test_ack_success(self, queue):
        queue.enqueue(make_item("a"))
        queue.dequeue("w1")
        queue.ack_success("a")

        assert queue.get_entry("a").status == QueueEntryStatus.DONE
        assert queue.stats()["done"] == 1

    def test_ack_fail_is_terminal(self, queue):
        queue.enqueue(make_item("a"))
        queue.dequeue("w1")
        queue.ack_fail("a", "x" * 1000)

        entry = queue.get_entry("a")
        assert entry.status == QueueEntryStatus.FAILED
        assert len(entry.last_error) == 500
        assert queue.dequeue("w1") is None

    def test_ack_of_non_running_entry_is_ignored(self, queue):
        queue.enqueue(make_item("a"))
        queue.ack_success("a")
        assert queue.get_entry("a").status == QueueEntryStatus.PENDING

    def test_transitions_are_logged(self, queue):
        queue.enqueue(make_item("a"))
        queue.dequeue("w1")
        queue.ack_success("a")

        rows = queue.db.execute(
            "SELECT from_state, to_state FROM queue_transitions WHERE job_id = ? ORDER BY id",
            ("a",),
        ).fetchall()
        assert rows == [(None, "pending"), ("pending", "running"), ("running", "done")]


class TestRedelivery:
    def test_requeue_stale(self, queue):
        queue.enqueue(make_item("a"))
        queue.dequeue("w1")
        age_heartbeat(queue, "a", 3600)

        assert queue.requeue_stale(600) == 1
        entry = queue.dequeue("w2")
        assert entry.job_id == "a"
        assert entry.delivery_count == 2
        assert entry.is_redelivery

    def test_fresh_heartbeat_is_not_requeued(self, queue):
        queue.enqueue(make_item("a"))
        queue.dequeue("w1")
        age_heartbeat(queue, "a", 3600)
        queue.heartbeat("a")

        assert queue.requeue_stale(600) == 0
        assert queue.get_entry("a").status == QueueEntryStatus.RUNNING

    def test_finished_entries_are_never_requeued(self, queue):
        queue.enqueue(make_item("a"))
        queue.dequeue("w1")
        queue.ack_success("a")
        age_heartbeat(queue, "a", 3600)

        assert queue.requeue_stale(600) == 0


def test_stats(queue):
    for job_id in ("a", "b", "c"):
        queue.enqueue(make_item(job_id))
    queue.dequeue("w1")

    stats = queue.stats()
    assert stats == {"pending": 2, "running": 1, "done": 0, "failed": 0, "total": 3}


def test_entries_survive_reopen(db_path, queue):
    queue.enqueue(make_item("persisted"))
    queue.close()

    reopened = SQLiteQueue(db_path)
    try:
        assert reopened.dequeue("w1").job_id == "persisted"
    finally:
        reopened.close()
