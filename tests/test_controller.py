"""Tests for submission validation, persistence and enqueue."""

import sqlite3
from unittest.mock import MagicMock

import pytest

from media_transcoder.controller import JobController
from media_transcoder.errors import (
    InvalidInput,
    ServiceUnavailable,
    SourceNotFound,
    SourceTypeUnsupported,
)
from media_transcoder.models import JobStatus
from media_transcoder.queue import QueueEntryStatus, SQLiteQueue
from media_transcoder.storage import StorageError

from conftest import SOURCE_KEY


@pytest.fixture
def queue(db_path):
    q = SQLiteQueue(db_path)
    yield q
    q.close()


@pytest.fixture
def controller(store, queue, storage, presets):
    return JobController(store, queue, storage, presets)


class TestSubmit:
    def test_queued_job_is_persisted_and_enqueued(self, controller, store, queue):
        job = controller.submit(SOURCE_KEY, [{"preset": "480p_h264"}, {"format": "webm"}])

        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert [o.id for o in job.outputs] == ["480p_h264", "webm_1"]

        stored = store.get(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.outputs == job.outputs

        entry = queue.get_entry(job.id)
        assert entry.status == QueueEntryStatus.PENDING
        assert entry.item.outputs == job.outputs

    def test_default_outputs_when_none_requested(self, controller):
        job = controller.submit(SOURCE_KEY)
        assert [o.id for o in job.outputs] == ["720p_h264"]

    def test_empty_resolution_never_enqueues(self, controller, store, queue):
        with pytest.raises(InvalidInput):
            controller.submit(SOURCE_KEY, [{"format": "avi"}, {"preset": "unknown"}])

        assert store.list_jobs() == []
        assert queue.stats()["total"] == 0

    def test_source_not_found(self, controller, queue):
        with pytest.raises(SourceNotFound) as exc_info:
            controller.submit("uploads/missing.mp4")
        assert exc_info.value.code == "SourceNotFound"
        assert queue.stats()["total"] == 0

    def test_source_type_unsupported(self, controller, storage):
        (storage.root / "uploads").mkdir(exist_ok=True)
        (storage.root / "uploads" / "photo.png").write_bytes(b"png")

        with pytest.raises(SourceTypeUnsupported):
            controller.submit("uploads/photo.png")

    @pytest.mark.parametrize("media_ref", ["", "   ", None])
    def test_media_ref_required(self, controller, media_ref):
        with pytest.raises(InvalidInput):
            controller.submit(media_ref)

    def test_invalid_output_field(self, controller):
        with pytest.raises(InvalidInput):
            controller.submit(SOURCE_KEY, [{"format": "mp4", "fps": -1}])

    @pytest.mark.parametrize("url", ["ftp://example.com/hook", "not a url", "https://"])
    def test_bad_webhook_url(self, controller, url):
        with pytest.raises(InvalidInput):
            controller.submit(SOURCE_KEY, webhook_url=url)

    def test_webhook_url_kept(self, controller, store):
        job = controller.submit(SOURCE_KEY, webhook_url="https://example.com/hook?secret=s")
        assert store.get(job.id).webhook_url == "https://example.com/hook?secret=s"

    def test_storage_outage_is_service_unavailable(self, store, queue, presets):
        storage = MagicMock()
        storage.exists.side_effect = StorageError("connection reset")
        controller = JobController(store, queue, storage, presets)

        with pytest.raises(ServiceUnavailable):
            controller.submit(SOURCE_KEY)

    def test_queue_outage_marks_job_failed(self, store, storage, presets):
        queue = MagicMock()
        queue.enqueue.side_effect = sqlite3.OperationalError("database is locked")
        controller = JobController(store, queue, storage, presets)

        with pytest.raises(ServiceUnavailable):
            controller.submit(SOURCE_KEY)

        [job] = store.list_jobs()
        assert job.status == JobStatus.FAILED
        assert "enqueue" in job.error


class TestLookup:
    def test_get(self, controller):
        job = controller.submit(SOURCE_KEY)
        assert controller.get(job.id).id == job.id
        assert controller.get("missing") is None

    def test_list_jobs_by_media_ref(self, controller):
        first = controller.submit(SOURCE_KEY)
        second = controller.submit(SOURCE_KEY, [{"preset": "720p_vp9"}])

        jobs = controller.list_jobs(SOURCE_KEY)
        assert {j.id for j in jobs} == {first.id, second.id}
        assert controller.list_jobs("uploads/other.mp4") == []

    def test_list_jobs_rejects_unknown_status(self, controller):
        with pytest.raises(InvalidInput):
            controller.list_jobs(status="exploded")

    def test_supported_outputs(self, controller):
        ids = {spec.id for spec in controller.supported_outputs()}
        assert ids == {"1080p_h264", "720p_h264", "480p_h264", "720p_vp9"}
