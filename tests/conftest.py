"""Shared fixtures: temporary database, local storage and fake engine/prober."""

import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from media_transcoder.config import ProgressConfig, TranscoderConfig
from media_transcoder.driver import TranscodeDriver
from media_transcoder.ffmpeg_runner import FfmpegProgress, FfmpegResult
from media_transcoder.models import SourceMetadata, VideoStreamInfo
from media_transcoder.presets import PresetTable
from media_transcoder.storage import LocalStorage
from media_transcoder.store import JobStore
from media_transcoder.workspace import WorkspaceManager

SOURCE_KEY = "uploads/clip.mp4"


class FakeEngine:
    """Stands in for FfmpegRunner: writes a small file and reports progress.

    ``fail_at`` holds 0-based call indexes (per engine instance) that fail.
    """

    def __init__(
        self,
        fail_at=(),
        fractions=(0.25, 0.5, 0.75, 1.0),
        on_call: Optional[Callable[[str], None]] = None,
    ):
        self.fail_at = set(fail_at)
        self.fractions = fractions
        self.on_call = on_call
        self.calls: List[Dict] = []

    def transcode(self, input_path, output_path, spec, expected_duration=None, progress_callback=None):
        index = len(self.calls)
        self.calls.append({"input": input_path, "output": output_path, "spec": spec})
        if self.on_call:
            self.on_call(spec.id)

        assert Path(input_path).exists()
        if index in self.fail_at:
            return FfmpegResult(
                success=False,
                returncode=1,
                stderr_tail="Unknown encoder 'libnothing'",
                duration_s=0.01,
                error_message=f"ffmpeg exited with code 1: Unknown encoder for {spec.id}",
            )

        for fraction in self.fractions:
            if progress_callback:
                progress_callback(
                    FfmpegProgress(current_time_s=fraction * 10.0, total_duration_s=10.0)
                )
        Path(output_path).write_bytes(b"\x00" * 2048)
        return FfmpegResult(success=True, returncode=0, stderr_tail="", duration_s=0.01)


class FakeProber:
    def __init__(self, metadata: Optional[SourceMetadata] = None):
        self.metadata = metadata or SourceMetadata(
            duration=10.0,
            size=4096,
            video=VideoStreamInfo(codec="h264", width=1280, height=720, fps="30/1", bitrate=2_000_000),
        )
        self.probed: List[str] = []

    def try_probe(self, path):
        self.probed.append(str(path))
        return self.metadata


class RecordingNotifier:
    def __init__(self, result: bool = True):
        self.result = result
        self.calls: List[Dict] = []
        self._lock = threading.Lock()

    def notify(self, url, payload):
        with self._lock:
            self.calls.append({"url": url, "payload": payload})
        return self.result if url else False


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "transcoder.db")


@pytest.fixture
def storage(tmp_path):
    local = LocalStorage(str(tmp_path / "storage"))
    source = local.root / SOURCE_KEY
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_bytes(b"fake video payload" * 256)
    return local


@pytest.fixture
def temp_root(tmp_path):
    root = tmp_path / "work"
    root.mkdir()
    return root


@pytest.fixture
def config():
    return TranscoderConfig()


@pytest.fixture
def presets(config):
    return PresetTable.from_config(config)


@pytest.fixture
def store(db_path):
    job_store = JobStore(db_path)
    yield job_store
    job_store.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_driver(db_path, storage, temp_root, notifier):
    """Factory for drivers sharing the test database, storage and notifier."""
    created = []

    def _make(engine=None, prober=None, store=None):
        driver = TranscodeDriver(
            store=store or JobStore(db_path),
            workspaces=WorkspaceManager(storage, str(temp_root)),
            engine=engine or FakeEngine(),
            prober=prober or FakeProber(),
            storage=storage,
            notifier=notifier,
            # Every engine callback is persisted
            progress_config=ProgressConfig(min_delta=0.001, min_interval_s=1000.0),
        )
        created.append(driver)
        return driver

    yield _make
    for driver in created:
        driver.store.close()
