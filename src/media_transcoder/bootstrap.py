"""Wiring of components from a resolved TranscoderConfig."""

from .config import TranscoderConfig
from .controller import JobController
from .driver import TranscodeDriver
from .ffmpeg_runner import FfmpegRunner
from .presets import PresetTable
from .probe import MediaProber
from .queue.sqlite_backend import SQLiteQueue
from .queue.worker import WorkerPool
from .storage import build_storage
from .store import JobStore
from .webhooks import WebhookNotifier
from .workspace import WorkspaceManager


def build_controller(config: TranscoderConfig) -> JobController:
    return JobController(
        store=JobStore(config.queue.db_path),
        queue=SQLiteQueue(config.queue.db_path),
        storage=build_storage(config.storage),
        presets=PresetTable.from_config(config),
    )


def build_driver(config: TranscoderConfig) -> TranscodeDriver:
    """One driver per worker thread: it opens its own job store connection."""
    storage = build_storage(config.storage)
    return TranscodeDriver(
        store=JobStore(config.queue.db_path),
        workspaces=WorkspaceManager(storage, config.workspace.temp_root),
        engine=FfmpegRunner.from_config(config.engine),
        prober=MediaProber.from_config(config.engine),
        storage=storage,
        notifier=WebhookNotifier(config.webhook),
        progress_config=config.progress,
        access=config.storage.default_access,
    )


def build_worker_pool(config: TranscoderConfig) -> WorkerPool:
    return WorkerPool(
        queue_factory=lambda: SQLiteQueue(config.queue.db_path),
        driver_factory=lambda: build_driver(config),
        n_workers=config.queue.workers,
        poll_interval_s=config.queue.poll_interval_s,
        visibility_timeout_s=config.queue.visibility_timeout_s,
        heartbeat_interval_s=config.queue.heartbeat_interval_s,
    )
