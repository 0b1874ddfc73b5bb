"""Per-job transcoding loop.

``TranscodeDriver.run`` owns one job from ``processing`` to a terminal state:

1. Reset the job (redeliveries start over from the first output)
2. Download the source into a private workspace and probe it
3. Encode each requested output in order, uploading and persisting each one
   as soon as it is done
4. Record the outcome, release the workspace, notify the webhook

An engine failure on output k stops the loop; outputs 1..k-1 stay recorded.
"""

import logging
import time
from pathlib import Path
from typing import List, Optional

from .config import ProgressConfig
from .errors import EngineFailure
from .ffmpeg_runner import FfmpegProgress, FfmpegRunner
from .models import GeneratedOutput, JobResult, JobStatus, OutputSpec, SourceMetadata
from .presets import mime_type_for
from .probe import MediaProber
from .progress import ProgressThrottle
from .queue.models import WorkItem
from .storage import ObjectStorage
from .store import JobStore
from .webhooks import WebhookNotifier, completed_payload, failed_payload
from .workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)


def output_storage_key(media_ref: str, job_id: str, index: int, spec: OutputSpec) -> str:
    """Storage key for output ``index`` (0-based) of a job."""
    stem = Path(media_ref).stem or "media"
    return f"video/{stem}/{job_id}/{index}-{spec.id}.{spec.format}"


class TranscodeDriver:
    """Runs one job end to end on the calling thread.

    A driver is not shared between workers: it holds the worker's own job
    store connection and engine instance.
    """

    def __init__(
        self,
        store: JobStore,
        workspaces: WorkspaceManager,
        engine: FfmpegRunner,
        prober: MediaProber,
        storage: ObjectStorage,
        notifier: WebhookNotifier,
        progress_config: Optional[ProgressConfig] = None,
        access: str = "private",
    ):
        self.store = store
        self.workspaces = workspaces
        self.engine = engine
        self.prober = prober
        self.storage = storage
        self.notifier = notifier
        self.progress_config = progress_config or ProgressConfig()
        self.access = access

    def close(self) -> None:
        self.store.close()

    def run(self, item: WorkItem) -> JobResult:
        """Execute every output of ``item`` and record the outcome.

        Job failures are recorded on the job, not raised. Only job store
        errors escape, and those are left to the worker pool.
        """
        start_time = time.monotonic()
        job_id = item.job_id
        log_extra = {"job_id": job_id}

        self.store.mark_processing(job_id)
        logger.info(
            "Job started: %s (%d outputs)", item.media_ref, len(item.outputs), extra=log_extra
        )

        generated: List[GeneratedOutput] = []
        source_metadata: Optional[SourceMetadata] = None
        error: Optional[str] = None
        workspace: Optional[Workspace] = None

        try:
            workspace = self.workspaces.acquire(item.media_ref)
            source_metadata = self.prober.try_probe(str(workspace.local_path))

            throttle = ProgressThrottle(
                total=len(item.outputs),
                min_delta=self.progress_config.min_delta,
                min_interval_s=self.progress_config.min_interval_s,
            )
            for index, spec in enumerate(item.outputs):
                output = self._produce_output(
                    item, index, spec, workspace, source_metadata, throttle
                )
                generated.append(output)
                self.store.set_generated_outputs(job_id, generated)
                logger.info(
                    "Output %d/%d done: %s", index + 1, len(item.outputs), output.storage_key,
                    extra=log_extra,
                )

            self.store.update_progress(job_id, throttle.finish())
            self.store.mark_completed(
                job_id,
                generated,
                {"source": source_metadata.model_dump() if source_metadata else None},
            )
        except EngineFailure as e:
            error = e.message
        except Exception as e:
            logger.exception("Job %s raised unexpectedly", job_id, extra=log_extra)
            error = str(e) or type(e).__name__
        finally:
            if workspace is not None:
                workspace.release()

        duration = time.monotonic() - start_time

        if error is None:
            status = JobStatus.COMPLETED
            logger.info("Job completed in %.1fs", duration, extra=log_extra)
            payload = completed_payload(job_id, item.media_ref, generated, source_metadata)
        else:
            status = JobStatus.FAILED
            self.store.mark_failed(job_id, error)
            logger.error(
                "Job failed after %d/%d outputs: %s",
                len(generated), len(item.outputs), error, extra=log_extra,
            )
            payload = failed_payload(job_id, item.media_ref, error)

        self.notifier.notify(item.webhook_url, payload)

        return JobResult(
            job_id=job_id,
            status=status,
            outputs_generated=len(generated),
            error_message=error,
            duration_s=duration,
        )

    def abandon(self, item: WorkItem, error: str) -> None:
        """Fail a job whose run raised before recording an outcome, and notify."""
        self.store.mark_failed(item.job_id, error)
        self.notifier.notify(item.webhook_url, failed_payload(item.job_id, item.media_ref, error))

    def _produce_output(
        self,
        item: WorkItem,
        index: int,
        spec: OutputSpec,
        workspace: Workspace,
        source_metadata: Optional[SourceMetadata],
        throttle: ProgressThrottle,
    ) -> GeneratedOutput:
        """Encode, probe and upload one output.

        Raises:
            EngineFailure: If the engine exits non-zero or times out
        """
        job_id = item.job_id
        output_path = workspace.path_for(f"{index}-{spec.id}.{spec.format}")

        def on_progress(progress: FfmpegProgress) -> None:
            percent = throttle.update(index, progress.fraction)
            if percent is not None:
                self.store.update_progress(job_id, percent)

        result = self.engine.transcode(
            str(workspace.local_path),
            str(output_path),
            spec,
            expected_duration=source_metadata.duration if source_metadata else None,
            progress_callback=on_progress,
        )
        if not result.success:
            raise EngineFailure(spec.id, result.error_message or "Transcoding failed")

        percent = throttle.update(index, 1.0)
        if percent is not None:
            self.store.update_progress(job_id, percent)

        output_metadata = self.prober.try_probe(str(output_path))
        video = output_metadata.video if output_metadata else None
        key = output_storage_key(item.media_ref, job_id, index, spec)

        access = self.storage.upload_file(
            output_path,
            key,
            content_type=mime_type_for(spec.format),
            metadata={
                "jobId": job_id,
                "mediaRef": item.media_ref,
                "outputId": spec.id,
                "format": spec.format,
            },
            access=self.access,
        )

        return GeneratedOutput(
            id=spec.id,
            format=spec.format,
            video_codec=spec.video_codec,
            audio_codec=spec.audio_codec,
            storage_key=key,
            size=output_path.stat().st_size,
            duration=output_metadata.duration if output_metadata else None,
            width=video.width if video else None,
            height=video.height if video else None,
            bitrate=video.bitrate if video else None,
            url=access.get("url"),
            signed_url=access.get("signed_url"),
            access=access.get("access", self.access),
        )
