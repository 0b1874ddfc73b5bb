"""Pydantic models for transcoding jobs, output specifications and results."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job processing states.

    State transitions:
        queued → processing     (worker dequeues)
        processing → completed  (every requested output generated)
        processing → failed     (engine error or unexpected exception)
        processing → processing (redelivery after worker crash, restarts at output 0)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OutputSpec(BaseModel):
    """Fully resolved transcoding target for one variant."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Label used in filenames (preset name or format_index)")
    format: str = Field(..., description="Container format (mp4, webm)")
    video_codec: str = Field(..., description="FFmpeg video encoder (e.g. libx264)")
    audio_codec: str = Field(..., description="FFmpeg audio encoder (e.g. aac)")
    resolution: Optional[str] = Field(default=None, description="Output size as WxH")
    bitrate: Optional[str] = Field(default=None, description="Video bitrate (e.g. '2M')")
    audio_bitrate: Optional[str] = Field(default=None, description="Audio bitrate (e.g. '128k')")
    fps: Optional[float] = Field(default=None, gt=0, description="Output frame rate")
    profile: Optional[str] = Field(default=None, description="Encoder profile (baseline, main, high)")
    crf: Optional[int] = Field(default=None, ge=0, le=63, description="Constant quality parameter")


class OutputRequest(BaseModel):
    """Caller-supplied output entry; any field may be omitted.

    Accepts the wire names used by API clients (camelCase, ``container`` and
    ``codec`` shorthands) as well as the snake_case field names.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    preset: Optional[str] = Field(default=None, validation_alias=AliasChoices("preset", "id"))
    format: Optional[str] = Field(default=None, validation_alias=AliasChoices("format", "container"))
    video_codec: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("video_codec", "videoCodec", "codec")
    )
    audio_codec: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("audio_codec", "audioCodec")
    )
    resolution: Optional[str] = None
    bitrate: Optional[str] = None
    audio_bitrate: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("audio_bitrate", "audioBitrate")
    )
    fps: Optional[float] = Field(default=None, gt=0)
    profile: Optional[str] = None
    crf: Optional[int] = Field(default=None, ge=0, le=63)

    def explicit_fields(self) -> Dict[str, Any]:
        """Spec fields the caller actually supplied (excluding the preset name)."""
        return {
            key: value
            for key, value in self.model_dump(exclude={"preset"}).items()
            if value is not None
        }


class VideoStreamInfo(BaseModel):
    codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[str] = None
    bitrate: Optional[int] = None


class AudioStreamInfo(BaseModel):
    codec: Optional[str] = None
    channels: Optional[int] = None
    sample_rate: Optional[int] = None
    bitrate: Optional[int] = None


class SourceMetadata(BaseModel):
    """Container and stream facts captured by ffprobe (every field nullable)."""

    duration: Optional[float] = Field(default=None, description="Duration in seconds")
    size: Optional[int] = Field(default=None, description="File size in bytes")
    video: Optional[VideoStreamInfo] = None
    audio: Optional[AudioStreamInfo] = None


class GeneratedOutput(BaseModel):
    """Persisted result for one successfully produced variant."""

    id: str = Field(..., description="Output spec label")
    format: str
    video_codec: str
    audio_codec: str
    storage_key: str = Field(..., description="Object storage key of the artifact")
    size: int = Field(..., ge=0, description="Artifact size in bytes")
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    bitrate: Optional[int] = None
    url: Optional[str] = Field(default=None, description="Public URL (public access only)")
    signed_url: Optional[str] = Field(default=None, description="Time-limited download URL")
    access: str = Field(default="private", description="private or public")


class Job(BaseModel):
    """Persisted transcoding job record."""

    id: str = Field(..., description="Opaque job identifier")
    media_ref: str = Field(..., description="Storage key of the source media")
    outputs: List[OutputSpec] = Field(default_factory=list, description="Requested outputs, in order")
    status: JobStatus = Field(default=JobStatus.QUEUED)
    progress: int = Field(default=0, ge=0, le=100)
    generated_outputs: List[GeneratedOutput] = Field(default_factory=list)
    webhook_url: Optional[str] = None
    error: Optional[str] = Field(default=None, description="Failure reason (failed jobs only)")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_api(self) -> Dict[str, Any]:
        """Serialize using the camelCase names of the HTTP interface."""
        return {
            "id": self.id,
            "mediaRef": self.media_ref,
            "status": self.status.value,
            "progress": self.progress,
            "outputs": [o.model_dump() for o in self.outputs],
            "generatedOutputs": [g.model_dump() for g in self.generated_outputs],
            "webhookUrl": self.webhook_url,
            "error": self.error,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class JobResult(BaseModel):
    """Outcome of one driver execution, returned to the worker loop."""

    job_id: str
    status: JobStatus
    outputs_generated: int = Field(default=0, ge=0)
    error_message: Optional[str] = None
    duration_s: float = Field(default=0.0, ge=0.0)
