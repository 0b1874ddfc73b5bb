"""Configuration models and resolution (default YAML < local YAML < CLI)."""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import OutputSpec

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
CONFIG_PATH_ENV = "MEDIA_TRANSCODER_CONFIG"


class QueueConfig(BaseModel):
    """Durable queue and worker pool settings."""

    db_path: str = Field(default="transcoder.db", description="SQLite file for queue and job store")
    workers: int = Field(default=2, ge=1, description="Number of concurrent workers")
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Idle sleep between dequeue attempts"
    )
    visibility_timeout_s: int = Field(
        default=600,
        gt=0,
        description="Running entries without a heartbeat for this long are redelivered",
    )
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0.0, description="How often a busy worker refreshes its claim"
    )

    @model_validator(mode="after")
    def heartbeat_within_visibility(self) -> "QueueConfig":
        if self.heartbeat_interval_s >= self.visibility_timeout_s:
            raise ValueError("heartbeat_interval_s must be shorter than visibility_timeout_s")
        return self


class EngineConfig(BaseModel):
    """FFmpeg/ffprobe invocation settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="FFmpeg executable (None = bundled imageio-ffmpeg binary)"
    )
    ffprobe_path: str = Field(default="ffprobe", description="ffprobe executable")
    global_timeout_s: int = Field(
        default=3600, gt=0, description="Maximum duration of one output transcode in seconds"
    )
    no_progress_timeout_s: int = Field(
        default=120, gt=0, description="Abort if FFmpeg reports no progress for N seconds"
    )
    probe_timeout_s: int = Field(default=30, gt=0, description="ffprobe timeout in seconds")
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    loglevel: str = Field(default="error", description="FFmpeg log level")


class ProgressConfig(BaseModel):
    """Progress persistence throttle."""

    min_delta: float = Field(default=1.0, gt=0.0, description="Minimum advance in percent points")
    min_interval_s: float = Field(
        default=2.0, gt=0.0, description="Maximum time between emitted updates"
    )


class WebhookConfig(BaseModel):
    """Completion webhook delivery settings."""

    enabled: bool = Field(default=True)
    timeout_s: float = Field(default=5.0, gt=0.0, description="Per-attempt timeout")
    max_retries: int = Field(default=2, ge=0, description="Retries after the initial attempt")
    base_delay_s: float = Field(default=1.0, ge=0.0, description="Delay multiplier per attempt")
    max_delay_s: float = Field(default=5.0, ge=0.0, description="Upper bound for one delay")


class StorageConfig(BaseModel):
    """Object storage backend selection."""

    backend: Literal["local", "s3"] = Field(default="local")
    local_root: str = Field(default="storage", description="Root directory for the local backend")
    public_base_url: Optional[str] = Field(
        default=None, description="Base URL that serves local_root (local backend)"
    )
    s3_endpoint_url: Optional[str] = None
    s3_public_endpoint: Optional[str] = None
    s3_bucket: str = Field(default="media-local")
    s3_region: str = Field(default="us-east-1")
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    presign_expire_s: int = Field(default=3600, gt=0)
    default_access: Literal["private", "public"] = Field(
        default="private", description="Access level of uploaded outputs"
    )


class WorkspaceConfig(BaseModel):
    temp_root: Optional[str] = Field(
        default=None, description="Parent for per-job temp dirs (None = system temp)"
    )


def _default_presets() -> List[OutputSpec]:
    return [
        OutputSpec(
            id="1080p_h264",
            format="mp4",
            video_codec="libx264",
            audio_codec="aac",
            resolution="1920x1080",
            bitrate="5M",
            audio_bitrate="192k",
            profile="high",
        ),
        OutputSpec(
            id="720p_h264",
            format="mp4",
            video_codec="libx264",
            audio_codec="aac",
            resolution="1280x720",
            bitrate="2500k",
            audio_bitrate="128k",
            profile="main",
        ),
        OutputSpec(
            id="480p_h264",
            format="mp4",
            video_codec="libx264",
            audio_codec="aac",
            resolution="854x480",
            bitrate="1000k",
            audio_bitrate="96k",
            profile="main",
        ),
        OutputSpec(
            id="720p_vp9",
            format="webm",
            video_codec="libvpx-vp9",
            audio_codec="libopus",
            resolution="1280x720",
            bitrate="2M",
            audio_bitrate="128k",
        ),
    ]


class TranscoderConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    presets: List[OutputSpec] = Field(default_factory=_default_presets)
    default_presets: List[str] = Field(
        default_factory=lambda: ["720p_h264"],
        description="Presets used when a submission names no outputs",
    )

    @field_validator("presets")
    @classmethod
    def unique_preset_ids(cls, v: List[OutputSpec]) -> List[OutputSpec]:
        seen = set()
        for preset in v:
            if preset.id in seen:
                raise ValueError(f"duplicate preset id: {preset.id}")
            seen.add(preset.id)
        return v

    @model_validator(mode="after")
    def defaults_exist(self) -> "TranscoderConfig":
        known = {p.id for p in self.presets}
        missing = [name for name in self.default_presets if name not in known]
        if missing:
            raise ValueError(f"default_presets reference unknown presets: {missing}")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "TranscoderConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
) -> TranscoderConfig:
    """
    Resolve config: Default < Local < CLI.

    ``config_path`` (or the MEDIA_TRANSCODER_CONFIG environment variable)
    replaces the default YAML location.

    Raises:
        pydantic.ValidationError: If the merged config is invalid.
    """
    cli_args = cli_args or {}

    if config_path is None and os.getenv(CONFIG_PATH_ENV):
        config_path = Path(os.environ[CONFIG_PATH_ENV])

    config_data = load_yaml(config_path or DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    if cli_args.get("db") is not None:
        config_data.setdefault("queue", {})["db_path"] = cli_args["db"]
    if cli_args.get("workers") is not None:
        config_data.setdefault("queue", {})["workers"] = cli_args["workers"]
    if cli_args.get("storage_root") is not None:
        config_data.setdefault("storage", {})["local_root"] = cli_args["storage_root"]

    return TranscoderConfig.from_dict(config_data)
