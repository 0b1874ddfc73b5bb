"""ffprobe wrapper producing SourceMetadata."""

import json
import logging
import subprocess
from typing import Any, Dict, Optional

from .models import AudioStreamInfo, SourceMetadata, VideoStreamInfo

logger = logging.getLogger(__name__)


class ProbeError(RuntimeError):
    """ffprobe failed, timed out, or returned unparseable output."""


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def analyse_streams(probe_data: Optional[Dict[str, Any]]) -> SourceMetadata:
    """Reduce raw ffprobe JSON to the fields the pipeline records."""
    if not probe_data:
        return SourceMetadata()

    streams = probe_data.get("streams") or []
    fmt = probe_data.get("format") or {}
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    return SourceMetadata(
        duration=_to_float(fmt.get("duration")),
        size=_to_int(fmt.get("size")),
        video=VideoStreamInfo(
            codec=video.get("codec_name"),
            width=_to_int(video.get("width")),
            height=_to_int(video.get("height")),
            fps=video.get("avg_frame_rate") or video.get("r_frame_rate"),
            bitrate=_to_int(video.get("bit_rate")),
        ) if video else None,
        audio=AudioStreamInfo(
            codec=audio.get("codec_name"),
            channels=_to_int(audio.get("channels")),
            sample_rate=_to_int(audio.get("sample_rate")),
            bitrate=_to_int(audio.get("bit_rate")),
        ) if audio else None,
    )


class MediaProber:
    """Runs ffprobe against local files."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout_s: int = 30):
        self.ffprobe_path = ffprobe_path
        self.timeout_s = timeout_s

    @classmethod
    def from_config(cls, engine_config) -> "MediaProber":
        return cls(engine_config.ffprobe_path, engine_config.probe_timeout_s)

    def probe(self, path: str) -> SourceMetadata:
        """Probe ``path``.

        Raises:
            ProbeError: If ffprobe fails, times out, or emits invalid JSON
        """
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout_s,
            )
            data = json.loads(result.stdout)
        except subprocess.CalledProcessError as e:
            raise ProbeError(f"ffprobe failed: {(e.stderr or '').strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"ffprobe timed out after {self.timeout_s}s") from e
        except (OSError, json.JSONDecodeError) as e:
            raise ProbeError(f"ffprobe output parsing failed: {e}") from e

        return analyse_streams(data)

    def try_probe(self, path: str) -> Optional[SourceMetadata]:
        """Best-effort probe: returns None instead of raising."""
        try:
            return self.probe(path)
        except ProbeError as e:
            logger.warning("Probe of %s failed: %s", path, e)
            return None
