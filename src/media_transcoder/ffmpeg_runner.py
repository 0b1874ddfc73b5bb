"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

This module drives one FFmpeg transcode at a time, keeping a worker from
hanging on a stuck encoder and from leaving zombie processes behind.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Real-time progress parsing from ``-progress pipe:2`` output
- Process tree cleanup via psutil
"""

import logging
import re
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, List, Optional

import imageio_ffmpeg
import psutil

from .models import OutputSpec

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 40

_OUT_TIME_RE = re.compile(r"out_time=(-?\d+):(\d+):(\d+)(?:\.(\d+))?")
_OUT_TIME_US_RE = re.compile(r"out_time_(?:us|ms)=(\d+)")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")
_PROGRESS_KEYS = (
    "frame=", "fps=", "stream_", "bitrate=", "total_size=", "out_time", "dup_frames=",
    "drop_frames=", "speed=", "progress=",
)


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    total_duration_s: float = 0.0    # Expected output duration (0 = unknown)
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0
    finished: bool = False           # FFmpeg reported progress=end
    last_update: float = 0.0         # Monotonic timestamp of last update

    @property
    def fraction(self) -> float:
        """Local completion in [0, 1] (0 while the duration is unknown)."""
        if self.finished:
            return 1.0
        if self.total_duration_s <= 0:
            return 0.0
        return min(max(self.current_time_s / self.total_duration_s, 0.0), 1.0)


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr_tail: str
    duration_s: float
    error_message: Optional[str] = None
    final_progress: Optional[FfmpegProgress] = None


def build_transcode_command(
    ffmpeg_exe: str,
    input_path: str,
    output_path: str,
    spec: OutputSpec,
    loglevel: str = "error",
) -> List[str]:
    """Build the FFmpeg argument list for one output spec."""
    cmd = [
        ffmpeg_exe,
        "-y",
        "-nostdin",
        "-i", input_path,
        "-f", spec.format,
        "-c:v", spec.video_codec,
        "-c:a", spec.audio_codec,
    ]

    if spec.resolution:
        cmd.extend(["-s", spec.resolution])
    if spec.bitrate:
        cmd.extend(["-b:v", spec.bitrate])
    if spec.audio_bitrate:
        cmd.extend(["-b:a", spec.audio_bitrate])
    if spec.fps is not None:
        cmd.extend(["-r", f"{spec.fps:g}"])
    if spec.profile:
        cmd.extend(["-profile:v", spec.profile])
    if spec.crf is not None:
        cmd.extend(["-crf", str(spec.crf)])
    if spec.format == "mp4":
        cmd.extend(["-movflags", "+faststart"])

    cmd.extend([
        "-progress", "pipe:2",  # key=value progress blocks on stderr
        "-nostats",
        "-loglevel", loglevel,
        output_path,
    ])
    return cmd


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    One runner instance runs one process at a time; workers each own their
    runner.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=3600, no_progress_timeout_s=120)
        >>> result = runner.transcode(
        ...     "source.mov", "out.mp4", spec,
        ...     expected_duration=42.0,
        ...     progress_callback=lambda p: print(f"{p.fraction:.0%}"),
        ... )
        >>> result.success
        True
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        global_timeout_s: int = 3600,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        ffmpeg_loglevel: str = "error",
        poll_interval_s: float = 0.25,
    ):
        """Initialize FFmpeg runner.

        Args:
            ffmpeg_path: FFmpeg executable (None = bundled imageio-ffmpeg binary)
            global_timeout_s: Maximum duration for one transcode
            no_progress_timeout_s: Timeout if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            ffmpeg_loglevel: FFmpeg log level (error, warning, info)
            poll_interval_s: How often timeouts are checked
        """
        self.ffmpeg_path = ffmpeg_path
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.poll_interval_s = poll_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._progress_callback: Optional[Callable[[FfmpegProgress], None]] = None

    @classmethod
    def from_config(cls, engine_config) -> "FfmpegRunner":
        return cls(
            ffmpeg_path=engine_config.ffmpeg_path,
            global_timeout_s=engine_config.global_timeout_s,
            no_progress_timeout_s=engine_config.no_progress_timeout_s,
            kill_grace_period_s=engine_config.kill_grace_period_s,
            ffmpeg_loglevel=engine_config.loglevel,
        )

    def transcode(
        self,
        input_path: str,
        output_path: str,
        spec: OutputSpec,
        expected_duration: Optional[float] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> FfmpegResult:
        """Encode ``input_path`` into ``output_path`` according to ``spec``.

        Args:
            input_path: Source file
            output_path: Destination file (parent is created)
            spec: Resolved output specification
            expected_duration: Source duration in seconds, for the local fraction
            progress_callback: Invoked on every parsed progress block

        Returns:
            FfmpegResult; ``success`` is False on non-zero exit or timeout
        """
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        cmd = build_transcode_command(
            self._get_ffmpeg_exe(), str(input_path), str(output_path), spec, self.ffmpeg_loglevel
        )
        self._progress_callback = progress_callback
        try:
            return self._run_ffmpeg(cmd, expected_duration=expected_duration)
        finally:
            self._progress_callback = None

    def _run_ffmpeg(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring."""
        start_time = time.monotonic()
        self._progress = FfmpegProgress(
            total_duration_s=expected_duration or 0.0, last_update=start_time
        )
        self._stderr_tail.clear()

        logger.debug("Running %s", " ".join(cmd))

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,  # Line buffered for real-time progress
            )

            monitor = threading.Thread(
                target=self._monitor_progress,
                args=(self._process.stderr,),
                daemon=True,
            )
            monitor.start()

            timeout_reason = None
            while True:
                try:
                    returncode = self._process.wait(timeout=self.poll_interval_s)
                    break
                except subprocess.TimeoutExpired:
                    pass

                now = time.monotonic()
                if now - start_time > self.global_timeout_s:
                    timeout_reason = f"Transcode exceeded {self.global_timeout_s}s timeout"
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    timeout_reason = (
                        f"Transcode stalled: no progress for {self.no_progress_timeout_s}s"
                    )

                if timeout_reason:
                    self._kill_process_tree()
                    returncode = -1
                    break

            monitor.join(timeout=2)
            duration = time.monotonic() - start_time
            stderr_tail = "\n".join(self._stderr_tail)

            error_message = None
            if timeout_reason:
                error_message = timeout_reason
            elif returncode != 0:
                detail = stderr_tail.strip().splitlines()[-1] if stderr_tail.strip() else ""
                error_message = f"ffmpeg exited with code {returncode}"
                if detail:
                    error_message += f": {detail}"

            return FfmpegResult(
                success=(returncode == 0 and timeout_reason is None),
                returncode=returncode,
                stderr_tail=stderr_tail,
                duration_s=duration,
                error_message=error_message,
                final_progress=self._progress,
            )

        except Exception:
            # Unexpected error - ensure cleanup
            self._kill_process_tree()
            raise

        finally:
            self._process = None

    def _monitor_progress(self, stderr_stream) -> None:
        """Parse ``-progress`` key=value lines and collect diagnostic output.

        FFmpeg progress format:
            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        try:
            for line in stderr_stream:
                line = line.strip()
                if not line:
                    continue

                if not line.startswith(_PROGRESS_KEYS):
                    self._stderr_tail.append(line)
                    continue

                match = _OUT_TIME_US_RE.search(line)
                if match:
                    self._progress.current_time_s = int(match.group(1)) / 1_000_000
                else:
                    match = _OUT_TIME_RE.search(line)
                    if match:
                        h, m, s, frac = match.groups()
                        seconds = int(h) * 3600 + int(m) * 60 + int(s)
                        if frac:
                            seconds += float(f"0.{frac}")
                        self._progress.current_time_s = max(seconds, 0.0)

                match = _FRAME_RE.search(line)
                if match:
                    self._progress.frame = int(match.group(1))

                match = _FPS_RE.search(line)
                if match:
                    self._progress.fps = float(match.group(1))

                match = _BITRATE_RE.search(line)
                if match:
                    self._progress.bitrate_kbps = float(match.group(1))

                match = _SPEED_RE.search(line)
                if match:
                    self._progress.speed = float(match.group(1))

                # A block ends with progress=continue|end
                if line.startswith("progress="):
                    self._progress.last_update = time.monotonic()
                    if line == "progress=end":
                        self._progress.finished = True
                    if self._progress_callback:
                        try:
                            self._progress_callback(self._progress)
                        except Exception:
                            logger.exception("Progress callback error")
        except (OSError, ValueError) as e:
            logger.debug("Progress monitoring stopped: %s", e)

    def _kill_process_tree(self) -> None:
        """Terminate FFmpeg and all children, escalating to SIGKILL."""
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("FFmpeg process %d did not exit after SIGKILL", self._process.pid)

    def _get_ffmpeg_exe(self) -> str:
        if self.ffmpeg_path:
            return self.ffmpeg_path
        return imageio_ffmpeg.get_ffmpeg_exe()


def check_ffmpeg(ffmpeg_path: Optional[str] = None) -> bool:
    """Verify an FFmpeg binary is available and runs."""
    try:
        exe = ffmpeg_path or imageio_ffmpeg.get_ffmpeg_exe()
        subprocess.run(
            [exe, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, OSError, RuntimeError):
        return False
