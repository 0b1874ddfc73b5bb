"""Overall job progress from per-output engine progress.

The percentage math is a pure function; ``ProgressThrottle`` decides which
values are worth persisting so high-frequency engine callbacks don't turn into
a write per line of FFmpeg output.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional


def clamp_fraction(fraction: float) -> float:
    """Clamp a local completion fraction into [0, 1]."""
    if fraction != fraction:  # NaN
        return 0.0
    return min(max(fraction, 0.0), 1.0)


def overall_percent(index: int, total: int, fraction: float) -> float:
    """Overall completion for output ``index`` (0-based) of ``total``.

    Returns:
        100 * (index + fraction) / total, in [0, 100]

    Raises:
        ValueError: If total < 1 or index is outside [0, total)
    """
    if total < 1:
        raise ValueError(f"total must be >= 1, got {total}")
    if index < 0 or index >= total:
        raise ValueError(f"index {index} outside [0, {total})")
    return 100.0 * (index + clamp_fraction(fraction)) / total


@dataclass
class ProgressThrottle:
    """Stateful gate in front of progress persistence.

    An update is emitted when the overall percentage advanced by at least
    ``min_delta`` points or ``min_interval_s`` elapsed since the last
    emission, whichever comes first. Emitted values never decrease.
    """

    total: int
    min_delta: float = 1.0
    min_interval_s: float = 2.0
    clock: Callable[[], float] = time.monotonic

    current_index: int = field(default=0, init=False)
    local_fraction: float = field(default=0.0, init=False)
    last_emitted: float = field(default=0.0, init=False)
    last_emit_time: Optional[float] = field(default=None, init=False)

    def __post_init__(self):
        if self.total < 1:
            raise ValueError(f"total must be >= 1, got {self.total}")

    def update(self, index: int, fraction: float) -> Optional[int]:
        """Record engine progress; return the percentage to persist, or None."""
        self.current_index = index
        self.local_fraction = clamp_fraction(fraction)
        percent = max(overall_percent(index, self.total, self.local_fraction), self.last_emitted)

        now = self.clock()
        advanced = percent - self.last_emitted >= self.min_delta
        stale = self.last_emit_time is None or now - self.last_emit_time >= self.min_interval_s
        if not (advanced or stale):
            return None

        self.last_emitted = percent
        self.last_emit_time = now
        return int(percent)

    def finish(self) -> int:
        """Force the final value regardless of what was last emitted."""
        self.last_emitted = 100.0
        self.last_emit_time = self.clock()
        return 100
