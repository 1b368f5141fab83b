"""Job progress: monotonic percentage, per-batch windows, and ETA."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ProgressSink = Callable[[float, str], None]

# Checkpoints of the overall job, in percent.
SETUP_DONE = 5.0
METADATA_DONE = 10.0
AUDIO_DONE = 15.0
BATCH_WINDOW = (15.0, 85.0)
BATCHES_DONE = 90.0
MERGE_DONE = 95.0
COMPLETE = 100.0


class ProgressTracker:
    """Thread-safe, never-decreasing job percentage forwarded to an optional sink."""

    def __init__(self, sink: Optional[ProgressSink] = None, label: str = ""):
        self._sink = sink
        self._label = label
        self._lock = threading.Lock()
        self._percent = 0.0

    @property
    def percent(self) -> float:
        with self._lock:
            return self._percent

    def advance(self, percent: float, label: Optional[str] = None) -> float:
        """Raise progress to ``percent``; lower values are ignored."""
        with self._lock:
            percent = min(max(percent, 0.0), COMPLETE)
            if percent < self._percent:
                return self._percent
            self._percent = percent
            message = label if label is not None else self._label
            logger.debug(f"Loading-{percent:.1f} - {message}")
            if self._sink is not None:
                self._sink(percent, message)
            return percent


def batch_window(
    batch_index: int,
    total_batches: int,
    window: tuple[float, float] = BATCH_WINDOW,
) -> tuple[float, float]:
    """Return the (start, end) slice of ``window`` owned by a 1-based batch index."""
    if total_batches <= 0:
        raise ValueError("Total batches must be > 0.")
    if not 1 <= batch_index <= total_batches:
        raise ValueError(f"Batch index {batch_index} outside 1..{total_batches}")

    low, high = window
    span = (high - low) / total_batches
    start = low + span * (batch_index - 1)
    end = high if batch_index == total_batches else low + span * batch_index
    return start, end


class BatchProgress:
    """Counts completed frames of one batch and maps them into its window.

    The job percentage is pushed roughly every 5% of the batch's frames and
    always on the last frame, which lands exactly on the window end.
    """

    def __init__(
        self,
        tracker: ProgressTracker,
        total_frames: int,
        *,
        batch_index: int,
        total_batches: int,
        window: tuple[float, float] = BATCH_WINDOW,
        label: Optional[str] = None,
    ):
        if total_frames <= 0:
            raise ValueError("Batch must contain at least one frame.")
        self.tracker = tracker
        self.total_frames = total_frames
        self.batch_start, self.batch_end = batch_window(batch_index, total_batches, window)
        self.step = max(1, total_frames // 20)
        self.label = label
        self._completed = 0
        self._lock = threading.Lock()

    @property
    def completed(self) -> int:
        with self._lock:
            return self._completed

    def value_for(self, completed: int) -> float:
        if completed >= self.total_frames:
            return self.batch_end
        fraction = completed / self.total_frames
        return self.batch_start + fraction * (self.batch_end - self.batch_start)

    def frame_done(self) -> int:
        with self._lock:
            self._completed += 1
            completed = self._completed
            if completed % self.step == 0 or completed == self.total_frames:
                self.tracker.advance(self.value_for(completed), self.label)
        return completed


def estimate_remaining_seconds(elapsed: float, processed: int, total: int) -> float:
    """Project remaining time from the average time per processed frame."""
    if processed <= 0:
        return 0.0
    remaining = max(total - processed, 0)
    return (elapsed / processed) * remaining


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"
