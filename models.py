"""Job, batch and pipeline-state types."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_MODEL = "realesrgan-x4plus"
ANIMATION_MODEL = "realesrgan-x4plus-anime"
DEFAULT_BATCH_SIZE = 150


class PipelineState(enum.Enum):
    INIT = "init"
    METADATA_PROBED = "metadata_probed"
    AUDIO_HANDLED = "audio_handled"
    EXTRACTING = "extracting"
    UPSCALING = "upscaling"
    REASSEMBLING = "reassembling"
    BATCH_CLEANUP = "batch_cleanup"
    MERGING = "merging"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


def default_output_path(input_video: Path, scale: int, output_dir: Optional[Path] = None) -> Path:
    parent = output_dir if output_dir is not None else input_video.parent
    return (parent / f"{input_video.stem}_upscaled_{scale}x.mp4").resolve()


@dataclass
class UpscaleJob:
    """One submitted file and its mutable run state."""

    input_path: Path
    output_path: Path
    model: str = DEFAULT_MODEL
    scale: int = 4
    tile_size: int = 0
    fps: int = 0  # 0 inherits the source frame rate
    percent: float = 0.0
    current_batch: int = 0
    total_batches: int = 0
    has_audio: bool = False
    state: PipelineState = PipelineState.INIT
    result: Optional[str] = None

    @classmethod
    def from_path(
        cls,
        input_path: Path,
        *,
        output_path: Optional[Path] = None,
        output_dir: Optional[Path] = None,
        model: str = DEFAULT_MODEL,
        scale: int = 4,
        tile_size: int = 0,
        fps: int = 0,
    ) -> "UpscaleJob":
        input_path = Path(input_path).expanduser().resolve()
        if output_path is None:
            output_path = default_output_path(input_path, scale, output_dir)
        return cls(
            input_path=input_path,
            output_path=Path(output_path).expanduser().resolve(),
            model=model,
            scale=scale,
            tile_size=tile_size,
            fps=fps,
        )

    @property
    def name(self) -> str:
        return self.input_path.name

    @property
    def extension(self) -> str:
        return self.input_path.suffix.lower()

    @property
    def size_bytes(self) -> int:
        return self.input_path.stat().st_size


@dataclass
class Batch:
    """Frames [start, start + count) of a job, 1-based ``index``."""

    index: int
    start: int
    count: int
    batch_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def end(self) -> int:
        return self.start + self.count

    def scratch_dir(self, root: Path) -> Path:
        return root / f"batch_{self.batch_id}"

    def segment_path(self, segments_dir: Path) -> Path:
        return segments_dir / f"segment_{self.index:05d}_{self.batch_id}.mp4"


def count_batches(total_frames: int, batch_size: int) -> int:
    return (total_frames + batch_size - 1) // batch_size


def plan_batches(total_frames: int, batch_size: int) -> list[Batch]:
    """Split [0, total_frames) into ordered fixed-size batches."""
    if batch_size <= 0:
        raise ValueError("Batch size must be > 0.")
    if total_frames <= 0:
        return []

    return [
        Batch(index=number + 1, start=start, count=min(batch_size, total_frames - start))
        for number, start in enumerate(range(0, total_frames, batch_size))
    ]
