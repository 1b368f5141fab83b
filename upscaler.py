"""Per-frame Real-ESRGAN upscaling on a bounded worker pool."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from errors import FrameUpscaleError, PipelineCancelled
from media import UPSCALED_PREFIX
from models import UpscaleJob
from progress import BatchProgress
from toolchain import CancelToken, Toolchain, run_subprocess

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameResult:
    frame: Path
    output: Path
    error: Optional[FrameUpscaleError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def default_worker_count() -> int:
    return max(1, (os.cpu_count() or 1) // 2)


def upscaled_frame_path(frame: Path, frames_dir: Path) -> Path:
    return frames_dir / f"{UPSCALED_PREFIX}{frame.name}"


def build_realesrgan_command(
    realesrgan_binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    scale_factor: int,
    model_name: str,
    gpu_id: int,
    tile_size: int,
    model_path: Optional[Path],
    jobs: Optional[str],
) -> list[str]:
    cmd = [
        str(realesrgan_binary),
        "-i",
        str(input_path),
        "-o",
        str(output_path),
        "-n",
        model_name,
        "-s",
        str(scale_factor),
        "-f",
        "png",
        "-g",
        str(gpu_id),
        "-t",
        str(tile_size),
    ]

    if model_path is not None:
        cmd.extend(["-m", str(model_path)])

    if jobs:
        cmd.extend(["-j", jobs])

    return cmd


def is_ignorable_upscale_error(error: FrameUpscaleError) -> bool:
    """Whether a per-frame failure should not fail its batch.

    Only two cases qualify: the invocation was cancelled (the orchestrator
    stops the job separately), or the tool exited with status 1 after it had
    already written a non-empty output frame.
    """
    if error.cancelled:
        return True
    return error.returncode == 1 and error.output_written


def _output_written(path: Path) -> bool:
    return path.exists() and path.stat().st_size > 0


def upscale_frame(
    toolchain: Toolchain,
    frame: Path,
    frames_dir: Path,
    job: UpscaleJob,
    *,
    gpu_id: int = 0,
    jobs: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
) -> FrameResult:
    """Upscale one frame, returning the failure instead of raising it."""
    output = upscaled_frame_path(frame, frames_dir)
    cmd = build_realesrgan_command(
        toolchain.realesrgan_binary,
        frame,
        output,
        scale_factor=job.scale,
        model_name=job.model,
        gpu_id=gpu_id,
        tile_size=job.tile_size,
        model_path=toolchain.model_path,
        jobs=jobs,
    )

    try:
        result = run_subprocess(cmd, check=False, capture_output=True, cancel=cancel)
    except PipelineCancelled as exc:
        error = FrameUpscaleError(f"failed to upscale frame {frame.name}: {exc}", cancelled=True)
        return FrameResult(frame, output, error)
    except OSError as exc:
        error = FrameUpscaleError(f"failed to upscale frame {frame.name}: {exc}")
        return FrameResult(frame, output, error)

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        detail = f"exit status {result.returncode}" + (f": {stderr[-500:]}" if stderr else "")
        error = FrameUpscaleError(
            f"failed to upscale frame {frame.name}: {detail}",
            returncode=result.returncode,
            output_written=_output_written(output),
        )
        return FrameResult(frame, output, error)

    if not _output_written(output):
        error = FrameUpscaleError(
            f"failed to upscale frame {frame.name}: no output written",
            returncode=result.returncode,
        )
        return FrameResult(frame, output, error)

    return FrameResult(frame, output)


def upscale_frames(
    toolchain: Toolchain,
    frames: Sequence[Path],
    frames_dir: Path,
    job: UpscaleJob,
    *,
    progress: BatchProgress,
    workers: Optional[int] = None,
    gpu_id: int = 0,
    jobs: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
) -> list[FrameResult]:
    """Upscale every frame of a batch in parallel.

    Sibling frames keep running when one fails; all failures are gathered and
    the batch fails only if a non-ignorable one remains.
    """
    if not frames:
        raise FrameUpscaleError(f"No frames to upscale in {frames_dir}")

    worker_count = workers or default_worker_count()
    slots = threading.BoundedSemaphore(worker_count)

    def work(frame: Path) -> FrameResult:
        with slots:
            result = upscale_frame(
                toolchain,
                frame,
                frames_dir,
                job,
                gpu_id=gpu_id,
                jobs=jobs,
                cancel=cancel,
            )
        if result.error is None or not result.error.cancelled:
            progress.frame_done()
        return result

    logger.debug(
        f"Upscaling {len(frames)} frame(s) of batch {job.current_batch}/{job.total_batches} "
        f"with {worker_count} worker(s)"
    )
    with ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="upscale") as pool:
        futures = [pool.submit(work, frame) for frame in frames]
        results = [future.result() for future in futures]

    fatal: list[FrameUpscaleError] = []
    for result in results:
        error = result.error
        if error is None:
            continue
        if not is_ignorable_upscale_error(error):
            fatal.append(error)
        elif not error.cancelled:
            logger.warning(f"Ignoring upscale exit status 1 with output present: {error}")

    if fatal:
        raise FrameUpscaleError(
            "errors occurred during upscaling:\n" + "\n".join(str(error) for error in fatal)
        )
    return results
