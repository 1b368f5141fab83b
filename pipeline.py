"""Batch orchestrator: probe, audio, per-batch extract/upscale/reassemble, merge."""

from __future__ import annotations

import logging
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from errors import PipelineCancelled, PipelineError, UpscalerError
from media import (
    SEGMENT_MANIFEST_NAME,
    VideoMetadata,
    extract_audio,
    extract_frames,
    get_video_metadata,
    has_audio_stream,
    merge_segments,
    reassemble_video,
)
from models import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MODEL,
    Batch,
    PipelineState,
    UpscaleJob,
    count_batches,
    plan_batches,
)
from progress import (
    AUDIO_DONE,
    BATCH_WINDOW,
    BATCHES_DONE,
    COMPLETE,
    MERGE_DONE,
    METADATA_DONE,
    SETUP_DONE,
    BatchProgress,
    ProgressSink,
    ProgressTracker,
    estimate_remaining_seconds,
    format_time,
)
from toolchain import CancelToken, Toolchain
from tracing import traced
from upscaler import upscale_frames

logger = logging.getLogger(__name__)

JobSink = Callable[[UpscaleJob, float, str], None]


@dataclass(frozen=True)
class PipelineConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    workers: Optional[int] = None  # None = half the CPUs
    progress_window: tuple[float, float] = BATCH_WINDOW
    gpu_id: int = 0
    jobs: Optional[str] = None
    codec: str = "h264"
    preset: str = "medium"
    crf: int = 18
    audio_bitrate: str = "192k"
    work_dir: Optional[Path] = None
    keep_temp: bool = False


class UpscalePipeline:
    """Runs upscale jobs one at a time against a fixed toolchain and config.

    ``progress_sink`` receives ``(job, percent, label)`` whenever a job's
    percentage moves forward.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        config: Optional[PipelineConfig] = None,
        progress_sink: Optional[JobSink] = None,
    ):
        self.toolchain = toolchain
        self.config = config or PipelineConfig()
        self.progress_sink = progress_sink

    def _job_sink(self, job: UpscaleJob) -> ProgressSink:
        def sink(percent: float, label: str) -> None:
            job.percent = percent
            if self.progress_sink is not None:
                self.progress_sink(job, percent, label)

        return sink

    @staticmethod
    def _run_stage(stage: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PipelineCancelled:
            raise
        except (UpscalerError, OSError) as exc:
            raise PipelineError(stage, exc) from exc

    def _make_temp_root(self, job: UpscaleJob) -> Path:
        work_dir = self.config.work_dir
        if work_dir is not None:
            work_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"upscale_{job.input_path.stem}_", dir=work_dir))

    def _cleanup(self, temp_root: Path) -> None:
        if self.config.keep_temp:
            logger.info(f"Workspace kept at: {temp_root}")
            return
        logger.info(f"Cleaning {temp_root}")
        shutil.rmtree(temp_root, ignore_errors=True)

    def handle_audio(
        self,
        job: UpscaleJob,
        temp_root: Path,
        cancel: CancelToken,
    ) -> Optional[Path]:
        """Record whether the source has audio and stream-copy it if so."""
        job.has_audio = self._run_stage(
            "probing audio",
            has_audio_stream,
            self.toolchain.ffprobe,
            job.input_path,
            cancel=cancel,
        )
        if not job.has_audio:
            logger.info("No audio stream found, output will be video-only")
            return None
        return self._run_stage(
            "extracting audio",
            extract_audio,
            self.toolchain.ffmpeg,
            job.input_path,
            temp_root,
            cancel=cancel,
        )

    @traced
    def process_batch(
        self,
        job: UpscaleJob,
        batch: Batch,
        metadata: VideoMetadata,
        temp_root: Path,
        segments_dir: Path,
        tracker: ProgressTracker,
        cancel: CancelToken,
    ) -> Path:
        """Extract, upscale and encode one batch; its scratch dir is always removed."""
        job.current_batch = batch.index
        scratch_dir = batch.scratch_dir(temp_root)
        scratch_dir.mkdir(parents=True)
        logger.info(f"Processing frames {batch.start + 1} - {batch.end}")

        try:
            job.state = PipelineState.EXTRACTING
            frames = self._run_stage(
                "extracting frames",
                extract_frames,
                self.toolchain.ffmpeg,
                scratch_dir,
                job.input_path,
                start_frame=batch.start,
                frame_count=batch.count,
                scale_multiplier=job.scale,
                metadata=metadata,
                cancel=cancel,
            )
            cancel.raise_if_cancelled()

            job.state = PipelineState.UPSCALING
            batch_progress = BatchProgress(
                tracker,
                len(frames),
                batch_index=batch.index,
                total_batches=job.total_batches,
                window=self.config.progress_window,
                label=f"Upscaling batch {batch.index}/{job.total_batches}",
            )
            self._run_stage(
                "upscaling frames",
                upscale_frames,
                self.toolchain,
                frames,
                scratch_dir,
                job,
                progress=batch_progress,
                workers=self.config.workers,
                gpu_id=self.config.gpu_id,
                jobs=self.config.jobs,
                cancel=cancel,
            )
            cancel.raise_if_cancelled()

            job.state = PipelineState.REASSEMBLING
            return self._run_stage(
                "reassembling batch video",
                reassemble_video,
                self.toolchain.ffmpeg,
                scratch_dir,
                batch.segment_path(segments_dir),
                framerate=job.fps,
                codec=self.config.codec,
                preset=self.config.preset,
                crf=self.config.crf,
                cancel=cancel,
            )
        finally:
            job.state = PipelineState.BATCH_CLEANUP
            shutil.rmtree(scratch_dir, ignore_errors=True)

    def process_batches(
        self,
        job: UpscaleJob,
        metadata: VideoMetadata,
        temp_root: Path,
        tracker: ProgressTracker,
        cancel: CancelToken,
        started_at: float,
    ) -> list[Path]:
        """Run every batch in order and return segment paths in that same order."""
        job.total_batches = count_batches(metadata.total_frames, self.config.batch_size)
        logger.info(
            f"Planned {job.total_batches} batch(es) of up to {self.config.batch_size} frames "
            f"for {metadata.total_frames} frames"
        )
        batches = plan_batches(metadata.total_frames, self.config.batch_size)
        segments_dir = temp_root / "segments"
        segments_dir.mkdir(parents=True, exist_ok=True)

        segments: list[Path] = []
        for batch in batches:
            cancel.raise_if_cancelled()
            batch_started = time.time()
            segments.append(
                self.process_batch(job, batch, metadata, temp_root, segments_dir, tracker, cancel)
            )

            elapsed = time.time() - started_at
            eta = estimate_remaining_seconds(elapsed, batch.end, metadata.total_frames)
            logger.info(
                f"Batch {batch.index}/{job.total_batches} completed in "
                f"{time.time() - batch_started:.2f}s. ETA: {format_time(eta)}"
            )
        return segments

    @traced
    def run(self, job: UpscaleJob, cancel: Optional[CancelToken] = None) -> Path:
        """Upscale ``job.input_path`` into ``job.output_path``.

        Raises PipelineError wrapping the failing stage, PipelineCancelled, or
        FileNotFoundError/ValueError for unusable paths. The job temp root is
        removed on every return path unless ``keep_temp`` is set.
        """
        cancel = cancel or CancelToken()
        started_at = time.time()
        job.percent = 0.0
        job.state = PipelineState.INIT
        tracker = ProgressTracker(self._job_sink(job), label=job.name)

        logger.info(f"Starting upscale: {job.name} with model: {job.model}")
        if not job.input_path.is_file():
            job.state = PipelineState.FAILED
            raise FileNotFoundError(f"file not found: {job.input_path}")
        logger.debug(f"Input {job.extension or '(no extension)'} file, {job.size_bytes} bytes")
        if job.output_path == job.input_path:
            job.state = PipelineState.FAILED
            raise ValueError("Output video path must be different from input video path.")
        job.output_path.parent.mkdir(parents=True, exist_ok=True)
        if cancel.cancelled:
            job.state = PipelineState.FAILED
            cancel.raise_if_cancelled()

        temp_root = self._make_temp_root(job)
        cleaned = False
        try:
            tracker.advance(SETUP_DONE, "Setup done")

            metadata = self._run_stage(
                "getting video details",
                get_video_metadata,
                self.toolchain.ffprobe,
                job.input_path,
                cancel=cancel,
            )
            job.state = PipelineState.METADATA_PROBED
            if job.fps == 0:
                job.fps = metadata.fps
            tracker.advance(METADATA_DONE, "Retrieved video details")

            audio_path = self.handle_audio(job, temp_root, cancel)
            job.state = PipelineState.AUDIO_HANDLED
            tracker.advance(AUDIO_DONE, "Audio handled")

            segments = self.process_batches(job, metadata, temp_root, tracker, cancel, started_at)
            tracker.advance(BATCHES_DONE, "All batches processed")

            cancel.raise_if_cancelled()
            job.state = PipelineState.MERGING
            logger.info(f"Merging {len(segments)} segment(s)")
            self._run_stage(
                "merging final video",
                merge_segments,
                self.toolchain.ffmpeg,
                segments,
                job.output_path,
                manifest_path=temp_root / SEGMENT_MANIFEST_NAME,
                audio_path=audio_path,
                audio_bitrate=self.config.audio_bitrate,
                cancel=cancel,
            )
            tracker.advance(MERGE_DONE, "Merging done")

            job.state = PipelineState.CLEANUP
            self._cleanup(temp_root)
            cleaned = True
        except BaseException:
            job.state = PipelineState.FAILED
            raise
        finally:
            if not cleaned:
                self._cleanup(temp_root)

        job.state = PipelineState.DONE
        tracker.advance(COMPLETE, "Complete")
        logger.info(f"Upscaling completed successfully in {format_time(time.time() - started_at)}")
        return job.output_path

    def process_job(self, job: UpscaleJob, cancel: Optional[CancelToken] = None) -> str:
        """Run a job and reduce its outcome to a status string."""
        try:
            output = self.run(job, cancel)
        except PipelineCancelled as exc:
            job.result = f"Failed: {exc}"
        except (UpscalerError, OSError, ValueError) as exc:
            logger.error(f"Upscale failed for {job.name}: {exc}")
            job.result = f"Failed: {exc}"
        else:
            job.result = f"Success: {output}"
        return job.result

    def process_jobs(
        self,
        jobs: Iterable[UpscaleJob],
        cancel: Optional[CancelToken] = None,
    ) -> list[tuple[str, str]]:
        """Run jobs one after another; returns ``(input, status)`` pairs in submission order."""
        cancel = cancel or CancelToken()
        return [(str(job.input_path), self.process_job(job, cancel)) for job in jobs]

    def process_files(
        self,
        input_files: Iterable[Path],
        *,
        output_dir: Optional[Path] = None,
        model: str = DEFAULT_MODEL,
        scale: int = 4,
        tile_size: int = 0,
        fps: int = 0,
        cancel: Optional[CancelToken] = None,
    ) -> list[tuple[str, str]]:
        """Upscale several files with shared settings, one job per file."""
        jobs = [
            UpscaleJob.from_path(
                Path(input_file),
                output_dir=output_dir,
                model=model,
                scale=scale,
                tile_size=tile_size,
                fps=fps,
            )
            for input_file in input_files
        ]
        return self.process_jobs(jobs, cancel)
