"""Error taxonomy for the batched upscale pipeline."""

from __future__ import annotations

from typing import Optional


class UpscalerError(Exception):
    """Base exception for all pipeline errors."""


class ProbeError(UpscalerError):
    """Video metadata could not be read or parsed."""


class AudioExtractionError(UpscalerError):
    """Audio detection or stream-copy extraction failed."""


class FrameExtractionError(UpscalerError):
    """ffmpeg failed to pull a frame range out of the source."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class FrameUpscaleError(UpscalerError):
    """One or more frames failed to upscale.

    For a single frame, ``returncode`` holds the tool's exit status and
    ``output_written`` tells whether it still produced a non-empty image.
    """

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        output_written: bool = False,
        cancelled: bool = False,
    ):
        super().__init__(message)
        self.returncode = returncode
        self.output_written = output_written
        self.cancelled = cancelled


class ReassemblyError(UpscalerError):
    """Encoding upscaled frames into a segment failed."""


class NoFramesFoundError(ReassemblyError):
    """The scratch directory holds no upscaled frames."""


class MergeError(UpscalerError):
    """Concatenating segments or muxing audio failed."""


class PipelineCancelled(UpscalerError):
    """The job's cancel token was triggered."""


class PipelineError(UpscalerError):
    """A stage failure, wrapped with the stage it happened in."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause
