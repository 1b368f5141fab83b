"""ffmpeg/ffprobe stages: metadata probe, audio, frame extraction, reassembly, merge."""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from errors import (
    AudioExtractionError,
    FrameExtractionError,
    MergeError,
    NoFramesFoundError,
    ProbeError,
    ReassemblyError,
)
from toolchain import CancelToken, run_subprocess

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame_%06d.png"
FRAME_GLOB = "frame_*.png"
UPSCALED_PREFIX = "upscaled_"
UPSCALED_FRAME_PATTERN = UPSCALED_PREFIX + FRAME_PATTERN
UPSCALED_FRAME_GLOB = UPSCALED_PREFIX + "*.png"

AUDIO_TRACK_NAME = "audio_track.mka"
SEGMENT_MANIFEST_NAME = "segments.txt"

# Frames narrower or shorter than this are never downscaled before upscaling.
DOWNSCALE_THRESHOLD = 360
MAX_EXTRACTION_MULTIPLIER = 2


@dataclass(frozen=True)
class VideoMetadata:
    total_frames: int
    fps: int
    width: int
    height: int


def ffmpeg_base(ffmpeg_bin: str) -> list[str]:
    return [ffmpeg_bin, "-hide_banner", "-loglevel", "warning", "-y"]


def _stderr_tail(result: subprocess.CompletedProcess, limit: int = 2000) -> str:
    stderr = (result.stderr or "").strip()
    if not stderr:
        return f"exit status {result.returncode}"
    return stderr[-limit:]


# ── MetadataProbe ──────────────────────────────────────────────────────────────


def parse_frame_rate(value: str) -> int:
    """Parse an ffprobe rational like ``30000/1001`` into integer FPS (floor)."""
    if not value:
        raise ProbeError("Missing frame rate in probe output.")

    numerator_raw, _, denominator_raw = value.partition("/")
    try:
        numerator = int(numerator_raw)
        denominator = int(denominator_raw) if denominator_raw else 1
    except ValueError as exc:
        raise ProbeError(f"Malformed frame rate: {value!r}") from exc

    if denominator == 0:
        raise ProbeError(f"Frame rate has zero denominator: {value!r}")
    return numerator // denominator


def count_video_frames(
    ffprobe_bin: str,
    input_video: Path,
    *,
    cancel: Optional[CancelToken] = None,
) -> int:
    """Count packets of the first video stream when the container lacks nb_frames."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-count_packets",
        "-show_entries",
        "stream=nb_read_packets",
        "-of",
        "json",
        str(input_video),
    ]
    result = run_subprocess(cmd, check=False, capture_output=True, cancel=cancel)
    if result.returncode != 0:
        raise ProbeError(f"ffprobe packet count failed: {_stderr_tail(result)}")
    try:
        streams = json.loads(result.stdout).get("streams") or []
        return int(streams[0]["nb_read_packets"])
    except (json.JSONDecodeError, IndexError, KeyError, TypeError, ValueError) as exc:
        raise ProbeError(f"Failed to parse ffprobe packet count: {exc}") from exc


def get_video_metadata(
    ffprobe_bin: str,
    input_video: Path,
    *,
    cancel: Optional[CancelToken] = None,
) -> VideoMetadata:
    """Read frame count, FPS and dimensions of the first video stream."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-show_entries",
        "stream=nb_frames,r_frame_rate,width,height",
        "-of",
        "json",
        str(input_video),
    ]
    result = run_subprocess(cmd, check=False, capture_output=True, cancel=cancel)
    if result.returncode != 0:
        raise ProbeError(f"ffprobe failed for {input_video}: {_stderr_tail(result)}")

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise ProbeError(f"Failed to parse ffprobe output: {exc}") from exc

    streams = payload.get("streams") or []
    if not streams:
        raise ProbeError(f"No video stream found in {input_video}")
    stream = streams[0]

    try:
        width = int(stream["width"])
        height = int(stream["height"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ProbeError(f"Malformed frame dimensions in probe output: {exc}") from exc

    fps = parse_frame_rate(stream.get("r_frame_rate", ""))

    nb_frames = stream.get("nb_frames")
    if nb_frames in (None, "", "N/A"):
        logger.debug("Container has no frame count, counting packets instead")
        total_frames = count_video_frames(ffprobe_bin, input_video, cancel=cancel)
    else:
        try:
            total_frames = int(nb_frames)
        except (TypeError, ValueError) as exc:
            raise ProbeError(f"Malformed frame count: {nb_frames!r}") from exc

    if total_frames <= 0:
        raise ProbeError(f"Video reports no frames: {input_video}")

    logger.info(f"Video has {total_frames} frames at {fps} FPS ({width}x{height})")
    return VideoMetadata(total_frames=total_frames, fps=fps, width=width, height=height)


# ── AudioExtractor ─────────────────────────────────────────────────────────────


def has_audio_stream(
    ffprobe_bin: str,
    input_video: Path,
    *,
    cancel: Optional[CancelToken] = None,
) -> bool:
    cmd = [
        ffprobe_bin,
        "-i",
        str(input_video),
        "-show_streams",
        "-select_streams",
        "a",
        "-loglevel",
        "error",
    ]
    result = run_subprocess(cmd, check=False, capture_output=True, cancel=cancel)
    if result.returncode != 0:
        raise AudioExtractionError(f"Audio probe failed: {_stderr_tail(result)}")
    return bool(result.stdout.strip())


def extract_audio(
    ffmpeg_bin: str,
    input_video: Path,
    temp_dir: Path,
    *,
    cancel: Optional[CancelToken] = None,
) -> Path:
    """Stream-copy the first audio track into the job temp directory."""
    target = temp_dir / AUDIO_TRACK_NAME
    cmd = ffmpeg_base(ffmpeg_bin) + [
        "-i",
        str(input_video),
        "-vn",
        "-map",
        "0:a:0",
        "-c:a",
        "copy",
        str(target),
    ]
    result = run_subprocess(cmd, check=False, capture_output=True, cancel=cancel)
    if result.returncode != 0 or not target.exists():
        raise AudioExtractionError(f"Audio extraction failed: {_stderr_tail(result)}")
    return target


# ── FrameExtractor ─────────────────────────────────────────────────────────────


def resolve_extraction_multiplier(width: int, height: int, requested: int) -> int:
    """Pick the pre-upscale downscale factor for a source of the given size.

    Small sources are left alone; otherwise the requested factor is halved
    until it is at most 2 (5 -> 2, 4 -> 2, 3 -> 1).
    """
    if width < DOWNSCALE_THRESHOLD or height < DOWNSCALE_THRESHOLD:
        return 1

    multiplier = requested
    while multiplier > MAX_EXTRACTION_MULTIPLIER:
        multiplier //= 2
    return max(multiplier, 1)


def build_downscale_filter(multiplier: int) -> Optional[str]:
    if multiplier <= 1:
        return None
    return (
        f"scale='if(gt(iw,{DOWNSCALE_THRESHOLD}),iw/{multiplier},iw)'"
        f":'if(gt(ih,{DOWNSCALE_THRESHOLD}),ih/{multiplier},ih)'"
        ":force_original_aspect_ratio=decrease"
    )


def build_extraction_filter(start_frame: int, frame_count: int, multiplier: int) -> str:
    end_frame = start_frame + frame_count - 1
    expression = f"select=between(n\\,{start_frame}\\,{end_frame})"
    downscale = build_downscale_filter(multiplier)
    if downscale:
        expression = f"{expression},{downscale}"
    return expression


def extract_frames(
    ffmpeg_bin: str,
    frames_dir: Path,
    input_video: Path,
    *,
    start_frame: int,
    frame_count: int,
    scale_multiplier: int,
    metadata: VideoMetadata,
    cancel: Optional[CancelToken] = None,
) -> list[Path]:
    """Extract source frames [start, start+count) as numbered PNGs."""
    if frame_count <= 0:
        raise ValueError("Frame count must be > 0.")

    multiplier = resolve_extraction_multiplier(metadata.width, metadata.height, scale_multiplier)
    cmd = ffmpeg_base(ffmpeg_bin) + [
        "-i",
        str(input_video),
        "-vf",
        build_extraction_filter(start_frame, frame_count, multiplier),
        "-fps_mode",
        "vfr",
        "-frames:v",
        str(frame_count),
        "-start_number",
        "1",
        str(frames_dir / FRAME_PATTERN),
    ]
    result = run_subprocess(cmd, check=False, capture_output=True, cancel=cancel)
    if result.returncode != 0:
        stderr = _stderr_tail(result)
        logger.error(stderr)
        raise FrameExtractionError(
            f"Error extracting frames {start_frame}-{start_frame + frame_count - 1}: {stderr}",
            stderr=stderr,
        )

    frames = sorted(frames_dir.glob(FRAME_GLOB))
    if not frames:
        raise FrameExtractionError(f"No frames extracted into {frames_dir}")
    if len(frames) != frame_count:
        logger.warning(f"Expected {frame_count} frames from extraction, got {len(frames)}")
    return frames


# ── VideoReassembler ───────────────────────────────────────────────────────────


def get_codec_flags(codec: str, preset: str, crf: int) -> list[str]:
    """Return ffmpeg constant-quality codec flags for the requested encoder."""
    if codec == "h264":
        return ["-c:v", "libx264", "-preset", preset, "-crf", str(crf)]
    if codec == "h265":
        return ["-c:v", "libx265", "-preset", preset, "-crf", str(crf)]
    if codec == "h265-hw":
        # Apple VideoToolbox hardware encoder; -q:v maps roughly to CRF
        return ["-c:v", "hevc_videotoolbox", "-q:v", str(max(1, crf))]
    raise ValueError(f"Unsupported codec: {codec}")


def reassemble_video(
    ffmpeg_bin: str,
    frames_dir: Path,
    output_video: Path,
    *,
    framerate: int,
    codec: str = "h264",
    preset: str = "medium",
    crf: int = 18,
    cancel: Optional[CancelToken] = None,
) -> Path:
    """Encode upscaled frames, in filename order, into a video-only segment."""
    frames = sorted(frames_dir.glob(UPSCALED_FRAME_GLOB))
    if not frames:
        raise NoFramesFoundError(f"No upscaled frames found in {frames_dir}")

    logger.debug(f"Reassembling {len(frames)} frames into {output_video.name}")
    cmd = ffmpeg_base(ffmpeg_bin) + [
        "-framerate",
        str(framerate),
        "-start_number",
        "1",
        "-i",
        str(frames_dir / UPSCALED_FRAME_PATTERN),
    ]
    cmd.extend(get_codec_flags(codec, preset, crf))
    cmd.extend(["-pix_fmt", "yuv420p", str(output_video)])

    result = run_subprocess(cmd, check=False, capture_output=True, cancel=cancel)
    if result.returncode != 0 or not output_video.exists():
        raise ReassemblyError(f"Segment encode failed: {_stderr_tail(result)}")
    return output_video


# ── SegmentMerger ──────────────────────────────────────────────────────────────


def format_concat_entry(path: Path) -> str:
    """Render one concat-demuxer line; Windows separators become forward slashes."""
    normalized = str(path).replace("\\", "/").replace("'", r"'\''")
    return f"file '{normalized}'"


def write_segment_manifest(segment_paths: Sequence[Path], manifest_path: Path) -> Path:
    lines = [format_concat_entry(segment) for segment in segment_paths]
    manifest_path.write_text("\n".join(lines) + "\n")
    return manifest_path


def merge_segments(
    ffmpeg_bin: str,
    segment_paths: Sequence[Path],
    save_path: Path,
    *,
    manifest_path: Path,
    audio_path: Optional[Path],
    audio_bitrate: str = "192k",
    cancel: Optional[CancelToken] = None,
) -> Path:
    """Concatenate segments in the given order, copying video and muxing audio."""
    if not segment_paths:
        raise MergeError("No segments to merge.")

    write_segment_manifest(segment_paths, manifest_path)

    cmd = ffmpeg_base(ffmpeg_bin) + [
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(manifest_path),
    ]
    if audio_path is not None:
        cmd.extend(["-i", str(audio_path)])

    cmd.extend(["-map", "0:v:0"])
    if audio_path is not None:
        cmd.extend(["-map", "1:a:0"])

    cmd.extend(["-c:v", "copy"])
    if audio_path is not None:
        cmd.extend(["-c:a", "aac", "-b:a", audio_bitrate])
    cmd.append(str(save_path))

    result = run_subprocess(cmd, check=False, capture_output=True, cancel=cancel)
    if result.returncode != 0 or not save_path.exists():
        raise MergeError(f"Merging {len(segment_paths)} segment(s) failed: {_stderr_tail(result)}")
    return save_path
