"""CLI: argument parsing, model selection, and runtime validation."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

from models import ANIMATION_MODEL, DEFAULT_BATCH_SIZE, DEFAULT_MODEL, default_output_path
from pipeline import PipelineConfig

# ── Constants ──────────────────────────────────────────────────────────────────

SUPPORTED_SCALES = (2, 3, 4)
SUPPORTED_CODECS = ("h264", "h265", "h265-hw")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
SUPPORTED_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)


# ── Functions ──────────────────────────────────────────────────────────────────


def resolve_model_name(args: argparse.Namespace) -> str:
    """Map the content type to a model unless ``--model`` overrides it."""
    if args.model:
        return args.model
    if args.type_alias == "animation":
        return ANIMATION_MODEL
    return DEFAULT_MODEL


def resolve_output_path(
    input_video: Path,
    output_arg: Optional[str],
    scale: int,
    output_dir: Optional[str] = None,
) -> Path:
    if output_arg:
        return Path(output_arg).expanduser().resolve()
    directory = Path(output_dir).expanduser().resolve() if output_dir else None
    return default_output_path(input_video, scale, directory)


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.output and len(args.input_videos) > 1:
        raise ValueError("--output can only be used with a single input; use --output-dir.")
    if args.output and len(args.input_videos) == 1:
        input_video = Path(args.input_videos[0]).expanduser().resolve()
        if Path(args.output).expanduser().resolve() == input_video:
            raise ValueError("Output video path must be different from input video path.")
    if args.crf < 0 or args.crf > 51:
        raise ValueError("CRF must be between 0 and 51.")
    if args.tile_size < 0:
        raise ValueError("Tile size must be >= 0.")
    if args.fps < 0:
        raise ValueError("FPS must be >= 0 (0 keeps the source frame rate).")
    if args.batch_size <= 0:
        raise ValueError("Batch size must be > 0.")
    if args.workers is not None and args.workers <= 0:
        raise ValueError("Workers must be > 0.")
    if args.jobs and len(args.jobs.split(":")) != 3:
        raise ValueError("Jobs must look like load:proc:save, for example 2:2:2.")


def build_pipeline_config(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig(
        batch_size=args.batch_size,
        workers=args.workers,
        gpu_id=args.gpu,
        jobs=args.jobs,
        codec=args.codec,
        preset=args.preset,
        crf=args.crf,
        audio_bitrate=args.audio_bitrate,
        work_dir=Path(args.work_dir).expanduser().resolve() if args.work_dir else None,
        keep_temp=args.keep_temp,
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Upscale videos batch-by-batch using Real-ESRGAN",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("input_videos", type=str, nargs="+", help="Input video path(s)")
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Output video path for a single input (default: <input>_upscaled_<scale>x.mp4)",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Directory for upscaled outputs (default: next to each input)",
    )
    parser.add_argument(
        "-s",
        "--scale",
        type=int,
        default=4,
        choices=SUPPORTED_SCALES,
        help="Upscaling factor",
    )
    parser.add_argument(
        "--type",
        dest="type_alias",
        type=str,
        default="real-life",
        choices=("real-life", "animation"),
        help="Video content type (determines underlying AI model)",
    )
    parser.add_argument(
        "-m",
        "--model",
        type=str,
        default=None,
        help=argparse.SUPPRESS,  # Hidden advanced override
    )
    parser.add_argument("-g", "--gpu", type=int, default=0, help="GPU device ID")
    parser.add_argument(
        "--realesrgan-path",
        type=str,
        default=None,
        help="Custom path to realesrgan-ncnn-vulkan binary",
    )
    parser.add_argument(
        "--model-path",
        type=str,
        default=None,
        help="Custom model directory path",
    )
    parser.add_argument(
        "-t",
        "--tile-size",
        type=int,
        default=0,
        help="Tile size (0 = auto)",
    )
    parser.add_argument(
        "--fps",
        type=int,
        default=0,
        help="Output frame rate (0 = same as source)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help="Frames extracted and upscaled per batch",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Concurrent Real-ESRGAN processes (default: half the CPU count)",
    )
    parser.add_argument(
        "--jobs",
        type=str,
        default=None,
        help="Real-ESRGAN thread tuple (load:proc:save), for example 2:2:2",
    )
    parser.add_argument(
        "--codec",
        type=str,
        choices=SUPPORTED_CODECS,
        default="h264",
        help="Segment codec. h265-hw uses Apple VideoToolbox hardware encoder.",
    )
    parser.add_argument("--crf", type=int, default=18, help="Segment CRF (0-51)")
    parser.add_argument(
        "--preset",
        type=str,
        default="medium",
        choices=SUPPORTED_PRESETS,
        help="Encoder preset",
    )
    parser.add_argument(
        "--audio-bitrate",
        type=str,
        default="192k",
        help="Audio bitrate for final AAC encode",
    )
    parser.add_argument(
        "--work-dir",
        type=str,
        default=None,
        help="Directory for per-job temporary files (default: system temp)",
    )
    parser.add_argument("--keep-temp", action="store_true", help="Keep temporary workspace")
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bars")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default="INFO",
        help="Logging verbosity",
    )
    parser.add_argument(
        "--otlp-endpoint",
        type=str,
        default=None,
        help="Export tracing spans to this OTLP/HTTP endpoint",
    )

    return parser.parse_args(argv)
