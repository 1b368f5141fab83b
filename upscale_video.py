#!/usr/bin/env python3
"""
Batched video upscaler (Real-ESRGAN ncnn-vulkan + ffmpeg).

Each input is split into fixed-size frame batches; every batch is extracted,
upscaled frame-by-frame in parallel, and encoded into a segment. Segments are
concatenated in order and the original audio is muxed back in.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from cli import (  # noqa: F401
    SUPPORTED_CODECS,
    SUPPORTED_PRESETS,
    SUPPORTED_SCALES,
    build_pipeline_config,
    parse_args,
    resolve_model_name,
    resolve_output_path,
    validate_runtime_args,
)
from errors import PipelineCancelled  # noqa: F401
from models import UpscaleJob
from pipeline import PipelineConfig, UpscalePipeline  # noqa: F401
from progress import format_time
from toolchain import CancelToken, Toolchain, progress_write, resolve_toolchain  # noqa: F401
from tracing import init_tracing, shutdown_tracing, traced

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(levelname)s] %(asctime)s > %(message)s"


class TqdmLoggingHandler(logging.Handler):
    """Emit log records through tqdm so they print above active bars."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            progress_write(self.format(record))
        except Exception:
            self.handleError(record)


def configure_logging(level: str) -> None:
    handler = TqdmLoggingHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)


class TqdmProgressSink:
    """One tqdm bar per job, driven by the pipeline's percentage events."""

    def __init__(self, disable: bool = False):
        self.disable = disable
        self._bars: dict[int, tqdm] = {}

    def __call__(self, job: UpscaleJob, percent: float, label: str) -> None:
        key = id(job)
        bar = self._bars.get(key)
        if bar is None:
            bar = tqdm(
                total=100,
                desc=job.name,
                unit="%",
                disable=self.disable,
                bar_format="{desc}: {percentage:3.0f}%|{bar}| {postfix}",
            )
            self._bars[key] = bar
        bar.n = round(percent, 1)
        bar.set_postfix_str(label, refresh=False)
        bar.refresh()

    def close(self) -> None:
        for bar in self._bars.values():
            bar.close()
        self._bars.clear()


def build_jobs(args: argparse.Namespace) -> list[UpscaleJob]:
    model = resolve_model_name(args)
    jobs = []
    for raw_input in args.input_videos:
        input_video = Path(raw_input).expanduser().resolve()
        jobs.append(
            UpscaleJob.from_path(
                input_video,
                output_path=resolve_output_path(
                    input_video, args.output, args.scale, args.output_dir
                ),
                model=model,
                scale=args.scale,
                tile_size=args.tile_size,
                fps=args.fps,
            )
        )
    return jobs


@traced
def run_jobs(
    args: argparse.Namespace,
    toolchain: Toolchain,
    cancel: CancelToken,
) -> list[tuple[str, str]]:
    """Process every input sequentially and return ``(input, status)`` pairs."""
    sink = TqdmProgressSink(disable=args.no_progress)
    pipeline = UpscalePipeline(toolchain, build_pipeline_config(args), progress_sink=sink)
    try:
        return pipeline.process_jobs(build_jobs(args), cancel)
    finally:
        sink.close()


def print_summary(results: list[tuple[str, str]], elapsed: float) -> None:
    print("\n" + "=" * 60)
    for input_path, status in results:
        print(f"{Path(input_path).name}: {status}")
    print(f"Total time: {format_time(elapsed)}")
    print("=" * 60 + "\n")


def main(argv: Optional[Sequence[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parse_args(raw_argv)
    configure_logging(args.log_level)
    init_tracing(args.otlp_endpoint)

    cancel = CancelToken()

    def request_cancel(_signum, _frame) -> None:
        progress_write("Cancelling... waiting for running tools to stop.")
        cancel.cancel()

    previous_handler = signal.signal(signal.SIGINT, request_cancel)
    try:
        validate_runtime_args(args)
        toolchain = resolve_toolchain(args)
        started = time.time()
        results = run_jobs(args, toolchain, cancel)
        print_summary(results, time.time() - started)
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        shutdown_tracing()

    if cancel.cancelled:
        return 130
    if any(status.startswith("Failed") for _input, status in results):
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
