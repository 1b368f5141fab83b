"""Toolchain: binary resolution, cancellable subprocess wrapper, and progress output."""

from __future__ import annotations

import argparse
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from errors import PipelineCancelled

CANCEL_POLL_SECONDS = 0.2
REALESRGAN_BINARY = "realesrgan-ncnn-vulkan"


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str
    realesrgan_binary: Path
    model_path: Optional[Path]


class CancelToken:
    """Cancellation signal shared by one job and every process it spawns."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled("Job cancelled.")


def progress_write(message: str) -> None:
    """Write a message without breaking active tqdm progress bars."""
    tqdm.write(message)


def _stop_process(proc: subprocess.Popen) -> None:
    proc.kill()
    proc.communicate()


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
) -> subprocess.CompletedProcess[str]:
    """Run a command to completion, killing it early if ``cancel`` fires.

    Raises PipelineCancelled when the token is set before or during the run.
    """
    args = [str(part) for part in cmd]
    if cancel is not None:
        cancel.raise_if_cancelled()

    pipe = subprocess.PIPE if capture_output else None
    deadline = time.monotonic() + timeout if timeout is not None else None
    with subprocess.Popen(args, stdout=pipe, stderr=pipe, text=True) as proc:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=CANCEL_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    _stop_process(proc)
                    raise PipelineCancelled(f"Cancelled: {Path(args[0]).name}") from None
                if deadline is not None and time.monotonic() >= deadline:
                    _stop_process(proc)
                    raise subprocess.TimeoutExpired(args, timeout) from None

    result = subprocess.CompletedProcess(args, proc.returncode, stdout, stderr)
    if check:
        result.check_returncode()
    return result


def _which_or_path(tool: str, explicit: Optional[str]) -> Path:
    """An explicit file wins; otherwise ``tool`` is looked up on PATH."""
    if explicit:
        candidate = Path(explicit).expanduser().resolve()
        if not candidate.is_file():
            raise FileNotFoundError(f"{tool} not found at: {candidate}")
        return candidate

    found = shutil.which(tool)
    if found is None:
        raise FileNotFoundError(f"{tool} not found on PATH.")
    return Path(found).resolve()


def resolve_toolchain(args: argparse.Namespace) -> Toolchain:
    """Build the toolchain from ``--realesrgan-path``/``--model-path`` and PATH.

    A ``models`` directory next to the Real-ESRGAN binary is used when no
    model path is given.
    """
    missing = [tool for tool in ("ffmpeg", "ffprobe") if shutil.which(tool) is None]
    if missing:
        raise FileNotFoundError(f"Missing required dependency: {', '.join(missing)}.")

    try:
        realesrgan = _which_or_path(REALESRGAN_BINARY, args.realesrgan_path)
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"{exc} Pass --realesrgan-path explicitly.") from exc

    if args.model_path:
        model_path: Optional[Path] = Path(args.model_path).expanduser().resolve()
        if not model_path.is_dir():
            raise FileNotFoundError(f"Model directory not found: {model_path}")
    else:
        sibling = realesrgan.parent / "models"
        model_path = sibling if sibling.is_dir() else None

    return Toolchain(
        ffmpeg=shutil.which("ffmpeg"),
        ffprobe=shutil.which("ffprobe"),
        realesrgan_binary=realesrgan,
        model_path=model_path,
    )
