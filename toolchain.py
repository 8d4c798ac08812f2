"""Toolchain: subprocess runner, tool lookup, and environment validation."""

from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from tqdm import tqdm

from errors import (
    PreconditionError,
    ProcessLaunchError,
    ProcessTimeoutError,
    ToolNotFoundError,
    ToolUnavailableError,
)
from tracing import traced

logger = logging.getLogger(__name__)

FFMPEG = "ffmpeg"
FFPROBE = "ffprobe"
REALESRGAN = "realesrgan-ncnn-vulkan"
GPU_PROBER = "nvidia-smi"
GPU_QUERY = ("--query-gpu=name", "--format=csv,noheader")


@dataclass(frozen=True)
class CommandOutcome:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


CommandRunner = Callable[[Sequence[str]], CommandOutcome]


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: Path
    ffprobe: Path
    realesrgan_binary: Path
    model_path: Optional[Path]
    gpu_name: str


def progress_write(message: str) -> None:
    """Write a message without corrupting an active progress bar."""
    tqdm.write(message)


def run_command(cmd: Sequence[str], *, timeout: Optional[float] = None) -> CommandOutcome:
    """Run ``cmd`` to completion and capture stdout and stderr interleaved.

    A nonzero exit status is returned, not raised. Only a process that cannot
    be started at all (or outlives ``timeout``) raises.
    """
    argv = [str(part) for part in cmd]
    logger.debug("exec: %s", argv)
    try:
        completed = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        partial = exc.output or ""
        if isinstance(partial, bytes):
            partial = partial.decode(errors="replace")
        raise ProcessTimeoutError(argv, timeout or 0.0, partial) from exc
    except OSError as exc:
        raise ProcessLaunchError(argv, exc) from exc

    logger.debug("exit %d: %s", completed.returncode, argv[0])
    return CommandOutcome(exit_code=completed.returncode, output=completed.stdout or "")


# ── Tool lookup ────────────────────────────────────────────────────────────────


def is_windows() -> bool:
    return platform.system().lower() == "windows"


def executable_name(name: str) -> str:
    return f"{name}.exe" if is_windows() else name


def is_executable(candidate: Path) -> bool:
    if not candidate.is_file():
        return False
    if is_windows():
        return True
    return os.access(candidate, os.X_OK)


class ToolLocator(Protocol):
    def locate(self, name: str) -> Path:
        ...


class LocalToolLocator:
    """Search a fixed set of folders relative to a base directory.

    Order: beside the executable, ``bin/``, ``third_party/<name>/`` and
    ``third_party/bin/``. The process search path is never consulted.
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)

    def candidates(self, name: str) -> list[Path]:
        filename = executable_name(name)
        return [
            self.base_dir / filename,
            self.base_dir / "bin" / filename,
            self.base_dir / "third_party" / name / filename,
            self.base_dir / "third_party" / "bin" / filename,
        ]

    def locate(self, name: str) -> Path:
        searched = self.candidates(name)
        for candidate in searched:
            if is_executable(candidate):
                return candidate
        raise ToolNotFoundError(name, searched)


class SearchPathToolLocator:
    def locate(self, name: str) -> Path:
        found = shutil.which(executable_name(name))
        if not found:
            raise ToolNotFoundError(name)
        return Path(found)


class ChainedToolLocator:
    """Try each locator in turn; the first hit wins."""

    def __init__(self, *locators: ToolLocator) -> None:
        self.locators = locators

    def locate(self, name: str) -> Path:
        searched: list[Path] = []
        for locator in self.locators:
            try:
                return locator.locate(name)
            except ToolNotFoundError as exc:
                searched.extend(exc.searched)
        raise ToolNotFoundError(name, searched)


def executable_dir(argv0: str) -> Path:
    """Directory holding the running program, resolved from ``argv[0]``."""
    return Path(argv0).expanduser().resolve().parent


# ── Environment validation ─────────────────────────────────────────────────────


@traced
def detect_gpu(runner: CommandRunner = run_command) -> str:
    """Return the first GPU name reported by the prober."""
    try:
        outcome = runner([GPU_PROBER, *GPU_QUERY])
    except ProcessLaunchError as exc:
        raise PreconditionError(
            "No NVIDIA GPU detected. The application requires an NVIDIA GPU to run."
        ) from exc

    names = [line.strip() for line in outcome.output.splitlines() if line.strip()]
    if not outcome.ok or not names:
        raise PreconditionError(
            "No NVIDIA GPU detected. The application requires an NVIDIA GPU to run."
        )
    return names[0]


def locate_tool(locator: ToolLocator, name: str) -> Path:
    return locator.locate(name)


def verify_tool(path: Path, probe_flag: str, runner: CommandRunner = run_command) -> None:
    """Require ``path probe_flag`` to exit zero."""
    try:
        outcome = runner([str(path), probe_flag])
    except ProcessLaunchError as exc:
        raise ToolUnavailableError(path, str(exc)) from exc
    if not outcome.ok:
        raise ToolUnavailableError(path, outcome.output)


def resolve_model_path(realesrgan_binary: Path) -> Optional[Path]:
    """Use the ``models`` folder shipped next to the upscaler, if any."""
    sibling_models = realesrgan_binary.parent / "models"
    if sibling_models.is_dir():
        return sibling_models.resolve()
    return None


@traced
def resolve_toolchain(locator: ToolLocator, runner: CommandRunner = run_command) -> Toolchain:
    """Check for a GPU, then find and smoke-test every collaborator."""
    gpu_name = detect_gpu(runner)
    print(f"  Detected NVIDIA GPU: {gpu_name}")

    ffmpeg_bin = locate_tool(locator, FFMPEG)
    ffprobe_bin = locate_tool(locator, FFPROBE)
    realesrgan_bin = locate_tool(locator, REALESRGAN)

    verify_tool(ffmpeg_bin, "-version", runner)
    verify_tool(ffprobe_bin, "-version", runner)
    verify_tool(realesrgan_bin, "-h", runner)

    return Toolchain(
        ffmpeg=ffmpeg_bin,
        ffprobe=ffprobe_bin,
        realesrgan_binary=realesrgan_bin,
        model_path=resolve_model_path(realesrgan_bin),
        gpu_name=gpu_name,
    )
