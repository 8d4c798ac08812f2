"""CLI: argument parsing, runtime configuration, and path validation."""

from __future__ import annotations

import argparse
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, NoReturn, Optional, Sequence

# ── Constants ──────────────────────────────────────────────────────────────────

MODEL_NAME = "realesrgan-x4plus"
SCALE_FACTOR = 4
GPU_ID = 0
MAX_WIDTH = 2560
MAX_HEIGHT = 1440
DEFAULT_FRAMERATE = "30"
VIDEO_CODEC = "h264_nvenc"
ENCODER_PRESET = "p3"
PIXEL_FORMAT = "yuv420p"
WORKSPACE_NAME = "icecale-work"

TRUTHY = ("1", "true", "yes", "on")


# ── Configuration ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PipelineConfig:
    """Settings for one pipeline run.

    The encoding and upscaling choices are fixed; only deployment details
    (where tools live, where the workspace goes, timeouts) come from the
    environment.
    """

    tool_home: Path
    work_root: Path
    use_system_path: bool = False
    command_timeout: Optional[float] = None
    log_level: str = "WARNING"
    otlp_endpoint: Optional[str] = None
    model_name: str = MODEL_NAME
    scale: int = SCALE_FACTOR
    gpu_id: int = GPU_ID
    max_width: int = MAX_WIDTH
    max_height: int = MAX_HEIGHT
    default_framerate: str = DEFAULT_FRAMERATE
    video_codec: str = VIDEO_CODEC
    encoder_preset: str = ENCODER_PRESET
    pixel_format: str = PIXEL_FORMAT
    workspace_name: str = WORKSPACE_NAME

    @property
    def workspace_root(self) -> Path:
        return self.work_root / self.workspace_name

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        argv0: Optional[str] = None,
    ) -> "PipelineConfig":
        env = os.environ if environ is None else environ
        program = argv0 if argv0 is not None else sys.argv[0]

        home = env.get("ICECALE_HOME")
        tool_home = (
            Path(home).expanduser().resolve()
            if home
            else Path(program).expanduser().resolve().parent
        )
        work_root_raw = env.get("ICECALE_WORK_ROOT")
        work_root = (
            Path(work_root_raw).expanduser().resolve()
            if work_root_raw
            else Path(tempfile.gettempdir())
        )

        return cls(
            tool_home=tool_home,
            work_root=work_root,
            use_system_path=env.get("ICECALE_USE_SYSTEM_PATH", "").strip().lower() in TRUTHY,
            command_timeout=parse_timeout(env.get("ICECALE_COMMAND_TIMEOUT")),
            log_level=env.get("ICECALE_LOG_LEVEL", "WARNING").upper(),
            otlp_endpoint=env.get("ICECALE_OTLP_ENDPOINT") or None,
        )


def parse_timeout(value: Optional[str]) -> Optional[float]:
    """Seconds as a float; empty or zero means no timeout."""
    if value is None or not value.strip():
        return None
    try:
        seconds = float(value)
    except ValueError:
        raise ValueError(
            f"ICECALE_COMMAND_TIMEOUT must be a number of seconds, got {value!r}."
        ) from None
    if seconds < 0:
        raise ValueError("ICECALE_COMMAND_TIMEOUT must be >= 0.")
    return seconds or None


# ── Functions ──────────────────────────────────────────────────────────────────


class UsageErrorParser(argparse.ArgumentParser):
    """Report bad arguments with exit status 1, like every other failure."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def validate_paths(input_video: Path, output_video: Path) -> None:
    if not input_video.is_file():
        raise FileNotFoundError(f"Input file does not exist: {input_video}")
    if output_video == input_video:
        raise ValueError("Output video path must be different from input video path.")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = UsageErrorParser(
        prog="icecale",
        description=(
            f"Upscale a video {SCALE_FACTOR}x with Real-ESRGAN on an NVIDIA GPU, "
            f"capping the result at {MAX_WIDTH}x{MAX_HEIGHT}"
        ),
    )
    parser.add_argument("input_video", type=str, help="Path to input video")
    parser.add_argument("output_video", type=str, help="Path to output video")
    return parser.parse_args(argv)
