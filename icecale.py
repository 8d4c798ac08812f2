#!/usr/bin/env python3
"""
Video upscaler pipeline (Real-ESRGAN on NVIDIA GPUs, output capped at 1440p).

Validate -> probe -> split -> upscale every frame -> reassemble. Each stage
waits for its external tool to finish before the next one starts.
"""

from __future__ import annotations

import functools
import logging
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from tqdm import tqdm

from cli import PipelineConfig, parse_args, validate_paths
from errors import EmptyInputError, PreconditionError, StageFailureError
from media import (
    FRAME_GLOB,
    VideoMetadata,
    assemble_video,
    capped_dimensions,
    extract_audio,
    extract_frames,
    probe_video,
)
from toolchain import (
    ChainedToolLocator,
    CommandRunner,
    LocalToolLocator,
    SearchPathToolLocator,
    ToolLocator,
    progress_write,
    resolve_toolchain,
    run_command,
)
from tracing import init_tracing, shutdown_tracing, traced

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

# Rough PNG footprint; real frames usually compress better.
PNG_BYTES_PER_PIXEL = 1.5


@dataclass(frozen=True)
class Workspace:
    """Scratch directory shared by all stages of one run. Never auto-deleted."""

    root: Path

    @property
    def frames_raw(self) -> Path:
        return self.root / "frames_raw"

    @property
    def frames_upscaled(self) -> Path:
        return self.root / "frames_upscaled"

    @property
    def audio_file(self) -> Path:
        return self.root / "audio.mka"

    def prepare(self) -> None:
        """Create the layout and drop artifacts left by a previous run."""
        for frames_dir in (self.frames_raw, self.frames_upscaled):
            frames_dir.mkdir(parents=True, exist_ok=True)
            for stale in frames_dir.glob(FRAME_GLOB):
                stale.unlink(missing_ok=True)
        self.audio_file.unlink(missing_ok=True)


@dataclass(frozen=True)
class PipelineResult:
    output_video: Path
    metadata: VideoMetadata
    frame_count: int
    has_audio: bool
    elapsed_seconds: float


class FrameProgress:
    """tqdm bar driven by ``(completed, total)`` reports."""

    def __init__(self, desc: str = "Upscaling frames") -> None:
        self.desc = desc
        self._bar: Optional[tqdm] = None

    def __call__(self, completed: int, total: int) -> None:
        if self._bar is None:
            # Count-only bar when the total is unknown.
            self._bar = tqdm(
                total=total if total > 0 else None,
                desc=self.desc,
                unit="frame",
                bar_format="{desc}: {n_fmt}/{total_fmt} [{elapsed}<{remaining}{postfix}]",
            )
        self._bar.update(completed - self._bar.n)
        percent = progress_percent(completed, total)
        if percent is not None:
            self._bar.set_postfix_str(f"{percent:.1f}%")

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    def __enter__(self) -> "FrameProgress":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


def check_disk_space(workspace_root: Path, info: VideoMetadata, scale: int) -> None:
    """Warn or fail if raw plus upscaled frames will not fit on the workspace volume."""
    if info.total_frames <= 0:
        return

    raw_bytes = info.width * info.height * PNG_BYTES_PER_PIXEL
    upscaled_bytes = (info.width * scale) * (info.height * scale) * PNG_BYTES_PER_PIXEL
    projected_bytes = (raw_bytes + upscaled_bytes) * info.total_frames

    available = shutil.disk_usage(workspace_root).free
    projected_gb = projected_bytes / (1024**3)
    available_gb = available / (1024**3)
    if projected_bytes > available * 0.9:
        raise PreconditionError(
            f"Projected disk usage ({projected_gb:.1f} GB) exceeds 90% of "
            f"available space ({available_gb:.1f} GB) under {workspace_root}. "
            "Set ICECALE_WORK_ROOT to a larger volume."
        )
    if projected_bytes > available * 0.5:
        progress_write(
            f"Warning: Projected disk usage ({projected_gb:.1f} GB) is over "
            f"50% of available space ({available_gb:.1f} GB)."
        )


# ── Upscale ────────────────────────────────────────────────────────────────────


def list_frames(frames_dir: Path) -> list[Path]:
    """Regular files in ``frames_dir``, in filename order."""
    if not frames_dir.is_dir():
        return []
    return sorted((p for p in frames_dir.iterdir() if p.is_file()), key=lambda p: p.name)


def progress_total(expected_frames: int, enumerated_frames: int) -> int:
    return expected_frames if expected_frames > 0 else enumerated_frames


def progress_percent(completed: int, total: int) -> Optional[float]:
    if total <= 0:
        return None
    return 100.0 * completed / total


def build_realesrgan_command(
    realesrgan_binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    scale_factor: int,
    model_name: str,
    gpu_id: int,
    model_path: Optional[Path],
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
    ]

    if model_path is not None:
        cmd.extend(["-m", str(model_path)])

    return cmd


@traced
def upscale_frames(
    realesrgan_binary: Path,
    input_frames_dir: Path,
    output_frames_dir: Path,
    *,
    expected_frames: int,
    scale_factor: int,
    model_name: str,
    gpu_id: int,
    model_path: Optional[Path] = None,
    runner: CommandRunner = run_command,
    on_progress: Optional[ProgressCallback] = None,
) -> int:
    """Upscale every frame in order; the first failure aborts the run."""
    frames = list_frames(input_frames_dir)
    if not frames:
        raise EmptyInputError(f"No frames found to upscale in {input_frames_dir}.")

    output_frames_dir.mkdir(parents=True, exist_ok=True)
    total = progress_total(expected_frames, len(frames))

    for completed, frame in enumerate(frames, start=1):
        cmd = build_realesrgan_command(
            realesrgan_binary,
            frame,
            output_frames_dir / frame.name,
            scale_factor=scale_factor,
            model_name=model_name,
            gpu_id=gpu_id,
            model_path=model_path,
        )
        outcome = runner(cmd)
        if not outcome.ok:
            raise StageFailureError("Upscale", f"Real-ESRGAN failed on frame {frame}", outcome.output)

        if on_progress is not None:
            on_progress(completed, total)

    return len(frames)


# ── Pipeline ───────────────────────────────────────────────────────────────────


def build_locator(config: PipelineConfig) -> ToolLocator:
    local = LocalToolLocator(config.tool_home)
    if config.use_system_path:
        return ChainedToolLocator(local, SearchPathToolLocator())
    return local


@traced
def run_pipeline(
    input_video: Path,
    output_video: Path,
    config: PipelineConfig,
    *,
    runner: Optional[CommandRunner] = None,
    locator: Optional[ToolLocator] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> PipelineResult:
    validate_paths(input_video, output_video)
    if runner is None:
        runner = functools.partial(run_command, timeout=config.command_timeout)
    if locator is None:
        locator = build_locator(config)

    print("\n" + "=" * 60)
    print("Video Upscaler - Real-ESRGAN")
    print("=" * 60)
    print(f"Input:  {input_video}")
    print(f"Output: {output_video}")
    print(f"Scale:  {config.scale}x (capped to {config.max_width}x{config.max_height})")
    print(f"Model:  {config.model_name}")
    print("=" * 60 + "\n")

    total_start = time.time()

    print("Verifying environment...")
    step_start = time.time()
    toolchain = resolve_toolchain(locator, runner)
    print(f"  Time: {format_time(time.time() - step_start)}\n")

    print("Probing input video...")
    step_start = time.time()
    info = probe_video(toolchain.ffprobe, input_video, runner)
    print(f"  Resolution: {info.width}x{info.height}")
    print(f"  Framerate:  {info.fps_raw if info.fps > 0 else 'unknown'}")
    print(f"  Frames:     {info.total_frames if info.total_frames > 0 else 'unknown'}")
    if info.duration_seconds > 0:
        print(f"  Duration:   {info.duration_seconds:.1f}s")
    print(f"  Time: {format_time(time.time() - step_start)}\n")

    workspace = Workspace(config.workspace_root)
    workspace.prepare()
    print(f"Workspace: {workspace.root}\n")
    check_disk_space(workspace.root, info, config.scale)

    print("Extracting audio (if present)...")
    step_start = time.time()
    audio_path = extract_audio(toolchain.ffmpeg, input_video, workspace.audio_file, runner)
    if audio_path is not None:
        print(f"  Audio extracted to {audio_path}")
    print(f"  Time: {format_time(time.time() - step_start)}\n")

    print("Extracting frames...")
    step_start = time.time()
    extract_frames(toolchain.ffmpeg, input_video, workspace.frames_raw, runner)
    print(f"  Time: {format_time(time.time() - step_start)}\n")

    print(f"Upscaling with Real-ESRGAN (x{config.scale})...")
    step_start = time.time()
    with FrameProgress() as bar:
        frame_count = upscale_frames(
            toolchain.realesrgan_binary,
            workspace.frames_raw,
            workspace.frames_upscaled,
            expected_frames=info.total_frames,
            scale_factor=config.scale,
            model_name=config.model_name,
            gpu_id=config.gpu_id,
            model_path=toolchain.model_path,
            runner=runner,
            on_progress=on_progress or bar,
        )
    upscale_elapsed = time.time() - step_start
    fps_processed = frame_count / upscale_elapsed if upscale_elapsed > 0 else 0.0
    print(f"  Frames: {frame_count}")
    print(f"  Time: {format_time(upscale_elapsed)} ({fps_processed:.2f} frames/sec)\n")

    out_width, out_height = capped_dimensions(
        info.width * config.scale,
        info.height * config.scale,
        config.max_width,
        config.max_height,
    )
    print(f"Assembling final video at {out_width}x{out_height}...")
    step_start = time.time()
    output_video.parent.mkdir(parents=True, exist_ok=True)
    assemble_video(
        toolchain.ffmpeg,
        workspace.frames_upscaled,
        output_video,
        fps_raw=info.fps_raw,
        audio_path=audio_path,
        runner=runner,
        default_framerate=config.default_framerate,
        video_codec=config.video_codec,
        preset=config.encoder_preset,
        pixel_format=config.pixel_format,
        max_width=config.max_width,
        max_height=config.max_height,
    )
    print(f"  Time: {format_time(time.time() - step_start)}\n")

    total_elapsed = time.time() - total_start
    print("=" * 60)
    print("Complete!")
    print(f"Total time: {format_time(total_elapsed)}")
    print(f"Upscaled video saved to: {output_video}")
    if output_video.exists():
        output_size_mb = output_video.stat().st_size / (1024 * 1024)
        print(f"Output size: {output_size_mb:.1f} MB")
    print("=" * 60 + "\n")

    return PipelineResult(
        output_video=output_video,
        metadata=info,
        frame_count=frame_count,
        has_audio=audio_path is not None,
        elapsed_seconds=total_elapsed,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = PipelineConfig.from_env()
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    init_tracing(config.otlp_endpoint)
    try:
        run_pipeline(
            Path(args.input_video).expanduser().resolve(),
            Path(args.output_video).expanduser().resolve(),
            config,
        )
        return 0
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        logger.debug("pipeline failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        shutdown_tracing()


if __name__ == "__main__":
    raise SystemExit(main())
