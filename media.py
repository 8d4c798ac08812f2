"""ffprobe/ffmpeg stages: metadata probe, audio/frame split, final assembly."""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cli import (
    DEFAULT_FRAMERATE,
    ENCODER_PRESET,
    MAX_HEIGHT,
    MAX_WIDTH,
    PIXEL_FORMAT,
    VIDEO_CODEC,
)
from errors import ProbeParseError, StageFailureError
from toolchain import CommandRunner, progress_write, run_command
from tracing import traced

NOT_AVAILABLE = "N/A"

# Fixed width keeps lexicographic order equal to frame order.
FRAME_PATTERN = "frame_%08d.png"
FRAME_GLOB = "frame_*.png"

# Field order of the probe line.
PROBE_FIELDS = (
    "nb_read_frames",
    "nb_frames",
    "width",
    "height",
    "avg_frame_rate",
    "duration",
)

QUIET_FLAGS = ["-hide_banner", "-loglevel", "warning"]


@dataclass(frozen=True)
class VideoMetadata:
    width: int
    height: int
    fps: float
    fps_raw: str
    duration_seconds: float
    total_frames: int


# ── Metadata probe ─────────────────────────────────────────────────────────────


def _is_unknown(token: str) -> bool:
    return token == NOT_AVAILABLE or token == ""


def parse_framerate(value: str) -> float:
    """Parse ffprobe rates such as ``30000/1001`` or ``29.97``.

    A zero denominator or an unknown marker means "unknown" and yields 0.0.
    """
    value = value.strip()
    if _is_unknown(value):
        return 0.0

    if "/" in value:
        num, den = value.split("/", maxsplit=1)
        denominator = float(den)
        if denominator == 0:
            return 0.0
        return float(num) / denominator
    return float(value)


def parse_count(token: str) -> int:
    token = token.strip()
    if _is_unknown(token):
        return 0
    return int(token)


def parse_seconds(token: str) -> float:
    token = token.strip()
    if _is_unknown(token):
        return 0.0
    return float(token)


def resolve_total_frames(
    counted_frames: int,
    declared_frames: int,
    duration_seconds: float,
    fps: float,
) -> int:
    """Best-effort frame count, used for progress display only."""
    if counted_frames > 0:
        return counted_frames
    if declared_frames > 0:
        return declared_frames
    if duration_seconds > 0 and fps > 0:
        return int(math.floor(duration_seconds * fps + 0.5))
    return 0


def _order_tokens(tokens: list[str], output: str) -> list[str]:
    """Map ``key=value`` tokens onto PROBE_FIELDS; plain tokens pass through."""
    if not all("=" in token for token in tokens):
        return tokens[: len(PROBE_FIELDS)]

    keyed = {}
    for token in tokens:
        key, _, value = token.partition("=")
        keyed[key.strip()] = value
    missing = [field for field in PROBE_FIELDS if field not in keyed]
    if missing:
        raise ProbeParseError(f"missing {', '.join(missing)}", output)
    return [keyed[field] for field in PROBE_FIELDS]


def parse_probe_output(output: str) -> VideoMetadata:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        raise ProbeParseError("empty", output)

    tokens = lines[0].split(",")
    if len(tokens) < len(PROBE_FIELDS):
        raise ProbeParseError(
            f"expected {len(PROBE_FIELDS)} fields, got {len(tokens)}", output
        )
    counted, declared, width, height, rate, duration = _order_tokens(tokens, output)

    try:
        metadata_width = parse_count(width)
        metadata_height = parse_count(height)
        counted_frames = parse_count(counted)
        declared_frames = parse_count(declared)
        fps = parse_framerate(rate)
        duration_seconds = parse_seconds(duration)
    except ValueError as exc:
        raise ProbeParseError(str(exc), output) from exc

    if metadata_width <= 0 or metadata_height <= 0:
        raise ProbeParseError(
            f"invalid resolution {metadata_width}x{metadata_height}", output
        )

    return VideoMetadata(
        width=metadata_width,
        height=metadata_height,
        fps=fps,
        fps_raw=rate.strip(),
        duration_seconds=max(duration_seconds, 0.0),
        total_frames=resolve_total_frames(
            counted_frames, declared_frames, duration_seconds, fps
        ),
    )


def build_probe_command(ffprobe_bin: Path, input_video: Path) -> list[str]:
    return [
        str(ffprobe_bin),
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-count_frames",
        "-show_entries",
        "stream=" + ",".join(PROBE_FIELDS),
        "-of",
        "csv=p=0:nk=0",
        str(input_video),
    ]


@traced
def probe_video(
    ffprobe_bin: Path,
    input_video: Path,
    runner: CommandRunner = run_command,
) -> VideoMetadata:
    """Read resolution, frame rate, duration and frame count with ffprobe."""
    outcome = runner(build_probe_command(ffprobe_bin, input_video))
    if not outcome.ok:
        raise StageFailureError("Probe", "could not read video metadata", outcome.output)
    return parse_probe_output(outcome.output)


# ── Split ──────────────────────────────────────────────────────────────────────


def has_audio_track(audio_path: Path) -> bool:
    return audio_path.is_file() and audio_path.stat().st_size > 0


@traced
def extract_audio(
    ffmpeg_bin: Path,
    input_video: Path,
    audio_path: Path,
    runner: CommandRunner = run_command,
) -> Optional[Path]:
    """Stream-copy the first audio track; a failure just means no audio."""
    cmd = [
        str(ffmpeg_bin),
        *QUIET_FLAGS,
        "-y",
        "-i",
        str(input_video),
        "-vn",
        "-map",
        "0:a:0",
        "-c:a",
        "copy",
        str(audio_path),
    ]
    outcome = runner(cmd)
    if outcome.ok and has_audio_track(audio_path):
        return audio_path

    progress_write("  No audio track was extracted (audio will be omitted in the final render).")
    return None


@traced
def extract_frames(
    ffmpeg_bin: Path,
    input_video: Path,
    frames_dir: Path,
    runner: CommandRunner = run_command,
) -> None:
    """Dump every decoded frame, without frame-rate resampling, to PNG."""
    frames_dir.mkdir(parents=True, exist_ok=True)
    cmd = [
        str(ffmpeg_bin),
        *QUIET_FLAGS,
        "-y",
        "-i",
        str(input_video),
        "-fps_mode",
        "passthrough",
        "-start_number",
        "1",
        str(frames_dir / FRAME_PATTERN),
    ]
    outcome = runner(cmd)
    if not outcome.ok:
        raise StageFailureError(
            "Frame extraction", f"ffmpeg exited with status {outcome.exit_code}", outcome.output
        )


# ── Assembly ───────────────────────────────────────────────────────────────────


def build_scale_filter(max_width: int = MAX_WIDTH, max_height: int = MAX_HEIGHT) -> str:
    """Shrink-only fit into the cap, then round both sides down to even."""
    return (
        f"scale='min({max_width},iw)':'min({max_height},ih)'"
        ":force_original_aspect_ratio=decrease"
        ",scale=trunc(iw/2)*2:trunc(ih/2)*2"
    )


def capped_dimensions(
    width: int,
    height: int,
    max_width: int = MAX_WIDTH,
    max_height: int = MAX_HEIGHT,
) -> tuple[int, int]:
    """Output size produced by ``build_scale_filter`` for a ``width x height`` input."""
    box_width = min(max_width, width)
    box_height = min(max_height, height)

    if width * box_height > height * box_width:
        out_width = box_width
        out_height = (height * box_width + width // 2) // width
    else:
        out_height = box_height
        out_width = (width * box_height + height // 2) // height

    out_width = max(2, out_width - out_width % 2)
    out_height = max(2, out_height - out_height % 2)
    return out_width, out_height


def input_framerate(fps_raw: str, default_framerate: str = DEFAULT_FRAMERATE) -> str:
    """The reported rate string as-is, or the default when it is unknown or unusable."""
    try:
        usable = parse_framerate(fps_raw) > 0
    except ValueError:
        usable = False
    return fps_raw.strip() if usable else default_framerate


def build_assemble_command(
    ffmpeg_bin: Path,
    frames_dir: Path,
    output_video: Path,
    *,
    fps_raw: str,
    audio_path: Optional[Path],
    video_codec: str = VIDEO_CODEC,
    preset: str = ENCODER_PRESET,
    pixel_format: str = PIXEL_FORMAT,
    max_width: int = MAX_WIDTH,
    max_height: int = MAX_HEIGHT,
    default_framerate: str = DEFAULT_FRAMERATE,
) -> list[str]:
    cmd = [
        str(ffmpeg_bin),
        *QUIET_FLAGS,
        "-y",
        "-framerate",
        input_framerate(fps_raw, default_framerate),
        "-i",
        str(frames_dir / FRAME_PATTERN),
    ]

    if audio_path is not None:
        cmd.extend(["-i", str(audio_path), "-map", "0:v:0", "-map", "1:a:0"])

    cmd.extend(
        [
            "-vf",
            build_scale_filter(max_width, max_height),
            "-c:v",
            video_codec,
            "-preset",
            preset,
            "-pix_fmt",
            pixel_format,
        ]
    )

    if audio_path is not None:
        cmd.extend(["-c:a", "copy"])

    cmd.append(str(output_video))
    return cmd


@traced
def assemble_video(
    ffmpeg_bin: Path,
    frames_dir: Path,
    output_video: Path,
    *,
    fps_raw: str,
    audio_path: Optional[Path],
    runner: CommandRunner = run_command,
    **encoder_options,
) -> None:
    """Encode the upscaled frames and remux the original audio untouched."""
    cmd = build_assemble_command(
        ffmpeg_bin,
        frames_dir,
        output_video,
        fps_raw=fps_raw,
        audio_path=audio_path,
        **encoder_options,
    )
    outcome = runner(cmd)
    if not outcome.ok:
        raise StageFailureError("Assembly", "could not encode the final video", outcome.output)
