"""Errors raised by the upscaling pipeline.

Every failure is fatal: stages raise one of these and ``main`` turns it into a
single diagnostic on stderr and exit code 1.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class IcecaleError(RuntimeError):
    """Base class for all pipeline failures."""


class PreconditionError(IcecaleError):
    """The host cannot run the pipeline at all (no compatible GPU, no disk)."""


class ToolNotFoundError(IcecaleError):
    def __init__(self, name: str, searched: Sequence[Path] = ()) -> None:
        self.name = name
        self.searched = [Path(p) for p in searched]
        message = f"Required tool not found: {name}"
        if self.searched:
            message += "\nSearched:\n" + "\n".join(f"  {p}" for p in self.searched)
        super().__init__(message)


class ToolUnavailableError(IcecaleError):
    def __init__(self, path: Path, output: str = "") -> None:
        self.path = Path(path)
        self.output = output
        super().__init__(f"Required command '{self.path}' is not available.\nOutput:\n{output}")


class ProbeParseError(IcecaleError):
    def __init__(self, detail: str, output: str = "") -> None:
        self.output = output
        super().__init__(f"Unexpected ffprobe output ({detail}):\n{output}")


class EmptyInputError(IcecaleError):
    """No frames were found to upscale."""


class StageFailureError(IcecaleError):
    def __init__(self, stage: str, detail: str, output: str = "") -> None:
        self.stage = stage
        self.output = output
        super().__init__(f"{stage} failed: {detail}\nOutput:\n{output}")


class ProcessLaunchError(IcecaleError):
    """The external program could not be started (missing, not executable)."""

    def __init__(self, command: Sequence[str], reason: Optional[BaseException] = None) -> None:
        self.command = [str(part) for part in command]
        program = self.command[0] if self.command else "<empty command>"
        detail = f": {reason}" if reason else ""
        super().__init__(f"Failed to launch {program}{detail}")


class ProcessTimeoutError(IcecaleError):
    def __init__(self, command: Sequence[str], timeout: float, output: str = "") -> None:
        self.command = [str(part) for part in command]
        self.timeout = timeout
        self.output = output
        program = self.command[0] if self.command else "<empty command>"
        super().__init__(f"{program} did not finish within {timeout:g}s.\nOutput:\n{output}")
