"""ffmpeg/ffprobe process boundary for compose_short_video."""

from __future__ import annotations

from dataclasses import dataclass
import shutil
import subprocess
from typing import Callable, Sequence

from domain.short_video import ComposePipelineError

FFMPEG_NOT_FOUND_CODE = "compose_short_video.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "compose_short_video.ffmpeg.exec_error"
FFMPEG_PROCESS_CODE = "compose_short_video.ffmpeg.process_failed"


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of an external command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


CommandRunner = Callable[[Sequence[str]], CommandResult]


def run_command(command: Sequence[str]) -> CommandResult:
    """Run a command to completion and capture its output."""
    try:
        completed = subprocess.run(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            check=False,
        )
    except FileNotFoundError as exc:
        raise ComposePipelineError(
            FFMPEG_NOT_FOUND_CODE, f"{command[0]} not found"
        ) from exc
    return CommandResult(completed.returncode, completed.stdout, completed.stderr)


def ensure_tool_available(tool_name: str, runner: CommandRunner = run_command) -> None:
    """Ensure an ffmpeg-suite tool is installed and executable."""
    tool_path = shutil.which(tool_name)
    if not tool_path:
        raise ComposePipelineError(FFMPEG_NOT_FOUND_CODE, f"{tool_name} not on PATH")
    result = runner([tool_path, "-version"])
    if not result.succeeded:
        raise ComposePipelineError(
            FFMPEG_EXEC_CODE, f"{tool_name} exists but could not be executed"
        )


def probe_has_audio_stream(media_path: str, runner: CommandRunner = run_command) -> bool:
    """Return True when ffprobe finds at least one audio stream."""
    result = runner(
        [
            "ffprobe",
            "-v",
            "error",
            "-select_streams",
            "a:0",
            "-show_entries",
            "stream=codec_type",
            "-of",
            "csv=s=x:p=0",
            media_path,
        ]
    )
    return result.succeeded and bool(result.stdout.strip())


def probe_duration_seconds(
    media_path: str, runner: CommandRunner = run_command
) -> float | None:
    """Return the container duration, or None when it cannot be read."""
    result = runner(
        [
            "ffprobe",
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            media_path,
        ]
    )
    if not result.succeeded:
        return None
    try:
        return float(result.stdout.strip())
    except ValueError:
        return None


def describe_failure(result: CommandResult) -> str:
    """Summarize a failed command with the tail of its stderr."""
    stderr_lines = [line for line in result.stderr.strip().splitlines() if line.strip()]
    if not stderr_lines:
        return f"exit code {result.returncode}"
    return f"exit code {result.returncode}: {stderr_lines[-1].strip()}"
