"""Shared utility functions for Build Warden.

Provides async command execution, duration formatting and Rich-based console
helpers used by every stage of the build pipeline.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from rich.console import Console
from rich.rule import Rule
from rich.table import Table

console = Console()

# ---------------------------------------------------------------------------
# Async command execution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished child process."""

    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stdout and stderr, in that order."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


async def run_command(
    cmd: list[str],
    cwd: str | Path | None = None,
    timeout: float = 120,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command asynchronously and capture both output streams.

    The child runs in its own process group.  On timeout or cancellation the
    whole group is killed and reaped before control returns, so nothing the
    command spawned keeps writing into the project afterwards.

    Args:
        cmd: Program and arguments.
        cwd: Working directory for the child process.
        timeout: Maximum wall-clock seconds before the process is killed.
        env: Optional extra environment variables merged on top of ``os.environ``.

    Returns:
        A :class:`CommandResult`.  A timed-out command reports returncode
        ``-1`` and ``timed_out=True``.  A missing executable reports
        returncode ``127`` with the error text on stderr.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = {**os.environ, **env}

    start = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        return CommandResult(127, "", f"Executable not found: {cmd[0]} ({exc})")

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError:
        await _terminate_process_group(process)
        return CommandResult(
            -1,
            "",
            f"Command timed out after {timeout}s: {' '.join(cmd)}",
            duration_seconds=time.monotonic() - start,
            timed_out=True,
        )
    except BaseException:
        await _terminate_process_group(process)
        raise

    return CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=(stdout_bytes or b"").decode("utf-8", errors="replace").strip(),
        stderr=(stderr_bytes or b"").decode("utf-8", errors="replace").strip(),
        duration_seconds=time.monotonic() - start,
    )


async def _terminate_process_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL *process* and its descendants, then wait for it to exit."""
    if process.returncode is None:
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------


class UnsafePathError(ValueError):
    """A generated file path would escape the target directory."""


def normalise_relative_path(raw: str) -> PurePosixPath:
    """Validate a generator-supplied path and return it in POSIX form.

    Raises:
        UnsafePathError: For empty, absolute or parent-escaping paths.
    """
    cleaned = raw.strip().replace("\\", "/")
    if not cleaned:
        raise UnsafePathError("Empty file path in generated project")
    if cleaned.startswith("/") or (len(cleaned) > 1 and cleaned[1] == ":"):
        raise UnsafePathError(f"Absolute file path in generated project: {raw!r}")
    parts = [p for p in PurePosixPath(cleaned).parts if p not in ("", ".")]
    if not parts or ".." in parts:
        raise UnsafePathError(f"File path escapes the project directory: {raw!r}")
    return PurePosixPath(*parts)


def remove_path(path: Path) -> bool:
    """Delete a file or directory tree if present.

    Returns ``True`` when something was removed.
    """
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
        format_duration(3661.0) -> "1h 1m 1s"
    """
    if seconds < 0:
        return "0.0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    if hours > 0 or minutes > 0:
        parts.append(f"{int(secs)}s")
    else:
        parts.append(f"{secs:.1f}s")

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


STAGE_NAMES: dict[int, str] = {
    1: "LOCK",
    2: "INSTALL",
    3: "VALIDATE",
    4: "COMPILE",
    5: "REPAIR",
    6: "RECLAIM PORT",
    7: "LAUNCH",
    8: "PROBE",
}


def print_stage_header(stage: int) -> None:
    """Print a full-width rule naming the pipeline stage."""
    name = STAGE_NAMES.get(stage, "UNKNOWN")
    console.print(Rule(f"[bold cyan] Stage {stage}: {name} [/bold cyan]", style="cyan"))


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{message}[/bold red]")
