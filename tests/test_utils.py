"""Unit tests for shared utilities and the run log (buildwarden.utils, buildwarden.context)."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path, PurePosixPath
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from buildwarden.context import BuildContext, RunLog
from buildwarden.lock import LOCK_FILE, build_lock
from buildwarden.utils import (
    CommandResult,
    UnsafePathError,
    format_duration,
    normalise_relative_path,
    remove_path,
    run_command,
)


class TestRunCommand:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_captures_both_streams(self):
        result = await run_command(
            [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"]
        )
        assert result.ok
        assert result.stdout == "out"
        assert result.stderr == "err"
        assert result.output == "out\nerr"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        result = await run_command([sys.executable, "-c", "raise SystemExit(3)"])
        assert result.returncode == 3
        assert result.ok is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_executable(self):
        result = await run_command(["definitely-not-a-real-binary-xyz"])
        assert result.returncode == 127
        assert "not found" in result.stderr

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout(self):
        process = MagicMock()
        process.pid = 4242
        process.returncode = None
        process.communicate = AsyncMock(side_effect=asyncio.TimeoutError)
        process.kill = MagicMock()
        process.wait = AsyncMock(return_value=-9)
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=process)) as mock_exec, \
             patch("buildwarden.utils.os.killpg") as mock_killpg:
            result = await run_command(["npm", "run", "build"], timeout=1)
        assert result.timed_out is True
        assert result.returncode == -1
        assert result.ok is False
        assert mock_exec.await_args.kwargs["start_new_session"] is True
        mock_killpg.assert_called_once_with(4242, signal.SIGKILL)
        process.wait.assert_awaited_once()


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX process groups")
class TestRunCommandCancellation:
    @staticmethod
    def _alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        # An orphan nobody has reaped yet is still listed; treat zombies as dead.
        stat = Path(f"/proc/{pid}/stat")
        try:
            return stat.read_text().rsplit(")", 1)[-1].split()[0] != "Z"
        except (OSError, IndexError):
            return True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_command_is_killed_while_lock_is_held(self, tmp_path: Path):
        pid_file = tmp_path / "child.pid"
        script = f"echo $$ > '{pid_file}'; exec sleep 30"

        with build_lock(tmp_path):
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(run_command(["sh", "-c", script], timeout=60), timeout=0.5)
            pid = int(pid_file.read_text().strip())
            assert (tmp_path / LOCK_FILE).exists()
            assert not self._alive(pid)

        assert not (tmp_path / LOCK_FILE).exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancellation_reaches_grandchildren(self, tmp_path: Path):
        pid_file = tmp_path / "grandchild.pid"
        script = f"sleep 30 & echo $! > '{pid_file}'; wait"

        task = asyncio.create_task(run_command(["sh", "-c", script], timeout=60))
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        grandchild = int(pid_file.read_text().strip())
        for _ in range(50):
            if not self._alive(grandchild):
                break
            await asyncio.sleep(0.02)
        assert not self._alive(grandchild)


class TestCommandResult:
    @pytest.mark.unit
    def test_timed_out_is_never_ok(self):
        assert CommandResult(0, "", "", timed_out=True).ok is False

    @pytest.mark.unit
    def test_output_skips_empty_parts(self):
        assert CommandResult(1, "", "boom").output == "boom"


class TestPaths:
    @pytest.mark.unit
    def test_normalise(self):
        assert normalise_relative_path("./pages\\index.tsx") == PurePosixPath("pages/index.tsx")

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["", "   ", "/abs.js", "C:/x.js", "../x.js", "a/../../x.js", "."])
    def test_unsafe(self, raw):
        with pytest.raises(UnsafePathError):
            normalise_relative_path(raw)

    @pytest.mark.unit
    def test_remove_path(self, tmp_path: Path):
        tree = tmp_path / "tree" / "nested"
        tree.mkdir(parents=True)
        (tree / "file.txt").write_text("x")
        assert remove_path(tmp_path / "tree") is True
        assert remove_path(tmp_path / "tree") is False


class TestFormatting:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "seconds, expected",
        [(3.7, "3.7s"), (65.2, "1m 5s"), (3661.0, "1h 1m 1s"), (-1, "0.0s")],
    )
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected


class TestRunLog:
    @pytest.mark.unit
    def test_lines_are_timestamped_and_ordered(self):
        log = RunLog(echo=False)
        log("first")
        log.warning("second")
        log.error("third")
        assert len(log) == 3
        assert log.lines[0].startswith("[") and log.lines[0].endswith("] first")
        assert log.lines[1].endswith("WARNING: second")
        assert log.lines[2].endswith("ERROR: third")

    @pytest.mark.unit
    def test_markup_in_messages_is_safe(self):
        log = RunLog(echo=True)
        log("[bold]not markup[/bold] and a stray [")
        assert "[bold]not markup[/bold]" in log.text()


class TestBuildContext:
    @pytest.mark.unit
    def test_can_repair(self, config):
        generator = MagicMock(is_configured=True)
        assert BuildContext(config, RunLog(echo=False), generator, "A todo app").can_repair
        assert not BuildContext(config, RunLog(echo=False), generator, "  ").can_repair
        assert not BuildContext(config, RunLog(echo=False), None, "A todo app").can_repair
        generator.is_configured = False
        assert not BuildContext(config, RunLog(echo=False), generator, "A todo app").can_repair
