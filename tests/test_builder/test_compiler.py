"""Unit tests for CompileGate (buildwarden.builder.compiler)."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from buildwarden.builder.compiler import CompileGate

RUN_COMMAND = "buildwarden.builder.compiler.run_command"


class TestCompileGate:
    @pytest.mark.unit
    def test_build_command(self, make_ctx):
        assert CompileGate(make_ctx()).build_command() == ["npm", "run", "build"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_zero_exit_passes(self, next_project: Path, make_ctx, command_result):
        gate = CompileGate(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0, stdout="Compiled"))) as mock_run:
            result = await gate.compile()

        assert result.succeeded is True
        assert result.exit_code == 0
        kwargs = mock_run.await_args.kwargs
        assert kwargs["cwd"] == next_project
        assert kwargs["env"] == {"NEXT_TELEMETRY_DISABLED": "1"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_text_with_nonzero_exit_fails(self, next_project: Path, make_ctx, command_result):
        gate = CompileGate(make_ctx())
        output = command_result(1, stdout="Compiled successfully\n✓ Generating static pages")
        with patch(RUN_COMMAND, new=AsyncMock(return_value=output)):
            result = await gate.compile()
        assert result.succeeded is False
        assert "Compiled successfully" in result.raw_output

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_fails(self, next_project: Path, make_ctx, command_result):
        gate = CompileGate(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(-1, timed_out=True))):
            result = await gate.compile()
        assert result.succeeded is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_build_cache_removed(self, next_project: Path, make_ctx, command_result):
        (next_project / ".next" / "cache").mkdir(parents=True)
        gate = CompileGate(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0))):
            await gate.compile()
        assert not (next_project / ".next").exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_output_kept(self, next_project: Path, make_ctx, command_result):
        long_output = "\n".join(f"line {i}" for i in range(5000))
        gate = CompileGate(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(1, stderr=long_output))):
            result = await gate.compile()
        assert result.raw_output == long_output
