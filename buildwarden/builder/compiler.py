"""Compile gate: ``npm run build`` must exit zero before anything launches."""

from __future__ import annotations

from dataclasses import dataclass

from ..context import BuildContext
from ..utils import format_duration, remove_path, run_command


@dataclass(frozen=True)
class CompileResult:
    """Outcome of one compile attempt.  Never merged across attempts."""

    succeeded: bool
    raw_output: str
    exit_code: int = -1
    duration_seconds: float = 0.0


class CompileGate:
    """Runs the project's build command as a strict pass/fail gate.

    Only a zero exit status passes.  Output content is never consulted, so a
    log that says "success" next to a non-zero exit is still a failure.
    """

    def __init__(self, ctx: BuildContext) -> None:
        self.ctx = ctx
        self.config = ctx.config
        self.log = ctx.log

    def build_command(self) -> list[str]:
        return [self.config.build.npm_binary, "run", "build"]

    async def compile(self) -> CompileResult:
        if remove_path(self.config.build_cache_dir):
            self.log("Cleared stale build output (.next)")

        cmd = self.build_command()
        self.log(f"Running: {' '.join(cmd)}")
        result = await run_command(
            cmd,
            cwd=self.config.target_dir,
            timeout=self.config.build.build_timeout,
            env={"NEXT_TELEMETRY_DISABLED": "1"},
        )

        compile_result = CompileResult(
            succeeded=result.returncode == 0 and not result.timed_out,
            raw_output=result.output,
            exit_code=result.returncode,
            duration_seconds=result.duration_seconds,
        )
        if compile_result.succeeded:
            self.log(f"Build succeeded in {format_duration(result.duration_seconds)}")
        else:
            self.log.error(f"Build failed with exit code {result.returncode}")
            self.log(f"Build output:\n{result.output}")
        return compile_result
