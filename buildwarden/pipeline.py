"""Build Warden pipeline supervisor.

Takes a generated Next.js project from source files to a verified running
server, in eight stages:

Stage 1: LOCK          -- Claim the target directory (single flight).
Stage 2: INSTALL       -- Fingerprinted, self-healing dependency install.
Stage 3: VALIDATE      -- Static import/router checks.
Stage 4: COMPILE       -- ``npm run build`` must exit zero.
Stage 5: REPAIR        -- Feed failures back to the generator (bounded).
Stage 6: RECLAIM PORT  -- Kill stale listeners on the application port.
Stage 7: LAUNCH        -- Start the dev server detached.
Stage 8: PROBE         -- HTTP health classification.

Every run ends in a :class:`BuildOutcome`; nothing escapes as an exception
except cancellation.

Usage::

    python -m buildwarden.pipeline --target ./generated-app --prompt "A todo app"
    python -m buildwarden.pipeline --serve
"""

from __future__ import annotations

import asyncio
import sys
import time
import traceback
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from rich.panel import Panel

from .builder.files import write_project_files
from .builder.installer import DependencyInstaller, InstallError
from .builder.repair import COMPILE_SUGGESTION, FailureKind, FatalBuildError, RepairLoop
from .config import Config, PortConfig
from .context import BuildContext, RunLog
from .generator import GeneratorClient, GeneratorError
from .lock import BuildBusyError, build_lock
from .server.launcher import ProcessLauncher, ServerProcess
from .server.ports import PortReclaimer
from .server.prober import HealthProber, ProbeOutcome
from .utils import (
    STAGE_NAMES,
    UnsafePathError,
    console,
    format_duration,
    print_error,
    print_stage_header,
    print_success,
    print_summary_table,
)

INSTALL_SUGGESTION = (
    "Check package.json for misspelled packages or incompatible version ranges, "
    "then rebuild."
)
RUNTIME_SUGGESTION = COMPILE_SUGGESTION
TIMEOUT_SUGGESTION = (
    "The dev server never answered. Check its output above for errors, or make "
    "sure nothing else is holding the application port."
)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Raised when a pipeline stage fails outside the known failure kinds."""

    def __init__(self, stage: int, message: str) -> None:
        self.stage = stage
        super().__init__(f"Stage {stage} ({STAGE_NAMES.get(stage, '?')}): {message}")


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


class BuildOutcome(BaseModel):
    """Structured result of a pipeline run."""

    success: bool
    message: str = ""
    url: str | None = None
    pid: int | None = None
    error: str | None = None
    kind: FailureKind | None = None
    logs: list[str] = Field(default_factory=list)
    stdout: str | None = None
    stderr: str | None = None
    suggestion: str | None = None
    busy: bool = False
    file_count: int | None = None
    status_code: int = 200

    def to_response(self) -> dict[str, Any]:
        """Render the control-plane JSON body."""
        if self.success:
            body: dict[str, Any] = {"success": True, "message": self.message}
            if self.url is not None:
                body["url"] = self.url
            if self.pid is not None:
                body["pid"] = self.pid
            if self.file_count is not None:
                body["fileCount"] = self.file_count
            body["logs"] = self.logs
            return body

        body = {"error": self.error or "Build failed", "logs": self.logs}
        if self.busy:
            body["busy"] = True
        for key in ("stdout", "stderr", "suggestion"):
            value = getattr(self, key)
            if value:
                body[key] = value
        return body


def _failure(
    log: RunLog,
    error: str,
    kind: FailureKind | None,
    status_code: int = 500,
    **extra: Any,
) -> BuildOutcome:
    return BuildOutcome(
        success=False,
        error=error,
        kind=kind,
        logs=list(log.lines),
        status_code=status_code,
        **extra,
    )


# ---------------------------------------------------------------------------
# Pipeline Supervisor
# ---------------------------------------------------------------------------


class Pipeline:
    """Build Warden pipeline supervisor.

    One instance can serve many runs; each run gets its own
    :class:`BuildContext` and log.  Runs against the same target directory
    are serialised by the lock marker, not by this object.

    Attributes:
        config: Global configuration.
        generator: Client used for repair and for :meth:`generate`.
    """

    def __init__(self, config: Config, generator: GeneratorClient | None = None) -> None:
        self.config = config
        self.generator = generator or GeneratorClient(
            config.generator,
            router_flavor=config.build.router_flavor,
            alias=config.build.path_alias,
            reserved_entries=config.preserved_entries,
        )

    def new_context(self, prompt: str | None = None, echo: bool = True) -> BuildContext:
        return BuildContext(
            config=self.config,
            log=RunLog(echo=echo),
            generator=self.generator,
            prompt=prompt,
        )

    # ------------------------------------------------------------------
    # Build and launch
    # ------------------------------------------------------------------

    async def run(self, prompt: str | None = None) -> BuildOutcome:
        """Build, launch and verify the project in the target directory.

        Args:
            prompt: Original requirement text.  Without it, the first build
                failure is terminal.
        """
        start = time.monotonic()
        ctx = self.new_context(prompt)
        target = self.config.target_dir

        console.print(
            Panel(
                f"[bold bright_cyan]Build Warden[/bold bright_cyan]\n"
                f"Target : {target.resolve()}\n"
                f"Port   : {self.config.ports.app}\n"
                f"Repair : {'enabled' if ctx.can_repair else 'disabled'}",
                title="[bold]Build Start[/bold]",
                border_style="bright_cyan",
            )
        )

        if not target.is_dir():
            ctx.log.error(f"Target directory not found: {target}")
            return _failure(ctx.log, f"Target directory not found: {target}", None, status_code=404)

        print_stage_header(1)
        try:
            with build_lock(target, self.config.lock_file) as record:
                ctx.log(f"Acquired build lock {record.holder_id} (PID {record.pid})")
                outcome = await self._run_guarded(ctx)
        except BuildBusyError as exc:
            ctx.log.warning(str(exc))
            return _failure(ctx.log, str(exc), None, status_code=409, busy=True)

        outcome.logs = list(ctx.log.lines)
        self._print_final_summary(outcome, time.monotonic() - start)
        return outcome

    async def _run_guarded(self, ctx: BuildContext) -> BuildOutcome:
        """Run the stages under the optional deadline and map every failure."""
        timeout = self.config.build.pipeline_timeout
        try:
            if timeout:
                return await asyncio.wait_for(self._run_stages(ctx), timeout=timeout)
            return await self._run_stages(ctx)
        except InstallError as exc:
            ctx.log.error(str(exc))
            return _failure(
                ctx.log,
                str(exc),
                FailureKind.INSTALL,
                stdout=exc.output or None,
                suggestion=INSTALL_SUGGESTION,
            )
        except FatalBuildError as exc:
            return _failure(
                ctx.log,
                str(exc),
                exc.kind,
                stdout=exc.output or None,
                suggestion=exc.suggestion or None,
            )
        except asyncio.TimeoutError:
            message = f"Build pipeline exceeded its {timeout}s deadline"
            ctx.log.error(message)
            return _failure(ctx.log, message, FailureKind.TIMEOUT)
        except PipelineError as exc:
            ctx.log.error(str(exc))
            ctx.log(traceback.format_exc())
            return _failure(ctx.log, str(exc), FailureKind.UNEXPECTED)
        except Exception as exc:
            ctx.log.error(f"Unexpected error: {exc}")
            ctx.log(traceback.format_exc())
            return _failure(ctx.log, f"Unexpected error: {exc}", FailureKind.UNEXPECTED)

    async def _run_stages(self, ctx: BuildContext) -> BuildOutcome:
        config = self.config
        port = config.ports.app

        # Stage 2: INSTALL
        print_stage_header(2)
        installer = DependencyInstaller(ctx)
        report = await installer.ensure_installed()
        if report.skipped:
            ctx.log("Dependencies up to date; install skipped")

        # Stages 3-5: VALIDATE / COMPILE / REPAIR
        print_stage_header(3)
        await RepairLoop(ctx, installer=installer).run(ctx.prompt)

        # Stage 6: RECLAIM PORT
        print_stage_header(6)
        reclaimer = PortReclaimer(
            config.ports.reserved(),
            ctx.log,
            settle_seconds=config.probe.port_settle_seconds,
        )
        await reclaimer.free_port(port)

        # Stage 7: LAUNCH
        print_stage_header(7)
        try:
            server = await ProcessLauncher(ctx, port).launch()
        except OSError as exc:
            raise PipelineError(7, f"Could not start the dev server: {exc}") from exc

        # Stage 8: PROBE
        print_stage_header(8)
        try:
            result = await HealthProber(config.probe, ctx.log).await_ready(port, server)
        finally:
            server.release()

        return self._probe_outcome(ctx, server, result.outcome)

    def _probe_outcome(
        self, ctx: BuildContext, server: ServerProcess, outcome: ProbeOutcome
    ) -> BuildOutcome:
        if outcome is ProbeOutcome.READY:
            message = "App built and started successfully"
            ctx.log(f"{message}: {self.config.app_url}")
            return BuildOutcome(
                success=True,
                message=message,
                url=self.config.app_url,
                pid=server.pid,
                logs=list(ctx.log.lines),
            )

        streams = {"stdout": server.stdout or None, "stderr": server.stderr or None}
        if outcome is ProbeOutcome.RUNTIME_FAILURE:
            return _failure(
                ctx.log,
                "App compiled but the server returns HTTP 500 on every request",
                FailureKind.RUNTIME,
                suggestion=RUNTIME_SUGGESTION,
                pid=server.pid,
                **streams,
            )
        return _failure(
            ctx.log,
            "Server did not become ready in time",
            FailureKind.TIMEOUT,
            suggestion=TIMEOUT_SUGGESTION,
            pid=server.pid,
            **streams,
        )

    # ------------------------------------------------------------------
    # Generate
    # ------------------------------------------------------------------

    async def generate(self, prompt: str | None) -> BuildOutcome:
        """Generate a fresh project from *prompt* and write it to the target."""
        ctx = self.new_context(prompt)
        if not prompt or not prompt.strip():
            return _failure(ctx.log, "Prompt is required", None, status_code=400)
        if not self.generator.is_configured:
            return _failure(ctx.log, "Generator API key not configured", None)

        target = self.config.target_dir
        target.mkdir(parents=True, exist_ok=True)
        try:
            with build_lock(target, self.config.lock_file):
                ctx.log(f"Generating project with {self.config.generator.model}")
                try:
                    project = await self.generator.generate(prompt)
                    written = write_project_files(
                        target, project.files, self.config.preserved_entries
                    )
                except (GeneratorError, UnsafePathError) as exc:
                    ctx.log.error(str(exc))
                    return _failure(ctx.log, f"Failed to generate app: {exc}", None)
                ctx.log(f"Wrote {len(written)} file(s) to {target}")
        except BuildBusyError as exc:
            ctx.log.warning(str(exc))
            return _failure(ctx.log, str(exc), None, status_code=409, busy=True)

        return BuildOutcome(
            success=True,
            message="App generated successfully",
            file_count=project.file_count,
            logs=list(ctx.log.lines),
        )

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def _print_final_summary(self, outcome: BuildOutcome, elapsed: float) -> None:
        rows = {
            "Status": "SUCCEEDED" if outcome.success else "FAILED",
            "Duration": format_duration(elapsed),
            "Target": str(self.config.target_dir.resolve()),
        }
        if outcome.url:
            rows["URL"] = outcome.url
        if outcome.pid:
            rows["PID"] = str(outcome.pid)
        if outcome.kind:
            rows["Failure"] = outcome.kind.value
        console.print()
        print_summary_table(rows, title="Build Summary")
        if outcome.success:
            print_success(outcome.message)
        else:
            print_error(outcome.error or "Build failed")
            if outcome.suggestion:
                console.print(f"[dim]{outcome.suggestion}[/dim]")


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI entry point for ``python -m buildwarden.pipeline``."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Build Warden -- build, launch and verify a generated Next.js app",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m buildwarden.pipeline --target ./generated-app\n"
            "  python -m buildwarden.pipeline --prompt 'A todo app' --port 3000\n"
            "  python -m buildwarden.pipeline --serve\n"
        ),
    )
    parser.add_argument(
        "--prompt", "-p",
        default=None,
        help="Original requirement text (enables automatic repair)",
    )
    parser.add_argument(
        "--target", "-t",
        default=None,
        help="Project directory (default: $BW_TARGET_DIR or ./generated-app)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Application port (default: $BW_APP_PORT or 3000)",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run the control-plane HTTP API instead of a single build",
    )

    args = parser.parse_args()

    try:
        config = Config.from_env()
        if args.target:
            config.target_dir = Path(args.target)
        if args.port is not None:
            config.ports = PortConfig(app=args.port, control_plane=config.ports.control_plane)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] Invalid configuration: {exc}")
        sys.exit(1)

    if args.serve:
        import uvicorn

        from .api import create_app

        uvicorn.run(create_app(config), host="127.0.0.1", port=config.ports.control_plane)
        return

    outcome = asyncio.run(Pipeline(config).run(args.prompt))
    if not outcome.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
