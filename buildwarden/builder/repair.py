"""Validate -> compile -> repair loop.

Attempt index ``a`` runs from 0 (the original, unrepaired files) to
``max_repair_attempts`` inclusive.  At each index the static validator runs
first; if it is clean the compile gate runs.  A failure either sends the
failure text to the generator and moves on to ``a + 1``, or, at the last
index or when repair is impossible, ends the loop with a
:class:`FatalBuildError`.

A compile failure that carries a dependency-corruption signature is an
environment fault: the dependency tree is rebuilt and the same index is
retried without spending repair budget (once per index).

The index never goes back down, so a successful repair does not refill the
budget.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from rich.panel import Panel

from ..context import BuildContext
from ..generator import GeneratorError
from ..utils import UnsafePathError, console
from .compiler import CompileGate, CompileResult
from .files import write_project_files
from .installer import DependencyInstaller
from .signatures import is_corruption
from .validator import StaticValidator, ValidationFinding

COMPILE_SUGGESTION = (
    "Check the generated app files for errors. Common issues: missing \"use client\" "
    "directive, invalid imports, or syntax errors."
)
NO_REPAIR_SUGGESTION = "Supply the original prompt and generator credentials to enable automatic repair."


class FailureKind(str, Enum):
    """Failure taxonomy reported to callers."""

    INSTALL = "install"
    VALIDATION = "validation"
    COMPILE = "compile"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    UNEXPECTED = "unexpected"


class FatalBuildError(Exception):
    """The build cannot be promoted to launch.

    Attributes:
        kind: Which stage failed.
        output: Full diagnostic text (validator finding or compiler output).
        suggestion: Human-actionable next step.
        attempts: Attempts made before giving up.
    """

    def __init__(
        self,
        message: str,
        kind: FailureKind,
        output: str = "",
        suggestion: str = "",
        attempts: list["RepairAttempt"] | None = None,
    ) -> None:
        self.kind = kind
        self.output = output
        self.suggestion = suggestion
        self.attempts = attempts or []
        super().__init__(message)


@dataclass(frozen=True)
class RepairAttempt:
    """One index of the loop."""

    index: int
    triggering_failure: str | None
    generator_invoked: bool = False


@dataclass
class RepairReport:
    """What the loop did on the way to a passing build."""

    attempts: list[RepairAttempt] = field(default_factory=list)
    compile_results: list[CompileResult] = field(default_factory=list)
    healed_indices: list[int] = field(default_factory=list)

    @property
    def generator_calls(self) -> int:
        return sum(1 for attempt in self.attempts if attempt.generator_invoked)


class RepairLoop:
    """Drives the validator and compile gate, repairing through the generator.

    Parameters
    ----------
    ctx:
        Run context; ``ctx.generator`` and ``ctx.prompt`` decide whether
        repair is possible.
    installer, validator, compiler:
        Stage collaborators.  Built from ``ctx`` when omitted.
    """

    def __init__(
        self,
        ctx: BuildContext,
        *,
        installer: DependencyInstaller | None = None,
        validator: StaticValidator | None = None,
        compiler: CompileGate | None = None,
    ) -> None:
        self.ctx = ctx
        self.config = ctx.config
        self.log = ctx.log
        self.installer = installer or DependencyInstaller(ctx)
        self.validator = validator or StaticValidator(
            self.config.target_dir,
            router_flavor=self.config.build.router_flavor,
            alias_prefix=self.config.build.path_alias,
        )
        self.compiler = compiler or CompileGate(ctx)
        self.max_attempts = self.config.build.max_repair_attempts

    # -- Public API ----------------------------------------------------------

    async def run(self, prompt: str | None = None) -> RepairReport:
        """Loop until the build passes or the budget is spent.

        Args:
            prompt: Requirement text; falls back to ``ctx.prompt``.

        Raises:
            FatalBuildError: On a terminal validation or compile failure.
            InstallError: When reinstalling after a repair or heal fails.
        """
        prompt = prompt if prompt is not None else self.ctx.prompt
        can_repair = self._can_repair(prompt)
        report = RepairReport()
        index = 0

        while True:
            finding = self.validator.find_violation()
            if finding is not None:
                self.log.warning(finding.describe())
                self._ensure_repairable(index, can_repair, report, finding=finding)
                await self._repair(index, finding.describe(), prompt or "", report)
                index += 1
                continue

            result = await self.compiler.compile()
            report.compile_results.append(result)
            if result.succeeded:
                report.attempts.append(RepairAttempt(index=index, triggering_failure=None))
                if index > 0:
                    self.log(f"Build passed after {index} repair attempt(s)")
                return report

            if is_corruption(result.raw_output) and index not in report.healed_indices:
                self.log.warning(
                    "Build output matches a dependency-corruption signature; "
                    "reinstalling without consuming repair budget"
                )
                report.healed_indices.append(index)
                await self.installer.heal()
                continue

            self._ensure_repairable(index, can_repair, report, compile_result=result)
            await self._repair(index, self._compile_context(result), prompt or "", report)
            index += 1

    # -- Internal ------------------------------------------------------------

    def _can_repair(self, prompt: str | None) -> bool:
        if not prompt or not prompt.strip():
            self.log("No prompt supplied -- automatic repair disabled")
            return False
        generator = self.ctx.generator
        if generator is None or not generator.is_configured:
            self.log("Generator credentials not configured -- automatic repair disabled")
            return False
        return True

    def _ensure_repairable(
        self,
        index: int,
        can_repair: bool,
        report: RepairReport,
        *,
        finding: ValidationFinding | None = None,
        compile_result: CompileResult | None = None,
    ) -> None:
        """Raise the terminal error when this failure cannot be repaired."""
        if can_repair and index < self.max_attempts:
            return

        if finding is not None:
            failure = finding.describe()
            kind = FailureKind.VALIDATION
            output = failure
            suggestion = f"Fix the {finding.rule} violation in {finding.file_path} and rebuild."
        else:
            assert compile_result is not None
            failure = f"Build failed with exit code {compile_result.exit_code}"
            kind = FailureKind.COMPILE
            output = compile_result.raw_output
            suggestion = COMPILE_SUGGESTION

        report.attempts.append(RepairAttempt(index=index, triggering_failure=failure))
        if can_repair:
            message = f"{failure} (repair budget of {self.max_attempts} exhausted)"
        else:
            message = failure
            suggestion = f"{suggestion} {NO_REPAIR_SUGGESTION}"

        self.log.error(message)
        raise FatalBuildError(
            message,
            kind=kind,
            output=output,
            suggestion=suggestion,
            attempts=list(report.attempts),
        )

    @staticmethod
    def _compile_context(result: CompileResult) -> str:
        return f"Build failed (npm run build, exit code {result.exit_code}):\n{result.raw_output}"

    async def _repair(self, index: int, failure: str, prompt: str, report: RepairReport) -> None:
        """Ask the generator for a fixed project and install it."""
        console.print(
            Panel(
                f"[bold]Repair attempt {index + 1}/{self.max_attempts}[/bold]",
                style="magenta",
            )
        )
        report.attempts.append(
            RepairAttempt(index=index, triggering_failure=failure, generator_invoked=True)
        )
        generator = self.ctx.generator
        assert generator is not None

        self.log(f"Requesting repair from generator (attempt {index + 1}/{self.max_attempts})")
        try:
            project = await generator.generate(prompt, failure)
            written = write_project_files(
                self.config.target_dir,
                project.files,
                preserve=self.config.preserved_entries,
            )
        except (GeneratorError, UnsafePathError) as exc:
            # Spend the attempt; the next index re-checks the unchanged files.
            self.log.error(f"Generator failed during repair: {exc}")
            return

        self.log(f"Wrote {len(written)} repaired file(s)")
        await self.installer.ensure_installed()
