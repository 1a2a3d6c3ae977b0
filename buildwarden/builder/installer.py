"""npm dependency installation with fingerprint caching and self-healing.

The installer hashes ``package.json`` and ``package-lock.json``.  When the
hash matches the one recorded after the last successful install and
``node_modules/`` is still present, nothing runs.  Otherwise it installs,
and on failure it looks the output up in the signature table: a corrupt
dependency tree is wiped and reinstalled exactly once; a plain resolution
failure without a lockfile gets one relaxed ``--legacy-peer-deps`` retry.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path

from ..context import BuildContext
from ..utils import CommandResult, format_duration, remove_path, run_command
from .signatures import FailureClass, classify_failure

_MISSING = b"\x00<missing>\x00"


class InstallError(Exception):
    """Dependency installation failed after all bounded retries.

    Attributes:
        output: Full captured output of the last install command.
    """

    def __init__(self, message: str, output: str = "") -> None:
        self.output = output
        super().__init__(message)


@dataclass
class InstallReport:
    """What an ``ensure_installed`` call did."""

    skipped: bool = False
    commands: list[list[str]] = field(default_factory=list)
    healed: bool = False
    relaxed_peer_deps: bool = False
    fingerprint: str = ""
    output: str = ""


def compute_fingerprint(manifest: Path, lockfile: Path) -> str:
    """Hash the dependency manifest and lockfile contents.

    A missing file hashes differently from an empty one.
    """
    digest = hashlib.sha256()
    for path in (manifest, lockfile):
        digest.update(path.name.encode("utf-8"))
        digest.update(path.read_bytes() if path.is_file() else _MISSING)
    return digest.hexdigest()


class DependencyInstaller:
    """Installs the target project's npm dependencies.

    Parameters
    ----------
    ctx:
        Run context supplying configuration and the run log.
    """

    def __init__(self, ctx: BuildContext) -> None:
        self.ctx = ctx
        self.config = ctx.config
        self.log = ctx.log

    # -- Fingerprint cache ---------------------------------------------------

    def current_fingerprint(self) -> str:
        return compute_fingerprint(self.config.manifest_path, self.config.lockfile_path)

    def cached_fingerprint(self) -> str | None:
        path = self.config.fingerprint_path
        if not path.is_file():
            return None
        value = path.read_text(encoding="utf-8").strip()
        return value or None

    def _store_fingerprint(self) -> str:
        fingerprint = self.current_fingerprint()
        self.config.fingerprint_path.write_text(fingerprint + "\n", encoding="utf-8")
        return fingerprint

    def is_up_to_date(self) -> bool:
        """Cached fingerprint matches and the installed packages are present."""
        cached = self.cached_fingerprint()
        return (
            cached is not None
            and cached == self.current_fingerprint()
            and self.config.packages_dir.is_dir()
        )

    # -- Public API ----------------------------------------------------------

    async def ensure_installed(self) -> InstallReport:
        """Install dependencies unless the fingerprint says nothing changed.

        Raises:
            InstallError: When installation fails after its bounded retries.
        """
        report = InstallReport()
        if not self.config.manifest_path.is_file():
            raise InstallError(f"No package.json found in {self.config.target_dir}")

        if self.is_up_to_date():
            report.skipped = True
            report.fingerprint = self.cached_fingerprint() or ""
            self.log("Dependencies unchanged (fingerprint match) -- skipping install")
            return report

        await self._install(report)
        return report

    async def heal(self) -> InstallReport:
        """Wipe the dependency tree and caches, then install from scratch.

        Used when a build failure carries a corruption signature.
        """
        report = InstallReport(healed=True)
        self.clean()
        await self._install(report, allow_heal=False)
        return report

    def clean(self) -> None:
        """Delete build cache, installed packages, lockfile and fingerprint."""
        for path in (
            self.config.build_cache_dir,
            self.config.packages_dir,
            self.config.lockfile_path,
            self.config.fingerprint_path,
        ):
            if remove_path(path):
                self.log(f"Removed {path.name}")

    # -- Internal ------------------------------------------------------------

    def _install_command(self) -> list[str]:
        npm = self.config.build.npm_binary
        if self.config.lockfile_path.is_file():
            return [npm, "ci"]
        return [npm, "install"]

    async def _run(self, cmd: list[str], report: InstallReport) -> CommandResult:
        self.log(f"Running: {' '.join(cmd)}")
        report.commands.append(cmd)
        result = await run_command(
            cmd,
            cwd=self.config.target_dir,
            timeout=self.config.build.install_timeout,
        )
        report.output = result.output
        if result.ok:
            self.log(f"{' '.join(cmd)} completed in {format_duration(result.duration_seconds)}")
        else:
            self.log.error(f"{' '.join(cmd)} failed with exit code {result.returncode}")
            self.log(f"Install output:\n{result.output}")
        return result

    async def _install(self, report: InstallReport, allow_heal: bool = True) -> None:
        used_lockfile = self.config.lockfile_path.is_file()
        cmd = self._install_command()
        result = await self._run(cmd, report)

        if not result.ok:
            classification = classify_failure(result.output)
            if allow_heal and classification is not None and classification.is_corruption:
                self.log.warning(
                    f"Install output matches a corruption signature ({classification.value}); "
                    "cleaning and retrying once"
                )
                self.clean()
                report.healed = True
                # The lockfile is gone after cleaning, so `npm ci` becomes `npm install`.
                result = await self._run(self._install_command(), report)
            elif not used_lockfile:
                reason = (
                    "Peer dependency conflict"
                    if classification is FailureClass.PEER_CONFLICT
                    else "Install failed"
                )
                self.log.warning(f"{reason}; retrying with --legacy-peer-deps")
                report.relaxed_peer_deps = True
                result = await self._run([*cmd, "--legacy-peer-deps"], report)

        if not result.ok:
            raise InstallError(
                f"Dependency installation failed (exit code {result.returncode})",
                output=result.output,
            )

        report.fingerprint = self._store_fingerprint()
