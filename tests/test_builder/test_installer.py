"""Unit tests for DependencyInstaller (buildwarden.builder.installer).

Tests cover:
- compute_fingerprint (stability, sensitivity, missing files)
- ensure_installed skip path (zero subprocesses)
- npm ci vs npm install selection
- Corruption self-heal (clean + single retry)
- --legacy-peer-deps fallback
- heal() cleanup
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from buildwarden.builder.installer import DependencyInstaller, InstallError, compute_fingerprint

RUN_COMMAND = "buildwarden.builder.installer.run_command"


# ---------------------------------------------------------------------------
# compute_fingerprint
# ---------------------------------------------------------------------------


class TestComputeFingerprint:
    @pytest.mark.unit
    def test_stable_for_same_content(self, next_project: Path):
        manifest = next_project / "package.json"
        lockfile = next_project / "package-lock.json"
        assert compute_fingerprint(manifest, lockfile) == compute_fingerprint(manifest, lockfile)

    @pytest.mark.unit
    def test_changes_when_manifest_changes(self, next_project: Path):
        manifest = next_project / "package.json"
        lockfile = next_project / "package-lock.json"
        before = compute_fingerprint(manifest, lockfile)
        manifest.write_text('{"name": "other"}', encoding="utf-8")
        assert compute_fingerprint(manifest, lockfile) != before

    @pytest.mark.unit
    def test_missing_and_empty_lockfile_differ(self, next_project: Path):
        manifest = next_project / "package.json"
        lockfile = next_project / "package-lock.json"
        missing = compute_fingerprint(manifest, lockfile)
        lockfile.write_text("", encoding="utf-8")
        assert compute_fingerprint(manifest, lockfile) != missing


# ---------------------------------------------------------------------------
# ensure_installed
# ---------------------------------------------------------------------------


class TestEnsureInstalled:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_manifest_raises(self, make_ctx):
        installer = DependencyInstaller(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock()) as mock_run:
            with pytest.raises(InstallError, match="No package.json"):
                await installer.ensure_installed()
        mock_run.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_install_uses_npm_install_and_stores_fingerprint(
        self, next_project, make_ctx, command_result
    ):
        ctx = make_ctx()
        installer = DependencyInstaller(ctx)
        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0))) as mock_run:
            report = await installer.ensure_installed()

        assert report.skipped is False
        assert report.commands == [["npm", "install"]]
        assert mock_run.await_args.kwargs["cwd"] == next_project
        assert ctx.config.fingerprint_path.read_text().strip() == report.fingerprint

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lockfile_selects_npm_ci(self, next_project, make_ctx, command_result):
        (next_project / "package-lock.json").write_text("{}", encoding="utf-8")
        installer = DependencyInstaller(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0))):
            report = await installer.ensure_installed()
        assert report.commands == [["npm", "ci"]]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_run_spawns_no_subprocess(self, next_project, make_ctx, command_result):
        installer = DependencyInstaller(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0))):
            await installer.ensure_installed()
        (next_project / "node_modules").mkdir()

        with patch(RUN_COMMAND, new=AsyncMock()) as mock_run:
            report = await installer.ensure_installed()

        assert report.skipped is True
        assert report.commands == []
        mock_run.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_node_modules_forces_install(self, next_project, make_ctx, command_result):
        installer = DependencyInstaller(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0))):
            await installer.ensure_installed()

        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0))) as mock_run:
            report = await installer.ensure_installed()
        assert report.skipped is False
        mock_run.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_manifest_change_forces_install(self, next_project, make_ctx, command_result):
        installer = DependencyInstaller(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0))):
            await installer.ensure_installed()
        (next_project / "node_modules").mkdir()
        (next_project / "package.json").write_text('{"name": "changed"}', encoding="utf-8")

        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0))) as mock_run:
            report = await installer.ensure_installed()
        assert report.skipped is False
        mock_run.assert_awaited_once()


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestInstallFailures:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_corruption_cleans_and_retries_once(self, next_project, make_ctx, command_result):
        (next_project / "package-lock.json").write_text("{}", encoding="utf-8")
        (next_project / "node_modules" / "next").mkdir(parents=True)
        (next_project / ".next").mkdir()
        results = [
            command_result(1, stderr="npm WARN tar TAR_ENTRY_ERROR ENOENT: no such file"),
            command_result(0),
        ]
        installer = DependencyInstaller(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(side_effect=results)) as mock_run:
            report = await installer.ensure_installed()

        assert mock_run.await_count == 2
        assert report.healed is True
        # The lockfile was removed by the cleanup, so the retry is a plain install.
        assert report.commands == [["npm", "ci"], ["npm", "install"]]
        assert not (next_project / "node_modules").exists()
        assert not (next_project / ".next").exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_corruption_failure_is_fatal(self, next_project, make_ctx, command_result):
        corrupt = command_result(1, stderr="zlib: unexpected end of file")
        installer = DependencyInstaller(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(side_effect=[corrupt, corrupt])) as mock_run:
            with pytest.raises(InstallError) as exc_info:
                await installer.ensure_installed()
        assert mock_run.await_count == 2
        assert "zlib" in exc_info.value.output

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_peer_conflict_retries_with_legacy_peer_deps(
        self, next_project, make_ctx, command_result
    ):
        results = [
            command_result(1, stderr="npm ERR! code ERESOLVE\nnpm ERR! ERESOLVE unable to resolve"),
            command_result(0),
        ]
        installer = DependencyInstaller(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(side_effect=results)):
            report = await installer.ensure_installed()
        assert report.relaxed_peer_deps is True
        assert report.commands[-1] == ["npm", "install", "--legacy-peer-deps"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ci_failure_without_corruption_is_fatal(self, next_project, make_ctx, command_result):
        (next_project / "package-lock.json").write_text("{}", encoding="utf-8")
        installer = DependencyInstaller(make_ctx())
        failure = command_result(1, stderr="npm ERR! 404 Not Found - GET https://registry/nope")
        with patch(RUN_COMMAND, new=AsyncMock(return_value=failure)) as mock_run:
            with pytest.raises(InstallError, match="exit code 1"):
                await installer.ensure_installed()
        mock_run.assert_awaited_once()
        assert not (next_project / ".install-fingerprint").exists()


# ---------------------------------------------------------------------------
# heal
# ---------------------------------------------------------------------------


class TestHeal:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_heal_ignores_cache_and_reinstalls(self, next_project, make_ctx, command_result):
        installer = DependencyInstaller(make_ctx())
        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0))):
            await installer.ensure_installed()
        (next_project / "node_modules").mkdir()
        (next_project / "package-lock.json").write_text("{}", encoding="utf-8")

        with patch(RUN_COMMAND, new=AsyncMock(return_value=command_result(0))) as mock_run:
            report = await installer.heal()

        assert report.healed is True
        assert report.commands == [["npm", "install"]]
        mock_run.assert_awaited_once()
        assert not (next_project / "node_modules").exists()
        assert not (next_project / "package-lock.json").exists()
