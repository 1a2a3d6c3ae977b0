"""Shared pytest fixtures for the Build Warden test suite.

Provides reusable fixtures for:
- Temporary target directories holding a minimal Next.js project
- Fast configurations (tiny probe interval, no port settle delay)
- Build contexts with a quiet run log
- Mocked generator clients and command results
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from buildwarden.config import BuildConfig, Config, GeneratorConfig, ProbeConfig
from buildwarden.context import BuildContext, RunLog
from buildwarden.generator import GeneratedProject
from buildwarden.utils import CommandResult

PACKAGE_JSON = {
    "name": "generated-app",
    "version": "0.1.0",
    "private": True,
    "scripts": {"dev": "next dev", "build": "next build", "start": "next start"},
    "dependencies": {"next": "14.2.3", "react": "18.3.1", "react-dom": "18.3.1"},
}

TSCONFIG = {
    "compilerOptions": {
        "baseUrl": ".",
        "paths": {"@/*": ["./*"]},
        "jsx": "preserve",
        "strict": True,
    }
}

INDEX_PAGE = """import { useState } from 'react'
import Button from '@/components/Button'

export default function Home() {
  const [count, setCount] = useState(0)
  return <Button onClick={() => setCount(count + 1)}>Clicked {count}</Button>
}
"""

BUTTON = """export default function Button(props) {
  return <button className="px-4 py-2" {...props} />
}
"""


# ---------------------------------------------------------------------------
# Paths & Directories
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """Empty target directory (auto-cleanup)."""
    project_dir = tmp_path / "generated-app"
    project_dir.mkdir()
    yield project_dir


def project_files() -> dict[str, str]:
    """A small, valid Pages Router project as a path -> content mapping."""
    return {
        "package.json": json.dumps(PACKAGE_JSON, indent=2),
        "tsconfig.json": json.dumps(TSCONFIG, indent=2),
        "pages/index.tsx": INDEX_PAGE,
        "components/Button.tsx": BUTTON,
    }


@pytest.fixture
def next_project(tmp_project_dir: Path) -> Path:
    """Target directory populated with a valid Pages Router project."""
    for rel_path, content in project_files().items():
        path = tmp_project_dir / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return tmp_project_dir


# ---------------------------------------------------------------------------
# Configuration & Context
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_project_dir: Path) -> Config:
    """Config pointing at the temp project with fast probe timings."""
    return Config(
        target_dir=tmp_project_dir,
        generator=GeneratorConfig(api_key="sk-test"),
        build=BuildConfig(max_repair_attempts=2),
        probe=ProbeConfig(interval=0.001, max_attempts=30, port_settle_seconds=0),
    )


@pytest.fixture
def mock_generator() -> MagicMock:
    """Generator double that is configured and returns a valid project."""
    generator = MagicMock()
    generator.is_configured = True
    generator.generate = AsyncMock(
        return_value=GeneratedProject(files=project_files(), model="gpt-test")
    )
    return generator


@pytest.fixture
def make_ctx(config: Config, mock_generator: MagicMock):
    """Factory for BuildContext instances with a quiet log."""

    def _make(prompt: str | None = "Build a counter app", generator=mock_generator, cfg=None):
        return BuildContext(
            config=cfg or config,
            log=RunLog(echo=False),
            generator=generator,
            prompt=prompt,
        )

    return _make


# ---------------------------------------------------------------------------
# Command results
# ---------------------------------------------------------------------------


@pytest.fixture
def command_result():
    """Factory for CommandResult values: ``command_result(1, stderr="boom")``."""

    def _make(returncode: int = 0, stdout: str = "", stderr: str = "", timed_out: bool = False):
        return CommandResult(
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=0.1,
            timed_out=timed_out,
        )

    return _make


@pytest.fixture
def generated_files() -> dict[str, str]:
    return project_files()
