"""Build Warden configuration.

Centralised, typed configuration for the build supervisor. All settings use
Pydantic v2 models so they can be validated at construction time and serialised
to/from JSON or environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class PortConfig(BaseModel):
    """Reserved ports.

    ``app`` is where the generated application's dev server listens and is
    reclaimed before every launch.  ``control_plane`` is the supervisor's own
    API port and is never touched by the port reclaimer.
    """

    app: int = Field(default=3000, ge=1, le=65535)
    control_plane: int = Field(default=3001, ge=1, le=65535)

    @model_validator(mode="after")
    def _ports_distinct(self) -> "PortConfig":
        if self.app == self.control_plane:
            raise ValueError(
                f"Application port and control-plane port must differ (both {self.app})"
            )
        return self

    def reserved(self) -> set[int]:
        """Ports the supervisor must never reclaim."""
        return {self.control_plane}


class GeneratorConfig(BaseModel):
    """Configuration for the code-generation service (OpenAI-compatible API)."""

    api_key: str = Field(default="", repr=False)
    base_url: str = Field(default="https://api.openai.com/v1")
    model: str = Field(default="gpt-4-turbo-preview")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    timeout: int = Field(default=180, ge=10, description="Per-request timeout in seconds")
    system_prompt: str = Field(default="")
    system_prompt_path: Path | None = Field(default=None)

    @property
    def is_configured(self) -> bool:
        """``True`` when credentials for the generator are present."""
        return bool(self.api_key.strip())

    def resolve_system_prompt(self) -> str:
        """Return the system prompt, reading ``system_prompt_path`` if set."""
        if self.system_prompt_path is not None:
            return Path(self.system_prompt_path).read_text(encoding="utf-8")
        return self.system_prompt


class BuildConfig(BaseModel):
    """Tuning knobs for install, compile and repair."""

    max_repair_attempts: int = Field(
        default=2, ge=0, description="Generator round-trips allowed after the original attempt"
    )
    install_timeout: int = Field(default=600, ge=10, description="npm install timeout in seconds")
    build_timeout: int = Field(default=600, ge=10, description="npm run build timeout in seconds")
    pipeline_timeout: float | None = Field(
        default=None, gt=0, description="Optional wall-clock deadline for one whole run"
    )
    router_flavor: Literal["pages", "app"] = Field(
        default="pages", description="Next.js router convention the generated project must follow"
    )
    path_alias: str = Field(default="@/", description="Import alias prefix for project-local modules")
    npm_binary: str = Field(default="npm")


class ProbeConfig(BaseModel):
    """Dev-server launch and health-probe settings."""

    interval: float = Field(default=1.0, gt=0, description="Seconds between probes")
    max_attempts: int = Field(default=30, ge=1)
    request_timeout: float = Field(default=3.0, gt=0)
    max_consecutive_server_errors: int = Field(default=5, ge=1)
    host: str = Field(default="127.0.0.1", description="Loopback address probed (not 'localhost')")
    port_settle_seconds: float = Field(default=1.0, ge=0)
    stream_buffer_chars: int = Field(default=65536, ge=1024)


class Config(BaseModel):
    """Global Build Warden configuration.

    Instances are typically created once by the CLI entry point or the
    control-plane app and then passed through the rest of the system.
    """

    target_dir: Path = Field(default=Path("./generated-app"))
    ports: PortConfig = Field(default_factory=PortConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)

    lock_file: str = Field(default=".buildwarden.lock")
    fingerprint_file: str = Field(default=".install-fingerprint")
    dev_stdout_file: str = Field(default=".buildwarden-dev.log")
    dev_stderr_file: str = Field(default=".buildwarden-dev.err.log")

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def lock_path(self) -> Path:
        """Lock marker held for the duration of one pipeline run."""
        return self.target_dir / self.lock_file

    @property
    def fingerprint_path(self) -> Path:
        """Single-line marker with the last successful install fingerprint."""
        return self.target_dir / self.fingerprint_file

    @property
    def dev_stdout_path(self) -> Path:
        """Dev-server stdout log, written directly by the server process."""
        return self.target_dir / self.dev_stdout_file

    @property
    def dev_stderr_path(self) -> Path:
        return self.target_dir / self.dev_stderr_file

    @property
    def manifest_path(self) -> Path:
        return self.target_dir / "package.json"

    @property
    def lockfile_path(self) -> Path:
        return self.target_dir / "package-lock.json"

    @property
    def packages_dir(self) -> Path:
        """Installed-packages directory."""
        return self.target_dir / "node_modules"

    @property
    def build_cache_dir(self) -> Path:
        """Build-output cache directory."""
        return self.target_dir / ".next"

    @property
    def app_url(self) -> str:
        return f"http://localhost:{self.ports.app}"

    @property
    def preserved_entries(self) -> set[str]:
        """Top-level entries kept when generated files replace the project."""
        return {
            self.lock_file,
            self.fingerprint_file,
            self.dev_stdout_file,
            self.dev_stderr_file,
            "node_modules",
        }

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Persist the configuration to a JSON file.

        The generator API key is never written to disk.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        data["generator"]["api_key"] = ""
        path.write_text(Config.model_validate(data).model_dump_json(indent=2), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            BW_TARGET_DIR, BW_APP_PORT, BW_CONTROL_PORT,
            OPENAI_API_KEY, BW_GENERATOR_URL, BW_GENERATOR_MODEL, BW_SYSTEM_PROMPT,
            BW_MAX_REPAIR_ATTEMPTS, BW_INSTALL_TIMEOUT, BW_BUILD_TIMEOUT,
            BW_PIPELINE_TIMEOUT, BW_ROUTER_FLAVOR.
        """
        port_kwargs: dict[str, Any] = {}
        if os.environ.get("BW_APP_PORT"):
            port_kwargs["app"] = int(os.environ["BW_APP_PORT"])
        if os.environ.get("BW_CONTROL_PORT"):
            port_kwargs["control_plane"] = int(os.environ["BW_CONTROL_PORT"])

        generator_kwargs: dict[str, Any] = {}
        if os.environ.get("OPENAI_API_KEY"):
            generator_kwargs["api_key"] = os.environ["OPENAI_API_KEY"]
        if os.environ.get("BW_GENERATOR_URL"):
            generator_kwargs["base_url"] = os.environ["BW_GENERATOR_URL"]
        if os.environ.get("BW_GENERATOR_MODEL"):
            generator_kwargs["model"] = os.environ["BW_GENERATOR_MODEL"]
        if os.environ.get("BW_SYSTEM_PROMPT"):
            generator_kwargs["system_prompt_path"] = Path(os.environ["BW_SYSTEM_PROMPT"])

        build_kwargs: dict[str, Any] = {}
        if os.environ.get("BW_MAX_REPAIR_ATTEMPTS"):
            build_kwargs["max_repair_attempts"] = int(os.environ["BW_MAX_REPAIR_ATTEMPTS"])
        if os.environ.get("BW_INSTALL_TIMEOUT"):
            build_kwargs["install_timeout"] = int(os.environ["BW_INSTALL_TIMEOUT"])
        if os.environ.get("BW_BUILD_TIMEOUT"):
            build_kwargs["build_timeout"] = int(os.environ["BW_BUILD_TIMEOUT"])
        if os.environ.get("BW_PIPELINE_TIMEOUT"):
            build_kwargs["pipeline_timeout"] = float(os.environ["BW_PIPELINE_TIMEOUT"])
        if os.environ.get("BW_ROUTER_FLAVOR"):
            build_kwargs["router_flavor"] = os.environ["BW_ROUTER_FLAVOR"]

        return cls(
            target_dir=Path(os.environ.get("BW_TARGET_DIR", "./generated-app")),
            ports=PortConfig(**port_kwargs),
            generator=GeneratorConfig(**generator_kwargs),
            build=BuildConfig(**build_kwargs),
        )
