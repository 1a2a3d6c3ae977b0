"""Async client for the code-generation service.

Talks to an OpenAI-compatible ``/chat/completions`` endpoint in JSON mode and
returns the generated project as a mapping of relative path to file content.
The supervisor treats the service as opaque; this module only makes sure the
answer is well-formed before anyone writes it to disk.

Request text is rendered from the Jinja2 templates in ``templates/``.

Typical usage::

    client = GeneratorClient(config.generator)
    project = await client.generate("Build a todo app", error_context=compiler_output)
    write_project_files(config.target_dir, project.files)
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import BaseModel, Field

from .config import GeneratorConfig
from .utils import UnsafePathError, normalise_relative_path

_TEMPLATE_DIR = Path(__file__).parent / "templates"

_REQUIRED_FILES = {
    "pages": (
        "package.json", "tsconfig.json", "next.config.js", "tailwind.config.js",
        "postcss.config.js", "pages/_app.tsx", "pages/_document.tsx", "pages/index.tsx",
        "styles/globals.css",
    ),
    "app": (
        "package.json", "tsconfig.json", "next.config.js", "tailwind.config.js",
        "postcss.config.js", "app/layout.tsx", "app/page.tsx", "app/globals.css",
    ),
}

_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_DIR)),
    autoescape=select_autoescape([]),
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)


class GeneratorError(Exception):
    """The generator could not be reached or returned a malformed project."""


class GeneratedProject(BaseModel):
    """A complete project returned by the generator."""

    files: dict[str, str] = Field(default_factory=dict)
    port: int | None = Field(default=None)
    model: str = Field(default="")

    @property
    def file_count(self) -> int:
        return len(self.files)


def build_user_prompt(
    requirement: str,
    error_context: str | None,
    router_flavor: str = "pages",
    alias: str = "@/",
) -> str:
    """Render the user message sent to the generator."""
    context = {
        "requirement": requirement,
        "error_context": error_context,
        "router_flavor": router_flavor,
        "router": "Pages Router" if router_flavor == "pages" else "App Router",
        "required_files": _REQUIRED_FILES.get(router_flavor, _REQUIRED_FILES["pages"]),
        "alias": alias,
    }
    name = "repair_request.md.j2" if error_context else "build_request.md.j2"
    return _env.get_template(name).render(**context).strip()


def parse_project(content: str, reserved: Iterable[str] = ()) -> GeneratedProject:
    """Validate the generator's JSON answer.

    *reserved* names top-level entries the supervisor owns (lock marker,
    install fingerprint, dev-server logs); a generated path inside one is
    rejected.

    Raises:
        GeneratorError: If the content is not a JSON object with a non-empty
            ``files`` mapping of safe relative paths to strings.
    """
    reserved_names = set(reserved)
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise GeneratorError(f"Generator response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise GeneratorError("Generator response is not a JSON object")

    files = data.get("files")
    if not isinstance(files, dict) or not files:
        raise GeneratorError("Generator response has no files")

    for path, text in files.items():
        if not isinstance(text, str):
            raise GeneratorError(f"Generated file {path!r} has non-text content")
        try:
            rel_path = normalise_relative_path(path)
        except UnsafePathError as exc:
            raise GeneratorError(str(exc)) from exc
        if rel_path.parts[0] in reserved_names:
            raise GeneratorError(f"Generated file {path!r} would overwrite a reserved entry")

    port = data.get("port")
    return GeneratedProject(files=files, port=port if isinstance(port, int) else None)


class GeneratorClient:
    """Async client for an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        config: GeneratorConfig,
        router_flavor: str = "pages",
        alias: str = "@/",
        reserved_entries: Iterable[str] = (),
    ) -> None:
        self.config = config
        self.router_flavor = router_flavor
        self.alias = alias
        self.reserved_entries = frozenset(reserved_entries)
        self.base_url = config.base_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.config.timeout, connect=10.0),
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )

    def _payload(self, requirement: str, error_context: str | None) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        system_prompt = self.config.resolve_system_prompt()
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append(
            {
                "role": "user",
                "content": build_user_prompt(
                    requirement, error_context, self.router_flavor, self.alias
                ),
            }
        )
        return {
            "model": self.config.model,
            "messages": messages,
            "response_format": {"type": "json_object"},
            "temperature": self.config.temperature,
        }

    @staticmethod
    def _extract_content(data: dict) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""

    async def generate(self, requirement: str, error_context: str | None = None) -> GeneratedProject:
        """Generate a complete project for *requirement*.

        Args:
            requirement: Natural-language requirement text.
            error_context: Failure description from a previous attempt, if
                this is a repair request.

        Raises:
            GeneratorError: On transport failure or a malformed answer.
        """
        if not self.is_configured:
            raise GeneratorError("Generator API key is not configured")

        payload = self._payload(requirement, error_context)
        try:
            async with self._client() as client:
                response = await client.post("/chat/completions", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.ConnectError as exc:
            raise GeneratorError(f"Cannot connect to generator at {self.base_url}") from exc
        except httpx.TimeoutException as exc:
            raise GeneratorError(
                f"Generator request timed out after {self.config.timeout}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise GeneratorError(
                f"Generator returned HTTP {exc.response.status_code}: {exc.response.text[:500]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise GeneratorError(f"Generator request failed: {exc}") from exc
        except ValueError as exc:
            raise GeneratorError(f"Generator returned a non-JSON body: {exc}") from exc

        if not isinstance(data, dict):
            raise GeneratorError("Generator returned an unexpected response shape")
        content = self._extract_content(data)
        if not content:
            raise GeneratorError("Generator returned an empty completion")

        project = parse_project(content, self.reserved_entries)
        project.model = data.get("model", self.config.model)
        return project
