"""Structural checks on generated sources, run before the compile gate.

A violation here is cheaper to find than a failed ``next build``, and a
single concrete finding makes a better repair request than a long report,
so the validator stops at the first match.

Rules are data (``ValidationRule(label, matcher)``).  The scan walks the
project depth-first in name order and applies the rules in priority order:
the first rule that matches any file wins.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

SOURCE_SUFFIXES: frozenset[str] = frozenset({".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"})
EXCLUDED_DIRS: frozenset[str] = frozenset({"node_modules", ".next", ".git", "out", "dist"})

# import x from "y" / import "y" / export ... from "y" / require("y") / import("y")
_IMPORT_RE = re.compile(
    r"""(?:\bimport\s+(?:[\w*{}\s,]+?\s+from\s+)?|\bexport\s+[\w*{}\s,]+?\s+from\s+|\brequire\s*\(\s*|\bimport\s*\(\s*)
        (['"])(?P<spec>[^'"\n]+)\1""",
    re.VERBOSE,
)


@dataclass(frozen=True)
class ValidationFinding:
    """One structural violation."""

    rule: str
    file_path: str
    detail: str

    def describe(self) -> str:
        """Render the finding as repair context for the generator."""
        return f"Static validation failed [{self.rule}] in {self.file_path}: {self.detail}"


@dataclass(frozen=True)
class ProjectLayout:
    """Facts about the project that rules may consult."""

    root: Path
    top_level_dirs: frozenset[str]
    declared_aliases: frozenset[str]
    router_flavor: str = "pages"
    alias_prefix: str = "@/"

    @classmethod
    def discover(cls, root: Path, router_flavor: str = "pages", alias_prefix: str = "@/") -> "ProjectLayout":
        top_level = frozenset(
            entry.name
            for entry in root.iterdir()
            if entry.is_dir() and entry.name not in EXCLUDED_DIRS and not entry.name.startswith(".")
        ) if root.is_dir() else frozenset()
        return cls(
            root=root,
            top_level_dirs=top_level,
            declared_aliases=_read_path_aliases(root),
            router_flavor=router_flavor,
            alias_prefix=alias_prefix,
        )


@dataclass(frozen=True)
class SourceFile:
    """A source file handed to rule matchers."""

    relative_path: PurePosixPath
    text: str
    layout: ProjectLayout
    imports: tuple[str, ...] = field(default=())


Matcher = Callable[[SourceFile], "str | None"]


@dataclass(frozen=True)
class ValidationRule:
    """A labelled matcher; returns a detail string when the file violates it."""

    label: str
    matcher: Matcher


def _read_path_aliases(root: Path) -> frozenset[str]:
    """Return alias prefixes declared in ``tsconfig.json``/``jsconfig.json``.

    ``"@/*": ["./*"]`` yields ``"@/"``.  Comments and trailing commas in the
    config make it unparseable; that counts as no aliases.
    """
    for name in ("tsconfig.json", "jsconfig.json"):
        config_path = root / name
        if not config_path.is_file():
            continue
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            continue
        paths = (data.get("compilerOptions") or {}).get("paths") or {}
        if isinstance(paths, dict):
            return frozenset(key.rstrip("*") for key in paths if isinstance(key, str))
    return frozenset()


def extract_imports(text: str) -> tuple[str, ...]:
    """Return every module specifier imported or required by *text*."""
    return tuple(match.group("spec") for match in _IMPORT_RE.finditer(text))


# ---------------------------------------------------------------------------
# Rule matchers
# ---------------------------------------------------------------------------


def _bare_local_import(source: SourceFile) -> str | None:
    """Import of a project directory without ``./`` or the path alias."""
    layout = source.layout
    for spec in source.imports:
        if spec.startswith((".", "/")) or any(spec.startswith(a) for a in layout.declared_aliases):
            continue
        first_segment = spec.split("/", 1)[0]
        if first_segment in layout.top_level_dirs:
            return (
                f"import '{spec}' refers to the project directory '{first_segment}/' "
                f"without a relative path or the '{layout.alias_prefix}' alias"
            )
    return None


def _undeclared_alias(source: SourceFile) -> str | None:
    """Alias-style import while tsconfig declares no such alias."""
    layout = source.layout
    if layout.alias_prefix in layout.declared_aliases:
        return None
    for spec in source.imports:
        if spec.startswith(layout.alias_prefix):
            return (
                f"import '{spec}' uses the '{layout.alias_prefix}' alias but tsconfig.json "
                "declares no matching compilerOptions.paths entry"
            )
    return None


_FOREIGN_ROUTER_MODULE = {"pages": "next/navigation", "app": "next/router"}


def _foreign_router_module(source: SourceFile) -> str | None:
    flavor = source.layout.router_flavor
    forbidden = _FOREIGN_ROUTER_MODULE.get(flavor)
    if forbidden and forbidden in source.imports:
        return (
            f"imports '{forbidden}', which belongs to the other Next.js router; "
            f"this project uses the {flavor} router"
        )
    return None


_APP_ROUTER_FILE = re.compile(r"^(?:src/)?app/(?:.+/)?(?:page|layout)\.(?:t|j)sx?$")
_PAGES_ROUTER_FILE = re.compile(r"^(?:src/)?pages/_(?:app|document)\.(?:t|j)sx?$")


def _foreign_router_directory(source: SourceFile) -> str | None:
    path = source.relative_path.as_posix()
    flavor = source.layout.router_flavor
    if flavor == "pages" and _APP_ROUTER_FILE.match(path):
        return "App Router file found in a Pages Router project; use pages/ instead of app/"
    if flavor == "app" and _PAGES_ROUTER_FILE.match(path):
        return "Pages Router file found in an App Router project; use app/layout.tsx instead"
    return None


DEFAULT_RULES: tuple[ValidationRule, ...] = (
    ValidationRule("bare-local-import", _bare_local_import),
    ValidationRule("undeclared-alias", _undeclared_alias),
    ValidationRule("foreign-router-module", _foreign_router_module),
    ValidationRule("foreign-router-directory", _foreign_router_directory),
)


# ---------------------------------------------------------------------------
# StaticValidator
# ---------------------------------------------------------------------------


def iter_source_files(root: Path) -> Iterable[Path]:
    """Yield source files depth-first in name order, skipping excluded dirs."""
    try:
        entries = sorted(root.iterdir(), key=lambda p: p.name)
    except OSError:
        return
    for entry in entries:
        if entry.is_dir():
            if entry.name in EXCLUDED_DIRS or entry.is_symlink():
                continue
            yield from iter_source_files(entry)
        elif entry.suffix in SOURCE_SUFFIXES:
            yield entry


class StaticValidator:
    """Scans a project for the first structural violation.

    Parameters
    ----------
    root:
        Project directory.
    rules:
        Rules in priority order.  Defaults to :data:`DEFAULT_RULES`.
    router_flavor:
        ``"pages"`` or ``"app"``.
    alias_prefix:
        Import alias that maps to the project root.
    """

    def __init__(
        self,
        root: Path,
        rules: Sequence[ValidationRule] = DEFAULT_RULES,
        *,
        router_flavor: str = "pages",
        alias_prefix: str = "@/",
    ) -> None:
        self.root = Path(root)
        self.rules = tuple(rules)
        self.router_flavor = router_flavor
        self.alias_prefix = alias_prefix

    def _load_sources(self) -> list[SourceFile]:
        layout = ProjectLayout.discover(self.root, self.router_flavor, self.alias_prefix)
        sources: list[SourceFile] = []
        for path in iter_source_files(self.root):
            text = path.read_text(encoding="utf-8", errors="replace")
            sources.append(
                SourceFile(
                    relative_path=PurePosixPath(path.relative_to(self.root).as_posix()),
                    text=text,
                    layout=layout,
                    imports=extract_imports(text),
                )
            )
        return sources

    def find_violation(self) -> ValidationFinding | None:
        """Return the first finding, or ``None`` if the project looks sound."""
        sources = self._load_sources()
        for rule in self.rules:
            for source in sources:
                detail = rule.matcher(source)
                if detail:
                    return ValidationFinding(
                        rule=rule.label,
                        file_path=source.relative_path.as_posix(),
                        detail=detail,
                    )
        return None
