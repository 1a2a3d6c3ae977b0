"""Per-run context passed through every pipeline stage.

Holds the run's append-only log and the handles of the collaborators a run
needs, so no stage reaches for module-level state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from rich.markup import escape

from .config import Config
from .utils import console

if TYPE_CHECKING:
    from .generator import GeneratorClient


class RunLog:
    """Append-only, timestamped log for one pipeline run.

    Every line is echoed to the console and kept in memory so it can be
    returned verbatim to the caller as the ``logs`` field of an outcome.
    """

    def __init__(self, echo: bool = True) -> None:
        self._lines: list[str] = []
        self.echo = echo

    def __call__(self, message: str, style: str = "") -> None:
        self.write(message, style)

    def write(self, message: str, style: str = "") -> None:
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        line = f"[{timestamp}] {message}"
        self._lines.append(line)
        if self.echo:
            text = escape(line)
            console.print(f"[{style}]{text}[/{style}]" if style else text, highlight=False)

    def info(self, message: str) -> None:
        self.write(message)

    def warning(self, message: str) -> None:
        self.write(f"WARNING: {message}", "yellow")

    def error(self, message: str) -> None:
        self.write(f"ERROR: {message}", "red")

    @property
    def lines(self) -> tuple[str, ...]:
        return tuple(self._lines)

    def text(self) -> str:
        return "\n".join(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


@dataclass
class BuildContext:
    """Everything a single pipeline run needs.

    Attributes:
        config: Supervisor configuration.
        log: Append-only run log.
        generator: Code generator used for repairs, or ``None`` when repairs
            are unavailable.
        prompt: Requirement text that authorises and parameterises repair.
    """

    config: Config
    log: RunLog = field(default_factory=RunLog)
    generator: GeneratorClient | None = None
    prompt: str | None = None

    @property
    def can_repair(self) -> bool:
        """Repair needs a prompt and a configured generator."""
        return bool(self.prompt and self.prompt.strip()) and (
            self.generator is not None and self.generator.is_configured
        )
