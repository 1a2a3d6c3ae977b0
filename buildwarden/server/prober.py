"""HTTP health probing for a freshly launched dev server.

Every status in ``[200, 500)`` counts as ready: a 404 from an app without an
index route still means the server is serving.  A run of consecutive 500s
means the app compiled but crashes on render.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

import httpx

from ..config import ProbeConfig
from ..context import RunLog
from .launcher import ServerProcess


class ProbeOutcome(str, Enum):
    READY = "ready"
    TIMEOUT = "timeout"
    RUNTIME_FAILURE = "runtime_failure"


@dataclass
class HealthStatus:
    """Running tally of probe responses."""

    consecutive_server_errors: int = 0
    ready: bool = False
    attempts: int = 0
    last_status_code: int | None = None
    last_error: str | None = None

    def record_status(self, status_code: int) -> None:
        self.attempts += 1
        self.last_status_code = status_code
        self.last_error = None
        if 200 <= status_code < 500:
            self.ready = True
            self.consecutive_server_errors = 0
        elif status_code == 500:
            self.consecutive_server_errors += 1
        else:
            self.consecutive_server_errors = 0

    def record_error(self, error: str) -> None:
        self.attempts += 1
        self.last_status_code = None
        self.last_error = error
        self.consecutive_server_errors = 0


@dataclass
class ProbeResult:
    outcome: ProbeOutcome
    status: HealthStatus
    source: str | None = None

    @property
    def ready(self) -> bool:
        return self.outcome is ProbeOutcome.READY


class HealthProber:
    """Polls ``GET http://HOST:PORT/`` until ready, crashing, or out of attempts."""

    def __init__(self, config: ProbeConfig, log: RunLog) -> None:
        self.config = config
        self.log = log

    def url_for(self, port: int) -> str:
        return f"http://{self.config.host}:{port}/"

    async def await_ready(self, port: int, server: ServerProcess | None = None) -> ProbeResult:
        """Probe *port* until a terminal classification is reached.

        Args:
            port: Application port.
            server: Launched server whose stream readiness event may upgrade a
                timeout to ready.  Probing stops early if it exits.
        """
        url = self.url_for(port)
        status = HealthStatus()
        limit = self.config.max_consecutive_server_errors
        self.log(f"Probing {url} (up to {self.config.max_attempts} attempts)")

        async with httpx.AsyncClient(timeout=self.config.request_timeout) as client:
            for attempt in range(1, self.config.max_attempts + 1):
                try:
                    response = await client.get(url)
                except httpx.TimeoutException:
                    status.record_error("request timed out")
                except httpx.HTTPError as exc:
                    status.record_error(f"{type(exc).__name__}: {exc}")
                else:
                    status.record_status(response.status_code)
                    if status.ready:
                        self.log(f"Server responded with {response.status_code} on attempt {attempt}")
                        return ProbeResult(ProbeOutcome.READY, status, source="http")
                    if status.consecutive_server_errors >= limit:
                        self.log.error(
                            f"Server returned 500 on {limit} consecutive probes; "
                            "the app crashes at runtime"
                        )
                        return ProbeResult(ProbeOutcome.RUNTIME_FAILURE, status, source="http")

                if server is not None and server.exited and not server.ready.is_set():
                    self.log.error(f"Dev server exited with code {server.exit_code}; stopping probes")
                    return ProbeResult(ProbeOutcome.TIMEOUT, status)

                if attempt < self.config.max_attempts:
                    await asyncio.sleep(self.config.interval)

        if server is not None and server.ready.is_set():
            self.log.warning(
                "HTTP probes never succeeded but the server reported ready on its output; "
                "treating it as ready"
            )
            status.ready = True
            return ProbeResult(ProbeOutcome.READY, status, source="stream")

        detail = status.last_error or f"last status {status.last_status_code}"
        self.log.error(f"Server did not become ready after {status.attempts} attempts ({detail})")
        return ProbeResult(ProbeOutcome.TIMEOUT, status)
