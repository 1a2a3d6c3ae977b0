"""Launch the Next.js dev server as a detached child.

The server runs in its own session with stdout and stderr redirected to log
files in the target directory, so it keeps running and logging after the
supervisor exits.  Background tasks tail those files into bounded buffers;
the first ready marker sets a one-shot event shared with the health prober.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import subprocess
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..context import BuildContext

STDOUT_READY_MARKERS = ("Ready", "Local:", "localhost:{port}", "started server")
STDERR_READY_MARKERS = ("Ready", "Local:")

_CHUNK_SIZE = 4096
# Characters of the previous chunk kept when scanning for a marker split
# across two reads.
_MARKER_OVERLAP = 64
# Seconds between polls of the log files and the child's exit status.
_POLL_INTERVAL = 0.05


class OutputBuffer:
    """Keeps the most recent *max_chars* characters of a stream."""

    def __init__(self, max_chars: int = 65536) -> None:
        self.max_chars = max_chars
        self._chunks: deque[str] = deque()
        self._size = 0

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        self._chunks.append(chunk)
        self._size += len(chunk)
        while self._size > self.max_chars and self._chunks:
            excess = self._size - self.max_chars
            head = self._chunks[0]
            if len(head) <= excess:
                self._chunks.popleft()
                self._size -= len(head)
            else:
                self._chunks[0] = head[excess:]
                self._size -= excess

    def text(self) -> str:
        return "".join(self._chunks)

    def __len__(self) -> int:
        return self._size


@dataclass
class ServerProcess:
    """Handle on a launched dev server.

    ``ready`` is set at most once, by whichever stream shows a ready marker
    first.  The handle never kills the server.
    """

    pid: int
    port: int
    process: subprocess.Popen | None = None
    stdout_path: Path | None = None
    stderr_path: Path | None = None
    stdout_buffer: OutputBuffer = field(default_factory=OutputBuffer)
    stderr_buffer: OutputBuffer = field(default_factory=OutputBuffer)
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    ready_marker: str | None = None
    exit_code: int | None = None
    released: bool = False
    tasks: list[asyncio.Task] = field(default_factory=list)

    @property
    def stdout(self) -> str:
        return self.stdout_buffer.text()

    @property
    def stderr(self) -> str:
        return self.stderr_buffer.text()

    @property
    def exited(self) -> bool:
        return self.exit_code is not None

    def mark_ready(self, marker: str) -> bool:
        """Set the readiness event; later calls are ignored."""
        if self.ready.is_set():
            return False
        self.ready_marker = marker
        self.ready.set()
        return True

    def release(self) -> None:
        """Drop ownership of the server without stopping it.

        The tail and exit-watch tasks finish on their next poll.  The server
        keeps writing to its log files.
        """
        self.released = True


class ProcessLauncher:
    """Spawns ``npm run dev -- -p PORT`` in the target directory."""

    def __init__(
        self,
        ctx: BuildContext,
        port: int | None = None,
        poll_interval: float = _POLL_INTERVAL,
    ) -> None:
        self.ctx = ctx
        self.config = ctx.config
        self.log = ctx.log
        self.port = port if port is not None else self.config.ports.app
        self.poll_interval = poll_interval

    def dev_command(self) -> list[str]:
        return [self.config.build.npm_binary, "run", "dev", "--", "-p", str(self.port)]

    async def launch(self) -> ServerProcess:
        cmd = self.dev_command()
        stdout_path = self.config.dev_stdout_path
        stderr_path = self.config.dev_stderr_path
        self.log(f"Starting dev server: {' '.join(cmd)}")

        with stdout_path.open("wb") as stdout_handle, stderr_path.open("wb") as stderr_handle:
            kwargs: dict[str, Any] = {
                "cwd": str(self.config.target_dir),
                "stdin": subprocess.DEVNULL,
                "stdout": stdout_handle,
                "stderr": stderr_handle,
                "env": {**os.environ, "PORT": str(self.port), "NEXT_TELEMETRY_DISABLED": "1"},
                "close_fds": True,
            }
            if os.name == "nt":
                kwargs["creationflags"] = (
                    subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
                )
            else:
                kwargs["start_new_session"] = True
            process = subprocess.Popen(cmd, **kwargs)

        max_chars = self.config.probe.stream_buffer_chars
        server = ServerProcess(
            pid=process.pid,
            port=self.port,
            process=process,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            stdout_buffer=OutputBuffer(max_chars),
            stderr_buffer=OutputBuffer(max_chars),
        )
        stdout_markers = tuple(m.format(port=self.port) for m in STDOUT_READY_MARKERS)
        server.tasks = [
            asyncio.create_task(self._tail(server, stdout_path, server.stdout_buffer, stdout_markers)),
            asyncio.create_task(self._tail(server, stderr_path, server.stderr_buffer, STDERR_READY_MARKERS)),
        ]
        server.tasks.append(asyncio.create_task(self._watch_exit(server, process)))
        self.log(f"Dev server started with PID {process.pid} (output in {stdout_path.name})")
        return server

    async def _tail(
        self,
        server: ServerProcess,
        path: Path,
        buffer: OutputBuffer,
        markers: tuple[str, ...],
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        previous = ""
        with path.open("rb") as handle:
            while not server.released:
                # Sampled before the read so output written just before exit is kept.
                finished = server.exited
                data = handle.read(_CHUNK_SIZE)
                if not data:
                    if finished:
                        return
                    await asyncio.sleep(self.poll_interval)
                    continue
                chunk = decoder.decode(data)
                buffer.append(chunk)
                if not server.ready.is_set():
                    window = previous + chunk
                    for marker in markers:
                        if marker in window and server.mark_ready(marker):
                            self.log(f"Dev server reported ready ({marker!r})")
                            break
                previous = chunk[-_MARKER_OVERLAP:]

    async def _watch_exit(self, server: ServerProcess, process: subprocess.Popen) -> None:
        code = process.poll()
        while code is None:
            if server.released:
                return
            await asyncio.sleep(self.poll_interval)
            code = process.poll()
        server.exit_code = code
        if server.released or server.ready.is_set():
            return
        # Let the tails pick up what the process wrote before exiting.
        await asyncio.gather(*server.tasks[:2], return_exceptions=True)
        self.log.error(f"Dev server exited with code {server.exit_code} before becoming ready")
        if server.stdout:
            self.log(f"Dev server stdout:\n{server.stdout}")
        if server.stderr:
            self.log(f"Dev server stderr:\n{server.stderr}")
