"""Free the application port before a dev server is launched.

Listener lookup tries ``lsof`` first, then reads ``/proc/net/tcp`` directly
on Linux hosts without it.  Windows hosts parse ``netstat -ano``.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from collections.abc import Iterable
from pathlib import Path

from ..context import RunLog
from ..utils import run_command

_TCP_LISTEN_STATE = "0A"
_PROC_TCP_TABLES = (Path("/proc/net/tcp"), Path("/proc/net/tcp6"))


# ---------------------------------------------------------------------------
# Output parsers
# ---------------------------------------------------------------------------


def parse_pid_lines(text: str) -> set[int]:
    """Parse one-PID-per-line output (``lsof -t``)."""
    pids: set[int] = set()
    for line in text.splitlines():
        line = line.strip()
        if line.isdigit():
            pids.add(int(line))
    return pids


def parse_proc_net_tcp(text: str, port: int) -> set[str]:
    """Return socket inodes listening on *port* in a ``/proc/net/tcp`` table."""
    hex_port = f"{port:04X}"
    inodes: set[str] = set()
    for line in text.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 10:
            continue
        local_port = fields[1].rsplit(":", 1)[-1]
        if local_port == hex_port and fields[3] == _TCP_LISTEN_STATE:
            inodes.add(fields[9])
    return inodes


def parse_netstat(text: str, port: int) -> set[int]:
    """Return PIDs listening on *port* from ``netstat -ano`` output."""
    pids: set[int] = set()
    suffix = f":{port}"
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 5 or parts[0].upper() != "TCP":
            continue
        if parts[1].endswith(suffix) and parts[3].upper() == "LISTENING" and parts[4].isdigit():
            pids.add(int(parts[4]))
    return pids


def _pids_owning_inodes(inodes: Iterable[str], proc_root: Path = Path("/proc")) -> set[int]:
    wanted = {f"socket:[{inode}]" for inode in inodes}
    pids: set[int] = set()
    if not wanted:
        return pids
    for pid_dir in proc_root.iterdir():
        if not pid_dir.name.isdigit():
            continue
        try:
            for fd in (pid_dir / "fd").iterdir():
                try:
                    if os.readlink(fd) in wanted:
                        pids.add(int(pid_dir.name))
                        break
                except OSError:
                    continue
        except OSError:
            continue
    return pids


# ---------------------------------------------------------------------------
# Reclaimer
# ---------------------------------------------------------------------------


class PortReclaimer:
    """Kills whatever listens on the application port.

    Parameters
    ----------
    reserved_ports:
        Ports that may never be reclaimed (the control plane's own port).
    log:
        Run log for diagnostics.  Lookup and kill failures are logged here
        and never raised.
    settle_seconds:
        Pause after killing listeners so the OS releases the socket.
    """

    def __init__(
        self,
        reserved_ports: Iterable[int],
        log: RunLog,
        settle_seconds: float = 1.0,
    ) -> None:
        self.reserved_ports = frozenset(reserved_ports)
        self.log = log
        self.settle_seconds = settle_seconds

    async def find_listening_pids(self, port: int) -> set[int]:
        if sys.platform == "win32":
            result = await run_command(["netstat", "-ano"], timeout=10)
            return parse_netstat(result.stdout, port) if result.ok else set()

        result = await run_command(["lsof", "-ti", f"tcp:{port}", "-sTCP:LISTEN"], timeout=10)
        if result.returncode != 127:
            # lsof exits 1 when nothing matches.
            return parse_pid_lines(result.stdout)

        inodes: set[str] = set()
        for table in _PROC_TCP_TABLES:
            try:
                inodes |= parse_proc_net_tcp(table.read_text(), port)
            except OSError:
                continue
        return _pids_owning_inodes(inodes)

    def _kill(self, pid: int) -> bool:
        try:
            os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        except ProcessLookupError:
            return False
        except (PermissionError, OSError) as exc:
            self.log.warning(f"Could not kill PID {pid}: {exc}")
            return False
        return True

    async def free_port(self, port: int) -> list[int]:
        """Kill every process listening on *port*.

        Returns:
            PIDs that were signalled.

        Raises:
            ValueError: If *port* is reserved.
        """
        if port in self.reserved_ports:
            raise ValueError(f"Refusing to reclaim reserved port {port}")

        try:
            pids = await self.find_listening_pids(port)
        except OSError as exc:
            self.log.warning(f"Listener lookup for port {port} failed: {exc}")
            return []

        own_pid = os.getpid()
        killed: list[int] = []
        for pid in sorted(pids):
            if pid == own_pid:
                self.log.warning(f"Port {port} is held by this process; not killing it")
                continue
            if self._kill(pid):
                killed.append(pid)

        if killed:
            self.log(f"Killed process(es) {', '.join(map(str, killed))} on port {port}")
            await asyncio.sleep(self.settle_seconds)
        else:
            self.log(f"Port {port} is free")
        return killed
