"""Build Warden server module.

Gets a compiled app serving on its port: reclaim the port, launch the dev
server detached, then probe it over HTTP.

Key classes:
    PortReclaimer   - Kills listeners on the application port
    ProcessLauncher - Spawns the detached dev server and pumps its output
    HealthProber    - Classifies the server as ready, crashing or timed out
"""

from .launcher import OutputBuffer, ProcessLauncher, ServerProcess
from .ports import PortReclaimer
from .prober import HealthProber, HealthStatus, ProbeOutcome, ProbeResult

__all__ = [
    "PortReclaimer",
    "ProcessLauncher",
    "ServerProcess",
    "OutputBuffer",
    "HealthProber",
    "HealthStatus",
    "ProbeOutcome",
    "ProbeResult",
]
