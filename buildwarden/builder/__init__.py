"""Build Warden builder module.

Takes a generated project from source files to a passing production build:
dependency installation, static validation, the compile gate and the bounded
repair loop that feeds failures back to the generator.

Key classes:
    DependencyInstaller - Fingerprinted, self-healing ``npm`` install
    StaticValidator     - Rule-driven import/router checks before compiling
    CompileGate         - ``npm run build`` as a strict exit-status gate
    RepairLoop          - Validate -> compile -> repair state machine
"""

from .compiler import CompileGate, CompileResult
from .files import write_project_files
from .installer import DependencyInstaller, InstallError, InstallReport, compute_fingerprint
from .repair import FailureKind, FatalBuildError, RepairAttempt, RepairLoop, RepairReport
from .signatures import SIGNATURES, FailureClass, FailureSignature, classify_failure, is_corruption
from .validator import DEFAULT_RULES, StaticValidator, ValidationFinding, ValidationRule

__all__ = [
    # Installer
    "DependencyInstaller",
    "InstallError",
    "InstallReport",
    "compute_fingerprint",
    # Failure signatures
    "SIGNATURES",
    "FailureClass",
    "FailureSignature",
    "classify_failure",
    "is_corruption",
    # Static validation
    "StaticValidator",
    "ValidationFinding",
    "ValidationRule",
    "DEFAULT_RULES",
    # Compile gate
    "CompileGate",
    "CompileResult",
    # Repair loop
    "RepairLoop",
    "RepairReport",
    "RepairAttempt",
    "FatalBuildError",
    "FailureKind",
    # Files
    "write_project_files",
]
