"""Failure-signature table.

Raw install/build output is classified by scanning for known substrings.
The table is plain data so new signatures can be added without touching the
installer or the repair loop.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureClass(str, Enum):
    """What a matched signature says about the failure."""

    TRUNCATED_ARCHIVE = "truncated_archive"
    MISSING_HELPER = "missing_helper"
    STALE_CACHE = "stale_cache"
    PEER_CONFLICT = "peer_conflict"

    @property
    def is_corruption(self) -> bool:
        """Corruption means a broken dependency tree, not a code defect."""
        return self in _CORRUPTION


_CORRUPTION = frozenset(
    {FailureClass.TRUNCATED_ARCHIVE, FailureClass.MISSING_HELPER, FailureClass.STALE_CACHE}
)


@dataclass(frozen=True)
class FailureSignature:
    """A substring that, when present in output, implies *classification*.

    When ``requires`` is set, that second substring must also appear for the
    signature to match.
    """

    signature: str
    classification: FailureClass
    requires: str | None = None

    def matches(self, output: str) -> bool:
        if self.signature not in output:
            return False
        return self.requires is None or self.requires in output


# Order matters: the first matching signature decides the classification.
SIGNATURES: tuple[FailureSignature, ...] = (
    # Interrupted or corrupted tarball extraction.
    FailureSignature("TAR_ENTRY_ERROR", FailureClass.TRUNCATED_ARCHIVE),
    FailureSignature("TAR_BAD_ARCHIVE", FailureClass.TRUNCATED_ARCHIVE),
    FailureSignature("zlib: unexpected end of file", FailureClass.TRUNCATED_ARCHIVE),
    FailureSignature("Unexpected end of JSON input", FailureClass.TRUNCATED_ARCHIVE, requires="npm"),
    FailureSignature("EINTEGRITY", FailureClass.TRUNCATED_ARCHIVE),
    # A nested helper package vanished from node_modules.
    FailureSignature("Cannot find module '@swc/helpers", FailureClass.MISSING_HELPER),
    FailureSignature("Cannot find module '@babel/runtime", FailureClass.MISSING_HELPER),
    FailureSignature("Cannot find module", FailureClass.MISSING_HELPER, requires="node_modules"),
    FailureSignature("MODULE_NOT_FOUND", FailureClass.MISSING_HELPER, requires="node_modules"),
    # Caches pointing at files that no longer exist.
    FailureSignature("ENOENT: no such file or directory", FailureClass.STALE_CACHE, requires=".next"),
    FailureSignature("ENOENT: no such file or directory", FailureClass.STALE_CACHE, requires="node_modules"),
    FailureSignature("ENOTEMPTY", FailureClass.STALE_CACHE, requires="node_modules"),
    # Peer dependency resolution failures (not corruption).
    FailureSignature("ERESOLVE", FailureClass.PEER_CONFLICT),
    FailureSignature("peer dependency", FailureClass.PEER_CONFLICT),
)


def classify_failure(
    output: str,
    signatures: tuple[FailureSignature, ...] = SIGNATURES,
) -> FailureClass | None:
    """Return the class of the first signature found in *output*, if any."""
    for entry in signatures:
        if entry.matches(output):
            return entry.classification
    return None


def is_corruption(output: str, signatures: tuple[FailureSignature, ...] = SIGNATURES) -> bool:
    """``True`` when *output* carries a dependency-corruption signature."""
    found = classify_failure(output, signatures)
    return found is not None and found.is_corruption
