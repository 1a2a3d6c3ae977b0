"""Write a generated project over the target directory.

Writing is a full replace: every top-level entry not in the preserved set is
removed before the new files land, so stale sources from an earlier
generation can never leak into the next build.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path

from ..utils import UnsafePathError, normalise_relative_path, remove_path


def write_project_files(
    target_dir: Path,
    files: Mapping[str, str],
    preserve: Iterable[str] = (),
) -> list[Path]:
    """Replace the contents of *target_dir* with *files*.

    Args:
        target_dir: Project directory (created if missing).
        files: Mapping of relative path to full text content.
        preserve: Top-level entry names kept across the replace (lock
            marker, install fingerprint, installed packages).

    Returns:
        The absolute paths written, in mapping order.

    Raises:
        UnsafePathError: If a path escapes *target_dir* or lands inside a
            preserved entry.  Nothing is touched in that case.
    """
    keep = set(preserve)
    # Validate everything before touching the disk.
    relative = [(normalise_relative_path(path), content) for path, content in files.items()]
    for rel_path, _ in relative:
        if rel_path.parts[0] in keep:
            raise UnsafePathError(f"Generated file would overwrite reserved entry: {rel_path}")

    target_dir.mkdir(parents=True, exist_ok=True)
    for entry in sorted(target_dir.iterdir()):
        if entry.name not in keep:
            remove_path(entry)

    written: list[Path] = []
    for rel_path, content in relative:
        full_path = target_dir.joinpath(*rel_path.parts)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")
        written.append(full_path)
    return written
