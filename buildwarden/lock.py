"""Single-flight lock on the target directory.

A lock marker file is created with ``O_CREAT | O_EXCL`` so creation either
succeeds atomically or fails because another run holds the directory.  A
second caller is rejected immediately; nothing waits or queues.

Markers left behind by a crashed supervisor are cleared on the next
acquisition: either the holder PID is no longer running, or the marker is
unreadable (a crash between create and write) and older than
``ABANDONED_MARKER_GRACE`` seconds.
"""

from __future__ import annotations

import contextlib
import os
import time
import uuid
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

LOCK_FILE = ".buildwarden.lock"
# Seconds an unreadable marker is given to be filled in by its creator.
ABANDONED_MARKER_GRACE = 10.0


class LockRecord(BaseModel):
    """Holder identity written into the lock marker."""

    holder_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    pid: int = Field(default_factory=os.getpid)
    acquired_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BuildBusyError(Exception):
    """Another pipeline run already holds the target directory.

    This is a contention outcome rather than a fault; callers report it as
    "build already in progress" and do not retry.
    """

    def __init__(self, directory: Path, holder: LockRecord | None = None) -> None:
        self.directory = directory
        self.holder = holder
        detail = ""
        if holder is not None:
            detail = f" (PID {holder.pid}, since {holder.acquired_at.isoformat()})"
        super().__init__(f"Build already in progress for {directory}{detail}")


def _lock_path(directory: Path, lock_file: str = LOCK_FILE) -> Path:
    return Path(directory) / lock_file


def _is_pid_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False
    return True


def get_current_lock(directory: Path, lock_file: str = LOCK_FILE) -> LockRecord | None:
    """Return the record in the lock marker, or ``None`` if absent or unreadable."""
    lock_path = _lock_path(directory, lock_file)
    if not lock_path.exists():
        return None
    try:
        return LockRecord.model_validate_json(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def is_stale_lock(record: LockRecord) -> bool:
    """A lock is stale when its holder process has died.

    A record held by this very process is never stale: two runs inside one
    supervisor are still contention.
    """
    if record.pid == os.getpid():
        return False
    return not _is_pid_running(record.pid)


def _is_abandoned_marker(lock_path: Path, grace: float = ABANDONED_MARKER_GRACE) -> bool:
    """An unreadable marker older than *grace* seconds has no live writer."""
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return False
    return age > grace


def _try_atomic_create(lock_path: Path, record: LockRecord) -> bool:
    """Create the marker atomically.  ``False`` if it already exists."""
    try:
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        return False
    try:
        os.write(fd, record.model_dump_json(indent=2).encode("utf-8"))
    finally:
        os.close(fd)
    return True


def acquire_lock(directory: Path, lock_file: str = LOCK_FILE) -> LockRecord:
    """Acquire the directory lock without blocking.

    Args:
        directory: Target build directory (must exist).
        lock_file: Marker file name inside *directory*.

    Returns:
        The :class:`LockRecord` now stored in the marker.

    Raises:
        BuildBusyError: If a live holder already owns the directory.
    """
    lock_path = _lock_path(directory, lock_file)
    record = LockRecord()

    if _try_atomic_create(lock_path, record):
        return record

    existing = get_current_lock(directory, lock_file)
    if existing is None:
        stale = _is_abandoned_marker(lock_path)
    else:
        stale = is_stale_lock(existing)

    if stale:
        with contextlib.suppress(FileNotFoundError):
            lock_path.unlink()
        # One retry only; losing this race is ordinary contention.
        if _try_atomic_create(lock_path, record):
            return record
        existing = get_current_lock(directory, lock_file)

    raise BuildBusyError(Path(directory), existing)


def release_lock(directory: Path, record: LockRecord, lock_file: str = LOCK_FILE) -> None:
    """Remove the marker if it still belongs to *record*.  Safe to call twice."""
    lock_path = _lock_path(directory, lock_file)
    existing = get_current_lock(directory, lock_file)
    if existing is not None and existing.holder_id == record.holder_id:
        lock_path.unlink(missing_ok=True)


@contextlib.contextmanager
def build_lock(directory: Path, lock_file: str = LOCK_FILE) -> Iterator[LockRecord]:
    """Hold the directory lock for the duration of a ``with`` block.

    The lock is released on every exit path, including exceptions and task
    cancellation.
    """
    record = acquire_lock(directory, lock_file)
    try:
        yield record
    finally:
        release_lock(directory, record, lock_file)
