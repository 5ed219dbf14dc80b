from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator


logger = logging.getLogger(__name__)


class SubjectBusyError(RuntimeError):
    """
    Another run currently holds the lock for this subject.
    """


def _lock_path(lock_dir: Path, subject: str) -> Path:
    safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", subject).strip("_") or "subject"
    return lock_dir / f"{safe}.lock"


@contextmanager
def subject_run_lock(lock_dir: Path, subject: str) -> Iterator[Path]:
    """
    Single-flight guard keyed by subject: at most one run per subject across processes.

    Implemented as an `O_CREAT | O_EXCL` lock file holding the owner's pid. A crashed run leaves the file
    behind; delete it by hand once you have confirmed no run is active.
    """
    lock_dir = Path(lock_dir)
    lock_dir.mkdir(parents=True, exist_ok=True)
    path = _lock_path(lock_dir, subject)
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        owner = ""
        try:
            owner = path.read_text(encoding="utf-8").strip()
        except OSError:
            pass
        raise SubjectBusyError(
            f"Another run is already active for subject {subject!r} (lock={path}{', ' + owner if owner else ''})"
        ) from None

    try:
        os.write(fd, f"pid={os.getpid()} since={datetime.now(timezone.utc).isoformat()}".encode("utf-8"))
    finally:
        os.close(fd)

    try:
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Run lock already removed: %s", path)
