from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Optional

from ..util.retry import RetryExhaustedError, RetryPolicy


logger = logging.getLogger(__name__)

# Sidecar files browsers write while a download is still streaming.
_PARTIAL_SUFFIXES: tuple[str, ...] = (".crdownload", ".part", ".download", ".tmp")


class FileLockedError(RuntimeError):
    """
    The export never became readable within the retry budget (still held by the writer).
    """

    def __init__(self, path: Path, attempts: int) -> None:
        super().__init__(f"File still locked after {attempts} attempts: {path}")
        self.path = path
        self.attempts = attempts


class _StillWriting(OSError):
    pass


def probe_exclusive_read(path: Path) -> None:
    """
    Open `path` for reading and read one byte; raise OSError if the writer still holds it.

    On Windows a file held by the browser raises PermissionError (sharing violation). On POSIX we additionally
    treat an in-progress sidecar (`<name>.crdownload`, `<name>.part`) or an empty file as "still writing".
    """
    for suffix in _PARTIAL_SUFFIXES:
        if path.with_name(path.name + suffix).exists():
            raise _StillWriting(f"partial download sidecar present ({suffix})")

    flags = os.O_RDONLY | getattr(os, "O_BINARY", 0)
    fd = os.open(path, flags)
    try:
        if os.fstat(fd).st_size <= 0:
            raise _StillWriting("file is empty")
        os.read(fd, 1)
    finally:
        os.close(fd)


def wait_until_unlocked(
    path: Path,
    policy: RetryPolicy,
    *,
    probe: Optional[Callable[[Path], None]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> Path:
    """
    Block until `path` can be opened for reading, per `policy`.

    A missing file fails immediately with FileNotFoundError (nothing to wait for).
    Exhausting the policy raises FileLockedError.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Source file not found: {path}")

    check = probe or probe_exclusive_read

    def _attempt() -> None:
        if not path.exists():
            # Vanished mid-wait; not a lock problem.
            raise FileNotFoundError(f"Source file disappeared: {path}")
        check(path)

    try:
        policy.call(
            _attempt,
            op=f"open {path.name}",
            retry_on=(PermissionError, BlockingIOError, _StillWriting),
            sleep=sleep,
        )
    except RetryExhaustedError as e:
        raise FileLockedError(path, e.attempts) from e.last_exc

    logger.debug("Source file is readable: %s", path)
    return path
