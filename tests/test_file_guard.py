from __future__ import annotations

from pathlib import Path

import pytest

from flypass_sync.ingest.file_guard import FileLockedError, probe_exclusive_read, wait_until_unlocked
from flypass_sync.util.retry import RetryPolicy


def _file(tmp_path: Path, name: str = "export.xlsx", data: bytes = b"PK\x03\x04data") -> Path:
    p = tmp_path / name
    p.write_bytes(data)
    return p


def test_unlocks_on_third_attempt(tmp_path: Path) -> None:
    path = _file(tmp_path)
    attempts = {"n": 0}
    sleeps: list[float] = []

    def probe(p: Path) -> None:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise PermissionError("held by browser")

    out = wait_until_unlocked(path, RetryPolicy(max_attempts=5, delay_seconds=1.0), probe=probe, sleep=sleeps.append)
    assert out == path
    assert attempts["n"] == 3
    assert sleeps == [1.0, 1.0]


def test_locked_after_all_attempts(tmp_path: Path) -> None:
    path = _file(tmp_path)
    sleeps: list[float] = []

    def probe(p: Path) -> None:
        raise PermissionError("held by browser")

    with pytest.raises(FileLockedError) as ei:
        wait_until_unlocked(path, RetryPolicy(max_attempts=5, delay_seconds=1.0), probe=probe, sleep=sleeps.append)
    assert ei.value.attempts == 5
    assert ei.value.path == path
    assert len(sleeps) == 4


def test_missing_file_fails_fast(tmp_path: Path) -> None:
    sleeps: list[float] = []
    with pytest.raises(FileNotFoundError):
        wait_until_unlocked(tmp_path / "nope.xlsx", RetryPolicy(max_attempts=5), sleep=sleeps.append)
    assert sleeps == []


def test_probe_treats_sidecar_and_empty_file_as_still_writing(tmp_path: Path) -> None:
    path = _file(tmp_path)
    probe_exclusive_read(path)

    sidecar = tmp_path / "export.xlsx.crdownload"
    sidecar.write_bytes(b"")
    with pytest.raises(OSError):
        probe_exclusive_read(path)
    sidecar.unlink()

    empty = _file(tmp_path, "empty.xlsx", b"")
    with pytest.raises(OSError):
        probe_exclusive_read(empty)


def test_sidecar_that_disappears_unlocks(tmp_path: Path) -> None:
    path = _file(tmp_path)
    sidecar = tmp_path / "export.xlsx.part"
    sidecar.write_bytes(b"")

    def sleep(_s: float) -> None:
        if sidecar.exists():
            sidecar.unlink()

    assert wait_until_unlocked(path, RetryPolicy(max_attempts=3, delay_seconds=0.0), sleep=sleep) == path
