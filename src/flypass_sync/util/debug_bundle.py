from __future__ import annotations

import time
import zipfile
from pathlib import Path
from typing import Iterable, Optional


# Never bundled, even when they sit inside a collected directory.
_SECRET_NAMES = {".env", "config.yaml", "config.yml"}
_SECRET_SUFFIXES = {".db", ".db-wal", ".db-shm", ".bak"}


def _is_secret(path: Path) -> bool:
    return path.name in _SECRET_NAMES or path.suffix in _SECRET_SUFFIXES


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    subject: str = "",
    extra_paths: Optional[Iterable[str]] = None,
) -> Path:
    """
    Zip the diagnostic captures, the log file and any extra paths (e.g. the failed run's download dir)
    into `out_dir/debug_bundle[_<subject>]_<stamp>.zip`, plus a `MANIFEST.txt` listing what was included.

    Credentials files and the SQLite store are skipped.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    subj = "".join(ch for ch in (subject or "") if ch.isalnum() or ch in "-_")
    out_path = out_root / f"debug_bundle{'_' + subj if subj else ''}_{stamp}.zip"

    included: list[str] = []

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        if _is_secret(file_path):
            return
        try:
            if file_path.is_file():
                z.write(file_path, arcname=arcname)
                included.append(arcname)
        except OSError:
            # A capture can be rotated away while we bundle; skip it.
            return

    def _add_tree(z: zipfile.ZipFile, root: Path, prefix: Path) -> None:
        for p in sorted(root.rglob("*")):
            if p.is_file():
                _add_file(z, p, arcname=str(prefix / p.relative_to(root)))

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        log = Path(log_file)
        _add_file(z, log, arcname=log.name)

        dbg = Path(debug_dir)
        if dbg.is_dir():
            _add_tree(z, dbg, Path("debug"))

        for raw in extra_paths or ():
            p = Path(raw)
            if p.is_file():
                _add_file(z, p, arcname=str(Path("extra") / p.name))
            elif p.is_dir():
                _add_tree(z, p, Path("extra") / p.name)

        z.writestr("MANIFEST.txt", "\n".join(included) + ("\n" if included else ""))

    return out_path
