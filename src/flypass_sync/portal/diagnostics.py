from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Optional, Protocol

from .engine import BrowserEngine


logger = logging.getLogger(__name__)


def _safe_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]+", "_", name).strip("_")[:60] or "capture"


class DiagnosticHook(Protocol):
    def capture(self, engine: BrowserEngine, *, name: str) -> Optional[Path]:
        """Save whatever helps a human see why a UI step failed. Must never raise."""

    def step(self, engine: BrowserEngine, *, name: str) -> None:
        """Called after each portal step (optional progress screenshots)."""


class NullDiagnostics:
    def capture(self, engine: BrowserEngine, *, name: str) -> Optional[Path]:
        return None

    def step(self, engine: BrowserEngine, *, name: str) -> None:
        return None


class FileDiagnostics:
    """
    Writes `<name>_<stamp>.png` (+ `.html`/`.txt` snapshots) under `debug_dir`.

    With `step_debug=True`, also screenshots every step as `step_NN_<name>.png`.
    """

    def __init__(self, debug_dir: str, *, step_debug: bool = False) -> None:
        self.debug_dir = Path(debug_dir)
        self.step_debug = step_debug
        self._step_counter = 0

    def capture(self, engine: BrowserEngine, *, name: str) -> Optional[Path]:
        stamp = time.strftime("%Y%m%d_%H%M%S")
        prefix = f"{_safe_name(name)}_{stamp}"
        shot: Optional[Path] = None
        try:
            self.debug_dir.mkdir(parents=True, exist_ok=True)
            shot = engine.screenshot(self.debug_dir / f"{prefix}.png")
            logger.error("Saved diagnostic screenshot: %s", shot)
        except Exception:
            logger.debug("Failed to save diagnostic screenshot.", exc_info=True)
        try:
            (self.debug_dir / f"{prefix}.html").write_text(engine.content(), encoding="utf-8")
            (self.debug_dir / f"{prefix}.txt").write_text(engine.body_text(), encoding="utf-8")
        except Exception:
            logger.debug("Failed to save page snapshots.", exc_info=True)
        return shot

    def step(self, engine: BrowserEngine, *, name: str) -> None:
        if not self.step_debug:
            return
        self._step_counter += 1
        try:
            engine.screenshot(self.debug_dir / f"step_{self._step_counter:02d}_{_safe_name(name)}.png")
        except Exception:
            logger.debug("Failed to save step screenshot (name=%s).", name, exc_info=True)
