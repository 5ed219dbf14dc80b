from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright


logger = logging.getLogger(__name__)


class EngineTimeoutError(TimeoutError):
    """
    A browser operation did not complete within its timeout.
    """

    def __init__(self, op: str, target: str, timeout_ms: int) -> None:
        super().__init__(f"{op} timed out after {timeout_ms}ms ({target})")
        self.op = op
        self.target = target
        self.timeout_ms = timeout_ms


class EngineNotLaunchedError(RuntimeError):
    pass


@dataclass(frozen=True)
class LaunchOptions:
    headless: bool = True
    slow_mo_ms: int = 0
    # Optional system browser channel ("chrome", "msedge"); empty means Playwright's bundled Chromium.
    channel: str = ""
    default_timeout_ms: int = 30_000
    download_dir: str = "data/downloads"


class BrowserEngine:
    """
    Thin wrapper around Playwright's sync API: one browser, one context, one active page.

    Every operation takes an optional `timeout_ms` (falls back to `default_timeout_ms`) and raises
    `EngineTimeoutError` instead of hanging. No retries happen here. Use as a context manager so
    `close()` always runs; `close()` is idempotent.
    """

    def __init__(self, options: Optional[LaunchOptions] = None) -> None:
        self.options = options or LaunchOptions()
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None

    def __enter__(self) -> "BrowserEngine":
        if self._browser is None:
            self.launch()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def page(self) -> Any:
        if self._page is None:
            raise EngineNotLaunchedError("Browser is not launched; call launch() first.")
        return self._page

    @property
    def download_dir(self) -> Path:
        return Path(self.options.download_dir)

    def launch(self, options: Optional[LaunchOptions] = None) -> "BrowserEngine":
        if self._browser is not None or self._playwright is not None:
            # Relaunch: release the previous Playwright driver first.
            self.close()
        if options is not None:
            self.options = options
        opts = self.options

        self.download_dir.mkdir(parents=True, exist_ok=True)
        self._playwright = sync_playwright().start()
        try:
            self._browser = self._launch_browser(opts)
            self._context = self._browser.new_context(accept_downloads=True, color_scheme="light")
            self._context.set_default_timeout(opts.default_timeout_ms)
            self._page = self._context.new_page()
        except BaseException:
            self.close()
            raise
        logger.info("Browser launched (headless=%s channel=%s)", opts.headless, opts.channel or "bundled")
        return self

    def _launch_browser(self, opts: LaunchOptions) -> Any:
        chromium = self._playwright.chromium
        kwargs: dict = {"headless": opts.headless, "slow_mo": int(opts.slow_mo_ms or 0)}
        if opts.channel:
            return chromium.launch(channel=opts.channel, **kwargs)
        try:
            return chromium.launch(**kwargs)
        except Exception as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise
            logger.warning(
                "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
                msg,
            )
            try:
                return chromium.launch(channel="chrome", **kwargs)
            except Exception:
                return chromium.launch(channel="msedge", **kwargs)

    def _timeout(self, timeout_ms: Optional[int]) -> int:
        return int(timeout_ms if timeout_ms is not None else self.options.default_timeout_ms)

    @contextmanager
    def _translate_timeout(self, op: str, target: str, timeout_ms: int) -> Iterator[None]:
        try:
            yield
        except PlaywrightTimeoutError as e:
            raise EngineTimeoutError(op, target, timeout_ms) from e

    def navigate(self, url: str, *, timeout_ms: Optional[int] = None) -> None:
        t = self._timeout(timeout_ms)
        with self._translate_timeout("navigate", url, t):
            self.page.goto(url, wait_until="domcontentloaded", timeout=t)

    def wait_for(self, selector: str, *, timeout_ms: Optional[int] = None) -> None:
        t = self._timeout(timeout_ms)
        with self._translate_timeout("wait_for", selector, t):
            self.page.wait_for_selector(selector, state="visible", timeout=t)

    def fill(self, selector: str, text: str, *, timeout_ms: Optional[int] = None) -> None:
        t = self._timeout(timeout_ms)
        with self._translate_timeout("fill", selector, t):
            self.page.fill(selector, text, timeout=t)

    def click(self, selector: str, *, timeout_ms: Optional[int] = None) -> None:
        t = self._timeout(timeout_ms)
        with self._translate_timeout("click", selector, t):
            self.page.click(selector, timeout=t)

    def select_option(self, selector: str, value: str, *, timeout_ms: Optional[int] = None) -> None:
        t = self._timeout(timeout_ms)
        with self._translate_timeout("select_option", selector, t):
            self.page.select_option(selector, value, timeout=t)

    def is_visible(self, selector: str, *, timeout_ms: Optional[int] = None) -> bool:
        t = self._timeout(timeout_ms)
        with self._translate_timeout("is_visible", selector, t):
            return bool(self.page.is_visible(selector, timeout=t))

    def wait_for_load(self, state: str = "domcontentloaded", *, timeout_ms: Optional[int] = None) -> None:
        t = self._timeout(timeout_ms)
        with self._translate_timeout("wait_for_load", state, t):
            self.page.wait_for_load_state(state, timeout=t)

    def pause(self, ms: int) -> None:
        self.page.wait_for_timeout(int(ms))

    def url(self) -> str:
        return str(getattr(self.page, "url", "") or "")

    def content(self, *, timeout_ms: Optional[int] = None) -> str:
        # page.content() takes no timeout of its own; the context default bounds it.
        t = self._timeout(timeout_ms)
        with self._translate_timeout("content", "page", t):
            return str(self.page.content())

    def body_text(self, *, timeout_ms: Optional[int] = None) -> str:
        t = self._timeout(timeout_ms)
        with self._translate_timeout("body_text", "body", t):
            return str(self.page.inner_text("body", timeout=t))

    def screenshot(self, path: Path, *, timeout_ms: Optional[int] = None) -> Path:
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        t = self._timeout(timeout_ms)
        with self._translate_timeout("screenshot", str(out), t):
            self.page.screenshot(path=str(out), full_page=True, timeout=t)
        return out

    def await_download(self, trigger: Callable[[], None], *, timeout_ms: Optional[int] = None) -> Path:
        """
        Run `trigger` (the click that starts the export) and wait for the resulting download event.

        The file is saved under the configured download dir with the server-suggested name.
        Returns its absolute path.
        """
        t = self._timeout(timeout_ms)
        with self._translate_timeout("await_download", "download event", t):
            with self.page.expect_download(timeout=t) as download_info:
                trigger()
            download = download_info.value

        name = (download.suggested_filename or "").strip() or f"export_{time.strftime('%Y%m%d_%H%M%S')}.xlsx"
        target = self.download_dir / Path(name).name
        target.parent.mkdir(parents=True, exist_ok=True)
        download.save_as(str(target))
        logger.info("Download saved: %s", target)
        return target.resolve()

    def pages(self) -> list[Any]:
        if self._context is None:
            return []
        return list(self._context.pages)

    def switch_to_latest_page(self) -> bool:
        """
        Make the most recently opened page the active one. Returns True if the active page changed.
        """
        pages = self.pages()
        if not pages:
            return False
        latest = pages[-1]
        if latest is self._page:
            return False
        self._page = latest
        return True

    def close(self) -> None:
        context, browser, playwright = self._context, self._browser, self._playwright
        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None

        if context is not None:
            try:
                context.close()
            except Exception:
                logger.debug("Failed to close browser context.", exc_info=True)
        if browser is not None:
            try:
                browser.close()
            except Exception:
                logger.debug("Failed to close browser.", exc_info=True)
        if playwright is not None:
            try:
                playwright.stop()
            except Exception:
                logger.debug("Failed to stop Playwright.", exc_info=True)
