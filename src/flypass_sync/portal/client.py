from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Optional

from ..util.deadline import Deadline
from .diagnostics import DiagnosticHook, NullDiagnostics
from .engine import BrowserEngine, EngineTimeoutError
from .selectors import FlypassSelectors, SelectorChain


logger = logging.getLogger(__name__)


class PortalStepError(RuntimeError):
    """
    A required portal step failed after every selector in its fallback chain. Not retryable.
    """

    def __init__(
        self,
        step: str,
        detail: str,
        *,
        selectors: SelectorChain = (),
        screenshot: Optional[Path] = None,
    ) -> None:
        tried = f" (tried: {', '.join(selectors)})" if selectors else ""
        shot = f" [screenshot: {screenshot}]" if screenshot else ""
        super().__init__(f"Portal step {step!r} failed: {detail}{tried}{shot}")
        self.step = step
        self.selectors = selectors
        self.screenshot = screenshot


class LoginRejectedError(PortalStepError):
    pass


@dataclass(frozen=True)
class PortalCredentials:
    subject_identifier: str
    password: str

    def __repr__(self) -> str:
        return f"PortalCredentials(subject_identifier={self.subject_identifier!r}, password=***)"


class FlypassPortalClient:
    """
    Drives the Flypass customer portal: login, open the consolidated invoice report (following the popup window
    when the portal opens one), filter by date range and download the export.
    """

    def __init__(
        self,
        *,
        base_url: str,
        creds: PortalCredentials,
        selectors: Optional[FlypassSelectors] = None,
        diagnostics: Optional[DiagnosticHook] = None,
        step_timeout_ms: int = 5_000,
        navigation_timeout_ms: int = 30_000,
        download_timeout_ms: int = 60_000,
        popup_wait_ms: int = 2_000,
        settle_ms: int = 1_000,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.creds = creds
        self.selectors = selectors or FlypassSelectors()
        self.diagnostics: DiagnosticHook = diagnostics or NullDiagnostics()
        self.step_timeout_ms = step_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self.download_timeout_ms = download_timeout_ms
        self.popup_wait_ms = popup_wait_ms
        self.settle_ms = settle_ms

        self._deadline = Deadline(None)
        self._current_step = ""

    def download_export(
        self,
        engine: BrowserEngine,
        *,
        range_start: date,
        range_end: date,
        deadline: Optional[Deadline] = None,
    ) -> Path:
        """
        Run the whole portal workflow on an already-launched engine and return the downloaded export's path.

        Raises PortalStepError (with a diagnostic capture) when a required step cannot be completed, and
        RunDeadlineExceeded when the run budget runs out between steps.
        """
        if range_start > range_end:
            raise ValueError(f"range_start {range_start} is after range_end {range_end}")
        self._deadline = deadline or Deadline(None)

        try:
            self._enter_step(engine, "open_portal")
            engine.navigate(self.base_url, timeout_ms=self._budget(self.navigation_timeout_ms))

            self._login(engine)
            self._dismiss_optional_dialog(engine)
            self._open_consolidated_report(engine)
            self._adopt_popup_page(engine)
            self._configure_filters(engine, range_start=range_start, range_end=range_end)
            path = self._trigger_export(engine)
        except EngineTimeoutError as e:
            # A single-selector operation (navigation, load wait) timed out outside a fallback chain.
            shot = self.diagnostics.capture(engine, name=f"step_failed_{self._current_step}")
            raise PortalStepError(self._current_step, str(e), screenshot=shot) from e

        logger.info("Portal export downloaded (range=%s..%s file=%s)", range_start, range_end, path.name)
        return path

    # -- steps -------------------------------------------------------------

    def _login(self, engine: BrowserEngine) -> None:
        s = self.selectors
        self._enter_step(engine, "login")
        self._run_chain(engine, "login_username", s.username_input, lambda sel: engine.fill(
            sel, self.creds.subject_identifier, timeout_ms=self._budget(self.step_timeout_ms)
        ))
        self._run_chain(engine, "login_password", s.password_input, lambda sel: engine.fill(
            sel, self.creds.password, timeout_ms=self._budget(self.step_timeout_ms)
        ))
        self._run_chain(engine, "login_submit", s.login_submit, lambda sel: engine.click(
            sel, timeout_ms=self._budget(self.step_timeout_ms)
        ))
        self._settle(engine)

        # Still looking at the password box after submitting means the portal rejected the credentials.
        if any(self._visible(engine, sel) for sel in s.password_input):
            shot = self.diagnostics.capture(engine, name="login_rejected")
            raise LoginRejectedError(
                "login",
                "credentials rejected (login form still visible after submit)",
                screenshot=shot,
            )
        logger.info("Portal login complete.")

    def _dismiss_optional_dialog(self, engine: BrowserEngine) -> None:
        self._enter_step(engine, "dismiss_dialog")
        for sel in self.selectors.optional_dialog_dismiss:
            try:
                engine.click(sel, timeout_ms=self._budget(min(self.step_timeout_ms, 3_000)))
                logger.info("Dismissed interstitial dialog (%s).", sel)
                return
            except EngineTimeoutError:
                continue
        logger.debug("No interstitial dialog to dismiss.")

    def _open_consolidated_report(self, engine: BrowserEngine) -> None:
        s = self.selectors
        self._enter_step(engine, "open_report")
        for step, chain in (
            ("open_invoices_menu", s.invoices_menu),
            ("open_invoices_query", s.invoices_query),
            ("open_consolidated_report", s.consolidated_report),
        ):
            self._run_chain(engine, step, chain, lambda sel: engine.click(
                sel, timeout_ms=self._budget(self.step_timeout_ms)
            ))

    def _adopt_popup_page(self, engine: BrowserEngine) -> None:
        """
        The consolidated report usually opens in a new window. Poll briefly for it and switch over;
        staying on the same page is also fine.
        """
        self._enter_step(engine, "adopt_popup")
        waited = 0
        interval = 250
        while len(engine.pages()) <= 1 and waited < self.popup_wait_ms:
            self._deadline.check("adopt_popup")
            engine.pause(interval)
            waited += interval

        if len(engine.pages()) > 1 and engine.switch_to_latest_page():
            logger.info("Switched to newly opened window (pages=%d url=%s).", len(engine.pages()), engine.url())
        else:
            logger.info("No new window detected; continuing on the current page.")

        try:
            engine.wait_for_load("domcontentloaded", timeout_ms=self._budget(self.navigation_timeout_ms))
        except EngineTimeoutError:
            logger.debug("Report page did not reach domcontentloaded in time; continuing.")

    def _configure_filters(self, engine: BrowserEngine, *, range_start: date, range_end: date) -> None:
        s = self.selectors
        self._enter_step(engine, "configure_filters")

        # Document type defaults to invoices only on some accounts; "todos" widens it. Optional.
        try:
            engine.wait_for(s.document_type_select, timeout_ms=self._budget(self.step_timeout_ms))
            engine.select_option(
                s.document_type_select,
                s.document_type_all_value,
                timeout_ms=self._budget(self.step_timeout_ms),
            )
        except EngineTimeoutError:
            logger.warning("Could not set document type filter; continuing with the portal default.")

        start_txt = range_start.strftime(s.date_input_format)
        end_txt = range_end.strftime(s.date_input_format)
        self._run_chain(engine, "filter_start_date", s.start_date_input, lambda sel: engine.fill(
            sel, start_txt, timeout_ms=self._budget(self.step_timeout_ms)
        ))
        self._run_chain(engine, "filter_end_date", s.end_date_input, lambda sel: engine.fill(
            sel, end_txt, timeout_ms=self._budget(self.step_timeout_ms)
        ))
        self._run_chain(engine, "filter_search", s.search_button, lambda sel: engine.click(
            sel, timeout_ms=self._budget(self.step_timeout_ms)
        ))
        self._settle(engine, ms=self.settle_ms * 3)

    def _trigger_export(self, engine: BrowserEngine) -> Path:
        s = self.selectors
        self._enter_step(engine, "download_export")

        def _click_export() -> None:
            self._run_chain(engine, "download_export", s.export_button, lambda sel: engine.click(
                sel, timeout_ms=self._budget(self.step_timeout_ms)
            ))

        try:
            return engine.await_download(_click_export, timeout_ms=self._budget(self.download_timeout_ms))
        except EngineTimeoutError as e:
            shot = self.diagnostics.capture(engine, name="download_never_started")
            raise PortalStepError("download_export", "download event never fired", screenshot=shot) from e

    # -- helpers -----------------------------------------------------------

    def _run_chain(
        self,
        engine: BrowserEngine,
        step: str,
        chain: SelectorChain,
        action: Callable[[str], None],
    ) -> str:
        """
        Try each selector of `chain` in order: wait for it, then run `action` on it.

        The first selector that works wins. If all of them time out, capture diagnostics and raise
        PortalStepError naming the step and the chain.
        """
        last_exc: Optional[EngineTimeoutError] = None
        for sel in chain:
            self._deadline.check(step)
            try:
                engine.wait_for(sel, timeout_ms=self._budget(self.step_timeout_ms))
                action(sel)
                logger.debug("Step %s: selector %r worked.", step, sel)
                return sel
            except EngineTimeoutError as e:
                logger.info("Step %s: selector %r not usable (%s); trying next.", step, sel, e)
                last_exc = e

        shot = self.diagnostics.capture(engine, name=f"step_failed_{step}")
        raise PortalStepError(step, "no selector in the fallback chain matched", selectors=chain, screenshot=shot) from last_exc

    def _enter_step(self, engine: BrowserEngine, name: str) -> None:
        self._deadline.check(name)
        self._current_step = name
        logger.info("Portal step: %s", name)
        self.diagnostics.step(engine, name=name)

    def _budget(self, timeout_ms: int) -> int:
        return self._deadline.clamp_ms(timeout_ms)

    def _settle(self, engine: BrowserEngine, *, ms: Optional[int] = None) -> None:
        """
        Avoid `networkidle`; the portal keeps background requests running.
        """
        try:
            engine.wait_for_load("domcontentloaded", timeout_ms=self._budget(self.navigation_timeout_ms))
        except EngineTimeoutError:
            pass
        engine.pause(self.settle_ms if ms is None else ms)

    def _visible(self, engine: BrowserEngine, selector: str) -> bool:
        try:
            return engine.is_visible(selector)
        except Exception:
            return False
