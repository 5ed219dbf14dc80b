from __future__ import annotations

import logging
import re
import sqlite3
import time
from datetime import date
from pathlib import Path
from typing import Any, Callable, ContextManager, Optional, Union

from ..mapper import RowMappingError, has_business_key, map_row
from ..models import IngestionResult, RowError, RunStatus
from ..portal.client import FlypassPortalClient
from ..portal.engine import BrowserEngine
from ..state import RunAlreadyFinalizedError, TollStore
from ..util.deadline import Deadline
from ..util.retry import RetryPolicy
from .file_guard import wait_until_unlocked
from .run_lock import subject_run_lock
from .workbook import read_export_rows


logger = logging.getLogger(__name__)

EngineFactory = Callable[[Path], ContextManager[BrowserEngine]]

_PROGRESS_EVERY = 50
_MAX_ERROR_LINES = 100


def _safe_segment(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]+", "_", value).strip("_") or "subject"


def _render_errors(errors: list[RowError]) -> Optional[str]:
    if not errors:
        return None
    lines = [e.render() for e in errors[:_MAX_ERROR_LINES]]
    if len(errors) > _MAX_ERROR_LINES:
        lines.append(f"... and {len(errors) - _MAX_ERROR_LINES} more")
    return "\n".join(lines)


def _status_for(found: int, errored: int) -> RunStatus:
    if errored == 0:
        return RunStatus.SUCCESS
    if errored < found:
        return RunStatus.PARTIAL
    return RunStatus.ERROR


class IngestionOrchestrator:
    """
    Runs one ingestion end to end: portal download (optional), stability wait, workbook parse,
    per-row mapping and upsert, run bookkeeping and file cleanup.

    Every run that gets an id ends in exactly one terminal status. Row failures are isolated and
    counted; anything else is recorded on the run as `error` and re-raised.
    """

    def __init__(
        self,
        store: TollStore,
        *,
        lock_policy: Optional[RetryPolicy] = None,
        deletion_grace_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.lock_policy = lock_policy or RetryPolicy(max_attempts=5, delay_seconds=1.0)
        self.deletion_grace_seconds = float(deletion_grace_seconds)
        self._sleep = sleep
        self._clock = clock

    def ingest_file(
        self,
        path: Union[str, Path],
        *,
        subject_identifier: str,
        range_start: Optional[date] = None,
        range_end: Optional[date] = None,
        deadline: Optional[Deadline] = None,
    ) -> IngestionResult:
        """
        Ingest an export that is already on disk (no browser involved).
        """
        p = Path(path)
        run_id = self.store.create_run(
            subject_identifier=subject_identifier,
            range_start=range_start,
            range_end=range_end,
            source_file_name=p.name,
        )
        started = self._clock()
        logger.info("Ingestion run %s started (subject=%s file=%s)", run_id, subject_identifier, p)
        try:
            return self._ingest_into_run(run_id, p, subject_identifier=subject_identifier, started=started, deadline=deadline)
        except BaseException as e:
            self._fail_run(run_id, e, started)
            raise

    def run(
        self,
        *,
        subject_identifier: str,
        range_start: date,
        range_end: date,
        portal: FlypassPortalClient,
        engine_factory: EngineFactory,
        download_root: Union[str, Path],
        auto_ingest: bool = True,
        deadline: Optional[Deadline] = None,
        lock_dir: Optional[Union[str, Path]] = None,
    ) -> IngestionResult:
        """
        Download the export for `[range_start, range_end]` from the portal and ingest it.

        Holds a per-subject lock for the whole run and downloads into a directory owned by this run,
        so concurrent runs for different subjects never see each other's files.
        """
        if range_start > range_end:
            raise ValueError(f"range_start {range_start} is after range_end {range_end}")
        root = Path(download_root)
        locks = Path(lock_dir) if lock_dir is not None else root / ".locks"
        deadline = deadline or Deadline(None)

        with subject_run_lock(locks, subject_identifier):
            run_id = self.store.create_run(
                subject_identifier=subject_identifier,
                range_start=range_start,
                range_end=range_end,
            )
            started = self._clock()
            logger.info(
                "Ingestion run %s started (subject=%s range=%s..%s)",
                run_id,
                subject_identifier,
                range_start,
                range_end,
            )
            try:
                run_dir = root / _safe_segment(subject_identifier) / str(run_id)
                run_dir.mkdir(parents=True, exist_ok=True)
                with engine_factory(run_dir) as engine:
                    path = portal.download_export(
                        engine,
                        range_start=range_start,
                        range_end=range_end,
                        deadline=deadline,
                    )

                if not auto_ingest:
                    return self._finish_without_ingest(run_id, path, started)
                return self._ingest_into_run(
                    run_id,
                    path,
                    subject_identifier=subject_identifier,
                    started=started,
                    deadline=deadline,
                )
            except BaseException as e:
                self._fail_run(run_id, e, started)
                raise

    # -- internals ---------------------------------------------------------

    def _ingest_into_run(
        self,
        run_id: int,
        path: Path,
        *,
        subject_identifier: str,
        started: float,
        deadline: Optional[Deadline] = None,
    ) -> IngestionResult:
        if deadline is not None:
            deadline.check("wait_for_file")
        wait_until_unlocked(path, self.lock_policy, sleep=self._sleep)

        if deadline is not None:
            deadline.check("read_export")
        rows = read_export_rows(path)
        keyed = [(n, raw) for n, raw in rows if has_business_key(raw)]
        skipped = len(rows) - len(keyed)
        if skipped:
            logger.info("Skipping %d row(s) without a CUFE.", skipped)

        found = len(keyed)
        errors: list[RowError] = []
        created = 0
        logger.info("Processing %d record(s) from %s", found, path.name)

        for i, (row_number, raw) in enumerate(keyed, start=1):
            outcome = self._process_row(row_number, raw, subject_identifier=subject_identifier)
            if isinstance(outcome, RowError):
                errors.append(outcome)
                logger.warning("Row failed: %s", outcome.render())
            elif outcome:
                created += 1
            if i % _PROGRESS_EVERY == 0:
                logger.info("Progress: %d/%d rows (errors=%d)", i, found, len(errors))

        errored = len(errors)
        processed = found - errored
        status = _status_for(found, errored)
        duration = round(self._clock() - started, 3)
        message = (
            f"{processed}/{found} record(s) stored ({created} new, {processed - created} updated); "
            f"{errored} error(s)"
        )

        self.store.update_run(
            run_id,
            status=status,
            records_found=found,
            records_processed=processed,
            records_errored=errored,
            duration_seconds=duration,
            message=message,
            error_details=_render_errors(errors),
            source_file_name=path.name,
        )
        logger.info(
            "Ingestion run %s finished: status=%s found=%d processed=%d errored=%d (%.1fs)",
            run_id,
            status.value,
            found,
            processed,
            errored,
            duration,
        )

        deleted = False
        if status is RunStatus.SUCCESS and found == 0:
            logger.warning("Export had no data rows; keeping it for inspection: %s", path)
        elif status is RunStatus.SUCCESS:
            deleted = self._delete_source(path)
        else:
            logger.info("Keeping export for inspection: %s", path)

        return IngestionResult(
            run_id=run_id,
            status=status,
            source_file=str(path),
            records_found=found,
            records_processed=processed,
            records_errored=errored,
            duration_seconds=duration,
            message=message,
            errors=errors,
            file_deleted=deleted,
        )

    def _process_row(self, row_number: int, raw: dict[str, Any], *, subject_identifier: str) -> Union[bool, RowError]:
        try:
            record = map_row(raw, row_number=row_number, default_subject=subject_identifier)
        except RowMappingError as e:
            return RowError(row_number=row_number, business_key=e.business_key, stage="mapping", message=str(e))
        try:
            return self.store.upsert_transaction(record)
        except (sqlite3.Error, OverflowError, ValueError) as e:
            return RowError(
                row_number=row_number,
                business_key=record.business_key,
                stage="persistence",
                message=f"{type(e).__name__}: {e}",
            )

    def _finish_without_ingest(self, run_id: int, path: Path, started: float) -> IngestionResult:
        duration = round(self._clock() - started, 3)
        message = f"Download complete; ingestion disabled. File kept at {path}"
        self.store.update_run(
            run_id,
            status=RunStatus.SUCCESS,
            duration_seconds=duration,
            message=message,
            source_file_name=path.name,
        )
        logger.info("Ingestion run %s finished without ingesting (file=%s)", run_id, path)
        return IngestionResult(
            run_id=run_id,
            status=RunStatus.SUCCESS,
            source_file=str(path),
            duration_seconds=duration,
            message=message,
        )

    def _delete_source(self, path: Path) -> bool:
        # Give the OS (and any virus scanner) time to release the freshly written file.
        if self.deletion_grace_seconds > 0:
            self._sleep(self.deletion_grace_seconds)
        try:
            path.unlink()
        except OSError as e:
            logger.warning("Could not delete processed export %s: %s", path, e)
            return False
        logger.info("Deleted processed export: %s", path)
        return True

    def _fail_run(self, run_id: int, exc: BaseException, started: float) -> None:
        duration = round(self._clock() - started, 3)
        message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        try:
            self.store.update_run(
                run_id,
                status=RunStatus.ERROR,
                duration_seconds=duration,
                message=message,
                error_details=message,
            )
        except RunAlreadyFinalizedError:
            logger.debug("Run %s was already finalized; not overwriting with error.", run_id)
            return
        except sqlite3.Error:
            logger.exception("Failed to record error status for run %s.", run_id)
            return
        logger.error("Ingestion run %s failed: %s", run_id, message)
