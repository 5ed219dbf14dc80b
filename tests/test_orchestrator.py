from __future__ import annotations

import shutil
import sqlite3
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Iterator, Optional

import pytest

from conftest import export_row
from flypass_sync.ingest.file_guard import FileLockedError
from flypass_sync.ingest.orchestrator import IngestionOrchestrator
from flypass_sync.ingest.run_lock import SubjectBusyError, subject_run_lock
from flypass_sync.ingest.workbook import ExportFormatError
from flypass_sync.models import RunStatus
from flypass_sync.portal.client import PortalStepError
from flypass_sync.state import TollStore
from flypass_sync.util.retry import RetryPolicy


SUBJECT = "900123456"


@pytest.fixture
def store(tmp_path: Path) -> Iterator[TollStore]:
    s = TollStore(str(tmp_path / "db" / "flypass.db"))
    try:
        yield s
    finally:
        s.close()


def _orchestrator(store: TollStore, sleeps: Optional[list[float]] = None) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        store,
        lock_policy=RetryPolicy(max_attempts=3, delay_seconds=0.0),
        deletion_grace_seconds=5.0,
        sleep=(sleeps.append if sleeps is not None else (lambda _s: None)),
    )


def test_clean_export_succeeds_and_deletes_file(store: TollStore, write_export) -> None:
    path = write_export([export_row("K1"), export_row("K2"), export_row("K3")])
    sleeps: list[float] = []

    result = _orchestrator(store, sleeps).ingest_file(path, subject_identifier=SUBJECT)

    assert result.status is RunStatus.SUCCESS
    assert (result.records_found, result.records_processed, result.records_errored) == (3, 3, 0)
    assert result.file_deleted is True
    assert not path.exists()
    assert 5.0 in sleeps
    assert store.count() == 3

    run = store.get_run(result.run_id)
    assert run.status is RunStatus.SUCCESS
    assert run.source_file_name == "export.xlsx"
    assert run.duration_seconds is not None


def test_one_bad_row_gives_partial_and_keeps_file(store: TollStore, write_export) -> None:
    path = write_export([export_row("K1"), export_row("K2", **{"F.Paso": "not a date"}), export_row("K3")])

    result = _orchestrator(store).ingest_file(path, subject_identifier=SUBJECT)

    assert result.status is RunStatus.PARTIAL
    assert (result.records_found, result.records_processed, result.records_errored) == (3, 2, 1)
    assert result.errors[0].row_number == 3
    assert result.errors[0].business_key == "K2"
    assert result.errors[0].stage == "mapping"
    assert result.file_deleted is False
    assert path.exists()
    assert store.get_transaction("K1") is not None
    assert store.get_transaction("K2") is None
    assert store.get_transaction("K3") is not None

    run = store.get_run(result.run_id)
    assert run.status is RunStatus.PARTIAL
    assert "row 3 key=K2" in (run.error_details or "")


def test_every_row_bad_gives_error(store: TollStore, write_export) -> None:
    path = write_export([export_row("K1", Creacion="garbage"), export_row("K2", Creacion=None)])

    result = _orchestrator(store).ingest_file(path, subject_identifier=SUBJECT)

    assert result.status is RunStatus.ERROR
    assert (result.records_found, result.records_processed, result.records_errored) == (2, 0, 2)
    assert path.exists()
    assert store.count() == 0


def test_rows_without_cufe_are_not_counted(store: TollStore, write_export) -> None:
    path = write_export([export_row("K1"), export_row(None, Estado="TOTAL"), export_row("  ")])

    result = _orchestrator(store).ingest_file(path, subject_identifier=SUBJECT)

    assert result.status is RunStatus.SUCCESS
    assert result.records_found == 1
    assert store.count() == 1


def test_header_only_export_is_success_and_keeps_file(store: TollStore, write_export) -> None:
    path = write_export([])

    result = _orchestrator(store).ingest_file(path, subject_identifier=SUBJECT)

    assert result.status is RunStatus.SUCCESS
    assert result.records_found == 0
    assert result.file_deleted is False
    assert path.exists()


def test_reingest_is_idempotent_and_batches_merge(store: TollStore, write_export) -> None:
    orch = _orchestrator(store)
    orch.ingest_file(write_export([export_row("K1"), export_row("K2")], name="a.xlsx"), subject_identifier=SUBJECT)
    first = store.get_transaction("K1")

    again = orch.ingest_file(write_export([export_row("K1"), export_row("K2")], name="a2.xlsx"), subject_identifier=SUBJECT)
    assert again.status is RunStatus.SUCCESS
    assert "0 new" in again.message
    assert store.count() == 2
    assert store.get_transaction("K1") == first

    orch.ingest_file(write_export([export_row("K3")], name="b.xlsx"), subject_identifier=SUBJECT)
    assert store.count() == 3


def test_reingest_preserves_accounted_flag(store: TollStore, write_export) -> None:
    orch = _orchestrator(store)
    orch.ingest_file(write_export([export_row("K1")], name="a.xlsx"), subject_identifier=SUBJECT)
    store.mark_accounted(["K1"])

    orch.ingest_file(write_export([export_row("K1", Total="1")], name="b.xlsx"), subject_identifier=SUBJECT)
    rec = store.get_transaction("K1")
    assert rec.accounted is True
    assert rec.total_cents == 100


@pytest.mark.parametrize("amount", ["1" * 20, "9" * 27])
def test_oversized_amount_is_a_row_error(store: TollStore, write_export, amount: str) -> None:
    path = write_export([export_row("K1"), export_row("K2", Subtotal=amount), export_row("K3")])

    result = _orchestrator(store).ingest_file(path, subject_identifier=SUBJECT)

    assert result.status is RunStatus.PARTIAL
    assert (result.records_found, result.records_processed, result.records_errored) == (3, 2, 1)
    assert result.errors[0].business_key == "K2"
    assert result.errors[0].stage == "mapping"
    assert store.count() == 2
    assert store.get_transaction("K3") is not None
    assert path.exists()


def test_integer_overflow_on_upsert_is_a_row_error(
    store: TollStore, write_export, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = write_export([export_row("K1"), export_row("K2"), export_row("K3")])
    upsert = store.upsert_transaction

    def _upsert(record) -> bool:
        if record.business_key == "K2":
            raise OverflowError("Python int too large to convert to SQLite INTEGER")
        return upsert(record)

    monkeypatch.setattr(store, "upsert_transaction", _upsert)
    result = _orchestrator(store).ingest_file(path, subject_identifier=SUBJECT)

    assert result.status is RunStatus.PARTIAL
    assert (result.records_processed, result.records_errored) == (2, 1)
    assert result.errors[0].stage == "persistence"
    assert "OverflowError" in result.errors[0].message
    assert store.count() == 2


def test_file_locked_briefly_is_still_ingested(store: TollStore, write_export) -> None:
    path = write_export([export_row("K1"), export_row("K2")])
    sidecar = path.with_name(path.name + ".crdownload")
    sidecar.write_bytes(b"")
    sleeps: list[float] = []

    def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            sidecar.unlink()

    orch = IngestionOrchestrator(
        store,
        lock_policy=RetryPolicy(max_attempts=5, delay_seconds=1.0),
        deletion_grace_seconds=5.0,
        sleep=sleep,
    )
    assert orch.lock_policy.max_attempts == 5

    result = orch.ingest_file(path, subject_identifier=SUBJECT)

    assert result.status is RunStatus.SUCCESS
    assert result.records_processed == 2
    assert store.count() == 2
    # Two waits while the sidecar exists, then the deletion grace period.
    assert sleeps == [1.0, 1.0, 5.0]
    assert result.file_deleted is True
    assert not path.exists()


def test_file_never_unlocked_records_error_run(store: TollStore, write_export) -> None:
    path = write_export([export_row("K1")])
    path.with_name(path.name + ".crdownload").write_bytes(b"")

    with pytest.raises(FileLockedError):
        _orchestrator(store).ingest_file(path, subject_identifier=SUBJECT)

    run = store.list_runs(limit=1)[0]
    assert run.status is RunStatus.ERROR
    assert "FileLockedError" in (run.message or "")
    assert (run.records_found, run.records_processed, run.records_errored) == (0, 0, 0)
    assert path.exists()
    assert store.count() == 0


def test_unreadable_export_records_error_run(store: TollStore, tmp_path: Path) -> None:
    bad = tmp_path / "broken.xlsx"
    bad.write_bytes(b"definitely not a workbook")

    with pytest.raises(ExportFormatError):
        _orchestrator(store).ingest_file(bad, subject_identifier=SUBJECT)
    assert store.list_runs(limit=1)[0].status is RunStatus.ERROR


def test_delete_failure_does_not_change_status(
    store: TollStore, write_export, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = write_export([export_row("K1")])

    def _refuse(self: Path, missing_ok: bool = False) -> None:
        raise PermissionError("in use")

    monkeypatch.setattr(Path, "unlink", _refuse)
    result = _orchestrator(store).ingest_file(path, subject_identifier=SUBJECT)
    monkeypatch.undo()

    assert result.status is RunStatus.SUCCESS
    assert result.file_deleted is False
    assert path.exists()


class _FakeEngine:
    def __init__(self, download_dir: Path) -> None:
        self.download_dir = download_dir
        self.closed = False


class _FakePortal:
    def __init__(self, source: Optional[Path] = None, error: Optional[BaseException] = None) -> None:
        self.source = source
        self.error = error
        self.calls: list[tuple[date, date]] = []

    def download_export(self, engine: _FakeEngine, *, range_start: date, range_end: date, deadline=None) -> Path:
        self.calls.append((range_start, range_end))
        if self.error is not None:
            raise self.error
        target = engine.download_dir / "Listado.xlsx"
        shutil.copy(self.source, target)
        return target


def _factory(engines: list[_FakeEngine]):
    @contextmanager
    def factory(download_dir: Path) -> Iterator[_FakeEngine]:
        engine = _FakeEngine(download_dir)
        engines.append(engine)
        try:
            yield engine
        finally:
            engine.closed = True

    return factory


def test_run_downloads_into_per_run_dir_and_ingests(store: TollStore, write_export, tmp_path: Path) -> None:
    source = write_export([export_row("K1"), export_row("K2")], name="source.xlsx")
    portal = _FakePortal(source)
    engines: list[_FakeEngine] = []
    root = tmp_path / "downloads"

    result = _orchestrator(store).run(
        subject_identifier=SUBJECT,
        range_start=date(2025, 1, 1),
        range_end=date(2025, 1, 31),
        portal=portal,
        engine_factory=_factory(engines),
        download_root=root,
    )

    assert result.status is RunStatus.SUCCESS
    assert result.records_processed == 2
    assert portal.calls == [(date(2025, 1, 1), date(2025, 1, 31))]
    assert engines[0].closed
    assert engines[0].download_dir == root / SUBJECT / str(result.run_id)
    assert not (engines[0].download_dir / "Listado.xlsx").exists()

    run = store.get_run(result.run_id)
    assert run.range_start == date(2025, 1, 1)
    assert run.range_end == date(2025, 1, 31)
    # The subject lock is released once the run ends.
    with subject_run_lock(root / ".locks", SUBJECT):
        pass


def test_run_without_auto_ingest_keeps_file(store: TollStore, write_export, tmp_path: Path) -> None:
    source = write_export([export_row("K1")], name="source.xlsx")
    engines: list[_FakeEngine] = []

    result = _orchestrator(store).run(
        subject_identifier=SUBJECT,
        range_start=date(2025, 1, 1),
        range_end=date(2025, 1, 2),
        portal=_FakePortal(source),
        engine_factory=_factory(engines),
        download_root=tmp_path / "downloads",
        auto_ingest=False,
    )

    assert result.status is RunStatus.SUCCESS
    assert result.records_found == 0
    assert Path(result.source_file).exists()
    assert str(result.source_file) in result.message
    assert store.count() == 0


def test_portal_failure_records_error_and_releases_lock(store: TollStore, tmp_path: Path) -> None:
    engines: list[_FakeEngine] = []
    root = tmp_path / "downloads"
    portal = _FakePortal(error=PortalStepError("login_submit", "no selector matched", selectors=("#btn",)))

    with pytest.raises(PortalStepError):
        _orchestrator(store).run(
            subject_identifier=SUBJECT,
            range_start=date(2025, 1, 1),
            range_end=date(2025, 1, 2),
            portal=portal,
            engine_factory=_factory(engines),
            download_root=root,
        )

    assert engines[0].closed
    run = store.list_runs(limit=1)[0]
    assert run.status is RunStatus.ERROR
    assert "login_submit" in (run.message or "")
    with subject_run_lock(root / ".locks", SUBJECT):
        pass


def test_run_refuses_concurrent_run_for_same_subject(store: TollStore, tmp_path: Path) -> None:
    root = tmp_path / "downloads"
    with subject_run_lock(root / ".locks", SUBJECT):
        with pytest.raises(SubjectBusyError):
            _orchestrator(store).run(
                subject_identifier=SUBJECT,
                range_start=date(2025, 1, 1),
                range_end=date(2025, 1, 2),
                portal=_FakePortal(),
                engine_factory=_factory([]),
                download_root=root,
            )
    # Rejected before a run was created.
    assert store.list_runs() == []


def test_run_rejects_inverted_range(store: TollStore, tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        _orchestrator(store).run(
            subject_identifier=SUBJECT,
            range_start=date(2025, 2, 1),
            range_end=date(2025, 1, 1),
            portal=_FakePortal(),
            engine_factory=_factory([]),
            download_root=tmp_path,
        )


def test_persistence_failing_for_every_row_keeps_file(
    store: TollStore, write_export, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = write_export([export_row("K1"), export_row("K2")])

    def _fail(record) -> bool:
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "upsert_transaction", _fail)
    result = _orchestrator(store).ingest_file(path, subject_identifier=SUBJECT)

    assert result.status is RunStatus.ERROR
    assert result.records_errored == 2
    assert {e.stage for e in result.errors} == {"persistence"}
    assert result.file_deleted is False
    assert path.exists()


def test_overlapping_exports_converge_to_union(tmp_path: Path, write_export) -> None:
    rows = {f"K{i}": export_row(f"K{i}", Transaccion=f"TX-{i}") for i in range(1, 7)}

    with TollStore(str(tmp_path / "a.db")) as split, TollStore(str(tmp_path / "b.db")) as once:
        orch = _orchestrator(split)
        orch.ingest_file(write_export([rows[k] for k in ("K1", "K2", "K3", "K4")], name="a.xlsx"), subject_identifier=SUBJECT)
        orch.ingest_file(write_export([rows[k] for k in ("K3", "K4", "K5", "K6")], name="b.xlsx"), subject_identifier=SUBJECT)

        _orchestrator(once).ingest_file(write_export(list(rows.values()), name="all.xlsx"), subject_identifier=SUBJECT)

        assert split.count() == once.count() == 6
        for key in rows:
            assert split.get_transaction(key) == once.get_transaction(key)


def test_missing_source_file_is_fatal(store: TollStore, tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        _orchestrator(store).ingest_file(tmp_path / "gone.xlsx", subject_identifier=SUBJECT)
    run = store.list_runs(limit=1)[0]
    assert run.status is RunStatus.ERROR
    assert run.source_file_name == "gone.xlsx"
