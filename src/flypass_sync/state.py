from __future__ import annotations

import logging
import shutil
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .models import IngestionRun, RunStatus, TollTransaction


logger = logging.getLogger(__name__)


# Columns the ingestion path owns. `accounted` is deliberately absent: it is only written on first insert.
_MAPPED_COLUMNS: tuple[str, ...] = (
    "status",
    "document_type",
    "creation_date",
    "document_number",
    "related_document",
    "cost_center",
    "license_plate",
    "toll_name",
    "vehicle_category",
    "passage_date",
    "transaction_id",
    "subtotal_cents",
    "tax_cents",
    "total_cents",
    "tax_code",
    "description",
    "subject_identifier",
)

# Fields callers may filter / group on for reporting.
_REPORT_FIELDS: frozenset[str] = frozenset(_MAPPED_COLUMNS + ("business_key", "accounted"))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunAlreadyFinalizedError(RuntimeError):
    """
    Raised when a run that already reached a terminal status is updated again.
    """


class TollStore:
    """
    SQLite-backed store for toll transactions and the ingestion audit log.

    The ingestion path only uses `upsert_transaction`, `create_run` and `update_run`; `count` and `group_by`
    exist for reporting.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")

        self._conn = self._open_or_restore()
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "TollStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the DB. If it looks corrupted, move it aside and restore from the last-known-good backup.
        """
        if self.db_path.exists():
            try:
                conn = sqlite3.connect(self.db_path)
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except sqlite3.DatabaseError as e:
                logger.warning("Store DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = sqlite3.connect(self.db_path)
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored store DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except (OSError, sqlite3.DatabaseError):
                        logger.warning("Failed to restore store DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No store DB backup found; creating a fresh DB.")

        return sqlite3.connect(self.db_path)

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except sqlite3.DatabaseError:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except OSError:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup at `<db_path>.bak` using SQLite's online backup API.
        """
        out = self._backup_path
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        dst = sqlite3.connect(tmp)
        try:
            self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS toll_transactions (
              business_key TEXT PRIMARY KEY,
              status TEXT NOT NULL,
              document_type TEXT NOT NULL,
              creation_date TEXT NOT NULL,
              document_number TEXT NOT NULL,
              related_document TEXT,
              cost_center TEXT,
              license_plate TEXT NOT NULL,
              toll_name TEXT NOT NULL,
              vehicle_category TEXT NOT NULL,
              passage_date TEXT NOT NULL,
              transaction_id TEXT NOT NULL,
              subtotal_cents INTEGER NOT NULL,
              tax_cents INTEGER,
              total_cents INTEGER NOT NULL,
              tax_code TEXT NOT NULL,
              description TEXT NOT NULL,
              subject_identifier TEXT NOT NULL,
              accounted INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ingestion_runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              subject_identifier TEXT NOT NULL,
              range_start TEXT,
              range_end TEXT,
              status TEXT NOT NULL,
              source_file_name TEXT,
              records_found INTEGER NOT NULL DEFAULT 0,
              records_processed INTEGER NOT NULL DEFAULT 0,
              records_errored INTEGER NOT NULL DEFAULT 0,
              duration_seconds REAL,
              error_details TEXT,
              message TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_toll_transactions_passage_date ON toll_transactions(passage_date);"
        )
        self._conn.commit()

    # -- toll transactions -------------------------------------------------

    def upsert_transaction(self, record: TollTransaction) -> bool:
        """
        Insert the record, or update every mapped column of the existing row with the same business key.

        Returns True when a new row was created. `accounted` keeps whatever value the row already has.
        """
        now = _now()
        values = record.model_dump(mode="json")
        existed = self._conn.execute(
            "SELECT 1 FROM toll_transactions WHERE business_key = ? LIMIT 1;",
            (record.business_key,),
        ).fetchone()

        cols = ("business_key",) + _MAPPED_COLUMNS + ("accounted", "created_at", "updated_at")
        params = (
            [record.business_key]
            + [values[c] for c in _MAPPED_COLUMNS]
            + [1 if record.accounted else 0, now, now]
        )
        updates = ",\n              ".join(f"{c} = excluded.{c}" for c in _MAPPED_COLUMNS + ("updated_at",))
        self._conn.execute(
            f"""
            INSERT INTO toll_transactions({", ".join(cols)})
            VALUES ({", ".join("?" for _ in cols)})
            ON CONFLICT(business_key) DO UPDATE SET
              {updates};
            """,
            params,
        )
        self._conn.commit()
        return existed is None

    def get_transaction(self, business_key: str) -> Optional[TollTransaction]:
        row = self._conn.execute(
            "SELECT * FROM toll_transactions WHERE business_key = ?;",
            (business_key,),
        ).fetchone()
        if row is None:
            return None
        data = {k: row[k] for k in row.keys() if k not in ("created_at", "updated_at")}
        data["accounted"] = bool(data["accounted"])
        return TollTransaction.model_validate(data)

    def mark_accounted(self, business_keys: Iterable[str], *, accounted: bool = True) -> int:
        """
        Entry point for the accounting workflow; the ingestion path never calls this.
        """
        now = _now()
        n = 0
        for key in business_keys:
            cur = self._conn.execute(
                "UPDATE toll_transactions SET accounted = ?, updated_at = ? WHERE business_key = ?;",
                (1 if accounted else 0, now, key),
            )
            n += cur.rowcount
        self._conn.commit()
        return n

    def _where(self, filters: dict[str, object]) -> tuple[str, list[object]]:
        clauses: list[str] = []
        params: list[object] = []
        for field, value in filters.items():
            if field not in _REPORT_FIELDS:
                raise ValueError(f"Unknown toll_transactions field: {field!r}")
            if isinstance(value, bool):
                value = 1 if value else 0
            elif isinstance(value, date):
                value = value.isoformat()
            clauses.append(f"{field} = ?")
            params.append(value)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def count(self, **filters: object) -> int:
        where, params = self._where(filters)
        row = self._conn.execute(f"SELECT COUNT(*) FROM toll_transactions{where};", params).fetchone()
        return int(row[0])

    def sum_total_cents(self, **filters: object) -> int:
        where, params = self._where(filters)
        row = self._conn.execute(f"SELECT COALESCE(SUM(total_cents), 0) FROM toll_transactions{where};", params).fetchone()
        return int(row[0])

    def group_by(self, field: str, *, limit: Optional[int] = None, **filters: object) -> list[tuple[object, int]]:
        """
        Return `[(value, count), ...]` ordered by count descending, then value.
        """
        if field not in _REPORT_FIELDS:
            raise ValueError(f"Unknown toll_transactions field: {field!r}")
        where, params = self._where(filters)
        sql = (
            f"SELECT {field} AS value, COUNT(*) AS n FROM toll_transactions{where} "
            f"GROUP BY {field} ORDER BY n DESC, value ASC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [(r["value"], int(r["n"])) for r in self._conn.execute(sql + ";", params).fetchall()]

    # -- ingestion runs ----------------------------------------------------

    def create_run(
        self,
        *,
        subject_identifier: str,
        range_start: Optional[date] = None,
        range_end: Optional[date] = None,
        source_file_name: Optional[str] = None,
        message: Optional[str] = None,
    ) -> int:
        now = _now()
        cur = self._conn.execute(
            """
            INSERT INTO ingestion_runs(
              subject_identifier, range_start, range_end, status, source_file_name, message, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                subject_identifier,
                range_start.isoformat() if range_start else None,
                range_end.isoformat() if range_end else None,
                RunStatus.PROCESSING.value,
                source_file_name,
                message,
                now,
                now,
            ),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def update_run(
        self,
        run_id: int,
        *,
        status: RunStatus,
        records_found: int = 0,
        records_processed: int = 0,
        records_errored: int = 0,
        duration_seconds: Optional[float] = None,
        message: Optional[str] = None,
        error_details: Optional[str] = None,
        source_file_name: Optional[str] = None,
    ) -> None:
        """
        Move a run from `processing` to its terminal status. A run is finalized exactly once.
        """
        if not status.is_terminal:
            raise ValueError("update_run requires a terminal status")
        if records_processed + records_errored > records_found:
            raise ValueError(
                f"Inconsistent run counts: processed={records_processed} errored={records_errored} found={records_found}"
            )
        cur = self._conn.execute(
            """
            UPDATE ingestion_runs SET
              status = ?,
              records_found = ?,
              records_processed = ?,
              records_errored = ?,
              duration_seconds = ?,
              message = ?,
              error_details = ?,
              source_file_name = COALESCE(?, source_file_name),
              updated_at = ?
            WHERE id = ? AND status = ?;
            """,
            (
                status.value,
                records_found,
                records_processed,
                records_errored,
                duration_seconds,
                message,
                error_details,
                source_file_name,
                _now(),
                run_id,
                RunStatus.PROCESSING.value,
            ),
        )
        self._conn.commit()
        if cur.rowcount != 1:
            raise RunAlreadyFinalizedError(f"Run {run_id} does not exist or was already finalized")

        if status is RunStatus.SUCCESS:
            # Refresh the backup only after clean runs so it stays a known-good snapshot.
            try:
                self.backup()
            except (OSError, sqlite3.Error):
                logger.debug("Failed to write store DB backup.", exc_info=True)

    def get_run(self, run_id: int) -> Optional[IngestionRun]:
        row = self._conn.execute("SELECT * FROM ingestion_runs WHERE id = ?;", (run_id,)).fetchone()
        return IngestionRun.model_validate(dict(row)) if row else None

    def list_runs(self, *, limit: int = 20, subject_identifier: Optional[str] = None) -> list[IngestionRun]:
        if subject_identifier:
            rows = self._conn.execute(
                "SELECT * FROM ingestion_runs WHERE subject_identifier = ? ORDER BY id DESC LIMIT ?;",
                (subject_identifier, limit),
            ).fetchall()
        else:
            rows = self._conn.execute("SELECT * FROM ingestion_runs ORDER BY id DESC LIMIT ?;", (limit,)).fetchall()
        return [IngestionRun.model_validate(dict(r)) for r in rows]
