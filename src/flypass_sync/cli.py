from __future__ import annotations

import argparse
import logging
import os
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Iterator, List, Optional

from dateutil.parser import isoparse
from dotenv import load_dotenv

from .config import AppConfig, load_config
from .ingest.orchestrator import IngestionOrchestrator
from .logging_config import configure_logging
from .models import IngestionResult, RunStatus
from .portal.client import FlypassPortalClient, PortalCredentials
from .portal.diagnostics import FileDiagnostics
from .portal.engine import BrowserEngine, LaunchOptions
from .state import TollStore
from .util.deadline import Deadline
from .util.debug_bundle import create_debug_bundle
from .util.money import cents_to_money_str
from .util.retry import RetryPolicy


logger = logging.getLogger("flypass_sync")

_EXPORT_SUFFIXES = {".xlsx", ".xlsm", ".xls"}


def _iso_date(value: str) -> date:
    try:
        return isoparse(value.strip()).date()
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected a date like 2025-01-31, got {value!r}") from e


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="flypass-sync")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    sync = sub.add_parser("sync", help="Download the Flypass toll export for a date range and ingest it")
    sync.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    sync.add_argument("--start", type=_iso_date, required=True, help="First day of the range (YYYY-MM-DD)")
    sync.add_argument(
        "--end",
        type=_iso_date,
        default=None,
        help="Last day of the range (YYYY-MM-DD, default: today)",
    )
    sync.add_argument("--headful", action="store_true", help="Run browser headful (debug)")
    sync.add_argument("--slowmo-ms", type=int, default=0, help="Playwright slow motion in milliseconds (debug).")
    sync.add_argument("--step-debug", action="store_true", help="Save step-by-step screenshots under the debug dir.")
    sync.add_argument(
        "--no-ingest",
        action="store_true",
        help="Only download the export; keep the file and do not touch the store.",
    )

    ingest = sub.add_parser("ingest-file", help="Ingest an export that is already on disk (no browser)")
    ingest.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    target = ingest.add_mutually_exclusive_group(required=True)
    target.add_argument("path", nargs="?", default=None, help="Path to the .xlsx export")
    target.add_argument(
        "--latest",
        action="store_true",
        help="Use the most recently modified export under the downloads dir",
    )
    ingest.add_argument("--subject", default="", help="NIT to record on the run (default: portal.subject_identifier)")

    stats = sub.add_parser("stats", help="Summarize stored toll transactions")
    stats.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    stats.add_argument("--top", type=int, default=10, help="Rows per breakdown (default: 10)")
    stats.add_argument(
        "--document-type",
        default="FC",
        help="Document type counted as pending when not yet accounted (default: FC; empty for all)",
    )

    runs = sub.add_parser("list-runs", help="Show recent ingestion runs")
    runs.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    runs.add_argument("--limit", type=int, default=20, help="Max runs to show (default: 20)")
    runs.add_argument("--subject", default="", help="Only runs for this NIT")

    mark = sub.add_parser("mark-accounted", help="Flag transactions as accounted (or clear the flag)")
    mark.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    mark.add_argument("keys", nargs="+", help="CUFE business keys")
    mark.add_argument("--undo", action="store_true", help="Clear the accounted flag instead of setting it")

    return p


def _orchestrator(cfg: AppConfig, store: TollStore) -> IngestionOrchestrator:
    policy = RetryPolicy(
        max_attempts=cfg.ingest.lock_max_attempts,
        delay_seconds=cfg.ingest.lock_delay_seconds,
        backoff=cfg.ingest.lock_backoff,
    )
    return IngestionOrchestrator(
        store,
        lock_policy=policy,
        deletion_grace_seconds=cfg.ingest.deletion_grace_seconds,
    )


def _latest_export(download_dir: Path) -> Path:
    candidates = [
        p for p in download_dir.rglob("*") if p.is_file() and p.suffix.lower() in _EXPORT_SUFFIXES
    ]
    if not candidates:
        raise SystemExit(f"No export files found under {download_dir}")
    return max(candidates, key=lambda p: p.stat().st_mtime)


def _log_result(result: IngestionResult) -> None:
    logger.info(
        "Run %s: %s (found=%d processed=%d errored=%d file=%s deleted=%s)",
        result.run_id,
        result.status.value,
        result.records_found,
        result.records_processed,
        result.records_errored,
        result.source_file or "-",
        result.file_deleted,
    )
    for err in result.errors[:20]:
        logger.warning("  %s", err.render())
    if len(result.errors) > 20:
        logger.warning("  ... and %d more row error(s)", len(result.errors) - 20)


def _exit_code(result: IngestionResult) -> int:
    return 0 if result.status is RunStatus.SUCCESS else 1


def _run_sync(cfg: AppConfig, args: argparse.Namespace) -> int:
    portal_cfg = cfg.portal
    if not portal_cfg.has_credentials:
        raise SystemExit("Missing portal credentials. Set FLYPASS_NIT and FLYPASS_PASSWORD (or portal.* in config.yaml).")

    end = args.end or date.today()
    if args.start > end:
        raise SystemExit(f"--start {args.start} is after --end {end}")

    portal = FlypassPortalClient(
        base_url=portal_cfg.base_url,
        creds=PortalCredentials(subject_identifier=portal_cfg.subject_identifier, password=portal_cfg.password),
        diagnostics=FileDiagnostics(cfg.debug.dir, step_debug=args.step_debug or cfg.debug.step_debug),
        step_timeout_ms=portal_cfg.step_timeout_ms,
        navigation_timeout_ms=portal_cfg.default_timeout_ms,
        download_timeout_ms=portal_cfg.download_timeout_ms,
        popup_wait_ms=portal_cfg.popup_wait_ms,
    )

    @contextmanager
    def engine_factory(download_dir: Path) -> Iterator[BrowserEngine]:
        opts = LaunchOptions(
            headless=portal_cfg.headless and not args.headful,
            slow_mo_ms=args.slowmo_ms,
            channel=portal_cfg.browser_channel,
            default_timeout_ms=portal_cfg.default_timeout_ms,
            download_dir=str(download_dir),
        )
        with BrowserEngine(opts) as engine:
            yield engine

    with TollStore(cfg.store.db_path) as store:
        result = _orchestrator(cfg, store).run(
            subject_identifier=portal_cfg.subject_identifier,
            range_start=args.start,
            range_end=end,
            portal=portal,
            engine_factory=engine_factory,
            download_root=cfg.downloads.dir,
            auto_ingest=cfg.ingest.auto_ingest and not args.no_ingest,
            deadline=Deadline(cfg.run_deadline_seconds),
        )
    _log_result(result)
    return _exit_code(result)


def _run_ingest_file(cfg: AppConfig, args: argparse.Namespace) -> int:
    path = _latest_export(Path(cfg.downloads.dir)) if args.latest else Path(args.path)
    subject = (args.subject or cfg.portal.subject_identifier or "").strip()
    logger.info("Ingesting existing export: %s", path)
    with TollStore(cfg.store.db_path) as store:
        result = _orchestrator(cfg, store).ingest_file(path, subject_identifier=subject)
    _log_result(result)
    return _exit_code(result)


def _print_stats(store: TollStore, *, top: int, document_type: str) -> None:
    pending_filter: dict[str, object] = {"accounted": False}
    if document_type:
        pending_filter["document_type"] = document_type

    total = store.count()
    pending = store.count(**pending_filter)
    total_amount = store.sum_total_cents()
    print(f"Total records:\t{total}")
    print(f"Pending ({document_type or 'all types'}, not accounted):\t{pending}")
    print(f"Total amount:\t{cents_to_money_str(total_amount)}")

    for title, field in (("By status", "status"), ("By document type", "document_type"), ("By toll", "toll_name")):
        print(f"\n{title}:")
        for value, n in store.group_by(field, limit=top):
            print(f"  {value or '(blank)'}\t{n}")


def _print_runs(store: TollStore, *, limit: int, subject: str) -> None:
    runs = store.list_runs(limit=limit, subject_identifier=subject or None)
    if not runs:
        print("No runs recorded yet.")
        return
    for r in runs:
        rng = f"{r.range_start}..{r.range_end}" if r.range_start else "-"
        secs = f"{r.duration_seconds:.1f}s" if r.duration_seconds is not None else "-"
        print(
            f"{r.id}\t{r.created_at:%Y-%m-%d %H:%M}\t{r.status.value}\t{r.subject_identifier or '-'}\t{rng}\t"
            f"found={r.records_found} ok={r.records_processed} err={r.records_errored}\t{secs}\t{r.message or ''}"
        )


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

    if args.cmd == "sync":
        logger.info("Starting sync (start=%s end=%s)", args.start, args.end or date.today())
        try:
            return _run_sync(cfg, args)
        except Exception:
            # Auto-bundle debug artifacts + log for easy sharing.
            try:
                bundle = create_debug_bundle(
                    debug_dir=cfg.debug.dir,
                    log_file=cfg.logging.file_path or "data/sync.log",
                    out_dir=str(Path(cfg.debug.dir).parent),
                    subject=cfg.portal.subject_identifier,
                )
                logger.error("Wrote debug bundle: %s", bundle)
            except OSError:
                logger.debug("Failed to create debug bundle.", exc_info=True)
            raise

    if args.cmd == "ingest-file":
        return _run_ingest_file(cfg, args)

    if args.cmd == "stats":
        with TollStore(cfg.store.db_path) as store:
            _print_stats(store, top=args.top, document_type=args.document_type.strip())
        return 0

    if args.cmd == "list-runs":
        with TollStore(cfg.store.db_path) as store:
            _print_runs(store, limit=args.limit, subject=args.subject.strip())
        return 0

    if args.cmd == "mark-accounted":
        with TollStore(cfg.store.db_path) as store:
            changed = store.mark_accounted(args.keys, accounted=not args.undo)
        logger.info("Updated accounted flag on %d of %d transaction(s).", changed, len(args.keys))
        return 0

    raise AssertionError("Unhandled command")
