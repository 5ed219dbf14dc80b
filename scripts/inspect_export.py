#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def main(argv: list[str] | None = None) -> int:
    _ensure_src_on_path()

    from flypass_sync.ingest.workbook import read_export_rows
    from flypass_sync.mapper import RowMappingError, has_business_key, map_row

    p = argparse.ArgumentParser(
        prog="inspect_export",
        description=(
            "Map a Flypass .xlsx export into JSON the same way ingestion does, without touching the store.\n"
            "Useful for checking a new export layout offline (no Playwright, no database)."
        ),
    )
    p.add_argument("file", help="Path to the .xlsx export")
    p.add_argument("--subject", default="", help="NIT used when a row has no NIT column value")
    p.add_argument("--limit", type=int, default=0, help="Only include the first N mapped records (0 = all)")
    p.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")
    args = p.parse_args(argv)

    path = Path(args.file)
    if not path.exists():
        raise SystemExit(f"File not found: {path}")

    rows = read_export_rows(path)
    records = []
    errors = []
    skipped = 0
    for row_number, raw in rows:
        if not has_business_key(raw):
            skipped += 1
            continue
        try:
            records.append(map_row(raw, row_number=row_number, default_subject=args.subject).model_dump(mode="json"))
        except RowMappingError as e:
            errors.append({"row": e.row_number, "business_key": e.business_key, "error": str(e)})

    payload = {
        "file": str(path),
        "rows": len(rows),
        "skipped_without_cufe": skipped,
        "mapped": len(records),
        "errors": errors,
        "records": records[: args.limit] if args.limit > 0 else records,
    }
    out_json = json.dumps(payload, indent=2, ensure_ascii=False)
    if args.out:
        Path(args.out).write_text(out_json, encoding="utf-8")
    else:
        print(out_json)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
