from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Any, Iterable

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..mapper import REQUIRED_COLUMNS


logger = logging.getLogger(__name__)


class ExportFormatError(ValueError):
    """
    The export is not a readable workbook, or its header row does not name the expected columns.
    """


def _header_name(value: object) -> str:
    return str(value).strip() if value is not None else ""


def validate_header(header: Iterable[str]) -> list[str]:
    names = list(header)
    missing = [c for c in REQUIRED_COLUMNS if c not in names]
    if missing:
        raise ExportFormatError(f"Export header is missing columns: {', '.join(missing)} (found: {names})")
    return names


def read_export_rows(path: Path) -> list[tuple[int, dict[str, Any]]]:
    """
    Read the first sheet of an `.xlsx` export.

    Returns `(row_number, {header: value})` for every non-empty data row, in source order. Row numbers are
    1-based spreadsheet rows (the header is row 1). Columns are matched by header name, so reordering is fine.
    """
    path = Path(path)
    try:
        wb = load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        if isinstance(e, FileNotFoundError):
            raise
        raise ExportFormatError(f"Could not open export workbook {path.name}: {e}") from e

    try:
        if not wb.worksheets:
            raise ExportFormatError(f"Export workbook has no sheets: {path.name}")
        sheet = wb.worksheets[0]
        rows = sheet.iter_rows(values_only=True)
        try:
            header_cells = next(rows)
        except StopIteration:
            raise ExportFormatError(f"Export workbook is empty: {path.name}") from None

        header = validate_header(_header_name(v) for v in header_cells)
        logger.debug("Export header: %s", header)

        out: list[tuple[int, dict[str, Any]]] = []
        for idx, cells in enumerate(rows, start=2):
            if cells is None or all(v is None or (isinstance(v, str) and not v.strip()) for v in cells):
                continue
            record: dict[str, Any] = {}
            for name, value in zip(header, cells):
                if name:
                    record[name] = value
            out.append((idx, record))
        return out
    finally:
        wb.close()
