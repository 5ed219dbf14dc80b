from __future__ import annotations

from pathlib import Path

import pytest

from conftest import EXPORT_HEADER, export_row
from flypass_sync.ingest.workbook import ExportFormatError, read_export_rows


def test_reads_rows_by_header_name(write_export) -> None:
    # Reordered columns still map by name.
    header = list(reversed(EXPORT_HEADER))
    path = write_export([export_row("K1"), export_row("K2", Placa="XYZ987")], header=header)

    rows = read_export_rows(path)
    assert [n for n, _ in rows] == [2, 3]
    assert rows[0][1]["CUFE"] == "K1"
    assert rows[1][1]["Placa"] == "XYZ987"


def test_skips_blank_rows(write_export) -> None:
    path = write_export([export_row("K1"), {}, export_row("K3")])
    rows = read_export_rows(path)
    assert [n for n, _ in rows] == [2, 4]


def test_header_only_export_has_no_rows(write_export) -> None:
    assert read_export_rows(write_export([])) == []


def test_missing_required_column_is_format_error(write_export) -> None:
    header = [c for c in EXPORT_HEADER if c != "CUFE"]
    path = write_export([export_row("K1")], header=header)
    with pytest.raises(ExportFormatError, match="CUFE"):
        read_export_rows(path)


def test_not_a_workbook_is_format_error(tmp_path: Path) -> None:
    p = tmp_path / "export.xlsx"
    p.write_bytes(b"this is not a zip file")
    with pytest.raises(ExportFormatError):
        read_export_rows(p)


def test_missing_file_propagates(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        read_export_rows(tmp_path / "missing.xlsx")
