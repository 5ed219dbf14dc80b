from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


EXPORT_HEADER: list[str] = [
    "Estado",
    "Tipo",
    "Creacion",
    "Documento",
    "Relacionado",
    "C.Area",
    "Placa",
    "Peaje",
    "Categoria",
    "F.Paso",
    "Transaccion",
    "Subtotal",
    "Impuesto",
    "Total",
    "CUFE",
    "tascode",
    "descripcion",
    "NIT",
]


def export_row(cufe: Optional[str] = "CUFE-0001", **overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "Estado": "Activo",
        "Tipo": "FC",
        "Creacion": "2025-01-03",
        "Documento": "FP-1001",
        "Relacionado": None,
        "C.Area": "OPS",
        "Placa": "ABC123",
        "Peaje": "Peaje Andes",
        "Categoria": "I",
        "F.Paso": "02/01/2025 09:21:57",
        "Transaccion": "TX-1",
        "Subtotal": "$ 12,500.00",
        "Impuesto": "0",
        "Total": "12500",
        "CUFE": cufe,
        "tascode": "T01",
        "descripcion": "Paso peaje",
        "NIT": "900123456",
    }
    row.update(overrides)
    return row


def pytest_configure(config: Any) -> None:
    config.addinivalue_line(
        "markers",
        "portal: integration smoke tests that require real Flypass portal credentials",
    )


@pytest.fixture
def write_export(tmp_path: Path) -> Callable[..., Path]:
    """
    Build a real .xlsx export under tmp_path: `write_export([row, ...], name="x.xlsx", header=[...])`.
    """
    from openpyxl import Workbook

    def _write(rows: list[dict[str, Any]], *, name: str = "export.xlsx", header: Optional[list[str]] = None) -> Path:
        cols = header or EXPORT_HEADER
        wb = Workbook()
        ws = wb.active
        ws.append(cols)
        for r in rows:
            ws.append([r.get(c) for c in cols])
        path = tmp_path / name
        wb.save(path)
        return path

    return _write
