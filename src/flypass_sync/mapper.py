from __future__ import annotations

import logging
from datetime import date
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import TollTransaction
from .util.dates import parse_creation_date, parse_passage_date
from .util.money import coerce_amount_cents, optional_amount_cents


logger = logging.getLogger(__name__)

BUSINESS_KEY_COLUMN = "CUFE"

# Columns the export must carry (by header name; order does not matter).
REQUIRED_COLUMNS: tuple[str, ...] = (
    "Estado",
    "Tipo",
    "Creacion",
    "Documento",
    "Placa",
    "Peaje",
    "Categoria",
    "F.Paso",
    "Transaccion",
    "Subtotal",
    "Total",
    "CUFE",
    "tascode",
    "descripcion",
    "NIT",
)
OPTIONAL_COLUMNS: tuple[str, ...] = ("Relacionado", "C.Area", "Impuesto")


class RowMappingError(ValueError):
    """
    A single export row could not be normalized. Never aborts the batch.
    """

    def __init__(self, message: str, *, row_number: int = 0, business_key: Optional[str] = None) -> None:
        super().__init__(message)
        self.row_number = row_number
        self.business_key = business_key


def _text(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        # openpyxl hands back numeric-looking codes (document numbers, NITs) as floats.
        value = int(value)
    s = str(value).strip()
    return s or None


class RawTollRow(BaseModel):
    """
    One data row of the portal's consolidated export, validated at the mapper boundary.
    Field aliases are the export's header names.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cufe: str = Field(alias="CUFE", min_length=1)
    estado: Optional[str] = Field(default=None, alias="Estado")
    tipo: Optional[str] = Field(default=None, alias="Tipo")
    creacion: date = Field(alias="Creacion")
    documento: Optional[str] = Field(default=None, alias="Documento")
    relacionado: Optional[str] = Field(default=None, alias="Relacionado")
    c_area: Optional[str] = Field(default=None, alias="C.Area")
    placa: Optional[str] = Field(default=None, alias="Placa")
    peaje: Optional[str] = Field(default=None, alias="Peaje")
    categoria: Optional[str] = Field(default=None, alias="Categoria")
    f_paso: date = Field(alias="F.Paso")
    transaccion: Optional[str] = Field(default=None, alias="Transaccion")
    subtotal: int = Field(default=0, alias="Subtotal")
    impuesto: Optional[int] = Field(default=None, alias="Impuesto")
    total: int = Field(default=0, alias="Total")
    tascode: Optional[str] = Field(default=None, alias="tascode")
    descripcion: Optional[str] = Field(default=None, alias="descripcion")
    nit: Optional[str] = Field(default=None, alias="NIT")

    @field_validator(
        "cufe",
        "estado",
        "tipo",
        "documento",
        "relacionado",
        "c_area",
        "placa",
        "peaje",
        "categoria",
        "transaccion",
        "tascode",
        "descripcion",
        "nit",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, v: Any) -> Optional[str]:
        return _text(v)

    @field_validator("creacion", mode="before")
    @classmethod
    def _parse_creacion(cls, v: Any) -> date:
        return parse_creation_date(v)

    @field_validator("f_paso", mode="before")
    @classmethod
    def _parse_f_paso(cls, v: Any) -> date:
        return parse_passage_date(v)

    @field_validator("subtotal", "total", mode="before")
    @classmethod
    def _parse_amount(cls, v: Any) -> int:
        return coerce_amount_cents(v)

    @field_validator("impuesto", mode="before")
    @classmethod
    def _parse_optional_amount(cls, v: Any) -> Optional[int]:
        return optional_amount_cents(v)


def has_business_key(raw: Mapping[str, Any]) -> bool:
    """
    Rows without a CUFE are header/footer artifacts of the export, not transactions.
    """
    return _text(raw.get(BUSINESS_KEY_COLUMN)) is not None


def _summarize_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "row"
        msg = str(err.get("msg", "")).removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}")
    return "; ".join(parts)


def map_row(
    raw: Mapping[str, Any],
    *,
    row_number: int = 0,
    default_subject: str = "",
) -> TollTransaction:
    """
    Normalize one export row (header name -> cell value) into a `TollTransaction`.

    The CUFE is used verbatim as the business key; two rows sharing it are the same transaction.
    Raises `RowMappingError` for anything that does not validate.
    """
    key = _text(raw.get(BUSINESS_KEY_COLUMN))
    try:
        row = RawTollRow.model_validate(dict(raw))
    except ValidationError as e:
        raise RowMappingError(
            _summarize_validation_error(e),
            row_number=row_number,
            business_key=key,
        ) from e

    return TollTransaction(
        business_key=row.cufe,
        status=row.estado or "",
        document_type=row.tipo or "",
        creation_date=row.creacion,
        document_number=row.documento or "",
        related_document=row.relacionado,
        cost_center=row.c_area,
        license_plate=row.placa or "",
        toll_name=row.peaje or "",
        vehicle_category=row.categoria or "",
        passage_date=row.f_paso,
        transaction_id=row.transaccion or "",
        subtotal_cents=row.subtotal,
        tax_cents=row.impuesto,
        total_cents=row.total,
        tax_code=row.tascode or "",
        description=row.descripcion or "",
        subject_identifier=row.nit or default_subject,
        accounted=False,
    )
