from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .util.money import MAX_CENTS, MIN_CENTS


class RunStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.PROCESSING


class TollTransaction(BaseModel):
    """
    One toll passage, keyed by the electronic-invoice code (CUFE) the portal issues.
    """

    business_key: str = Field(min_length=1)
    status: str = ""
    document_type: str = ""
    creation_date: date
    document_number: str = ""
    related_document: Optional[str] = None
    cost_center: Optional[str] = None
    license_plate: str = ""
    toll_name: str = ""
    vehicle_category: str = ""
    passage_date: date
    transaction_id: str = ""
    subtotal_cents: int = Field(default=0, ge=MIN_CENTS, le=MAX_CENTS)
    tax_cents: Optional[int] = Field(default=None, ge=MIN_CENTS, le=MAX_CENTS)
    total_cents: int = Field(default=0, ge=MIN_CENTS, le=MAX_CENTS)
    tax_code: str = ""
    description: str = ""
    subject_identifier: str = ""

    # Owned by the downstream accounting workflow; ingestion only sets it on first insert.
    accounted: bool = False


class RowError(BaseModel):
    row_number: int
    business_key: Optional[str] = None
    stage: str  # "mapping" | "persistence"
    message: str

    def render(self) -> str:
        key = f" key={self.business_key}" if self.business_key else ""
        return f"row {self.row_number}{key} [{self.stage}]: {self.message}"


class IngestionRun(BaseModel):
    id: int
    subject_identifier: str
    range_start: Optional[date] = None
    range_end: Optional[date] = None
    status: RunStatus = RunStatus.PROCESSING
    source_file_name: Optional[str] = None
    records_found: int = 0
    records_processed: int = 0
    records_errored: int = 0
    duration_seconds: Optional[float] = None
    error_details: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class IngestionResult(BaseModel):
    run_id: int
    status: RunStatus
    source_file: Optional[str] = None
    records_found: int = 0
    records_processed: int = 0
    records_errored: int = 0
    duration_seconds: float = 0.0
    message: str = ""
    errors: list[RowError] = Field(default_factory=list)
    file_deleted: bool = False
