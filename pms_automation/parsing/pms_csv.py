from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

NUMERIC_FIELDS = ("patient_count", "production_amount")
VALID_REFERRAL_TYPES = ("doctor_referral", "self_referral", "insurance_referral", "emergency", "other")
MAX_REPORTED_ERRORS = 10

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class PmsRecord(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    date: str
    referral_type: str
    referral_source: Optional[str] = None
    patient_count: int = 1
    production_amount: float = 0.0
    appointment_type: Optional[str] = None
    treatment_category: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _check_date(cls, v: str) -> str:
        if not _DATE_RE.match(v):
            raise ValueError("Invalid date format. Expected YYYY-MM-DD")
        return v

    @field_validator("referral_type")
    @classmethod
    def _check_referral_type(cls, v: str) -> str:
        if v not in VALID_REFERRAL_TYPES:
            raise ValueError(f"Invalid referral_type. Must be one of: {', '.join(VALID_REFERRAL_TYPES)}")
        return v


@dataclass
class ParseResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    rows_seen: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors and bool(self.records)

    def error_message(self) -> str:
        if self.errors:
            shown = "; ".join(self.errors[:MAX_REPORTED_ERRORS])
            return f"CSV validation failed ({len(self.errors)} errors): {shown}"
        return "No valid data found in CSV file"


def _clean(v: Any) -> Optional[str]:
    if v is None:
        return None
    v = str(v).strip()
    return v or None


def _row_error(err: Dict[str, Any], row_number: int) -> str:
    name = str(err["loc"][0]) if err.get("loc") else "row"
    if err["type"] == "missing":
        return f"Row {row_number}: Missing required field '{name}'"
    if name in NUMERIC_FIELDS:
        return f"Row {row_number}: {name} must be a number"
    if err["type"] == "value_error":
        return f"Row {row_number}: {err['ctx']['error']}"
    return f"Row {row_number}: {name}: {err['msg']}"


def validate_row(row: Dict[str, Any], row_number: int) -> tuple[Optional[Dict[str, Any]], List[str]]:
    # blank cells count as absent so defaults and the required check apply
    values = {name: _clean(row.get(name)) for name in PmsRecord.model_fields}
    try:
        record = PmsRecord.model_validate({k: v for k, v in values.items() if v is not None})
    except ValidationError as e:
        return None, [_row_error(err, row_number) for err in e.errors()]
    return record.model_dump(), []


def parse_pms_csv(text: str) -> ParseResult:
    """Parse and validate a PMS export. Row numbers count data rows from 1."""
    result = ParseResult()
    reader = csv.DictReader(io.StringIO((text or "").lstrip("\ufeff")))
    for row_number, row in enumerate(reader, start=1):
        result.rows_seen += 1
        record, errors = validate_row(row, row_number)
        if errors:
            result.errors.extend(errors)
        elif record is not None:
            result.records.append(record)
    return result
