"""Canonical employee CSV columns and the header/row mapping boundary."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict

CANONICAL_FIELDS: tuple[str, ...] = (
    "employee_number",
    "first_name",
    "last_name",
    "email",
    "department",
    "salary",
    "currency",
    "country_code",
    "start_date",
)

REQUIRED_HEADERS = list(CANONICAL_FIELDS)


class RowPayload(BaseModel):
    """One CSV data row keyed by the canonical field list.

    Unknown keys are rejected so arbitrary payloads never reach the
    validator or the employee table untyped.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    employee_number: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    department: str | None = None
    salary: str | None = None
    currency: str | None = None
    country_code: str | None = None
    start_date: str | None = None

    def as_dict(self) -> dict[str, str | None]:
        """Ordered field -> value mapping, in canonical column order."""
        return {field: getattr(self, field) for field in CANONICAL_FIELDS}


def normalize_header(header: str) -> str:
    # Excel likes to prepend a BOM to the first header cell
    return header.replace("\ufeff", "").strip().lower()


def find_header_problems(headers: Sequence[str] | None) -> list[str]:
    """Return every structural header problem (empty list means valid)."""
    if not headers:
        return ["CSV file has no headers"]
    normalized = [normalize_header(header) for header in headers]
    problems: list[str] = []
    if len(normalized) < len(REQUIRED_HEADERS):
        problems.append(
            f"CSV file must have at least {len(REQUIRED_HEADERS)} columns "
            f"(found {len(normalized)})"
        )
    missing = [field for field in REQUIRED_HEADERS if field not in normalized]
    if missing:
        problems.append(f"Missing required headers: {', '.join(missing)}")
    extra = [header for header in normalized if header not in REQUIRED_HEADERS]
    if extra:
        problems.append(f"Unexpected headers found: {', '.join(extra)}")
    return problems



def build_column_index(headers: Sequence[str]) -> dict[str, int]:
    """Map each canonical field to its position in the file's header row."""
    positions = {normalize_header(header): index for index, header in enumerate(headers)}
    return {field: positions[field] for field in CANONICAL_FIELDS if field in positions}


def map_row(cells: Sequence[str], column_index: dict[str, int]) -> RowPayload:
    """Project raw cells onto the canonical fields.

    Missing trailing cells map to ``None``; surplus cells are dropped.
    """
    values: dict[str, Any] = {}
    for field in CANONICAL_FIELDS:
        position = column_index.get(field)
        if position is None or position >= len(cells):
            values[field] = None
        else:
            values[field] = cells[position]
    return RowPayload(**values)


def payload_from_raw(raw: dict[str, Any]) -> RowPayload:
    """Rebuild a payload from stored ``raw_data`` (raises on unknown keys)."""
    return RowPayload(
        **{key: (None if value is None else str(value)) for key, value in raw.items()}
    )


def is_blank_row(payload: RowPayload) -> bool:
    return all(value is None or not value.strip() for value in payload.as_dict().values())
