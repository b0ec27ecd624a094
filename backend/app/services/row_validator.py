"""Field-level and business-rule validation for employee rows."""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from app.core.config import get_settings

logger = logging.getLogger(__name__)

EMPLOYEE_NUMBER_PATTERN = re.compile(r"^EMP-\d{8}$")
EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+\-']+@[A-Za-z0-9\-]+(\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}$")
NAME_PATTERN = re.compile(r"^[a-zA-Z\s\-']+$")

VALID_CURRENCIES = ("USD", "EUR", "GBP", "ZAR", "KES", "UGX", "TZS", "RWF", "NGN")
VALID_COUNTRIES = ("US", "GB", "ZA", "KE", "UG", "TZ", "RW", "NG")
VALID_DEPARTMENTS = (
    "Engineering",
    "Finance",
    "Support",
    "Customer Success",
    "Human Resources",
    "Marketing",
    "Sales",
    "Operations",
)

MAX_LENGTHS = {
    "employee_number": 50,
    "first_name": 100,
    "last_name": 100,
    "email": 255,
    "department": 100,
}
REQUIRED_FIELDS = (
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

MIN_START_DATE = date(1900, 1, 1)
MAX_SALARY = Decimal("10000000")
MIN_NAME_LENGTH = 2
DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%d-%m-%Y")

# data-quality thresholds (warnings only)
LOW_SALARY_WARNING = Decimal("1000")
HIGH_SALARY_WARNING = Decimal("1000000")
OLD_START_DATE_YEARS = 50


@dataclass
class ValidationResult:
    errors: dict[str, list[str]] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.errors

    def add(self, field_name: str, message: str) -> None:
        self.errors.setdefault(field_name, []).append(message)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": self.errors}


def parse_date(value: str) -> date | None:
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            pass
    return None


def parse_decimal(value: str) -> Decimal | None:
    try:
        parsed = Decimal(value.replace(",", ""))
    except InvalidOperation:
        return None
    if not parsed.is_finite():
        return None
    return parsed


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class RowValidator:
    """Validate one employee row, returning every violation keyed by field.

    Two layers run on every row and their errors are merged: field
    constraints (presence, format, closed enumerations) and business rules
    (salary ceiling, email domain allow-list, name character set). A field
    can therefore carry several messages at once.
    """

    def __init__(
        self,
        allowed_email_domains: Iterable[str] | None = None,
        today: date | None = None,
    ):
        domains = allowed_email_domains
        if domains is None:
            domains = get_settings().allowed_email_domains
        self.allowed_email_domains = tuple(domain.lower() for domain in domains)
        self._today = today

    @property
    def today(self) -> date:
        return self._today or date.today()

    def validate_row(self, row: Mapping[str, Any]) -> ValidationResult:
        values = {name: _clean(row.get(name)) for name in REQUIRED_FIELDS}
        result = ValidationResult()
        self._check_field_constraints(values, result)
        self._check_business_rules(values, result)
        return result

    def validate_batch(self, rows: Iterable[Mapping[str, Any]]) -> list[ValidationResult]:
        return [self.validate_row(row) for row in rows]

    def get_validation_summary(self, results: list[ValidationResult]) -> dict[str, Any]:
        """Valid/invalid counts and the most frequent messages, for reporting."""
        total = len(results)
        valid = sum(1 for result in results if result.valid)
        counts: Counter[str] = Counter()
        for result in results:
            for messages in result.errors.values():
                counts.update(messages)
        return {
            "total_rows": total,
            "valid_rows": valid,
            "invalid_rows": total - valid,
            "validation_rate": round(valid / total * 100, 2) if total else 0,
            "error_counts": dict(counts.most_common()),
            "most_common_errors": [
                {"message": message, "count": count}
                for message, count in counts.most_common(5)
            ],
        }

    def sanitize_row(self, row: Mapping[str, Any]) -> dict[str, str | None]:
        """Normalise casing and whitespace before the row is persisted."""
        sanitized: dict[str, str | None] = {}
        for name, value in row.items():
            if value is None:
                sanitized[name] = None
                continue
            text = str(value).strip()
            if name in ("currency", "country_code", "employee_number"):
                text = text.upper()
            elif name == "email":
                text = text.lower()
            sanitized[name] = text
        return sanitized

    def check_data_quality(self, row: Mapping[str, Any]) -> list[str]:
        """Non-blocking warnings about suspicious but valid values."""
        warnings: list[str] = []
        salary = parse_decimal(_clean(row.get("salary")))
        if salary is not None:
            if salary < LOW_SALARY_WARNING:
                warnings.append("Salary seems unusually low")
            if salary > HIGH_SALARY_WARNING:
                warnings.append("Salary seems unusually high")
        start_date = parse_date(_clean(row.get("start_date")))
        if start_date is not None:
            if (self.today - start_date).days > OLD_START_DATE_YEARS * 365:
                warnings.append(f"Start date is more than {OLD_START_DATE_YEARS} years ago")
        first_name = _clean(row.get("first_name")).lower()
        if first_name and first_name == _clean(row.get("last_name")).lower():
            warnings.append("First name and last name are identical")
        return warnings

    def _check_field_constraints(self, values: dict[str, str], result: ValidationResult) -> None:
        for name in REQUIRED_FIELDS:
            if not values[name]:
                result.add(name, f"The {name} field is required.")
        for name, limit in MAX_LENGTHS.items():
            if len(values[name]) > limit:
                result.add(name, f"The {name} field must not be greater than {limit} characters.")

        employee_number = values["employee_number"]
        if employee_number and not EMPLOYEE_NUMBER_PATTERN.match(employee_number.upper()):
            result.add(
                "employee_number",
                "Employee number must be in format EMP-XXXXXXXX (8 digits)",
            )

        email = values["email"]
        if email and not EMAIL_PATTERN.match(email):
            result.add("email", "The email field must be a valid email address.")

        salary_text = values["salary"]
        if salary_text:
            salary = parse_decimal(salary_text)
            if salary is None:
                result.add("salary", "The salary field must be a number.")
            elif salary < 0:
                result.add("salary", "Salary cannot be negative")

        currency = values["currency"]
        if currency and currency.upper() not in VALID_CURRENCIES:
            result.add(
                "currency",
                f"Invalid currency code. Must be one of: {', '.join(VALID_CURRENCIES)}",
            )

        country = values["country_code"]
        if country and country.upper() not in VALID_COUNTRIES:
            result.add(
                "country_code",
                f"Invalid country code. Must be one of: {', '.join(VALID_COUNTRIES)}",
            )

        department = values["department"]
        if department and department not in VALID_DEPARTMENTS:
            result.add(
                "department",
                f"Invalid department. Must be one of: {', '.join(VALID_DEPARTMENTS)}",
            )

        start_text = values["start_date"]
        if start_text:
            start_date = parse_date(start_text)
            if start_date is None:
                result.add("start_date", "The start_date field must be a valid date.")
            else:
                if start_date > self.today:
                    result.add("start_date", "Start date cannot be in the future")
                if start_date < MIN_START_DATE:
                    result.add("start_date", "Start date cannot be before 1900")

    def _check_business_rules(self, values: dict[str, str], result: ValidationResult) -> None:
        salary = parse_decimal(values["salary"]) if values["salary"] else None
        if salary is not None and salary > MAX_SALARY:
            result.add("salary", "Salary seems unreasonably high")

        email = values["email"]
        if "@" in email:
            domain = email.rsplit("@", 1)[1].lower()
            if domain not in self.allowed_email_domains:
                result.add(
                    "email",
                    "Email domain not allowed. Must be one of: "
                    + ", ".join(self.allowed_email_domains),
                )

        for name in ("first_name", "last_name"):
            label = name.replace("_", " ").capitalize()
            value = values[name]
            if not value:
                continue
            if len(value) < MIN_NAME_LENGTH:
                result.add(name, f"{label} must be at least {MIN_NAME_LENGTH} characters long")
            if not NAME_PATTERN.match(value):
                result.add(name, f"{label} contains invalid characters")
