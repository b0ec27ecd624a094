"""Create-or-update of Employee records keyed by their natural identifiers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import BusinessRuleError, RowSystemError
from app.db.models.employee import Employee
from app.services.row_validator import parse_date, parse_decimal

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

EMPLOYEE_FIELDS = (
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


@dataclass
class UpsertOutcome:
    employee: Employee
    created: bool


class EmployeeStore:
    """Persist employees; one savepoint per row so a unique-key race only
    costs that row."""

    def __init__(self, session: Session):
        self.session = session

    def find_matches(self, employee_number: str, email: str) -> list[Employee]:
        """Employees sharing the employee number or the email (0, 1 or 2 rows)."""
        statement = (
            select(Employee)
            .where(
                or_(
                    Employee.employee_number == employee_number,
                    Employee.email == email,
                )
            )
            .order_by(Employee.id)
        )
        return list(self.session.scalars(statement))

    def find_existing(
        self,
        employee_number: str,
        email: str,
        matches: list[Employee] | None = None,
    ) -> Employee | None:
        """Return the single employee matching either identifier.

        ``matches`` can be passed when the caller already ran find_matches.

        Raises:
            BusinessRuleError: the number and the email belong to two
                different employees, so neither can be updated safely.
        """
        if matches is None:
            matches = self.find_matches(employee_number, email)
        if not matches:
            return None
        if len(matches) > 1:
            raise BusinessRuleError(
                "Employee number and email belong to different existing employees",
                code="CONFLICTING_IDENTIFIERS",
                context={
                    "employee_number": employee_number,
                    "email": email,
                    "employee_ids": [employee.id for employee in matches],
                },
            )
        return matches[0]

    def upsert(
        self,
        data: Mapping[str, Any],
        job_id: str,
        existing: Employee | None = None,
    ) -> UpsertOutcome:
        """Update ``existing`` in place or create a new employee.

        ``data`` must already be validated and sanitized. The write runs in
        a SAVEPOINT; any integrity or storage failure is rolled back to it
        and surfaced as a RowSystemError for this row only.
        """
        values = self._coerce(data)
        now = datetime.now(timezone.utc)
        try:
            with self.session.begin_nested():
                if existing is None:
                    employee = Employee(**values)
                    self.session.add(employee)
                    created = True
                else:
                    employee = existing
                    for key, value in values.items():
                        setattr(employee, key, value)
                    created = False
                employee.last_imported_at = now
                employee.last_import_job_id = job_id
                self.session.flush()
        except IntegrityError as exc:
            if existing is not None:
                # savepoint rollback expires the instance; reload it
                self.session.expire(existing)
            logger.warning(
                f"Unique constraint violation writing employee "
                f"{values['employee_number']} for job {job_id}: {exc.orig}"
            )
            raise RowSystemError(
                "Employee number or email was taken by a concurrent write",
                context={
                    "employee_number": values["employee_number"],
                    "email": values["email"],
                    "error": str(exc.orig),
                },
            ) from exc
        except SQLAlchemyError as exc:
            logger.error(
                f"Database error writing employee {values['employee_number']}: {exc}",
                exc_info=True,
            )
            raise RowSystemError(
                f"Database error while saving employee: {exc}",
                context={"employee_number": values["employee_number"]},
            ) from exc
        return UpsertOutcome(employee=employee, created=created)

    @staticmethod
    def _coerce(data: Mapping[str, Any]) -> dict[str, Any]:
        values = {key: data.get(key) for key in EMPLOYEE_FIELDS}
        values["salary"] = parse_decimal(str(values["salary"])).quantize(CENTS)
        values["start_date"] = parse_date(str(values["start_date"]))
        return values
