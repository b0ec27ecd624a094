"""SQLAlchemy model for employee records."""

from sqlalchemy import Column, Date, ForeignKey, Integer, Numeric, String
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from app.db.base import Base


class Employee(Base):
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True)
    employee_number = Column(String(50), nullable=False, unique=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    department = Column(String(100), nullable=False)
    salary = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    country_code = Column(String(2), nullable=False)
    start_date = Column(Date, nullable=False)
    last_imported_at = Column(DateTime(timezone=True))
    last_import_job_id = Column(
        String(36), ForeignKey("import_jobs.id", ondelete="SET NULL"), index=True
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"<Employee {self.employee_number} {self.email}>"
