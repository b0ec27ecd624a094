"""Per-row ledger entries: raw CSV payload, processing status and outcome."""

from sqlalchemy import (
    BigInteger,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from app.db.base import Base
from app.db.models.types import JSONType

ROW_PENDING = "pending"
ROW_PROCESSING = "processing"
ROW_SUCCESS = "success"
ROW_FAILED = "failed"
ROW_DUPLICATE = "duplicate"
ROW_SKIPPED = "skipped"

ROW_STATUSES = (ROW_PENDING, ROW_PROCESSING, ROW_SUCCESS, ROW_FAILED, ROW_DUPLICATE, ROW_SKIPPED)
TERMINAL_ROW_STATUSES = (ROW_SUCCESS, ROW_FAILED, ROW_DUPLICATE, ROW_SKIPPED)


class ImportRow(Base):
    __tablename__ = "import_rows"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    import_job_id = Column(
        String(36),
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_number = Column(Integer, nullable=False)
    raw_data = Column(JSONType, nullable=False)
    status = Column(String(32), nullable=False, default=ROW_PENDING)
    employee_id = Column(Integer, ForeignKey("employees.id", ondelete="SET NULL"))
    error_message = Column(Text)
    validation_errors = Column(JSONType)
    processed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    job = relationship("ImportJob", back_populates="rows")
    employee = relationship("Employee")

    __table_args__ = (
        UniqueConstraint("import_job_id", "row_number", name="uq_import_rows_job_row"),
        Index("ix_import_rows_job_status", "import_job_id", "status"),
    )

    @property
    def is_processed(self) -> bool:
        return self.status in TERMINAL_ROW_STATUSES

    def __repr__(self) -> str:
        return f"<ImportRow job={self.import_job_id} #{self.row_number} {self.status}>"
