"""Append-only audit trail of row-level import failures."""

from sqlalchemy import BigInteger, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from app.db.base import Base
from app.db.models.types import JSONType

ERROR_VALIDATION = "validation"
ERROR_DUPLICATE = "duplicate"
ERROR_SYSTEM = "system"
ERROR_BUSINESS_LOGIC = "business_logic"

ERROR_TYPES = (ERROR_VALIDATION, ERROR_DUPLICATE, ERROR_SYSTEM, ERROR_BUSINESS_LOGIC)
RETRYABLE_ERROR_TYPES = (ERROR_VALIDATION, ERROR_DUPLICATE)


class ImportErrorRecord(Base):
    __tablename__ = "import_errors"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    import_job_id = Column(
        String(36),
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    import_row_id = Column(
        BigInteger().with_variant(Integer, "sqlite"),
        ForeignKey("import_rows.id", ondelete="CASCADE"),
    )
    row_number = Column(Integer, nullable=False)
    error_type = Column(String(32), nullable=False)
    error_code = Column(String(64), nullable=False)
    error_message = Column(Text, nullable=False)
    error_details = Column(JSONType)
    raw_data = Column(JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    job = relationship("ImportJob", back_populates="errors")
    row = relationship("ImportRow")

    __table_args__ = (
        Index("ix_import_errors_job_type", "import_job_id", "error_type"),
        Index("ix_import_errors_job_row", "import_job_id", "row_number"),
    )
