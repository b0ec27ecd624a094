"""Database models package."""
from app.db.models.employee import Employee
from app.db.models.import_error import ImportErrorRecord
from app.db.models.import_job import ImportJob
from app.db.models.import_row import ImportRow

__all__ = ["Employee", "ImportErrorRecord", "ImportJob", "ImportRow"]
