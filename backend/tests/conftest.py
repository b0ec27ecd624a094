"""Shared fixtures: in-memory SQLite, a memory progress publisher, CSV files."""

import csv
import os
import tempfile

# Settings are read when app modules are imported, so configure the
# environment before anything from ``app`` is loaded.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PROGRESS_BACKEND", "memory")
os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="employee-uploads-"))

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.db.base import Base
from app.db import models  # noqa: F401
from app.db.models.import_job import JOB_PENDING, ImportJob
from app.services.csv_parser import CsvParser
from app.services.import_pipeline import BulkImportPipeline
from app.services.job_state import ImportJobStateMachine
from app.services.progress_tracker import InMemoryProgressPublisher, ProgressTracker
from app.services.row_validator import RowValidator
from tests.factories import HEADER, TODAY, RecordingDispatcher


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs help to honour SAVEPOINT inside an ORM transaction
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    db = factory()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def settings():
    return get_settings().model_copy(
        update={
            "import_process_chunk_size": 2,
            "import_materialize_chunk_size": 3,
            "import_chunk_pause_seconds": 0,
        }
    )


@pytest.fixture
def publisher():
    return InMemoryProgressPublisher()


@pytest.fixture
def state_machine():
    return ImportJobStateMachine()


@pytest.fixture
def tracker(publisher, state_machine):
    return ProgressTracker(publisher, state_machine)


@pytest.fixture
def validator():
    return RowValidator(today=TODAY)


@pytest.fixture
def parser(settings):
    return CsvParser(
        max_file_size=settings.import_max_file_size,
        sample_size=settings.import_structure_sample_size,
    )


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def pipeline_factory(session, parser, validator, tracker, state_machine, settings):
    def build(**overrides):
        options = {
            "parser": parser,
            "validator": validator,
            "tracker": tracker,
            "state_machine": state_machine,
            "settings": settings,
            "memory_check": lambda: (False, 0, 0),
            "pause": lambda seconds: None,
        }
        options.update(overrides)
        return BulkImportPipeline(session, **options)

    return build


@pytest.fixture
def pipeline(pipeline_factory):
    return pipeline_factory()


@pytest.fixture
def write_csv(tmp_path):
    """Write rows (dicts keyed by header, or raw cell lists) to a CSV file."""

    def write(rows, name="employees.csv", headers=None):
        headers = HEADER if headers is None else headers
        path = tmp_path / name
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(headers)
            for row in rows:
                if isinstance(row, dict):
                    writer.writerow([row.get(header, "") for header in headers])
                else:
                    writer.writerow(row)
        return path

    return write


@pytest.fixture
def make_job(session):
    def make(path, **overrides):
        values = {
            "original_filename": path.name,
            "file_path": str(path),
            "file_size": path.stat().st_size,
            "status": JOB_PENDING,
        }
        values.update(overrides)
        job = ImportJob(**values)
        session.add(job)
        session.commit()
        return job

    return make
