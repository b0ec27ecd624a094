"""FastAPI dependencies for the import endpoints."""

from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.services.import_service import ImportDispatcher, ImportService
from app.services.progress_tracker import ProgressTracker, get_progress_publisher


def get_session() -> Generator[Session, None, None]:
    """Yield a managed SQLAlchemy session."""
    yield from get_db()


def get_dispatcher() -> ImportDispatcher:
    # imported lazily so the API can start without a broker configured
    from app.workers.dispatcher import CeleryImportDispatcher

    return CeleryImportDispatcher()


def get_progress_tracker() -> ProgressTracker:
    return ProgressTracker(get_progress_publisher())


def get_import_service(
    session: Session = Depends(get_session),
    dispatcher: ImportDispatcher = Depends(get_dispatcher),
    tracker: ProgressTracker = Depends(get_progress_tracker),
) -> ImportService:
    return ImportService(session, dispatcher, tracker=tracker)
