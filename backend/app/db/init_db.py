"""Create the import tables on a fresh database."""

import logging

from sqlalchemy.engine import Engine

from app.db.base import Base

logger = logging.getLogger(__name__)


def init_database(bind: Engine | None = None) -> None:
    # models must be imported so their tables are registered on Base.metadata
    from app.db import models  # noqa: F401

    if bind is None:
        from app.db.session import engine as bind

    Base.metadata.create_all(bind=bind)
    logger.info(f"Database tables ready: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    from app.core.config import get_settings
    from app.core.logging import configure_logging

    configure_logging(get_settings().log_level)
    init_database()
