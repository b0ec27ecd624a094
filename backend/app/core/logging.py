"""Process-wide logging bootstrap shared by the API and the Celery worker."""

import logging

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, force=True)
    # SQL echo is controlled by the engine, keep driver chatter down
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
