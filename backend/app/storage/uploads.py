"""Local staging area for uploaded CSV files."""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from app.core.config import get_settings

logger = logging.getLogger(__name__)


def uploads_dir() -> Path:
    path = Path(get_settings().uploads_dir).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_upload(file_obj: BinaryIO, original_name: str | None = None) -> Path:
    """Copy an uploaded stream to the uploads directory and return its absolute path."""
    suffix = Path(original_name or "upload.csv").suffix.lower() or ".csv"
    target_path = uploads_dir() / f"{uuid.uuid4()}{suffix}"
    file_obj.seek(0)
    with target_path.open("wb") as destination:
        shutil.copyfileobj(file_obj, destination)
    logger.info(f"Staged upload {original_name!r} at {target_path}")
    return target_path


def delete_upload(path: str | Path) -> None:
    """Remove a staged file (rejected uploads); missing files are ignored."""
    try:
        Path(path).resolve().unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to delete staged upload {path}: {e}")
