"""Streaming CSV reader plus the cheap file checks run before a job starts."""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from typing import Any

from app.core.config import get_settings
from app.core.exceptions import MalformedFileError
from app.utils.csv_validator import find_header_problems, normalize_header

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".csv", ".txt")
# CSV processing typically needs 3-5x the file size once rows are materialized
MEMORY_ESTIMATE_FACTOR = 4
_FOREIGN_DELIMITERS = (";", "\t", "|")


@dataclass
class CsvDocument:
    """Header list plus a lazy iterator over the remaining records."""

    headers: list[str]
    rows: Iterator[list[str]]


class CsvParser:
    """Read employee CSV files without loading them wholesale."""

    def __init__(
        self,
        max_file_size: int | None = None,
        sample_size: int | None = None,
        encoding: str = "utf-8-sig",
    ):
        settings = get_settings()
        self.max_file_size = max_file_size or settings.import_max_file_size
        self.sample_size = sample_size or settings.import_structure_sample_size
        self.encoding = encoding

    @contextmanager
    def open(self, file_path: str | Path) -> Iterator[CsvDocument]:
        """Open ``file_path`` and yield its headers and a lazy row iterator.

        Raises:
            MalformedFileError: unreadable, empty, or not comma-delimited.
        """
        path = Path(file_path)
        try:
            with path.open("r", encoding=self.encoding, newline="") as handle:
                reader = csv.reader(handle, delimiter=",", quotechar='"')
                headers = next(reader, None)
                if not headers or not any(cell.strip() for cell in headers):
                    raise MalformedFileError(
                        "CSV file is empty or has no header row",
                        details={"file_path": str(path)},
                    )
                self._check_delimiter(headers, path)
                yield CsvDocument(
                    headers=[normalize_header(header) for header in headers],
                    rows=(cells for cells in reader if cells),
                )
        except FileNotFoundError as e:
            raise MalformedFileError(
                f"CSV file not found: {path}", details={"file_path": str(path)}
            ) from e
        except PermissionError as e:
            raise MalformedFileError(
                f"Permission denied reading file: {path}",
                details={"file_path": str(path)},
            ) from e
        except UnicodeDecodeError as e:
            raise MalformedFileError(f"File encoding error: {e}") from e
        except csv.Error as e:
            raise MalformedFileError(f"CSV parsing error: {e}") from e

    def read_headers(self, file_path: str | Path) -> list[str]:
        with self.open(file_path) as document:
            return document.headers

    def count_rows(self, file_path: str | Path) -> int:
        """Return the number of data records (header and blank lines excluded)."""
        with self.open(file_path) as document:
            return sum(1 for _ in document.rows)

    def validate_structure(self, file_path: str | Path) -> list[str]:
        """Inspect the header and the first few records; report every problem."""
        try:
            with self.open(file_path) as document:
                errors = find_header_problems(document.headers)
                for offset, cells in enumerate(islice(document.rows, self.sample_size), start=1):
                    if len(cells) > len(document.headers):
                        errors.append(
                            f"Row {offset} has {len(cells)} columns but the header has "
                            f"{len(document.headers)}"
                        )
                return errors
        except MalformedFileError as e:
            return [f"CSV file validation failed: {e.message}"]

    def validate_file(self, file_path: str | Path) -> list[str]:
        """File-level checks first (existence, size, extension), then structure."""
        path = Path(file_path)
        if not path.exists():
            return [f"File not found: {path}"]

        errors: list[str] = []
        file_size = path.stat().st_size
        if file_size > self.max_file_size:
            errors.append(
                f"File size exceeds maximum allowed size of "
                f"{self.max_file_size // (1024 * 1024)}MB"
            )
        if file_size == 0:
            errors.append("File is empty")
            return errors
        if path.suffix.lower() not in ALLOWED_EXTENSIONS:
            errors.append("File must be a CSV or TXT file")

        errors.extend(self.validate_structure(path))
        return errors

    def get_file_statistics(self, file_path: str | Path) -> dict[str, Any]:
        """Size, headers and row count so the caller can size the job up front."""
        path = Path(file_path)
        with self.open(path) as document:
            headers = document.headers
            row_count = sum(1 for _ in document.rows)
        file_size = path.stat().st_size
        return {
            "file_path": str(path),
            "file_size": file_size,
            "headers": headers,
            "header_count": len(headers),
            "row_count": row_count,
            "estimated_memory_usage": file_size * MEMORY_ESTIMATE_FACTOR,
        }

    def get_sample_data(self, file_path: str | Path, sample_size: int | None = None) -> dict[str, Any]:
        size = sample_size or self.sample_size
        with self.open(file_path) as document:
            sample = [
                dict(zip(document.headers, cells))
                for cells in islice(document.rows, size)
            ]
            return {
                "headers": document.headers,
                "sample_rows": sample,
                "sample_size": len(sample),
            }

    @staticmethod
    def _check_delimiter(headers: list[str], path: Path) -> None:
        if len(headers) != 1:
            return
        only = headers[0]
        for delimiter in _FOREIGN_DELIMITERS:
            if delimiter in only:
                raise MalformedFileError(
                    f"CSV file does not appear to be comma-delimited "
                    f"(found {delimiter!r} in the header row)",
                    details={"file_path": str(path)},
                )
