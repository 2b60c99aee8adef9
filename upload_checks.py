from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from case_return_schema import REQUIRED_COLUMNS
from csv_stream import CsvStreamParser
from import_errors import UploadValidationError

ALLOWED_EXTENSIONS = (".csv",)
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024
SAMPLE_ROW_COUNT = 3


@dataclass(frozen=True)
class CsvStructureReport:
    headers: List[str]
    missing_columns: List[str] = field(default_factory=list)
    sample_rows: List[Dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "headers": list(self.headers),
            "missingColumns": list(self.missing_columns),
            "sampleRows": [dict(row) for row in self.sample_rows],
        }


def validate_uploaded_file(
    filename: Optional[str], size: Optional[int], max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
) -> None:
    errors: List[str] = []
    if not filename:
        errors.append("No file uploaded")
    elif not filename.lower().endswith(ALLOWED_EXTENSIONS):
        errors.append("Only .csv files are supported")
    if size is not None:
        if size <= 0:
            errors.append("Uploaded file is empty")
        elif size > max_bytes:
            errors.append(f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB")
    if errors:
        raise UploadValidationError(errors)


def save_uploaded_file(
    storage: FileStorage, upload_dir: str, *, now: Optional[datetime] = None
) -> Path:
    """Store an upload under ``upload_dir`` with a sanitized, timestamped name."""
    safe_name = secure_filename(storage.filename or "") or "upload.csv"
    stamp = (now or datetime.utcnow()).strftime("%Y%m%d%H%M%S%f")
    target_dir = Path(upload_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{stamp}-{safe_name}"
    storage.save(str(target))
    return target


def validate_csv_structure(
    path: os.PathLike, parser: Optional[CsvStreamParser] = None
) -> CsvStructureReport:
    parser = parser or CsvStreamParser()
    headers: List[str] = []
    sample_rows: List[Dict[str, str]] = []
    has_data = False
    for _row_number, row_headers, row in parser.iter_rows(path):
        headers = row_headers
        if not row:
            continue
        has_data = True
        sample_rows.append(row)
        if len(sample_rows) >= SAMPLE_ROW_COUNT:
            break
    if not headers:
        headers = parser.headers or parser.read_headers(path)

    errors: List[str] = []
    if not headers:
        errors.append("CSV file has no header row")
    missing = [column for column in REQUIRED_COLUMNS if column not in headers]
    if headers and missing:
        errors.append(f"Missing required columns: {', '.join(missing)}")
    if headers and not has_data:
        errors.append("CSV file contains no data rows")
    if errors:
        raise UploadValidationError(errors)
    return CsvStructureReport(headers=list(headers), missing_columns=missing, sample_rows=sample_rows)


def cleanup_old_uploads(
    upload_dir: str,
    max_age_hours: int,
    now: Optional[datetime] = None,
    *,
    logger: Optional[Any] = None,
) -> int:
    directory = Path(upload_dir)
    if not directory.is_dir():
        return 0
    cutoff = (now or datetime.utcnow()) - timedelta(hours=max_age_hours)
    removed = 0
    for entry in directory.iterdir():
        if not entry.is_file():
            continue
        modified = datetime.utcfromtimestamp(entry.stat().st_mtime)
        if modified >= cutoff:
            continue
        try:
            entry.unlink()
        except OSError as exc:
            if logger:
                logger.warning("Unable to remove uploaded file %s: %s", entry, exc)
            continue
        removed += 1
    return removed
