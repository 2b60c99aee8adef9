from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote_plus

DEFAULT_DB_FILENAME = "caseload_import.sqlite"
DEFAULT_UPLOAD_DIRNAME = "uploads"
DEFAULT_CHUNK_SIZE = 100
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024
DEFAULT_STATEMENT_TIMEOUT_MS = 30000
DEFAULT_LOCK_TIMEOUT_MS = 10000
DEFAULT_JOB_MAX_ATTEMPTS = 3
DEFAULT_JOB_BACKOFF_SECONDS = 5
DEFAULT_ERROR_LOG_LIMIT = 100
DEFAULT_UPLOAD_RETENTION_HOURS = 24


@dataclass(frozen=True)
class ImportSettings:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    upload_dir: str = str(Path(__file__).with_name(DEFAULT_UPLOAD_DIRNAME))
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS
    lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS
    job_max_attempts: int = DEFAULT_JOB_MAX_ATTEMPTS
    job_backoff_seconds: int = DEFAULT_JOB_BACKOFF_SECONDS
    error_log_limit: int = DEFAULT_ERROR_LOG_LIMIT
    upload_retention_hours: int = DEFAULT_UPLOAD_RETENTION_HOURS

    def as_dict(self) -> Dict[str, Any]:
        return {
            "chunk_size": self.chunk_size,
            "max_upload_bytes": self.max_upload_bytes,
            "upload_dir": self.upload_dir,
            "statement_timeout_ms": self.statement_timeout_ms,
            "lock_timeout_ms": self.lock_timeout_ms,
            "job_max_attempts": self.job_max_attempts,
            "job_backoff_seconds": self.job_backoff_seconds,
            "error_log_limit": self.error_log_limit,
            "upload_retention_hours": self.upload_retention_hours,
        }


def _as_int(environ: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = (environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    return max(minimum, parsed)


def load_import_settings(environ: Optional[Mapping[str, str]] = None) -> ImportSettings:
    if environ is None:
        environ = os.environ
    upload_dir = (environ.get("IMPORT_UPLOAD_DIR") or "").strip()
    return ImportSettings(
        chunk_size=_as_int(environ, "IMPORT_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        max_upload_bytes=_as_int(environ, "IMPORT_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
        upload_dir=upload_dir or str(Path(__file__).with_name(DEFAULT_UPLOAD_DIRNAME)),
        statement_timeout_ms=_as_int(
            environ, "IMPORT_STATEMENT_TIMEOUT_MS", DEFAULT_STATEMENT_TIMEOUT_MS, minimum=1000
        ),
        lock_timeout_ms=_as_int(
            environ, "IMPORT_LOCK_TIMEOUT_MS", DEFAULT_LOCK_TIMEOUT_MS, minimum=500
        ),
        job_max_attempts=_as_int(environ, "IMPORT_JOB_MAX_ATTEMPTS", DEFAULT_JOB_MAX_ATTEMPTS),
        job_backoff_seconds=_as_int(
            environ, "IMPORT_JOB_BACKOFF_SECONDS", DEFAULT_JOB_BACKOFF_SECONDS
        ),
        error_log_limit=_as_int(environ, "IMPORT_ERROR_LOG_LIMIT", DEFAULT_ERROR_LOG_LIMIT),
        upload_retention_hours=_as_int(
            environ, "IMPORT_UPLOAD_RETENTION_HOURS", DEFAULT_UPLOAD_RETENTION_HOURS
        ),
    )


def _first_env(environ: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = environ.get(name)
        if value:
            return value
    return None


def normalize_database_url(url: str) -> str:
    # Normalize older scheme and explicitly select the psycopg driver.
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]
    if url.startswith("postgresql://") and "+" not in url.split("://", 1)[0]:
        url = "postgresql+psycopg://" + url[len("postgresql://") :]
    return url


def build_database_url(environ: Optional[Mapping[str, str]] = None) -> str:
    if environ is None:
        environ = os.environ
    # Prefer a full URL when available.
    url = _first_env(
        environ,
        "DATABASE_URL",
        "InternalDatabaseURL",
        "Internal_Database_URL",
        "ExternalDatabaseURL",
        "External_Database_URL",
    )
    if url:
        return normalize_database_url(url)

    # Fall back to discrete parts if present.
    host = _first_env(environ, "Hostname", "DB_HOST")
    port = _first_env(environ, "Port", "DB_PORT")
    dbname = _first_env(environ, "Database", "DB_NAME")
    user = _first_env(environ, "Username", "DB_USER")
    password = _first_env(environ, "Password", "DB_PASSWORD")
    if host and port and dbname and user and password:
        return (
            "postgresql+psycopg://"
            f"{quote_plus(user)}:{quote_plus(password)}@{host}:{port}/{quote_plus(dbname)}"
        )

    # Local/dev fallback: sqlite file next to this module.
    db_path = environ.get("DB_PATH")
    if not db_path:
        db_path = str(Path(__file__).with_name(DEFAULT_DB_FILENAME))
    return f"sqlite:///{db_path}"
