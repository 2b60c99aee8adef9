from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import Table, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


@dataclass(frozen=True)
class ImportJobPayload:
    file_path: str
    filename: str
    file_size: int
    checksum: str
    batch_id: int
    user_id: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "filePath": self.file_path,
            "filename": self.filename,
            "fileSize": self.file_size,
            "checksum": self.checksum,
            "userId": self.user_id,
            "batchId": self.batch_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ImportJobPayload":
        user_id = data.get("userId")
        return cls(
            file_path=str(data["filePath"]),
            filename=str(data["filename"]),
            file_size=int(data.get("fileSize") or 0),
            checksum=str(data["checksum"]),
            batch_id=int(data["batchId"]),
            user_id=int(user_id) if user_id is not None else None,
        )


class ImportJobQueue:
    """Import jobs stored in the ``import_jobs`` table."""

    def __init__(
        self,
        engine,
        tables: Dict[str, Table],
        *,
        logger: Optional[Any] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
        max_attempts: int = 3,
        backoff_seconds: int = 5,
    ) -> None:
        self._engine = engine
        self._tables = tables
        self._logger = logger
        self._now = now_fn or datetime.utcnow
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def enqueue(self, payload: ImportJobPayload, delay_seconds: int = 0) -> int:
        job_table = self._tables["import_jobs"]
        next_run_at = self._now() + timedelta(seconds=delay_seconds) if delay_seconds else None
        with self._engine.begin() as conn:
            result = conn.execute(
                insert(job_table).values(
                    batch_id=payload.batch_id,
                    payload=payload.as_dict(),
                    status=JOB_QUEUED,
                    attempts=0,
                    max_attempts=self._max_attempts,
                    next_run_at=next_run_at,
                )
            )
            job_id = int(result.inserted_primary_key[0])
        if self._logger:
            self._logger.info("Queued import job %s for batch %s.", job_id, payload.batch_id)
        return job_id

    def claim_next(self, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Move the oldest due job to ``running`` and return it, or None."""
        job_table = self._tables["import_jobs"]
        now = now or self._now()
        with self._engine.begin() as conn:
            query = (
                select(job_table)
                .where(
                    job_table.c.status == JOB_QUEUED,
                    or_(job_table.c.next_run_at.is_(None), job_table.c.next_run_at <= now),
                )
                .order_by(job_table.c.created_at.asc(), job_table.c.id.asc())
                .limit(1)
            )
            if conn.dialect.name == "postgresql":
                query = query.with_for_update(skip_locked=True)
            row = conn.execute(query).mappings().first()
            if row is None:
                return None
            job = dict(row)
            updates = {
                "status": JOB_RUNNING,
                "attempts": int(job.get("attempts") or 0) + 1,
                "started_at": now,
                "finished_at": None,
            }
            result = conn.execute(
                update(job_table)
                .where(job_table.c.id == job["id"], job_table.c.status == JOB_QUEUED)
                .values(**updates)
            )
            if result.rowcount != 1:
                return None
        job.update(updates)
        return job

    def mark_completed(self, job_id: int) -> None:
        self._update(job_id, status=JOB_COMPLETED, last_error=None, finished_at=self._now())

    def mark_retry(self, job: Mapping[str, Any], message: str) -> datetime:
        attempts = max(1, int(job.get("attempts") or 1))
        delay = self._backoff_seconds * 2 ** (attempts - 1)
        next_run_at = self._now() + timedelta(seconds=delay)
        self._update(
            job["id"],
            status=JOB_QUEUED,
            last_error=message,
            next_run_at=next_run_at,
            finished_at=None,
        )
        if self._logger:
            self._logger.warning(
                "Import job %s attempt %s failed; retrying at %s: %s",
                job["id"],
                attempts,
                next_run_at.isoformat(),
                message,
            )
        return next_run_at

    def mark_failed(self, job_id: int, message: str) -> None:
        self._update(job_id, status=JOB_FAILED, last_error=message, finished_at=self._now())
        if self._logger:
            self._logger.warning("Import job %s failed: %s", job_id, message)

    def get_job(self, job_id: int) -> Optional[Dict[str, Any]]:
        job_table = self._tables["import_jobs"]
        with self._engine.connect() as conn:
            row = conn.execute(select(job_table).where(job_table.c.id == job_id)).mappings().first()
        return dict(row) if row else None

    def _update(self, job_id: int, **values: Any) -> None:
        job_table = self._tables["import_jobs"]
        with self._engine.begin() as conn:
            conn.execute(update(job_table).where(job_table.c.id == job_id).values(**values))


class ImportStatusStore:
    """Progress cache keyed by batch id, stored in ``import_status``."""

    def __init__(
        self,
        engine,
        tables: Dict[str, Table],
        *,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._engine = engine
        self._tables = tables
        self._now = now_fn or datetime.utcnow

    def set_status(
        self,
        batch_id: int,
        status: str,
        progress: int,
        message: Optional[str] = None,
        *,
        stats: Optional[Mapping[str, Any]] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        status_table = self._tables["import_status"]
        values = {
            "status": status,
            "progress": max(0, min(100, int(progress))),
            "message": message,
            "stats": dict(stats) if stats is not None else None,
            "details": dict(details) if details is not None else None,
            "updated_at": self._now(),
        }
        with self._engine.begin() as conn:
            if conn.dialect.name == "postgresql":
                stmt = pg_insert(status_table).values(batch_id=batch_id, **values)
                conn.execute(
                    stmt.on_conflict_do_update(index_elements=["batch_id"], set_=values)
                )
                return
            result = conn.execute(
                update(status_table)
                .where(status_table.c.batch_id == batch_id)
                .values(**values)
            )
            if result.rowcount == 0:
                conn.execute(insert(status_table).values(batch_id=batch_id, **values))

    def get_status(self, batch_id: int) -> Optional[Dict[str, Any]]:
        status_table = self._tables["import_status"]
        with self._engine.connect() as conn:
            row = (
                conn.execute(select(status_table).where(status_table.c.batch_id == batch_id))
                .mappings()
                .first()
            )
        return dict(row) if row else None


class ImportJobService:
    """Job submission plus the progress phases reported while an import runs.

    Status writes are best effort. A failing status write is logged and never
    interrupts the import that reported it.
    """

    def __init__(
        self,
        queue: ImportJobQueue,
        status_store: ImportStatusStore,
        *,
        logger: Optional[Any] = None,
    ) -> None:
        self._queue = queue
        self._status_store = status_store
        self._logger = logger

    def add_import_job(self, payload: ImportJobPayload) -> int:
        job_id = self._queue.enqueue(payload)
        self._write(payload.batch_id, "queued", 0, "Import queued")
        return job_id

    def set_processing_status(self, batch_id: int) -> None:
        self._write(batch_id, "processing", 5, "Reading CSV file...")

    def set_file_read_progress(self, batch_id: int, total_records: int) -> None:
        self._write(batch_id, "processing", 10, f"Processing {total_records} records...")

    def set_batch_progress(self, batch_id: int, processed: int, total: int) -> None:
        self._write(
            batch_id,
            "processing",
            batch_progress(processed, total),
            f"Processed {min(processed, total)} of {total} records...",
        )

    def set_completion_status(
        self,
        batch_id: int,
        final_status: str,
        stats: Mapping[str, Any],
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        completed = final_status == "COMPLETED"
        message = "Import completed successfully" if completed else "Import failed"
        if completed and stats.get("failedRecords"):
            message = "Import completed with errors"
        self._write(
            batch_id,
            "completed" if completed else "failed",
            100 if completed else 0,
            message,
            stats=stats,
            details=details,
        )

    def set_failure_status(
        self, batch_id: int, message: str, details: Optional[Mapping[str, Any]] = None
    ) -> None:
        self._write(batch_id, "failed", 0, message, details=details)

    def set_verification_failure_status(
        self,
        batch_id: int,
        computed_successes: int,
        persisted_activities: int,
        stats: Optional[Mapping[str, Any]] = None,
    ) -> None:
        reason = (
            "Verification mismatch: computed successfulRecords="
            f"{computed_successes} but persisted caseActivity rows={persisted_activities}"
        )
        self._write(
            batch_id,
            "failed",
            0,
            f"Import verification failed: {reason}",
            stats=stats,
            details={
                "failureCategory": "VERIFICATION_MISMATCH",
                "failureReason": reason,
                "computedSuccessfulRecords": computed_successes,
                "persistedActivities": persisted_activities,
            },
        )

    def get_job_status(self, batch_id: int) -> Optional[Dict[str, Any]]:
        try:
            return self._status_store.get_status(batch_id)
        except SQLAlchemyError as exc:
            if self._logger:
                self._logger.warning("Failed to read status for batch %s: %s", batch_id, exc)
            return None

    def _write(
        self,
        batch_id: int,
        status: str,
        progress: int,
        message: str,
        *,
        stats: Optional[Mapping[str, Any]] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        try:
            self._status_store.set_status(
                batch_id, status, progress, message, stats=stats, details=details
            )
        except SQLAlchemyError as exc:
            if self._logger:
                self._logger.warning(
                    "Failed to record status %s for batch %s: %s", status, batch_id, exc
                )


def batch_progress(processed: int, total: int) -> int:
    if total <= 0:
        return 90
    return int(math.floor(min(processed, total) / total * 80)) + 10
