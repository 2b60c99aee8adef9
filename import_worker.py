from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from import_errors import BatchNotFoundError
from import_jobs import ImportJobPayload, ImportJobQueue
from import_service import CsvImportService, ProcessOptions


class ImportJobWorker:
    def __init__(
        self,
        import_service: CsvImportService,
        queue: ImportJobQueue,
        *,
        logger: Optional[Any] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
        options: Optional[ProcessOptions] = None,
    ) -> None:
        self._service = import_service
        self._queue = queue
        self._logger = logger
        self._now = now_fn or datetime.utcnow
        self._options = options

    def run_once(self, max_jobs: int = 1) -> int:
        processed = 0
        while processed < max_jobs:
            job = self._queue.claim_next(self._now())
            if job is None:
                break
            self._process_job(job)
            processed += 1
        return processed

    def _process_job(self, job: Dict[str, Any]) -> None:
        try:
            payload = ImportJobPayload.from_dict(job.get("payload") or {})
        except (KeyError, TypeError, ValueError) as exc:
            self._queue.mark_failed(job["id"], f"Invalid import job payload: {exc}")
            return

        try:
            result = self._service.process(payload, self._options)
        except BatchNotFoundError as exc:
            self._queue.mark_failed(job["id"], str(exc))
            return
        except SQLAlchemyError as exc:
            attempts = int(job.get("attempts") or 1)
            max_attempts = int(job.get("max_attempts") or self._queue.max_attempts)
            if attempts < max_attempts:
                self._queue.mark_retry(job, str(exc))
            else:
                self._queue.mark_failed(job["id"], f"Import failed after {attempts} attempts: {exc}")
            return
        except Exception as exc:
            if self._logger:
                self._logger.exception("Import job %s crashed", job["id"])
            self._queue.mark_failed(job["id"], f"Import job crashed: {exc}")
            return

        self._queue.mark_completed(job["id"])
        if self._logger:
            self._logger.info(
                "Import job %s finished batch %s with status %s.",
                job["id"],
                payload.batch_id,
                result.status,
            )
