from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Table, select
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from case_activity import CaseActivityService
from csv_stream import CsvStreamParser, ParseResult
from import_batches import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    TERMINAL_STATUSES,
    BatchCreationData,
    BatchStats,
    ImportBatchService,
)
from import_config import ImportSettings
from import_errors import (
    BatchNotFoundError,
    ConsecutiveFailureError,
    DuplicateImportError,
    EarlyValidationFailure,
    ErrorKind,
    ImportErrorHandler,
    ImportInitiationError,
    MasterDataError,
    MissingFieldsError,
    RowError,
)
from import_jobs import ImportJobPayload, ImportJobService
from import_logging import scrub_log_message
from master_data import MasterDataNormalizer, MasterDataTracker
from row_validator import MAX_CONSECUTIVE_FAILURES, CsvRowValidator

EARLY_SAMPLE_SIZE = 5
EARLY_SAMPLE_MAX_FAILURES = 3
FAILURE_RATE_THRESHOLD = 95.0

CATEGORY_DUPLICATES_ONLY = "DUPLICATES_ONLY"
CATEGORY_DUPLICATES_WITH_SUCCESS = "DUPLICATES_WITH_SUCCESS"
CATEGORY_VALIDATION_ERRORS = "VALIDATION_ERRORS"
CATEGORY_HIGH_FAILURE_RATE = "HIGH_FAILURE_RATE"
CATEGORY_NO_DATA_ROWS = "NO_DATA_ROWS"
CATEGORY_VERIFICATION_MISMATCH = "VERIFICATION_MISMATCH"


@dataclass(frozen=True)
class ProcessOptions:
    dry_run: bool = False
    chunk_size: Optional[int] = None


@dataclass(frozen=True)
class InitiateResult:
    batch_id: int
    job_id: int
    status: str

    def as_dict(self) -> Dict[str, Any]:
        return {"batchId": self.batch_id, "jobId": self.job_id, "status": self.status}


@dataclass
class RowOutcomes:
    """Counters for rows handled so far. Chunks build their own and merge on commit."""

    successful: int = 0
    failed: int = 0
    duplicates_skipped: int = 0
    consecutive_failures: int = 0
    errors: List[RowError] = field(default_factory=list)

    def merge(self, other: "RowOutcomes") -> None:
        self.successful += other.successful
        self.failed += other.failed
        self.duplicates_skipped += other.duplicates_skipped
        self.consecutive_failures = other.consecutive_failures
        self.errors.extend(other.errors)


@dataclass(frozen=True)
class ImportResult:
    batch_id: int
    status: str
    total_records: int
    actual_data_rows: int
    successful_records: int
    failed_records: int
    duplicates_skipped: int
    empty_rows_skipped: int
    errors: Sequence[RowError] = ()
    failure_category: Optional[str] = None
    failure_reason: Optional[str] = None
    master_data: Dict[str, int] = field(default_factory=dict)
    dry_run: bool = False
    verified: bool = False

    def stats_dict(self) -> Dict[str, Any]:
        return {
            "totalRecords": self.total_records,
            "actualDataRows": self.actual_data_rows,
            "successfulRecords": self.successful_records,
            "failedRecords": self.failed_records,
            "duplicatesSkipped": self.duplicates_skipped,
            "emptyRowsSkipped": self.empty_rows_skipped,
            "errorCount": len(self.errors),
            "masterData": dict(self.master_data),
        }

    def as_dict(self) -> Dict[str, Any]:
        payload = {"batchId": self.batch_id, "status": self.status, "dryRun": self.dry_run}
        payload.update(self.stats_dict())
        payload["failureCategory"] = self.failure_category
        payload["failureReason"] = self.failure_reason
        payload["verified"] = self.verified
        return payload


def determine_final_status(
    data_rows: int, successful: int, failed: int, duplicates: int
) -> Tuple[str, Optional[str], Optional[str]]:
    """Return ``(status, failure_category, failure_reason)`` for a finished run.

    Rates are computed over data rows left after empty-row filtering.
    """
    if data_rows <= 0:
        return STATUS_COMPLETED, CATEGORY_NO_DATA_ROWS, "File contained no data rows"
    failure_rate = failed / data_rows * 100
    failed_run = successful == 0 or failure_rate >= FAILURE_RATE_THRESHOLD or failed >= data_rows
    status = STATUS_FAILED if failed_run else STATUS_COMPLETED

    if duplicates and not successful and not failed:
        return status, CATEGORY_DUPLICATES_ONLY, (
            f"All {duplicates} records already exist; no new activities were imported"
        )
    if duplicates and successful:
        return status, CATEGORY_DUPLICATES_WITH_SUCCESS, (
            f"{successful} records imported, {duplicates} duplicate records skipped"
        )
    if failed_run and not successful:
        return status, CATEGORY_VALIDATION_ERRORS, (
            f"No records were imported: {failed} of {data_rows} data rows failed"
        )
    if failed_run:
        return status, CATEGORY_HIGH_FAILURE_RATE, (
            f"Failure rate {failure_rate:.1f}% reached the {FAILURE_RATE_THRESHOLD:.0f}% threshold"
        )
    return status, None, None


class CsvImportService:
    """Coordinates an import from upload registration to verified completion.

    ``initiate`` registers a file and queues it. ``process`` runs a queued
    job: parse, sample-check, then persist rows in fixed-size chunks with one
    transaction per chunk and a savepoint per row, finalize the batch and
    verify that the persisted activity count matches the computed successes.
    """

    def __init__(
        self,
        engine,
        tables: Dict[str, Table],
        *,
        batch_service: ImportBatchService,
        job_service: ImportJobService,
        settings: Optional[ImportSettings] = None,
        normalizer: Optional[MasterDataNormalizer] = None,
        case_service: Optional[CaseActivityService] = None,
        error_handler: Optional[ImportErrorHandler] = None,
        validator: Optional[CsvRowValidator] = None,
        parser_factory: Optional[Callable[[], CsvStreamParser]] = None,
        logger: Optional[Any] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._engine = engine
        self._tables = tables
        self._batches = batch_service
        self._jobs = job_service
        self._settings = settings or ImportSettings()
        self._logger = logger
        self._now = now_fn or datetime.utcnow
        self._errors = error_handler or ImportErrorHandler(logger=logger)
        self._validator = validator or CsvRowValidator(self._errors, logger=logger)
        self._normalizer = normalizer or MasterDataNormalizer(tables, logger=logger)
        self._cases = case_service or CaseActivityService(
            tables, self._normalizer, logger=logger, now_fn=self._now
        )
        self._parser_factory = parser_factory or (lambda: CsvStreamParser(logger=logger))

    # Initiation

    def initiate(
        self,
        file_path: str,
        filename: str,
        file_size: int,
        user_id: Optional[int] = None,
    ) -> InitiateResult:
        checksum = self._parser_factory().checksum(file_path)
        existing = self._batches.check_for_duplicate_import(checksum)
        if existing is not None:
            if self._logger:
                self._logger.info(
                    "Rejected duplicate upload %s (batch %s, %s).",
                    filename,
                    existing["id"],
                    existing["status"],
                )
            raise DuplicateImportError(existing["id"], existing["status"])

        batch = self._batches.create_batch(
            BatchCreationData(
                filename=filename,
                file_size=file_size,
                file_checksum=checksum,
                created_by=user_id,
            )
        )
        payload = ImportJobPayload(
            file_path=str(file_path),
            filename=filename,
            file_size=file_size,
            checksum=checksum,
            batch_id=batch["id"],
            user_id=batch["created_by"],
        )
        try:
            job_id = self._jobs.add_import_job(payload)
        except SQLAlchemyError as exc:
            self._mark_failed_quietly(
                batch["id"],
                BatchStats(
                    total_records=0,
                    successful_records=0,
                    failed_records=0,
                    failure_category="SYSTEM",
                    failure_reason="Import job could not be queued",
                ),
            )
            raise ImportInitiationError(f"Failed to queue import job: {exc}") from exc
        if self._logger:
            self._logger.info(
                "Initiated import batch %s for %s (%s bytes).", batch["id"], filename, file_size
            )
        return InitiateResult(batch_id=batch["id"], job_id=job_id, status=STATUS_PENDING)

    # Processing

    def process(
        self, payload: ImportJobPayload, options: Optional[ProcessOptions] = None
    ) -> ImportResult:
        options = options or ProcessOptions()
        chunk_size = max(1, options.chunk_size or self._settings.chunk_size)
        batch_id = payload.batch_id
        batch = self._batches.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Import batch {batch_id} not found in database")
        if batch["status"] in TERMINAL_STATUSES:
            if self._logger:
                self._logger.warning(
                    "Import batch %s is already %s; skipping.", batch_id, batch["status"]
                )
            return self._result_from_batch(batch)

        if not options.dry_run:
            self._batches.update_batch_status(batch_id, STATUS_PROCESSING)
        self._jobs.set_processing_status(batch_id)

        parsed: Optional[ParseResult] = None
        outcomes = RowOutcomes()
        tracker = MasterDataTracker()
        try:
            parsed = self._parser_factory().parse_with_filtering(payload.file_path)
            rows = parsed.numbered_rows()
            data_rows = parsed.actual_data_rows
            self._jobs.set_file_read_progress(batch_id, data_rows)
            self._check_early_sample(rows)

            for start in range(0, len(rows), chunk_size):
                chunk = rows[start : start + chunk_size]
                if options.dry_run:
                    chunk_outcomes = self._dry_run_chunk(chunk, outcomes.consecutive_failures)
                    outcomes.merge(chunk_outcomes)
                else:
                    chunk_outcomes, chunk_tracker = self._process_chunk(
                        batch_id, chunk, outcomes.consecutive_failures
                    )
                    outcomes.merge(chunk_outcomes)
                    tracker.merge(chunk_tracker.get_stats())
                self._jobs.set_batch_progress(batch_id, start + len(chunk), data_rows)
        except (
            OSError,
            BatchNotFoundError,
            EarlyValidationFailure,
            ConsecutiveFailureError,
            SQLAlchemyError,
        ) as exc:
            return self._handle_import_failure(batch_id, exc, parsed, outcomes, tracker, options)
        except Exception as exc:
            if self._logger:
                self._logger.exception("Unexpected failure while importing batch %s", batch_id)
            return self._handle_import_failure(batch_id, exc, parsed, outcomes, tracker, options)

        return self._finalize(batch_id, parsed, outcomes, tracker, options)

    def _check_early_sample(self, rows: Sequence[Tuple[int, Dict[str, str]]]) -> None:
        sample = rows[:EARLY_SAMPLE_SIZE]
        errors: List[RowError] = []
        failures = 0
        for row_number, raw in sample:
            result = self._validator.validate_row(raw, row_number)
            if not result.is_valid:
                failures += 1
                errors.extend(result.errors)
        if failures >= EARLY_SAMPLE_MAX_FAILURES:
            common = errors[0].message if errors else "unknown"
            raise EarlyValidationFailure(
                f"Early validation failed: {failures} errors in first {len(sample)} data rows. "
                f"Common error: {common}"
            )

    def _process_chunk(
        self,
        batch_id: int,
        chunk: Sequence[Tuple[int, Dict[str, str]]],
        consecutive_failures: int,
    ) -> Tuple[RowOutcomes, MasterDataTracker]:
        outcomes = RowOutcomes(consecutive_failures=consecutive_failures)
        chunk_tracker = MasterDataTracker()
        with self._engine.begin() as conn:
            self._apply_timeouts(conn)
            self._ensure_batch_exists(conn, batch_id)
            for row_number, raw in chunk:
                self._process_row(conn, batch_id, row_number, raw, outcomes, chunk_tracker)
        return outcomes, chunk_tracker

    def _process_row(
        self,
        conn,
        batch_id: int,
        row_number: int,
        raw: Dict[str, str],
        outcomes: RowOutcomes,
        chunk_tracker: MasterDataTracker,
    ) -> None:
        validation = self._validator.validate_row(raw, row_number)
        if not validation.is_valid or validation.validated_data is None:
            self._record_failure(outcomes, validation.errors, row_number)
            return
        row = validation.validated_data

        row_tracker = MasterDataTracker()
        savepoint = conn.begin_nested()
        try:
            if self._cases.check_for_duplicate_activity(conn, row):
                created = False
            else:
                case = self._cases.create_or_update_case(conn, row, row_tracker)
                created = self._cases.create_case_activity(
                    conn, row, case.case_id, batch_id, row_tracker
                )
        except MissingFieldsError as exc:
            savepoint.rollback()
            errors = self._errors.handle_missing_fields_error(str(exc), row_number, raw)
            self._record_failure(outcomes, errors, row_number)
            return
        except MasterDataError as exc:
            savepoint.rollback()
            error = self._errors.handle_master_data_error(exc, row_number, raw)
            self._record_failure(outcomes, [error], row_number)
            return
        except SQLAlchemyError as exc:
            if isinstance(exc, DBAPIError) and exc.connection_invalidated:
                raise
            savepoint.rollback()
            error = self._errors.handle_database_error(exc, row_number, raw)
            self._record_failure(outcomes, [error], row_number)
            return

        if not created:
            savepoint.rollback()
            self._record_duplicate(outcomes)
            return
        savepoint.commit()
        chunk_tracker.merge(row_tracker.get_stats())
        outcomes.successful += 1
        outcomes.consecutive_failures = 0

    def _dry_run_chunk(
        self,
        chunk: Sequence[Tuple[int, Dict[str, str]]],
        consecutive_failures: int,
    ) -> RowOutcomes:
        outcomes = RowOutcomes(consecutive_failures=consecutive_failures)
        with self._engine.connect() as conn:
            for row_number, raw in chunk:
                validation = self._validator.validate_row(raw, row_number)
                if not validation.is_valid or validation.validated_data is None:
                    self._record_failure(outcomes, validation.errors, row_number)
                    continue
                if self._cases.check_for_duplicate_activity(conn, validation.validated_data):
                    self._record_duplicate(outcomes)
                    continue
                outcomes.successful += 1
                outcomes.consecutive_failures = 0
        return outcomes

    def _record_failure(
        self, outcomes: RowOutcomes, errors: Sequence[RowError], row_number: int
    ) -> None:
        outcomes.failed += 1
        outcomes.errors.extend(errors)
        outcomes.consecutive_failures += 1
        if outcomes.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            raise ConsecutiveFailureError(
                f"Too many consecutive failures ({outcomes.consecutive_failures}). "
                f"Import stopped at row {row_number}."
            )

    def _record_duplicate(self, outcomes: RowOutcomes) -> None:
        outcomes.duplicates_skipped += 1
        outcomes.consecutive_failures = 0

    def _apply_timeouts(self, conn) -> None:
        if conn.dialect.name != "postgresql":
            return
        conn.exec_driver_sql(
            f"SET LOCAL statement_timeout = {int(self._settings.statement_timeout_ms)}"
        )
        conn.exec_driver_sql(f"SET LOCAL lock_timeout = {int(self._settings.lock_timeout_ms)}")

    def _ensure_batch_exists(self, conn, batch_id: int) -> None:
        batches = self._tables["import_batches"]
        found = conn.execute(select(batches.c.id).where(batches.c.id == batch_id)).first()
        if found is None:
            raise BatchNotFoundError(f"Import batch {batch_id} not found in database")

    # Finalization

    def _finalize(
        self,
        batch_id: int,
        parsed: ParseResult,
        outcomes: RowOutcomes,
        tracker: MasterDataTracker,
        options: ProcessOptions,
    ) -> ImportResult:
        data_rows = parsed.actual_data_rows
        status, category, reason = determine_final_status(
            data_rows, outcomes.successful, outcomes.failed, outcomes.duplicates_skipped
        )
        result = ImportResult(
            batch_id=batch_id,
            status=status,
            total_records=parsed.total_rows_parsed,
            actual_data_rows=data_rows,
            successful_records=outcomes.successful,
            failed_records=outcomes.failed,
            duplicates_skipped=outcomes.duplicates_skipped,
            empty_rows_skipped=parsed.empty_row_stats.total_empty_rows,
            errors=list(outcomes.errors),
            failure_category=category,
            failure_reason=reason,
            master_data=tracker.get_stats().as_dict(),
            dry_run=options.dry_run,
        )
        details = {
            "failureCategory": category,
            "failureReason": reason,
            "truncated": parsed.truncated,
            "emptyRowStats": parsed.empty_row_stats.as_dict(),
        }
        if options.dry_run:
            self._jobs.set_completion_status(batch_id, status, result.stats_dict(), details)
            return result

        self._batches.update_batch_with_stats(batch_id, status, self._batch_stats(result))
        self._record_errors_quietly(batch_id, result.errors)
        self._jobs.set_completion_status(batch_id, status, result.stats_dict(), details)
        if self._logger:
            self._logger.info(
                "Import batch %s %s: %s imported, %s failed, %s duplicates, %s empty rows.",
                batch_id,
                status,
                result.successful_records,
                result.failed_records,
                result.duplicates_skipped,
                result.empty_rows_skipped,
            )
        return self._verify(result)

    def _verify(self, result: ImportResult) -> ImportResult:
        """Compare persisted activities with the computed successes; mismatches fail the batch."""
        try:
            persisted = self._batches.count_batch_activities(result.batch_id)
        except SQLAlchemyError as exc:
            reason = f"Verification could not be completed: {exc}"
            return self._fail_verification(result, reason, persisted=None)
        if persisted == result.successful_records:
            return replace(result, verified=True)
        reason = (
            "Verification mismatch: computed successfulRecords="
            f"{result.successful_records} but persisted caseActivity rows={persisted}"
        )
        return self._fail_verification(result, reason, persisted=persisted)

    def _fail_verification(
        self, result: ImportResult, reason: str, *, persisted: Optional[int]
    ) -> ImportResult:
        if self._logger:
            self._logger.error("Import batch %s failed verification: %s", result.batch_id, reason)
        failed = replace(
            result,
            status=STATUS_FAILED,
            failure_category=CATEGORY_VERIFICATION_MISMATCH,
            failure_reason=reason,
        )
        self._mark_failed_quietly(result.batch_id, self._batch_stats(failed))
        if persisted is None:
            self._jobs.set_failure_status(
                result.batch_id,
                f"Import verification failed: {reason}",
                details={"failureCategory": CATEGORY_VERIFICATION_MISMATCH, "failureReason": reason},
            )
        else:
            self._jobs.set_verification_failure_status(
                result.batch_id, result.successful_records, persisted, failed.stats_dict()
            )
        return failed

    def _handle_import_failure(
        self,
        batch_id: int,
        error: BaseException,
        parsed: Optional[ParseResult],
        outcomes: RowOutcomes,
        tracker: MasterDataTracker,
        options: ProcessOptions,
    ) -> ImportResult:
        message = self._errors.format_user_friendly_error(error)
        category = self._errors.categorize_error(error)
        if self._logger:
            self._logger.warning("Import batch %s failed: %s", batch_id, scrub_log_message(str(error)))

        total = parsed.total_rows_parsed if parsed else 0
        data_rows = parsed.actual_data_rows if parsed else 0
        empty = parsed.empty_row_stats.total_empty_rows if parsed else 0
        failed = max(outcomes.failed, data_rows - outcomes.successful - outcomes.duplicates_skipped)
        errors = list(outcomes.errors)
        errors.append(
            RowError(
                kind=_abort_kind(error),
                row_number=0,
                message=str(error),
                suggestion=message,
            )
        )
        result = ImportResult(
            batch_id=batch_id,
            status=STATUS_FAILED,
            total_records=total,
            actual_data_rows=data_rows,
            successful_records=outcomes.successful,
            failed_records=failed,
            duplicates_skipped=outcomes.duplicates_skipped,
            empty_rows_skipped=empty,
            errors=errors,
            failure_category=category.value.upper(),
            failure_reason=message,
            master_data=tracker.get_stats().as_dict(),
            dry_run=options.dry_run,
        )
        if not options.dry_run:
            self._mark_failed_quietly(batch_id, self._batch_stats(result))
            self._record_errors_quietly(batch_id, errors)
        self._jobs.set_failure_status(
            batch_id,
            message,
            details={
                "failureCategory": result.failure_category,
                "failureReason": message,
                "error": str(error),
                "sampleErrors": [item.as_dict() for item in errors[:5]],
                "stats": result.stats_dict(),
            },
        )
        return result

    def _batch_stats(self, result: ImportResult) -> BatchStats:
        return BatchStats(
            total_records=result.total_records,
            successful_records=result.successful_records,
            failed_records=result.failed_records,
            empty_rows_skipped=result.empty_rows_skipped,
            duplicates_skipped=result.duplicates_skipped,
            error_logs=[error.as_dict() for error in result.errors],
            failure_category=result.failure_category,
            failure_reason=result.failure_reason,
        )

    def _mark_failed_quietly(self, batch_id: int, stats: BatchStats) -> None:
        try:
            self._batches.update_batch_with_stats(batch_id, STATUS_FAILED, stats)
        except (SQLAlchemyError, BatchNotFoundError) as exc:
            if self._logger:
                self._logger.error(
                    "Could not mark import batch %s failed: %s", batch_id, scrub_log_message(str(exc))
                )

    def _record_errors_quietly(self, batch_id: int, errors: Sequence[RowError]) -> None:
        try:
            self._batches.record_row_errors(batch_id, errors)
        except SQLAlchemyError as exc:
            if self._logger:
                self._logger.error(
                    "Could not store %s row errors for batch %s: %s", len(errors), batch_id, exc
                )

    def _result_from_batch(self, batch: Dict[str, Any]) -> ImportResult:
        total = batch["total_records"] or 0
        empty = batch["empty_rows_skipped"] or 0
        return ImportResult(
            batch_id=batch["id"],
            status=batch["status"],
            total_records=total,
            actual_data_rows=max(0, total - empty),
            successful_records=batch["successful_records"] or 0,
            failed_records=batch["failed_records"] or 0,
            duplicates_skipped=batch["duplicates_skipped"] or 0,
            empty_rows_skipped=empty,
            failure_category=batch["failure_category"],
            failure_reason=batch["failure_reason"],
        )

    # Queries

    def get_status(self, batch_id: int) -> Optional[Dict[str, Any]]:
        return self._batches.get_import_status(batch_id)

    def get_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self._batches.get_import_history(limit)

    def get_errors(
        self,
        batch_id: int,
        *,
        page: int = 1,
        limit: int = 50,
        error_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        if self._batches.get_batch(batch_id) is None:
            raise BatchNotFoundError(f"Import batch {batch_id} not found in database")
        return self._batches.get_batch_errors(
            batch_id, page=page, limit=limit, error_type=error_type
        )

    def verify_batch(self, batch_id: int) -> Dict[str, Any]:
        return self._batches.verify_batch_integrity(batch_id)


def _abort_kind(error: BaseException) -> ErrorKind:
    if isinstance(error, (EarlyValidationFailure, ConsecutiveFailureError)):
        return ErrorKind.EARLY_FAILURE
    if isinstance(error, SQLAlchemyError):
        return ErrorKind.DATABASE
    return ErrorKind.SYSTEM


