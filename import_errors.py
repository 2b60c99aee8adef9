from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field as dc_field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError

from case_return_schema import MAX_PARTY_COUNT, MIN_ACTIVITY_YEAR, MIN_FILED_YEAR, PARTY_COUNT_FIELDS
from import_logging import safe_row_sample, scrub_log_message

COUNT_FIELDS = set(PARTY_COUNT_FIELDS) | {"applicant_witness", "defendant_witness", "custody"}
GENERIC_FAILURE_MESSAGE = "Import failed due to system error. Please check your data and try again."
_MISSING_FIELDS_PATTERN = re.compile(r"Missing required fields:\s*(.+)")


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation_error"
    MISSING_FIELDS = "missing_fields_error"
    DATE_VALIDATION = "date_validation_error"
    DATA_FORMAT = "data_format_error"
    DATABASE = "database_error"
    CASE_CREATE = "case_create_error"
    FOREIGN_KEY = "foreign_key_error"
    DUPLICATE = "duplicate_error"
    CONNECTION = "connection_error"
    SYSTEM = "system_error"
    EARLY_FAILURE = "early_failure"


class ErrorCategory(str, enum.Enum):
    VALIDATION = "validation"
    DATABASE = "database"
    BUSINESS = "business"
    SYSTEM = "system"


@dataclass(frozen=True)
class RowError:
    kind: ErrorKind
    row_number: int
    message: str
    field: Optional[str] = None
    suggestion: Optional[str] = None
    raw_value: Optional[str] = None
    raw_data: Dict[str, Any] = dc_field(default_factory=dict)

    @property
    def error_type(self) -> str:
        return self.kind.value

    def as_dict(self) -> Dict[str, Any]:
        return {
            "rowNumber": self.row_number,
            "errorType": self.kind.value,
            "errorMessage": self.message,
            "field": self.field,
            "suggestion": self.suggestion,
            "rawValue": self.raw_value,
        }


class CsvImportError(RuntimeError):
    """Base class for failures raised by the CSV import pipeline."""


class DuplicateImportError(CsvImportError):
    """Raised when a file with the same checksum was imported before."""

    def __init__(self, batch_id: int, status: Optional[str] = None) -> None:
        self.batch_id = batch_id
        self.status = status
        super().__init__(f"File has already been imported previously. Batch ID: {batch_id}")


class ImportInitiationError(CsvImportError):
    """Raised when an import cannot be registered or queued."""


class BatchNotFoundError(CsvImportError):
    """Raised when an import batch row does not exist."""


class EarlyValidationFailure(CsvImportError):
    """Raised when the sampled leading rows of a file mostly fail validation."""


class ConsecutiveFailureError(CsvImportError):
    """Raised when too many rows in a row fail during processing."""


class MissingFieldsError(ValueError):
    """Raised when a row lacks fields required to build a case or activity."""

    def __init__(self, fields: Sequence[str]) -> None:
        self.fields = list(fields)
        super().__init__(f"Missing required fields: {', '.join(self.fields)}")


class MasterDataError(ValueError):
    """Raised when a court, judge or case type name fails validation."""


class UploadValidationError(ValueError):
    """Raised when an uploaded file or its CSV structure is unusable."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class ImportErrorHandler:
    """Turns validation, persistence and system failures into ``RowError`` records.

    Also owns the run-level wording shown to operators when a whole import
    fails, and the coarse category used when reporting that failure.
    """

    def __init__(self, *, logger: Optional[Any] = None) -> None:
        self._logger = logger

    def handle_validation_error(
        self,
        issues: Iterable[Mapping[str, Any]],
        row_number: int,
        raw_row: Optional[Mapping[str, Any]] = None,
    ) -> List[RowError]:
        raw_row = raw_row or {}
        errors: List[RowError] = []
        for issue in issues:
            issue_type = str(issue.get("type") or "")
            ctx = issue.get("ctx") or {}
            field_name = self._field_from_issue(issue)
            raw_value = raw_row.get(field_name)
            if issue_type == "missing":
                message = f"{field_name} is required but missing"
                suggestion = f"Please provide a value for {field_name}"
            else:
                message = f"{field_name}: {issue.get('msg')}"
                suggestion = self.suggestion_for(field_name, issue_type, raw_value, ctx)
            errors.append(
                RowError(
                    kind=self._kind_for(field_name, message),
                    row_number=row_number,
                    message=message,
                    field=field_name,
                    suggestion=suggestion,
                    raw_value=None if raw_value is None else str(raw_value),
                    raw_data=dict(raw_row),
                )
            )
        return errors

    def handle_missing_fields_error(
        self,
        message: str,
        row_number: int,
        raw_row: Optional[Mapping[str, Any]] = None,
    ) -> List[RowError]:
        match = _MISSING_FIELDS_PATTERN.search(message or "")
        if not match:
            return [
                RowError(
                    kind=ErrorKind.MISSING_FIELDS,
                    row_number=row_number,
                    message=message,
                    suggestion="Ensure all required fields are filled in",
                    raw_data=dict(raw_row or {}),
                )
            ]
        fields = [name.strip() for name in match.group(1).split(",") if name.strip()]
        return [
            RowError(
                kind=ErrorKind.MISSING_FIELDS,
                row_number=row_number,
                message=f"{name} is required but missing",
                field=name,
                suggestion=f"Please provide a value for {name}",
                raw_data=dict(raw_row or {}),
            )
            for name in fields
        ]

    def handle_master_data_error(
        self,
        error: MasterDataError,
        row_number: int,
        raw_row: Optional[Mapping[str, Any]] = None,
    ) -> RowError:
        return RowError(
            kind=ErrorKind.DATA_FORMAT,
            row_number=row_number,
            message=str(error),
            suggestion=(
                "Use letters, spaces and common punctuation only in court, judge "
                "and case type names"
            ),
            raw_data=dict(raw_row or {}),
        )

    def handle_database_error(
        self,
        error: BaseException,
        row_number: int,
        raw_row: Optional[Mapping[str, Any]] = None,
    ) -> RowError:
        detail = str(getattr(error, "orig", None) or error)
        detail_lower = detail.lower()
        statement = str(getattr(error, "statement", "") or "").strip().lower()
        if self._logger:
            self._logger.warning(
                "Database error on row %s (%s): %s",
                row_number,
                safe_row_sample(raw_row or {}),
                scrub_log_message(detail),
            )

        if statement.startswith("insert into cases"):
            kind = ErrorKind.CASE_CREATE
            message = "Failed to create case record"
            suggestion = "Check case identification fields (caseid_type, caseid_no) and court details"
        elif "foreign key" in detail_lower:
            kind = ErrorKind.FOREIGN_KEY
            message = "Referenced record does not exist"
            suggestion = "Check that court, judge and case type values are valid"
        elif "unique" in detail_lower or "duplicate key" in detail_lower:
            kind = ErrorKind.DUPLICATE
            message = "Record already exists"
            suggestion = "This record appears to be a duplicate of an existing entry"
        elif self._is_connection_error(error, detail_lower):
            kind = ErrorKind.CONNECTION
            message = "Database connection error"
            suggestion = "Temporary database issue; retry the import later"
        else:
            kind = ErrorKind.DATABASE
            message = "Database operation failed"
            suggestion = "Check the row data and try again"
        return RowError(
            kind=kind,
            row_number=row_number,
            message=message,
            suggestion=suggestion,
            raw_data=dict(raw_row or {}),
        )

    def handle_system_error(
        self,
        error: BaseException,
        row_number: int,
        raw_row: Optional[Mapping[str, Any]] = None,
    ) -> RowError:
        if self._logger:
            self._logger.error("Unexpected error on row %s: %s", row_number, error)
        return RowError(
            kind=ErrorKind.SYSTEM,
            row_number=row_number,
            message=f"Unexpected error: {error}",
            suggestion="Contact support if this error persists",
            raw_data=dict(raw_row or {}),
        )

    def suggestion_for(
        self,
        field_name: str,
        issue_type: str,
        raw_value: Any = None,
        ctx: Optional[Mapping[str, Any]] = None,
    ) -> str:
        ctx = ctx or {}
        found = "" if raw_value is None else raw_value
        if issue_type == "invalid_date":
            return f"Check that the day exists in the given month and year ({ctx.get('detail', '')})"
        if field_name.endswith("yyyy"):
            if issue_type == "less_than_equal":
                return f"Year must be {ctx.get('le')} or earlier. Found: {found}"
            if issue_type == "greater_than_equal":
                minimum = MIN_FILED_YEAR if field_name == "filed_yyyy" else MIN_ACTIVITY_YEAR
                return f"Year must be {minimum} or later. Found: {found}"
            return f"Year must be a 4-digit number. Found: {found}"
        if field_name.endswith("_dd"):
            return f"Day must be between 1-31. Found: {found}"
        if field_name.endswith("_mon"):
            return f"Month should be 3-letter abbreviation (e.g., Jan, Feb). Found: {found}"
        if field_name in COUNT_FIELDS:
            if issue_type == "greater_than_equal":
                return f"{field_name} must be 0 or greater"
            if issue_type == "less_than_equal":
                return f"{field_name} exceeds maximum allowed value ({MAX_PARTY_COUNT})"
            return f"{field_name} must be a valid number"
        if field_name == "legalrep":
            return 'legalrep must be either "Yes" or "No" (case sensitive)'
        if issue_type == "string_too_long":
            return f"{field_name} is too long (maximum {ctx.get('max_length')} characters)"
        if issue_type == "string_too_short":
            return f"{field_name} cannot be empty"
        if issue_type == "string_type":
            return f"{field_name} must be properly formatted text"
        return f"Check the format and value for {field_name}"

    def format_user_friendly_error(self, error: Any) -> str:
        message = str(error or "")
        if "Early validation failed" in message:
            return (
                "Import failed: Multiple validation errors detected in the first few rows. "
                "Please check your CSV data format."
            )
        if "Too many consecutive" in message:
            return (
                "Import failed: Too many consecutive validation errors detected. "
                "Please check your CSV data format."
            )
        if "Invalid date" in message:
            return "Import failed: Date format validation errors. Please check date fields."
        if "Missing required fields" in message:
            return "Import failed: Required fields are missing. Please check your CSV data."
        if "already been imported" in message:
            return message
        if "Connection" in message or "ECONNREFUSED" in message:
            return "Import failed: Database connection error. Please try again later."
        if "timeout" in message.lower():
            return "Import failed: Operation timed out. Please try again with a smaller file."
        return GENERIC_FAILURE_MESSAGE

    def categorize_error(self, error: Any) -> ErrorCategory:
        if isinstance(
            error,
            (MissingFieldsError, MasterDataError, EarlyValidationFailure, ConsecutiveFailureError),
        ):
            return ErrorCategory.VALIDATION
        if isinstance(error, SQLAlchemyError):
            return ErrorCategory.DATABASE
        if isinstance(error, DuplicateImportError):
            return ErrorCategory.BUSINESS
        message = str(error or "").lower()
        if any(token in message for token in ("validation", "invalid", "required", "missing")):
            return ErrorCategory.VALIDATION
        if any(
            token in message
            for token in ("database", "connection", "constraint", "foreign key", "unique")
        ):
            return ErrorCategory.DATABASE
        if any(token in message for token in ("duplicate", "already exists", "business rule")):
            return ErrorCategory.BUSINESS
        return ErrorCategory.SYSTEM

    def _field_from_issue(self, issue: Mapping[str, Any]) -> str:
        if issue.get("type") == "invalid_date":
            label = (issue.get("ctx") or {}).get("label") or "activity"
            return f"{label}_date"
        loc = issue.get("loc") or ()
        parts = [str(part) for part in loc]
        return ".".join(parts) if parts else "general"

    def _kind_for(self, field_name: str, message: str) -> ErrorKind:
        lowered = field_name.lower()
        if any(token in lowered for token in ("date", "filed", "yyyy", "dd", "mon")):
            return ErrorKind.DATE_VALIDATION
        if "required but missing" in message:
            return ErrorKind.MISSING_FIELDS
        if "Invalid" in message:
            return ErrorKind.DATA_FORMAT
        return ErrorKind.VALIDATION

    def _is_connection_error(self, error: BaseException, detail_lower: str) -> bool:
        if isinstance(error, DBAPIError) and error.connection_invalidated:
            return True
        if isinstance(error, (OperationalError, InterfaceError)):
            return True
        return "connection" in detail_lower or "econnrefused" in detail_lower
