from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError

from case_return_schema import CaseReturnRow
from import_errors import ErrorKind, ImportErrorHandler, RowError

MAX_CONSECUTIVE_FAILURES = 10


@dataclass(frozen=True)
class RowValidationResult:
    row_number: int
    is_valid: bool
    errors: List[RowError] = field(default_factory=list)
    validated_data: Optional[CaseReturnRow] = None


@dataclass
class BatchValidationResult:
    valid_rows: List[Tuple[int, CaseReturnRow]] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)
    failed_rows: int = 0
    stopped_early: bool = False

    @property
    def total_valid(self) -> int:
        return len(self.valid_rows)


class CsvRowValidator:
    def __init__(
        self,
        error_handler: ImportErrorHandler,
        *,
        logger: Optional[Any] = None,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
    ) -> None:
        self._error_handler = error_handler
        self._logger = logger
        self._max_consecutive_failures = max_consecutive_failures

    def validate_row(self, row: Mapping[str, Any], row_number: int) -> RowValidationResult:
        try:
            validated = CaseReturnRow.model_validate(dict(row))
        except ValidationError as exc:
            errors = self._error_handler.handle_validation_error(exc.errors(), row_number, row)
            return RowValidationResult(row_number=row_number, is_valid=False, errors=errors)
        return RowValidationResult(row_number=row_number, is_valid=True, validated_data=validated)

    def validate_batch(
        self, rows: Sequence[Tuple[int, Mapping[str, Any]]]
    ) -> BatchValidationResult:
        """Validate ``(row_number, row)`` pairs, stopping after a run of failures.

        A success resets the failure run. When the run reaches the configured
        limit a synthetic ``early_failure`` error is appended and the remaining
        rows are left unvalidated.
        """
        result = BatchValidationResult()
        consecutive_failures = 0
        for row_number, row in rows:
            try:
                outcome = self.validate_row(row, row_number)
            except Exception as exc:
                result.errors.append(self._error_handler.handle_system_error(exc, row_number, row))
                result.failed_rows += 1
                consecutive_failures += 1
            else:
                if outcome.is_valid and outcome.validated_data is not None:
                    result.valid_rows.append((row_number, outcome.validated_data))
                    consecutive_failures = 0
                else:
                    result.errors.extend(outcome.errors)
                    result.failed_rows += 1
                    consecutive_failures += 1

            if consecutive_failures >= self._max_consecutive_failures:
                result.errors.append(
                    RowError(
                        kind=ErrorKind.EARLY_FAILURE,
                        row_number=0,
                        message=(
                            "Too many consecutive validation errors "
                            f"({self._max_consecutive_failures}). Stopping batch validation."
                        ),
                        suggestion="Check the CSV format and column values before re-uploading",
                    )
                )
                result.stopped_early = True
                if self._logger:
                    self._logger.warning(
                        "Batch validation stopped at row %s after %s consecutive failures.",
                        row_number,
                        consecutive_failures,
                    )
                break
        return result
