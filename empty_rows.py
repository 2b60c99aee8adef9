from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

DEFAULT_EMPTY_VALUES: Tuple[str, ...] = ("", "N/A", "NULL", "null", "-", "n/a")

CRITICAL_FIELDS: Tuple[str, ...] = (
    "date_dd",
    "date_mon",
    "date_yyyy",
    "caseid_type",
    "caseid_no",
    "filed_dd",
    "filed_mon",
    "filed_yyyy",
    "court",
    "case_type",
    "judge_1",
)


@dataclass(frozen=True)
class EmptyRowConfig:
    trim_whitespace: bool = True
    treat_null_as_empty: bool = True
    treat_undefined_as_empty: bool = True
    custom_empty_values: Tuple[str, ...] = DEFAULT_EMPTY_VALUES
    treat_missing_critical_fields_as_empty: bool = True


@dataclass
class EmptyRowStats:
    total_empty_rows: int = 0
    empty_row_numbers: List[int] = field(default_factory=list)
    critical_fields_missing_rows: int = 0
    critical_fields_missing_row_numbers: List[int] = field(default_factory=list)

    def copy(self) -> "EmptyRowStats":
        return EmptyRowStats(
            total_empty_rows=self.total_empty_rows,
            empty_row_numbers=list(self.empty_row_numbers),
            critical_fields_missing_rows=self.critical_fields_missing_rows,
            critical_fields_missing_row_numbers=list(self.critical_fields_missing_row_numbers),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "totalEmptyRows": self.total_empty_rows,
            "emptyRowNumbers": list(self.empty_row_numbers),
            "criticalFieldsMissingRows": self.critical_fields_missing_rows,
            "criticalFieldsMissingRowNumbers": list(self.critical_fields_missing_row_numbers),
        }


class EmptyRowDetector:
    """Classifies CSV rows as empty and keeps running statistics for one parse pass.

    A row is empty when it has no cells or every cell is empty under the
    configured rules. With ``treat_missing_critical_fields_as_empty`` a row that
    carries a critical identifying column holding only a sentinel value
    (``N/A``, ``-`` ...) is treated as empty as well. Its row number goes to the
    critical-field statistics instead of ``empty_row_numbers``.

    Instantiate one detector per file, or call ``reset_stats`` between files.
    """

    def __init__(
        self,
        config: Optional[EmptyRowConfig] = None,
        *,
        critical_fields: Sequence[str] = CRITICAL_FIELDS,
    ) -> None:
        self._config = config or EmptyRowConfig()
        self._critical_fields = tuple(critical_fields)
        self._stats = EmptyRowStats()

    @property
    def config(self) -> EmptyRowConfig:
        return self._config

    def is_empty_field(self, value: Any) -> bool:
        if value is None:
            return self._config.treat_null_as_empty or self._config.treat_undefined_as_empty
        text = str(value)
        if self._config.trim_whitespace:
            text = text.strip()
        return text in self._config.custom_empty_values

    def is_empty_row(self, row: Mapping[str, Any], row_number: Optional[int] = None) -> bool:
        values = list(row.values()) if row else []
        if not values or all(self.is_empty_field(value) for value in values):
            self._record_empty(row_number)
            return True
        if self._config.treat_missing_critical_fields_as_empty and self._has_blank_critical_field(row):
            self._stats.critical_fields_missing_rows += 1
            if row_number is not None:
                self._stats.critical_fields_missing_row_numbers.append(row_number)
            self._stats.total_empty_rows += 1
            return True
        return False

    def get_missing_critical_fields(self, row: Mapping[str, Any]) -> List[str]:
        return [name for name in self._critical_fields if self.is_empty_field(row.get(name))]

    def filter_empty_rows(self, rows: Sequence[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
        return [
            row
            for index, row in enumerate(rows, start=1)
            if not self.is_empty_row(row, index)
        ]

    def get_stats(self) -> EmptyRowStats:
        return self._stats.copy()

    def reset_stats(self) -> None:
        self._stats = EmptyRowStats()

    def update_config(self, **changes: Any) -> None:
        self._config = replace(self._config, **changes)

    def _has_blank_critical_field(self, row: Mapping[str, Any]) -> bool:
        # Only columns present in the row count; absent ones are a validation concern.
        return any(
            name in row and self.is_empty_field(row[name]) for name in self._critical_fields
        )

    def _record_empty(self, row_number: Optional[int]) -> None:
        self._stats.total_empty_rows += 1
        if row_number is not None:
            self._stats.empty_row_numbers.append(row_number)
