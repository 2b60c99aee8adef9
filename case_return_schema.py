from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_core import PydanticCustomError

MONTHS: Dict[str, int] = {
    "Jan": 1,
    "Feb": 2,
    "Mar": 3,
    "Apr": 4,
    "May": 5,
    "Jun": 6,
    "Jul": 7,
    "Aug": 8,
    "Sep": 9,
    "Oct": 10,
    "Nov": 11,
    "Dec": 12,
}

MIN_ACTIVITY_YEAR = 2015
MIN_FILED_YEAR = 1960
MAX_PARTY_COUNT = 999
JUDGE_FIELDS = tuple(f"judge_{index}" for index in range(1, 8))
PARTY_COUNT_FIELDS = (
    "male_applicant",
    "female_applicant",
    "organization_applicant",
    "male_defendant",
    "female_defendant",
    "organization_defendant",
)
REQUIRED_COLUMNS = (
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
    "comingfor",
    "outcome",
)
_BLANK_MARKERS = {"", "N/A", "n/a", "NULL", "null", "-"}


def canonical_month(value: str) -> Optional[str]:
    candidate = (value or "").strip()
    candidate = candidate[:1].upper() + candidate[1:].lower()
    return candidate if candidate in MONTHS else None


def create_date_from_parts(day: int, month: str, year: int) -> date:
    month_key = canonical_month(month)
    if month_key is None:
        raise ValueError(f"Invalid month: {month}")
    try:
        return date(int(year), MONTHS[month_key], int(day))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid date: {day}/{month}/{year}") from exc


def _count_field(default: int = 0) -> Any:
    return Field(default=default, ge=0, le=MAX_PARTY_COUNT)


class CaseReturnRow(BaseModel):
    """One validated row of the daily case-return extract."""

    model_config = ConfigDict(frozen=True, extra="ignore", str_strip_whitespace=True)

    # Activity date
    date_dd: int = Field(ge=1, le=31)
    date_mon: str = Field(min_length=3, max_length=3)
    date_yyyy: int = Field(ge=MIN_ACTIVITY_YEAR)

    # Case identification
    caseid_type: str = Field(min_length=1, max_length=20)
    caseid_no: str = Field(min_length=1, max_length=50)

    # Filing date
    filed_dd: int = Field(ge=1, le=31)
    filed_mon: str = Field(min_length=3, max_length=3)
    filed_yyyy: int = Field(ge=MIN_FILED_YEAR)

    # Appeal origin
    original_court: Optional[str] = Field(default=None, max_length=255)
    original_code: Optional[str] = Field(default=None, max_length=50)
    original_number: Optional[str] = Field(default=None, max_length=50)
    original_year: Optional[int] = Field(default=None, ge=1900)

    court: str = Field(min_length=1, max_length=255)
    case_type: str = Field(min_length=1, max_length=100)

    judge_1: str = Field(min_length=1, max_length=255)
    judge_2: Optional[str] = Field(default=None, max_length=255)
    judge_3: Optional[str] = Field(default=None, max_length=255)
    judge_4: Optional[str] = Field(default=None, max_length=255)
    judge_5: Optional[str] = Field(default=None, max_length=255)
    judge_6: Optional[str] = Field(default=None, max_length=255)
    judge_7: Optional[str] = Field(default=None, max_length=255)

    comingfor: str = Field(min_length=1, max_length=100)
    outcome: str = Field(min_length=1, max_length=100)
    reason_adj: Optional[str] = Field(default=None, max_length=255)

    next_dd: Optional[int] = Field(default=None, ge=1, le=31)
    next_mon: Optional[str] = Field(default=None, min_length=3, max_length=3)
    next_yyyy: Optional[int] = Field(default=None, ge=MIN_ACTIVITY_YEAR)

    male_applicant: int = _count_field()
    female_applicant: int = _count_field()
    organization_applicant: int = _count_field()
    male_defendant: int = _count_field()
    female_defendant: int = _count_field()
    organization_defendant: int = _count_field()

    legalrep: Literal["Yes", "No"] = "No"
    applicant_witness: int = _count_field()
    defendant_witness: int = _count_field()
    custody: int = _count_field()
    other_details: Optional[str] = Field(default=None, max_length=2000)

    @field_validator(
        "original_court",
        "original_code",
        "original_number",
        "original_year",
        "judge_2",
        "judge_3",
        "judge_4",
        "judge_5",
        "judge_6",
        "judge_7",
        "reason_adj",
        "next_dd",
        "next_mon",
        "next_yyyy",
        "other_details",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip() in _BLANK_MARKERS:
            return None
        return value

    @field_validator("date_mon", "filed_mon", "next_mon")
    @classmethod
    def known_month(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        month = canonical_month(value)
        if month is None:
            raise PydanticCustomError(
                "invalid_month", "Invalid month abbreviation: {value}", {"value": value}
            )
        return month

    @field_validator("date_yyyy", "filed_yyyy", "next_yyyy")
    @classmethod
    def not_in_future(cls, value: Optional[int]) -> Optional[int]:
        current_year = date.today().year
        if value is not None and value > current_year:
            raise PydanticCustomError(
                "less_than_equal",
                "Input should be less than or equal to {le}",
                {"le": current_year},
            )
        return value

    @model_validator(mode="after")
    def real_dates(self) -> "CaseReturnRow":
        for label, parts in (
            ("activity", (self.date_dd, self.date_mon, self.date_yyyy)),
            ("filed", (self.filed_dd, self.filed_mon, self.filed_yyyy)),
        ):
            try:
                create_date_from_parts(*parts)
            except ValueError as exc:
                raise PydanticCustomError(
                    "invalid_date",
                    "Invalid {label} date: {detail}",
                    {"label": label, "detail": str(exc)},
                ) from exc
        return self

    @property
    def case_number(self) -> str:
        return create_case_number(self.caseid_type, self.caseid_no)

    @property
    def activity_date(self) -> date:
        return create_date_from_parts(self.date_dd, self.date_mon, self.date_yyyy)

    @property
    def filed_date(self) -> date:
        return create_date_from_parts(self.filed_dd, self.filed_mon, self.filed_yyyy)

    @property
    def next_hearing_date(self) -> Optional[date]:
        if self.next_dd is None or self.next_mon is None or self.next_yyyy is None:
            return None
        try:
            return create_date_from_parts(self.next_dd, self.next_mon, self.next_yyyy)
        except ValueError:
            return None

    @property
    def judges(self) -> List[str]:
        names = [getattr(self, name) for name in JUDGE_FIELDS]
        return [name for name in names if name]

    @property
    def has_legal_representation(self) -> bool:
        return self.legalrep == "Yes"

    @property
    def is_appeal(self) -> bool:
        return bool(self.original_court)

    @property
    def original_case_number(self) -> Optional[str]:
        if not self.original_code and not self.original_number:
            return None
        parts = [part for part in (self.original_code, self.original_number) if part]
        if self.original_year:
            parts.append(str(self.original_year))
        return "/".join(parts)


def create_case_number(caseid_type: str, caseid_no: str) -> str:
    return f"{caseid_type}-{caseid_no}"
