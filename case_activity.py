from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import Table, insert, select, update

from case_return_schema import CaseReturnRow
from import_errors import MissingFieldsError
from master_data import (
    MasterDataNormalizer,
    MasterDataTracker,
    derive_court_type_from_case_id,
    determine_custody_status,
    normalize_judge_name,
)

CASE_REQUIRED_FIELDS = (
    "caseid_type",
    "caseid_no",
    "filed_dd",
    "filed_mon",
    "filed_yyyy",
    "court",
    "case_type",
)
ACTIVITY_REQUIRED_FIELDS = ("date_dd", "date_mon", "date_yyyy", "judge_1")
DEFAULT_ACTIVITY_TYPE = "Unknown"
DEFAULT_OUTCOME = "Pending"


@dataclass(frozen=True)
class CaseUpsertResult:
    case_id: int
    is_new_case: bool
    court_name: str


def _missing_fields(row: CaseReturnRow, names) -> List[str]:
    return [name for name in names if getattr(row, name, None) in (None, "")]


def build_parties(row: CaseReturnRow) -> Dict[str, Any]:
    applicants = {
        "maleCount": row.male_applicant,
        "femaleCount": row.female_applicant,
        "organizationCount": row.organization_applicant,
    }
    defendants = {
        "maleCount": row.male_defendant,
        "femaleCount": row.female_defendant,
        "organizationCount": row.organization_defendant,
    }
    applicants["total"] = sum(applicants.values())
    defendants["total"] = sum(defendants.values())
    return {"applicants": applicants, "defendants": defendants}


class CaseActivityService:
    """Writes cases, judge assignments and case activities for validated rows.

    Every method works on the caller's connection so all writes for a row land
    in the caller's transaction.
    """

    def __init__(
        self,
        tables: Dict[str, Table],
        normalizer: MasterDataNormalizer,
        *,
        logger: Optional[Any] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._tables = tables
        self._normalizer = normalizer
        self._logger = logger
        self._now = now_fn or datetime.utcnow

    def create_or_update_case(
        self,
        conn,
        row: CaseReturnRow,
        tracker: Optional[MasterDataTracker] = None,
    ) -> CaseUpsertResult:
        missing = _missing_fields(row, CASE_REQUIRED_FIELDS)
        if missing:
            raise MissingFieldsError(missing)

        filed_date = row.filed_date
        case_type = self._normalizer.extract_and_normalize_case_type(
            conn, row.case_type, tracker=tracker
        )
        court = self._normalizer.extract_and_normalize_court(
            conn,
            row.court,
            court_type=derive_court_type_from_case_id(row.caseid_type),
            tracker=tracker,
        )
        original_court_id = None
        if row.is_appeal:
            original_court = self._normalizer.extract_and_normalize_court(
                conn, row.original_court, tracker=tracker
            )
            original_court_id = original_court.id

        cases = self._tables["cases"]
        existing = self.find_case(conn, row.case_number, court.canonical_name)
        if existing is not None:
            last_activity = existing["last_activity_date"]
            activity_date = row.activity_date
            if last_activity is None or activity_date > last_activity:
                last_activity = activity_date
            conn.execute(
                update(cases)
                .where(cases.c.id == existing["id"])
                .values(
                    total_activities=cases.c.total_activities + 1,
                    has_legal_representation=row.has_legal_representation,
                    last_activity_date=last_activity,
                    updated_at=self._now(),
                )
            )
            return CaseUpsertResult(int(existing["id"]), False, court.canonical_name)

        result = conn.execute(
            insert(cases).values(
                case_number=row.case_number,
                court_name=court.canonical_name,
                court_id=court.id,
                original_court_id=original_court_id,
                case_type_id=case_type.id,
                caseid_type=row.caseid_type,
                caseid_no=row.caseid_no,
                filed_date=filed_date,
                original_case_number=row.original_case_number,
                original_year=row.original_year,
                parties=build_parties(row),
                male_applicant=row.male_applicant,
                female_applicant=row.female_applicant,
                organization_applicant=row.organization_applicant,
                male_defendant=row.male_defendant,
                female_defendant=row.female_defendant,
                organization_defendant=row.organization_defendant,
                status="ACTIVE",
                has_legal_representation=row.has_legal_representation,
                last_activity_date=row.activity_date,
                total_activities=1,
            )
        )
        case_id = int(result.inserted_primary_key[0])
        self._assign_judges(conn, case_id, row, tracker)
        if self._logger:
            self._logger.info("Created case %s at %s.", row.case_number, court.canonical_name)
        return CaseUpsertResult(case_id, True, court.canonical_name)

    def create_case_activity(
        self,
        conn,
        row: CaseReturnRow,
        case_id: int,
        batch_id: int,
        tracker: Optional[MasterDataTracker] = None,
    ) -> bool:
        missing = _missing_fields(row, ACTIVITY_REQUIRED_FIELDS)
        if missing:
            raise MissingFieldsError(missing)

        activity_date = row.activity_date
        activity_type = row.comingfor or DEFAULT_ACTIVITY_TYPE
        primary_judge = self._normalizer.extract_and_normalize_judge(
            conn, row.judge_1, tracker=tracker
        )
        if self.activity_exists(conn, case_id, activity_date, activity_type, primary_judge.id):
            return False

        conn.execute(
            insert(self._tables["case_activities"]).values(
                case_id=case_id,
                activity_date=activity_date,
                activity_type=activity_type,
                outcome=row.outcome or DEFAULT_OUTCOME,
                reason_for_adjournment=row.reason_adj,
                next_hearing_date=row.next_hearing_date,
                primary_judge_id=primary_judge.id,
                judges=[normalize_judge_name(name) for name in row.judges],
                has_legal_representation=row.has_legal_representation,
                applicant_witnesses=row.applicant_witness,
                defendant_witnesses=row.defendant_witness,
                custody_status=determine_custody_status(row.custody),
                custody_count=row.custody,
                details=row.other_details,
                import_batch_id=batch_id,
            )
        )
        return True

    def check_for_duplicate_activity(self, conn, row: CaseReturnRow) -> bool:
        """Return True when the row's activity already exists. Never writes."""
        court = self._normalizer.find_court(conn, row.court)
        if court is None:
            return False
        case = self.find_case(conn, row.case_number, court.canonical_name)
        if case is None:
            return False
        judge = self._normalizer.find_judge(conn, row.judge_1)
        if judge is None:
            return False
        return self.activity_exists(
            conn,
            int(case["id"]),
            row.activity_date,
            row.comingfor or DEFAULT_ACTIVITY_TYPE,
            judge.id,
        )

    def find_case(self, conn, case_number: str, court_name: str) -> Optional[Dict[str, Any]]:
        cases = self._tables["cases"]
        row = (
            conn.execute(
                select(cases.c.id, cases.c.last_activity_date, cases.c.total_activities).where(
                    cases.c.case_number == case_number,
                    cases.c.court_name == court_name,
                )
            )
            .mappings()
            .first()
        )
        return dict(row) if row else None

    def activity_exists(
        self,
        conn,
        case_id: int,
        activity_date: date,
        activity_type: str,
        primary_judge_id: int,
    ) -> bool:
        activities = self._tables["case_activities"]
        existing = conn.execute(
            select(activities.c.id)
            .where(
                activities.c.case_id == case_id,
                activities.c.activity_date == activity_date,
                activities.c.activity_type == activity_type,
                activities.c.primary_judge_id == primary_judge_id,
            )
            .limit(1)
        ).first()
        return existing is not None

    def _assign_judges(
        self,
        conn,
        case_id: int,
        row: CaseReturnRow,
        tracker: Optional[MasterDataTracker],
    ) -> None:
        assignments: List[Dict[str, Any]] = []
        seen = set()
        for index, name in enumerate(row.judges):
            judge = self._normalizer.extract_and_normalize_judge(conn, name, tracker=tracker)
            if judge.id in seen:
                continue
            seen.add(judge.id)
            assignments.append(
                {"case_id": case_id, "judge_id": judge.id, "is_primary": index == 0}
            )
        if assignments:
            conn.execute(insert(self._tables["case_judge_assignments"]), assignments)
