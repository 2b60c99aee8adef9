from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import Table, func, insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from import_errors import MasterDataError

MAX_COURT_NAME_LENGTH = 255
MAX_JUDGE_NAME_LENGTH = 255
MAX_CASE_TYPE_LENGTH = 100
MAX_CASE_TYPE_CODE_LENGTH = 20
MAX_CODE_SUFFIX = 100
MAX_CREATE_ATTEMPTS = 3

COURT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-.,()'&]+$")
JUDGE_NAME_PATTERN = re.compile(r"^[a-zA-Z\s,.'\-]+$")
JUDGE_TITLE_PATTERN = re.compile(
    r"^(?:hon\.?|honourable|justice|judge|lady|mr\.?|mrs\.?|ms\.?)\s+", re.IGNORECASE
)
COURT_STOP_WORDS = {"court", "of", "the", "and", "for"}

CASE_TYPE_CODES: Dict[str, str] = {
    "Civil Suit": "CIVIL",
    "Civil Appeal": "APPEAL",
    "Civil Case Miscellaneous": "MISC",
    "Commercial Matters": "COMM",
    "Criminal Revision": "CRIM_REV",
    "Judicial Review": "JR",
    "Criminal Case": "CRIM",
    "Family Matters": "FAMILY",
    "Employment Dispute": "EMPLOY",
    "Constitutional Petition": "CONST",
    "Environmental Matters": "ENV",
    "Election Petition": "ELECT",
}

CASE_TYPE_DESCRIPTIONS: Dict[str, str] = {
    "Civil Suit": "General civil litigation matters between private parties",
    "Civil Appeal": "Appeals from lower court civil decisions",
    "Civil Case Miscellaneous": "Miscellaneous civil applications and motions",
    "Commercial Matters": "Commercial and business-related disputes",
    "Criminal Revision": "Review of criminal court decisions and sentences",
    "Judicial Review": "Administrative law and judicial review applications",
    "Criminal Case": "Criminal prosecution matters",
    "Family Matters": "Family law disputes including divorce, custody, and maintenance",
    "Employment Dispute": "Employment and labor-related disputes",
    "Constitutional Petition": "Constitutional law matters and fundamental rights cases",
    "Environmental Matters": "Environmental protection and natural resource cases",
    "Election Petition": "Election-related disputes and petitions",
}


class CourtType(str, enum.Enum):
    SC = "SC"
    HC = "HC"
    COA = "COA"
    ELRC = "ELRC"
    ELC = "ELC"
    MC = "MC"
    SCC = "SCC"
    KC = "KC"
    TC = "TC"


@dataclass(frozen=True)
class MasterDataRef:
    id: int
    canonical_name: str
    is_new: bool


@dataclass
class MasterDataStats:
    courts_created: int = 0
    courts_found: int = 0
    judges_created: int = 0
    judges_found: int = 0
    case_types_created: int = 0
    case_types_found: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "courtsCreated": self.courts_created,
            "courtsFound": self.courts_found,
            "judgesCreated": self.judges_created,
            "judgesFound": self.judges_found,
            "caseTypesCreated": self.case_types_created,
            "caseTypesFound": self.case_types_found,
        }


class MasterDataTracker:
    """Per-run counters of created versus reused master data."""

    def __init__(self) -> None:
        self._stats = MasterDataStats()

    def track_court(self, is_new: bool) -> None:
        if is_new:
            self._stats.courts_created += 1
        else:
            self._stats.courts_found += 1

    def track_judge(self, is_new: bool) -> None:
        if is_new:
            self._stats.judges_created += 1
        else:
            self._stats.judges_found += 1

    def track_case_type(self, is_new: bool) -> None:
        if is_new:
            self._stats.case_types_created += 1
        else:
            self._stats.case_types_found += 1

    def get_stats(self) -> MasterDataStats:
        return MasterDataStats(**vars(self._stats))

    def merge(self, stats: MasterDataStats) -> None:
        for name, value in vars(stats).items():
            setattr(self._stats, name, getattr(self._stats, name) + value)

    def reset(self) -> None:
        self._stats = MasterDataStats()


def _collapse_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", (value or "").strip())


_WORD_START_PATTERN = re.compile(r"^([^A-Za-z0-9]*)([a-z])")


def _title_case(value: str) -> str:
    return " ".join(
        _WORD_START_PATTERN.sub(lambda match: match.group(1) + match.group(2).upper(), word.lower())
        for word in value.split(" ")
        if word
    )


def normalize_court_name(name: str) -> str:
    cleaned = _collapse_whitespace(name)
    cleaned = re.sub(r"\.+$", "", cleaned).strip()
    return _title_case(cleaned)


def normalize_court_code(code: Optional[str]) -> Optional[str]:
    if not code or not code.strip():
        return None
    return code.strip().upper()


def extract_key_words(court_name: str) -> str:
    words = [
        word
        for word in _collapse_whitespace(court_name).lower().split(" ")
        if word and word not in COURT_STOP_WORDS and len(word) > 2
    ]
    return " ".join(words[:3])


def generate_court_code_base(court_name: str) -> str:
    words = [re.sub(r"[^A-Za-z0-9]", "", word) for word in court_name.split(" ")]
    words = [word for word in words if len(word) > 2]
    if not words:
        fallback = re.sub(r"[^A-Za-z0-9]", "", court_name)[:6]
        return (fallback or "COURT").upper()
    if len(words) == 1:
        code = words[0][:6]
    elif len(words) == 2:
        code = words[0][:3] + words[1][:3]
    else:
        code = "".join(word[:2] for word in words[:3])
    return code.upper()


def derive_court_type_from_case_id(caseid_type: Optional[str]) -> CourtType:
    prefix = (caseid_type or "").strip().upper()
    # SCC must be checked before SC.
    if prefix.startswith("SCC"):
        return CourtType.SCC
    if prefix.startswith("SC"):
        return CourtType.SC
    if prefix.startswith("EL"):
        return CourtType.ELC if prefix.startswith("ELC") else CourtType.ELRC
    if prefix.startswith("KC"):
        return CourtType.KC
    if prefix.startswith("CO"):
        return CourtType.COA
    if prefix.startswith("MC"):
        return CourtType.MC
    if prefix.startswith("HC"):
        return CourtType.HC
    return CourtType.TC


def infer_court_type(court_name: str) -> CourtType:
    name = (court_name or "").lower()
    tokens = set(re.findall(r"[a-z]+", name))
    if "supreme court" in name or "sc" in tokens:
        return CourtType.SC
    if "high court" in name or "hc" in tokens:
        return CourtType.HC
    if "magistrate" in name or "commercial" in name:
        return CourtType.MC
    if "small claims" in name:
        return CourtType.SCC
    if "court of appeal" in name or "coa" in tokens:
        return CourtType.COA
    if "employment" in name or "labour" in name:
        return CourtType.ELRC
    if "environment" in name or "land" in tokens:
        return CourtType.ELC
    if "kadhi" in name:
        return CourtType.KC
    if "tribunal" in name:
        return CourtType.TC
    return CourtType.SC


def normalize_judge_name(name: str) -> str:
    cleaned = _collapse_whitespace(name)
    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = JUDGE_TITLE_PATTERN.sub("", cleaned).strip()
    return _title_case(cleaned)


def parse_judge_name(full_name: str) -> Tuple[str, str]:
    if "," in full_name:
        last, _, rest = full_name.partition(",")
        given = rest.strip().split(" ")
        first = given[0] if given and given[0] else ""
        return first.strip(",."), last.strip(" ,.")
    tokens = [token.strip(",.") for token in full_name.split(" ") if token.strip(",.")]
    if not tokens:
        return "", ""
    return tokens[0], tokens[-1]


def normalize_case_type_name(name: str) -> str:
    return _title_case(_collapse_whitespace(name))


def case_type_code_for(name: str) -> str:
    if name in CASE_TYPE_CODES:
        return CASE_TYPE_CODES[name]
    initials = "".join(word[0] for word in name.split(" ") if word and word[0].isalnum())
    return (initials.upper() or "GEN")[:MAX_CASE_TYPE_CODE_LENGTH]


def case_type_description(name: str) -> str:
    return CASE_TYPE_DESCRIPTIONS.get(name, f"{name} proceedings and related matters")


def validate_court_name(name: Optional[str]) -> List[str]:
    issues: List[str] = []
    value = (name or "").strip()
    if not value:
        issues.append("Court name cannot be empty")
        return issues
    if len(value) > MAX_COURT_NAME_LENGTH:
        issues.append(f"Court name too long (max {MAX_COURT_NAME_LENGTH} characters)")
    if not COURT_NAME_PATTERN.match(value):
        issues.append("Court name contains invalid characters")
    return issues


def validate_judge_name(name: Optional[str]) -> List[str]:
    issues: List[str] = []
    value = (name or "").strip()
    if not value:
        issues.append("Judge name cannot be empty")
        return issues
    if len(value) > MAX_JUDGE_NAME_LENGTH:
        issues.append(f"Judge name too long (max {MAX_JUDGE_NAME_LENGTH} characters)")
    if not JUDGE_NAME_PATTERN.match(value):
        issues.append("Judge name contains invalid characters")
    return issues


def validate_case_type_name(name: Optional[str]) -> List[str]:
    value = (name or "").strip()
    if not value:
        return ["Case type cannot be empty"]
    if len(value) > MAX_CASE_TYPE_LENGTH:
        return [f"Case type too long (max {MAX_CASE_TYPE_LENGTH} characters)"]
    return []


class MasterDataNormalizer:
    """Resolves courts, judges and case types from free-text CSV values.

    Each ``extract_and_normalize_*`` call validates and normalizes the raw
    value, looks for an existing record and only then creates one. Creation is
    an insert-if-absent guarded by the store's unique constraints, followed by a
    re-lookup, so concurrent imports resolving the same new name converge on a
    single row. The ``find_*`` variants never write.
    """

    def __init__(self, tables: Dict[str, Table], *, logger: Optional[Any] = None) -> None:
        self._tables = tables
        self._logger = logger

    # Courts

    def extract_and_normalize_court(
        self,
        conn,
        court_name: str,
        *,
        court_code: Optional[str] = None,
        court_type: Optional[CourtType] = None,
        tracker: Optional[MasterDataTracker] = None,
    ) -> MasterDataRef:
        issues = validate_court_name(court_name)
        if issues:
            raise MasterDataError(f"Invalid court name '{court_name}': {'; '.join(issues)}")
        normalized = normalize_court_name(court_name)
        code = normalize_court_code(court_code)

        existing = self._lookup_court(conn, normalized, code)
        if existing is not None:
            ref = MasterDataRef(existing[0], existing[1], False)
        else:
            ref = self._create_court(
                conn, normalized, code, court_type or infer_court_type(normalized)
            )
        if tracker is not None:
            tracker.track_court(ref.is_new)
        return ref

    def find_court(self, conn, court_name: str) -> Optional[MasterDataRef]:
        if validate_court_name(court_name):
            return None
        existing = self._lookup_court(conn, normalize_court_name(court_name), None)
        if existing is None:
            return None
        return MasterDataRef(existing[0], existing[1], False)

    def _lookup_court(self, conn, normalized: str, code: Optional[str]):
        courts = self._tables["courts"]
        base = select(courts.c.id, courts.c.court_name).order_by(courts.c.id.asc()).limit(1)
        row = conn.execute(
            base.where(func.lower(courts.c.court_name) == normalized.lower())
        ).first()
        if row is None and code:
            row = conn.execute(base.where(courts.c.court_code == code)).first()
        if row is None:
            key_words = extract_key_words(normalized)
            if key_words:
                row = conn.execute(
                    base.where(func.lower(courts.c.court_name).like(f"%{key_words}%"))
                ).first()
        return row

    def _create_court(
        self, conn, normalized: str, code: Optional[str], court_type: CourtType
    ) -> MasterDataRef:
        courts = self._tables["courts"]
        for _ in range(MAX_CREATE_ATTEMPTS):
            candidate = code or self._unique_court_code(conn, normalized)
            inserted = self._insert_if_absent(
                conn,
                courts,
                {
                    "court_name": normalized,
                    "court_code": candidate,
                    "court_type": court_type.value,
                    "is_active": True,
                },
            )
            row = conn.execute(
                select(courts.c.id, courts.c.court_name).where(
                    func.lower(courts.c.court_name) == normalized.lower()
                )
            ).first()
            if row is not None:
                if inserted and self._logger:
                    self._logger.info("Created court %s (%s, %s).", row[1], candidate, court_type.value)
                return MasterDataRef(row[0], row[1], inserted)
            # The code belongs to another court; fall back to a generated one.
            code = None
        raise MasterDataError(f"Unable to create court '{normalized}'")

    def _unique_court_code(self, conn, normalized: str) -> str:
        courts = self._tables["courts"]
        base = generate_court_code_base(normalized)
        candidate = base
        for suffix in range(1, MAX_CODE_SUFFIX + 1):
            taken = conn.execute(
                select(courts.c.id).where(courts.c.court_code == candidate)
            ).first()
            if taken is None:
                return candidate
            candidate = f"{base}{suffix}"
        raise MasterDataError(f"Unable to generate a unique court code for '{normalized}'")

    # Judges

    def extract_and_normalize_judge(
        self,
        conn,
        judge_name: str,
        *,
        tracker: Optional[MasterDataTracker] = None,
    ) -> MasterDataRef:
        issues = validate_judge_name(judge_name)
        if issues:
            raise MasterDataError(f"Invalid judge name '{judge_name}': {'; '.join(issues)}")
        normalized = normalize_judge_name(judge_name)
        if not normalized:
            raise MasterDataError(f"Invalid judge name '{judge_name}': no name after titles")
        first_name, last_name = parse_judge_name(normalized)

        existing = self._lookup_judge(conn, normalized, first_name, last_name)
        if existing is not None:
            ref = MasterDataRef(existing[0], existing[1], False)
        else:
            judges = self._tables["judges"]
            inserted = self._insert_if_absent(
                conn,
                judges,
                {
                    "full_name": normalized,
                    "first_name": first_name or normalized,
                    "last_name": last_name or normalized,
                    "is_active": True,
                },
            )
            row = self._lookup_judge(conn, normalized, first_name, last_name)
            if row is None:
                raise MasterDataError(f"Unable to create judge '{normalized}'")
            ref = MasterDataRef(row[0], row[1], inserted)
        if tracker is not None:
            tracker.track_judge(ref.is_new)
        return ref

    def find_judge(self, conn, judge_name: str) -> Optional[MasterDataRef]:
        if validate_judge_name(judge_name):
            return None
        normalized = normalize_judge_name(judge_name)
        if not normalized:
            return None
        first_name, last_name = parse_judge_name(normalized)
        existing = self._lookup_judge(conn, normalized, first_name, last_name)
        if existing is None:
            return None
        return MasterDataRef(existing[0], existing[1], False)

    def _lookup_judge(self, conn, normalized: str, first_name: str, last_name: str):
        judges = self._tables["judges"]
        base = select(judges.c.id, judges.c.full_name).order_by(judges.c.id.asc()).limit(1)
        row = conn.execute(
            base.where(func.lower(judges.c.full_name) == normalized.lower())
        ).first()
        if row is None and first_name and last_name:
            row = conn.execute(
                base.where(
                    func.lower(judges.c.first_name) == first_name.lower(),
                    func.lower(judges.c.last_name) == last_name.lower(),
                )
            ).first()
        return row

    # Case types

    def extract_and_normalize_case_type(
        self,
        conn,
        case_type_name: str,
        *,
        tracker: Optional[MasterDataTracker] = None,
    ) -> MasterDataRef:
        issues = validate_case_type_name(case_type_name)
        if issues:
            raise MasterDataError(f"Invalid case type '{case_type_name}': {'; '.join(issues)}")
        normalized = normalize_case_type_name(case_type_name)
        code = case_type_code_for(normalized)

        existing = self._lookup_case_type(conn, normalized, code)
        if existing is not None:
            ref = MasterDataRef(existing[0], existing[1], False)
        else:
            inserted = self._insert_if_absent(
                conn,
                self._tables["case_types"],
                {
                    "case_type_name": normalized,
                    "case_type_code": code,
                    "description": case_type_description(normalized),
                    "is_active": True,
                },
            )
            row = self._lookup_case_type(conn, normalized, code)
            if row is None:
                raise MasterDataError(f"Unable to create case type '{normalized}'")
            ref = MasterDataRef(row[0], row[1], inserted)
        if tracker is not None:
            tracker.track_case_type(ref.is_new)
        return ref

    def _lookup_case_type(self, conn, normalized: str, code: str):
        case_types = self._tables["case_types"]
        base = (
            select(case_types.c.id, case_types.c.case_type_name)
            .order_by(case_types.c.id.asc())
            .limit(1)
        )
        row = conn.execute(
            base.where(func.lower(case_types.c.case_type_name) == normalized.lower())
        ).first()
        if row is None:
            row = conn.execute(base.where(case_types.c.case_type_code == code)).first()
        return row

    def _insert_if_absent(self, conn, table: Table, values: Dict[str, Any]) -> bool:
        dialect = conn.dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(table).values(**values).on_conflict_do_nothing()
        elif dialect == "sqlite":
            stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing()
        else:
            try:
                with conn.begin_nested():
                    conn.execute(insert(table).values(**values))
            except IntegrityError:
                return False
            return True
        result = conn.execute(stmt)
        return result.rowcount == 1


def extract_judges_from_row(row: Any) -> List[str]:
    names: List[str] = []
    for index in range(1, 8):
        key = f"judge_{index}"
        value = row.get(key) if isinstance(row, Mapping) else getattr(row, key, None)
        if value and str(value).strip():
            names.append(str(value).strip())
    return names


def determine_custody_status(custody_count: Optional[int]) -> str:
    return "IN_CUSTODY" if custody_count and custody_count > 0 else "NOT_APPLICABLE"
