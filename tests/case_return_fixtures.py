import os
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from sqlalchemy import MetaData

from case_return_schema import REQUIRED_COLUMNS
from import_models import build_engine, build_import_tables

CSV_COLUMNS: List[str] = list(REQUIRED_COLUMNS) + [
    "judge_2",
    "legalrep",
    "male_applicant",
    "female_applicant",
    "organization_applicant",
    "male_defendant",
    "female_defendant",
    "organization_defendant",
    "applicant_witness",
    "defendant_witness",
    "custody",
    "next_dd",
    "next_mon",
    "next_yyyy",
    "original_court",
    "original_code",
    "original_number",
    "original_year",
]

BASE_ROW: Dict[str, str] = {
    "date_dd": "6",
    "date_mon": "Nov",
    "date_yyyy": "2023",
    "caseid_type": "HCCC",
    "caseid_no": "TEST123",
    "filed_dd": "13",
    "filed_mon": "Jun",
    "filed_yyyy": "2019",
    "court": "Milimani Civil",
    "case_type": "Civil Suit",
    "judge_1": "Kendagor, Caroline J",
    "comingfor": "Mention",
    "outcome": "Directions Given",
}


def make_row(**overrides: str) -> Dict[str, str]:
    row = dict(BASE_ROW)
    row.update(overrides)
    return row


def csv_line(values: Iterable[str]) -> str:
    cells = []
    for value in values:
        value = "" if value is None else str(value)
        if "," in value or '"' in value:
            value = '"' + value.replace('"', '""') + '"'
        cells.append(value)
    return ",".join(cells)


def write_csv(
    directory: str,
    name: str,
    rows: Sequence[Mapping[str, str]],
    *,
    columns: Sequence[str] = CSV_COLUMNS,
    raw_lines: Sequence[str] = (),
) -> str:
    path = os.path.join(directory, name)
    lines = [",".join(columns)]
    lines.extend(csv_line(row.get(column, "") for column in columns) for row in rows)
    lines.extend(raw_lines)
    with open(path, "w", encoding="utf-8", newline="") as handle:
        handle.write("\n".join(lines) + "\n")
    return path


def build_test_database() -> Tuple[object, Dict[str, object]]:
    engine = build_engine("sqlite:///:memory:")
    metadata = MetaData()
    tables = build_import_tables(metadata)
    metadata.create_all(engine)
    return engine, tables
