import re
from typing import Any, Dict, Mapping

_URL_CREDENTIALS_PATTERN = re.compile(r"(?i)(\b[a-z][a-z0-9+.\-]*://[^:/@\s]+:)([^@\s]+)(@)")
_SENSITIVE_PARAM_PATTERN = re.compile(r"(?i)\b(password|passwd|pwd)\s*[:=]\s*([^\s,;&]+)")

SAFE_ROW_FIELDS = (
    "court",
    "caseid_type",
    "caseid_no",
    "case_type",
    "judge_1",
    "date_dd",
    "date_mon",
    "date_yyyy",
    "filed_dd",
    "filed_mon",
    "filed_yyyy",
)


def redact_database_url(url: str) -> str:
    if not url:
        return url
    return _URL_CREDENTIALS_PATTERN.sub(r"\1<redacted>\3", url)


def scrub_log_message(message: str) -> str:
    if not message:
        return message
    scrubbed = redact_database_url(message)
    return _SENSITIVE_PARAM_PATTERN.sub(r"\1=<redacted>", scrubbed)


def safe_row_sample(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {field: row.get(field) for field in SAFE_ROW_FIELDS if field in row}
