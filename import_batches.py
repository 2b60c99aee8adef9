from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import Table, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from import_errors import BatchNotFoundError, DuplicateImportError, ImportInitiationError, RowError

STATUS_PENDING = "PENDING"
STATUS_PROCESSING = "PROCESSING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_FAILED}

SYSTEM_USER_EMAIL = "system@justice.go.ke"
SYSTEM_USER_NAME = "System Import User"
SYSTEM_USER_ROLE = "ADMIN"
MAX_ERROR_PAGE_SIZE = 200


@dataclass(frozen=True)
class BatchCreationData:
    filename: str
    file_size: int
    file_checksum: str
    created_by: Optional[int] = None


@dataclass(frozen=True)
class BatchStats:
    total_records: int
    successful_records: int
    failed_records: int
    empty_rows_skipped: int = 0
    duplicates_skipped: int = 0
    error_logs: Sequence[Dict[str, Any]] = field(default_factory=list)
    failure_category: Optional[str] = None
    failure_reason: Optional[str] = None


def _iso(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class ImportBatchService:
    def __init__(
        self,
        engine,
        tables: Dict[str, Table],
        *,
        status_store: Optional[Any] = None,
        logger: Optional[Any] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
        error_log_limit: int = 100,
    ) -> None:
        self._engine = engine
        self._tables = tables
        self._status_store = status_store
        self._logger = logger
        self._now = now_fn or datetime.utcnow
        self._error_log_limit = error_log_limit

    def create_batch(self, data: BatchCreationData) -> Dict[str, Any]:
        batches = self._tables["import_batches"]
        try:
            with self._engine.begin() as conn:
                created_by = self._resolve_user(conn, data.created_by)
                result = conn.execute(
                    insert(batches).values(
                        filename=data.filename,
                        file_size=data.file_size,
                        file_checksum=data.file_checksum,
                        total_records=0,
                        successful_records=0,
                        failed_records=0,
                        empty_rows_skipped=0,
                        duplicates_skipped=0,
                        status=STATUS_PENDING,
                        error_logs=[],
                        created_by=created_by,
                    )
                )
                batch_id = int(result.inserted_primary_key[0])
        except IntegrityError as exc:
            existing = self.check_for_duplicate_import(data.file_checksum)
            if existing is not None:
                raise DuplicateImportError(existing["id"], existing["status"]) from exc
            raise ImportInitiationError(f"Failed to create import batch: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise ImportInitiationError(f"Failed to create import batch: {exc}") from exc
        batch = self.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Import batch {batch_id} not found in database")
        return batch

    def update_batch_status(self, batch_id: int, status: str) -> Dict[str, Any]:
        values: Dict[str, Any] = {"status": status}
        if status in TERMINAL_STATUSES:
            values["completed_at"] = self._now()
        return self._update_batch(batch_id, values)

    def update_batch_with_stats(
        self, batch_id: int, status: str, stats: BatchStats
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "status": status,
            "total_records": stats.total_records,
            "successful_records": stats.successful_records,
            "failed_records": stats.failed_records,
            "empty_rows_skipped": stats.empty_rows_skipped,
            "duplicates_skipped": stats.duplicates_skipped,
            "error_logs": list(stats.error_logs)[: self._error_log_limit],
            "failure_category": stats.failure_category,
            "failure_reason": stats.failure_reason,
        }
        if status in TERMINAL_STATUSES:
            values["completed_at"] = self._now()
        return self._update_batch(batch_id, values)

    def get_batch(self, batch_id: int) -> Optional[Dict[str, Any]]:
        batches = self._tables["import_batches"]
        with self._engine.connect() as conn:
            row = (
                conn.execute(select(batches).where(batches.c.id == batch_id))
                .mappings()
                .first()
            )
        return dict(row) if row else None

    def get_batch_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        batches = self._tables["import_batches"]
        users = self._tables["users"]
        limit = max(1, min(int(limit), 200))
        with self._engine.connect() as conn:
            rows = (
                conn.execute(
                    select(batches, users.c.name.label("created_by_name"))
                    .select_from(batches.outerjoin(users, users.c.id == batches.c.created_by))
                    .order_by(batches.c.created_at.desc(), batches.c.id.desc())
                    .limit(limit)
                )
                .mappings()
                .all()
            )
        return [dict(row) for row in rows]

    def check_for_duplicate_import(self, checksum: str) -> Optional[Dict[str, Any]]:
        """Return the most recent batch with this checksum, whatever its status."""
        batches = self._tables["import_batches"]
        with self._engine.connect() as conn:
            row = (
                conn.execute(
                    select(batches.c.id, batches.c.status, batches.c.filename, batches.c.created_at)
                    .where(batches.c.file_checksum == checksum)
                    .order_by(batches.c.created_at.desc(), batches.c.id.desc())
                    .limit(1)
                )
                .mappings()
                .first()
            )
        return dict(row) if row else None

    def get_or_create_system_user(self) -> int:
        users = self._tables["users"]
        with self._engine.begin() as conn:
            existing = self._find_system_user(conn)
            if existing is not None:
                return existing
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    insert(users).values(
                        email=SYSTEM_USER_EMAIL,
                        name=SYSTEM_USER_NAME,
                        role=SYSTEM_USER_ROLE,
                        is_active=True,
                    )
                )
                return int(result.inserted_primary_key[0])
        except IntegrityError:
            # Another worker created it first.
            with self._engine.connect() as conn:
                return int(
                    conn.execute(
                        select(users.c.id).where(users.c.email == SYSTEM_USER_EMAIL)
                    ).scalar_one()
                )

    def record_row_errors(self, batch_id: int, errors: Sequence[RowError]) -> int:
        if not errors:
            return 0
        details = self._tables["import_error_details"]
        rows = [
            {
                "batch_id": batch_id,
                "row_number": error.row_number,
                "error_type": error.error_type,
                "error_message": error.message,
                "field_name": error.field,
                "suggestion": error.suggestion,
                "raw_value": error.raw_value,
                "raw_data": dict(error.raw_data) if error.raw_data else None,
            }
            for error in errors
        ]
        with self._engine.begin() as conn:
            conn.execute(insert(details), rows)
        return len(rows)

    def get_batch_errors(
        self,
        batch_id: int,
        *,
        page: int = 1,
        limit: int = 50,
        error_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        details = self._tables["import_error_details"]
        page = max(1, int(page))
        limit = max(1, min(int(limit), MAX_ERROR_PAGE_SIZE))
        filters = [details.c.batch_id == batch_id]
        if error_type:
            filters.append(details.c.error_type == error_type)
        with self._engine.connect() as conn:
            total = conn.execute(
                select(func.count()).select_from(details).where(*filters)
            ).scalar_one()
            rows = (
                conn.execute(
                    select(details)
                    .where(*filters)
                    .order_by(details.c.row_number.asc(), details.c.id.asc())
                    .limit(limit)
                    .offset((page - 1) * limit)
                )
                .mappings()
                .all()
            )
        return {
            "errors": [
                {
                    "id": row["id"],
                    "rowNumber": row["row_number"],
                    "errorType": row["error_type"],
                    "errorMessage": row["error_message"],
                    "field": row["field_name"],
                    "suggestion": row["suggestion"],
                    "rawValue": row["raw_value"],
                    "rawData": row["raw_data"],
                }
                for row in rows
            ],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": int(total),
                "pages": int(math.ceil(total / limit)) if total else 0,
            },
        }

    def count_batch_activities(self, batch_id: int) -> int:
        activities = self._tables["case_activities"]
        with self._engine.connect() as conn:
            return int(
                conn.execute(
                    select(func.count())
                    .select_from(activities)
                    .where(activities.c.import_batch_id == batch_id)
                ).scalar_one()
            )

    def get_import_status(self, batch_id: int) -> Optional[Dict[str, Any]]:
        batch = self.get_batch(batch_id)
        if batch is None:
            return None
        cached = None
        if self._status_store is not None:
            cached = self._status_store.get_status(batch_id)
        cached = cached or {}
        cached_stats = cached.get("stats") or {}
        cached_details = cached.get("details") or {}

        total = batch["total_records"] or 0
        empty_skipped = batch["empty_rows_skipped"] or 0
        status = batch["status"]
        if cached.get("progress") is not None:
            progress = cached["progress"]
        elif status == STATUS_COMPLETED:
            progress = 100
        elif status == STATUS_PROCESSING:
            progress = 50
        else:
            progress = 0

        return {
            "batchId": batch["id"],
            "filename": batch["filename"],
            "status": status,
            "progress": progress,
            "message": cached.get("message"),
            "totalRecords": total,
            "actualDataRows": max(0, total - empty_skipped),
            "successfulRecords": batch["successful_records"],
            "failedRecords": batch["failed_records"],
            "emptyRowsSkipped": empty_skipped,
            "duplicatesSkipped": cached_stats.get(
                "duplicatesSkipped", batch["duplicates_skipped"]
            ),
            "failureReason": batch["failure_reason"] or cached_details.get("failureReason"),
            "failureCategory": batch["failure_category"] or cached_details.get("failureCategory"),
            "errorLogs": batch["error_logs"] or [],
            "stats": cached_stats or None,
            "createdAt": _iso(batch["created_at"]),
            "completedAt": _iso(batch["completed_at"]),
        }

    def get_import_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [
            {
                "batchId": row["id"],
                "filename": row["filename"],
                "fileSize": row["file_size"],
                "status": row["status"],
                "totalRecords": row["total_records"],
                "successfulRecords": row["successful_records"],
                "failedRecords": row["failed_records"],
                "emptyRowsSkipped": row["empty_rows_skipped"],
                "duplicatesSkipped": row["duplicates_skipped"],
                "failureCategory": row["failure_category"],
                "createdBy": row["created_by_name"],
                "createdAt": _iso(row["created_at"]),
                "completedAt": _iso(row["completed_at"]),
            }
            for row in self.get_batch_history(limit)
        ]

    def verify_batch_integrity(self, batch_id: int) -> Dict[str, Any]:
        batch = self.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Import batch {batch_id} not found in database")
        activities = self._tables["case_activities"]
        cases = self._tables["cases"]
        assignments = self._tables["case_judge_assignments"]
        batch_case_ids = (
            select(activities.c.case_id)
            .where(activities.c.import_batch_id == batch_id)
            .distinct()
            .scalar_subquery()
        )
        with self._engine.connect() as conn:
            activity_count = conn.execute(
                select(func.count())
                .select_from(activities)
                .where(activities.c.import_batch_id == batch_id)
            ).scalar_one()
            cases_touched = conn.execute(
                select(func.count(func.distinct(activities.c.case_id))).where(
                    activities.c.import_batch_id == batch_id
                )
            ).scalar_one()
            orphaned = conn.execute(
                select(func.count())
                .select_from(activities.outerjoin(cases, cases.c.id == activities.c.case_id))
                .where(activities.c.import_batch_id == batch_id, cases.c.id.is_(None))
            ).scalar_one()
            judge_assignments = conn.execute(
                select(func.count())
                .select_from(assignments)
                .where(assignments.c.case_id.in_(batch_case_ids))
            ).scalar_one()

        issues: List[str] = []
        status = batch["status"]
        if status in TERMINAL_STATUSES and activity_count != batch["successful_records"]:
            issues.append(
                f"Recorded {batch['successful_records']} successful records "
                f"but found {activity_count} persisted activities"
            )
        if status in TERMINAL_STATUSES and batch["completed_at"] is None:
            issues.append(f"Batch is {status} but has no completion time")
        if status not in TERMINAL_STATUSES and batch["completed_at"] is not None:
            issues.append(f"Batch is {status} but has a completion time")
        if orphaned:
            issues.append(f"{orphaned} activities reference missing cases")

        return {
            "batchId": batch_id,
            "status": status,
            "successfulRecords": batch["successful_records"],
            "activityCount": int(activity_count),
            "casesTouched": int(cases_touched),
            "judgeAssignments": int(judge_assignments),
            "orphanedActivities": int(orphaned),
            "issues": issues,
            "ok": not issues,
        }

    def _find_system_user(self, conn) -> Optional[int]:
        """The dedicated system user, else the oldest active admin."""
        users = self._tables["users"]
        existing = conn.execute(
            select(users.c.id).where(users.c.email == SYSTEM_USER_EMAIL)
        ).first()
        if existing is not None:
            return int(existing[0])
        admin = conn.execute(
            select(users.c.id)
            .where(users.c.role == SYSTEM_USER_ROLE, users.c.is_active.is_(True))
            .order_by(users.c.id.asc())
            .limit(1)
        ).first()
        if admin is not None:
            return int(admin[0])
        return None

    def _resolve_user(self, conn, user_id: Optional[int]) -> int:
        users = self._tables["users"]
        if user_id is not None:
            existing = conn.execute(select(users.c.id).where(users.c.id == user_id)).first()
            if existing is not None:
                return int(existing[0])
            if self._logger:
                self._logger.warning(
                    "Unknown user %s for import batch; attributing to system user.", user_id
                )
        existing = self._find_system_user(conn)
        if existing is not None:
            return existing
        result = conn.execute(
            insert(users).values(
                email=SYSTEM_USER_EMAIL,
                name=SYSTEM_USER_NAME,
                role=SYSTEM_USER_ROLE,
                is_active=True,
            )
        )
        return int(result.inserted_primary_key[0])

    def _update_batch(self, batch_id: int, values: Dict[str, Any]) -> Dict[str, Any]:
        batches = self._tables["import_batches"]
        with self._engine.begin() as conn:
            result = conn.execute(
                update(batches).where(batches.c.id == batch_id).values(**values)
            )
            if result.rowcount == 0:
                raise BatchNotFoundError(f"Import batch {batch_id} not found in database")
        batch = self.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Import batch {batch_id} not found in database")
        return batch
