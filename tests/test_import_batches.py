import unittest
from datetime import datetime

from sqlalchemy import insert, select

from import_batches import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    SYSTEM_USER_EMAIL,
    BatchCreationData,
    BatchStats,
    ImportBatchService,
)
from import_errors import (
    BatchNotFoundError,
    DuplicateImportError,
    ErrorKind,
    RowError,
)
from case_return_fixtures import build_test_database

FIXED_NOW = datetime(2024, 1, 15, 9, 30, 0)


class _FakeStatusStore:
    def __init__(self, statuses=None):
        self.statuses = statuses or {}

    def get_status(self, batch_id):
        return self.statuses.get(batch_id)


class ImportBatchServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.tables = build_test_database()
        self.store = _FakeStatusStore()
        self.service = ImportBatchService(
            self.engine,
            self.tables,
            status_store=self.store,
            now_fn=lambda: FIXED_NOW,
            error_log_limit=2,
        )

    def tearDown(self):
        self.engine.dispose()

    def _create(self, checksum="sum-1", created_by=None, filename="returns.csv"):
        return self.service.create_batch(
            BatchCreationData(
                filename=filename, file_size=120, file_checksum=checksum, created_by=created_by
            )
        )

    def _add_user(self, email, name, role="DATA_ENTRY", is_active=True):
        users = self.tables["users"]
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(users).values(email=email, name=name, role=role, is_active=is_active)
            )
            return int(result.inserted_primary_key[0])

    def test_create_batch_starts_pending(self):
        batch = self._create()
        self.assertEqual(batch["status"], "PENDING")
        self.assertEqual(batch["successful_records"], 0)
        self.assertEqual(batch["error_logs"], [])
        self.assertIsNone(batch["completed_at"])

    def test_unknown_user_falls_back_to_system_user(self):
        batch = self._create(created_by=999)
        users = self.tables["users"]
        with self.engine.connect() as conn:
            email = conn.execute(
                select(users.c.email).where(users.c.id == batch["created_by"])
            ).scalar_one()
        self.assertEqual(email, SYSTEM_USER_EMAIL)

    def test_known_user_is_kept(self):
        user_id = self._add_user("clerk@justice.go.ke", "Court Clerk")
        batch = self._create(created_by=user_id)
        self.assertEqual(batch["created_by"], user_id)
        history = self.service.get_import_history()
        self.assertEqual(history[0]["createdBy"], "Court Clerk")

    def test_same_checksum_is_rejected(self):
        first = self._create()
        with self.assertRaises(DuplicateImportError) as ctx:
            self._create()
        self.assertEqual(ctx.exception.batch_id, first["id"])
        self.assertEqual(ctx.exception.status, "PENDING")

    def test_system_user_prefers_existing_admin(self):
        admin_id = self._add_user("admin@justice.go.ke", "Admin", role="ADMIN")
        self.assertEqual(self.service.get_or_create_system_user(), admin_id)

    def test_unknown_user_is_attributed_to_existing_admin(self):
        self._add_user("retired@justice.go.ke", "Retired", role="ADMIN", is_active=False)
        admin_id = self._add_user("admin@justice.go.ke", "Admin", role="ADMIN")
        batch = self._create(created_by=999)
        self.assertEqual(batch["created_by"], admin_id)
        users = self.tables["users"]
        with self.engine.connect() as conn:
            emails = conn.execute(select(users.c.email)).scalars().all()
        self.assertNotIn(SYSTEM_USER_EMAIL, emails)

    def test_missing_user_is_attributed_to_existing_admin(self):
        admin_id = self._add_user("admin@justice.go.ke", "Admin", role="ADMIN")
        self.assertEqual(self._create()["created_by"], admin_id)

    def test_system_user_is_created_once(self):
        first = self.service.get_or_create_system_user()
        second = self.service.get_or_create_system_user()
        self.assertEqual(first, second)

    def test_terminal_status_sets_completion_time(self):
        batch = self._create()
        processing = self.service.update_batch_status(batch["id"], STATUS_PROCESSING)
        self.assertIsNone(processing["completed_at"])
        completed = self.service.update_batch_status(batch["id"], STATUS_COMPLETED)
        self.assertEqual(completed["completed_at"], FIXED_NOW)

    def test_update_missing_batch_raises(self):
        with self.assertRaises(BatchNotFoundError):
            self.service.update_batch_status(404, STATUS_FAILED)

    def test_stats_update_truncates_error_logs(self):
        batch = self._create()
        updated = self.service.update_batch_with_stats(
            batch["id"],
            STATUS_FAILED,
            BatchStats(
                total_records=10,
                successful_records=0,
                failed_records=8,
                empty_rows_skipped=2,
                error_logs=[{"rowNumber": n} for n in range(5)],
                failure_category="VALIDATION_ERRORS",
                failure_reason="All rows failed validation",
            ),
        )
        self.assertEqual(updated["status"], STATUS_FAILED)
        self.assertEqual(updated["error_logs"], [{"rowNumber": 0}, {"rowNumber": 1}])
        self.assertEqual(updated["failure_category"], "VALIDATION_ERRORS")

    def test_duplicate_lookup(self):
        self.assertIsNone(self.service.check_for_duplicate_import("missing"))
        batch = self._create(checksum="sum-2")
        found = self.service.check_for_duplicate_import("sum-2")
        self.assertEqual(found["id"], batch["id"])
        self.assertEqual(found["filename"], "returns.csv")

    def test_history_is_newest_first_and_clamped(self):
        for index in range(3):
            self._create(checksum=f"sum-{index}", filename=f"f{index}.csv")
        history = self.service.get_batch_history(limit=2)
        self.assertEqual([row["filename"] for row in history], ["f2.csv", "f1.csv"])
        self.assertEqual(len(self.service.get_batch_history(limit=0)), 1)

    def test_row_errors_are_paginated(self):
        batch = self._create()
        errors = [
            RowError(kind=ErrorKind.VALIDATION, row_number=n, message=f"bad {n}", raw_data={"n": n})
            for n in range(1, 6)
        ]
        errors.append(RowError(kind=ErrorKind.DATE_VALIDATION, row_number=9, message="bad date"))
        self.assertEqual(self.service.record_row_errors(batch["id"], errors), 6)
        self.assertEqual(self.service.record_row_errors(batch["id"], []), 0)

        page = self.service.get_batch_errors(batch["id"], page=2, limit=4)
        self.assertEqual(page["pagination"], {"page": 2, "limit": 4, "total": 6, "pages": 2})
        self.assertEqual([item["rowNumber"] for item in page["errors"]], [5, 9])
        self.assertEqual(page["errors"][0]["rawData"], {"n": 5})
        self.assertIsNone(page["errors"][1]["rawData"])

        filtered = self.service.get_batch_errors(batch["id"], error_type="date_validation_error")
        self.assertEqual(filtered["pagination"]["total"], 1)
        self.assertEqual(filtered["errors"][0]["errorMessage"], "bad date")

    def test_empty_error_page(self):
        batch = self._create()
        page = self.service.get_batch_errors(batch["id"])
        self.assertEqual(page["errors"], [])
        self.assertEqual(page["pagination"]["pages"], 0)

    def test_import_status_defaults_without_cache(self):
        batch = self._create()
        status = self.service.get_import_status(batch["id"])
        self.assertEqual(status["status"], "PENDING")
        self.assertEqual(status["progress"], 0)
        self.assertIsNone(status["stats"])
        self.assertIsNone(self.service.get_import_status(404))

        self.service.update_batch_with_stats(
            batch["id"],
            STATUS_COMPLETED,
            BatchStats(total_records=5, successful_records=3, failed_records=0, empty_rows_skipped=2),
        )
        status = self.service.get_import_status(batch["id"])
        self.assertEqual(status["progress"], 100)
        self.assertEqual(status["actualDataRows"], 3)
        self.assertEqual(status["completedAt"], FIXED_NOW.isoformat())

    def test_import_status_merges_cache(self):
        batch = self._create()
        self.store.statuses[batch["id"]] = {
            "progress": 42,
            "message": "Processed 4 of 10 records...",
            "stats": {"duplicatesSkipped": 1},
            "details": {"failureReason": "pending reason"},
        }
        status = self.service.get_import_status(batch["id"])
        self.assertEqual(status["progress"], 42)
        self.assertEqual(status["message"], "Processed 4 of 10 records...")
        self.assertEqual(status["duplicatesSkipped"], 1)
        self.assertEqual(status["failureReason"], "pending reason")

    def test_verify_batch_integrity_flags_mismatch(self):
        batch = self._create()
        self.service.update_batch_with_stats(
            batch["id"],
            STATUS_COMPLETED,
            BatchStats(total_records=2, successful_records=2, failed_records=0),
        )
        report = self.service.verify_batch_integrity(batch["id"])
        self.assertFalse(report["ok"])
        self.assertEqual(report["activityCount"], 0)
        self.assertIn("Recorded 2 successful records but found 0 persisted activities", report["issues"])

    def test_verify_batch_integrity_pending_batch_is_clean(self):
        batch = self._create()
        report = self.service.verify_batch_integrity(batch["id"])
        self.assertTrue(report["ok"])
        self.assertEqual(report["issues"], [])
        with self.assertRaises(BatchNotFoundError):
            self.service.verify_batch_integrity(404)


if __name__ == "__main__":
    unittest.main()
