import unittest

from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from import_errors import (
    GENERIC_FAILURE_MESSAGE,
    ConsecutiveFailureError,
    DuplicateImportError,
    ErrorCategory,
    ErrorKind,
    ImportErrorHandler,
    MasterDataError,
    MissingFieldsError,
    RowError,
    UploadValidationError,
)


class _RecordingLogger:
    def __init__(self):
        self.records = []

    def warning(self, message, *args):
        self.records.append(("warning", message % args))

    def error(self, message, *args):
        self.records.append(("error", message % args))


class DatabaseErrorTests(unittest.TestCase):
    def setUp(self):
        self.handler = ImportErrorHandler()

    def test_case_insert_failure(self):
        error = IntegrityError(
            "INSERT INTO cases (case_number) VALUES (?)",
            {},
            Exception("NOT NULL constraint failed: cases.court_id"),
        )
        result = self.handler.handle_database_error(error, 7, {"court": "Milimani"})
        self.assertEqual(result.kind, ErrorKind.CASE_CREATE)
        self.assertEqual(result.row_number, 7)
        self.assertEqual(result.raw_data, {"court": "Milimani"})

    def test_foreign_key_failure(self):
        error = IntegrityError(
            "INSERT INTO case_activities (case_id) VALUES (?)",
            {},
            Exception("FOREIGN KEY constraint failed"),
        )
        self.assertEqual(self.handler.handle_database_error(error, 1).kind, ErrorKind.FOREIGN_KEY)

    def test_unique_failure(self):
        error = IntegrityError(
            "INSERT INTO courts (court_code) VALUES (?)",
            {},
            Exception("UNIQUE constraint failed: courts.court_code"),
        )
        result = self.handler.handle_database_error(error, 1)
        self.assertEqual(result.kind, ErrorKind.DUPLICATE)
        self.assertEqual(result.message, "Record already exists")

    def test_operational_failure_is_a_connection_error(self):
        error = OperationalError("SELECT 1", {}, Exception("server closed the socket"))
        self.assertEqual(self.handler.handle_database_error(error, 1).kind, ErrorKind.CONNECTION)

    def test_other_failures_are_generic(self):
        error = ProgrammingError("SELECT nope", {}, Exception("syntax error"))
        result = self.handler.handle_database_error(error, 1)
        self.assertEqual(result.kind, ErrorKind.DATABASE)
        self.assertEqual(result.message, "Database operation failed")

    def test_logs_only_safe_row_fields(self):
        logger = _RecordingLogger()
        handler = ImportErrorHandler(logger=logger)
        error = ProgrammingError("SELECT nope", {}, Exception("syntax error"))
        handler.handle_database_error(error, 3, {"court": "Milimani", "other_details": "secret"})
        level, message = logger.records[0]
        self.assertEqual(level, "warning")
        self.assertIn("Milimani", message)
        self.assertNotIn("secret", message)

    def test_logged_detail_hides_connection_password(self):
        logger = _RecordingLogger()
        handler = ImportErrorHandler(logger=logger)
        error = OperationalError(
            "SELECT 1", {}, Exception("could not connect to postgresql://clerk:hunter2@db/court")
        )
        handler.handle_database_error(error, 2)
        _level, message = logger.records[0]
        self.assertNotIn("hunter2", message)
        self.assertIn("clerk:<redacted>@db", message)


class RowErrorTests(unittest.TestCase):
    def test_defaults_and_field_attribute(self):
        error = RowError(kind=ErrorKind.VALIDATION, row_number=4, message="bad", field="date_dd")
        self.assertEqual(error.field, "date_dd")
        self.assertEqual(error.raw_data, {})
        self.assertIsNone(RowError(kind=ErrorKind.SYSTEM, row_number=1, message="x").field)
        self.assertEqual(error.as_dict()["field"], "date_dd")


class RowErrorConversionTests(unittest.TestCase):
    def setUp(self):
        self.handler = ImportErrorHandler()

    def test_missing_fields_error_is_split_per_field(self):
        error = MissingFieldsError(["court", "judge_1"])
        errors = self.handler.handle_missing_fields_error(str(error), 9)
        self.assertEqual([item.field for item in errors], ["court", "judge_1"])
        self.assertEqual(errors[0].message, "court is required but missing")
        self.assertTrue(all(item.kind == ErrorKind.MISSING_FIELDS for item in errors))

    def test_unrecognised_missing_fields_message(self):
        errors = self.handler.handle_missing_fields_error("something odd", 2)
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].message, "something odd")
        self.assertIsNone(errors[0].field)

    def test_master_data_error(self):
        result = self.handler.handle_master_data_error(MasterDataError("Invalid court name"), 4)
        self.assertEqual(result.kind, ErrorKind.DATA_FORMAT)
        self.assertEqual(result.message, "Invalid court name")

    def test_system_error(self):
        result = self.handler.handle_system_error(RuntimeError("boom"), 5)
        self.assertEqual(result.kind, ErrorKind.SYSTEM)
        self.assertEqual(result.message, "Unexpected error: boom")

    def test_row_error_as_dict(self):
        result = self.handler.handle_system_error(RuntimeError("boom"), 5)
        payload = result.as_dict()
        self.assertEqual(payload["rowNumber"], 5)
        self.assertEqual(payload["errorType"], "system_error")
        self.assertEqual(result.error_type, "system_error")

    def test_upload_validation_error_joins_messages(self):
        error = UploadValidationError(["No file uploaded", "Only .csv files are supported"])
        self.assertEqual(str(error), "No file uploaded; Only .csv files are supported")
        self.assertEqual(error.errors, ["No file uploaded", "Only .csv files are supported"])


class FailureWordingTests(unittest.TestCase):
    def setUp(self):
        self.handler = ImportErrorHandler()

    def test_user_friendly_messages(self):
        cases = {
            "Early validation failed: 3 of 5": "first few rows",
            "Too many consecutive failures (10)": "Too many consecutive",
            "Invalid date: 30/Feb/2023": "Date format",
            "Missing required fields: court": "Required fields are missing",
            "connect ECONNREFUSED 127.0.0.1": "Database connection error",
            "statement timeout exceeded": "timed out",
        }
        for raw, expected in cases.items():
            self.assertIn(expected, self.handler.format_user_friendly_error(raw), raw)

    def test_duplicate_message_is_passed_through(self):
        error = DuplicateImportError(12)
        self.assertEqual(self.handler.format_user_friendly_error(error), str(error))
        self.assertIn("Batch ID: 12", str(error))

    def test_unknown_message_falls_back(self):
        self.assertEqual(self.handler.format_user_friendly_error("weird"), GENERIC_FAILURE_MESSAGE)
        self.assertEqual(self.handler.format_user_friendly_error(None), GENERIC_FAILURE_MESSAGE)

    def test_categorize_error(self):
        self.assertEqual(
            self.handler.categorize_error(ConsecutiveFailureError("stop")),
            ErrorCategory.VALIDATION,
        )
        self.assertEqual(
            self.handler.categorize_error(OperationalError("SELECT 1", {}, Exception("down"))),
            ErrorCategory.DATABASE,
        )
        self.assertEqual(
            self.handler.categorize_error(DuplicateImportError(3)), ErrorCategory.BUSINESS
        )
        self.assertEqual(
            self.handler.categorize_error(RuntimeError("unique constraint")),
            ErrorCategory.DATABASE,
        )
        self.assertEqual(
            self.handler.categorize_error(RuntimeError("required value")),
            ErrorCategory.VALIDATION,
        )
        self.assertEqual(self.handler.categorize_error(RuntimeError("boom")), ErrorCategory.SYSTEM)


if __name__ == "__main__":
    unittest.main()
