import unittest

from import_logging import redact_database_url, safe_row_sample, scrub_log_message


class ImportLoggingTests(unittest.TestCase):
    def test_redacts_url_password(self):
        self.assertEqual(
            redact_database_url("postgresql+psycopg://clerk:secret@db:5432/court"),
            "postgresql+psycopg://clerk:<redacted>@db:5432/court",
        )
        self.assertEqual(redact_database_url("sqlite:///tmp/x.sqlite"), "sqlite:///tmp/x.sqlite")
        self.assertEqual(redact_database_url(""), "")

    def test_scrubs_password_parameters(self):
        message = "connect failed: host=db password=hunter2 user=clerk"
        scrubbed = scrub_log_message(message)
        self.assertNotIn("hunter2", scrubbed)
        self.assertIn("password=<redacted>", scrubbed)
        self.assertIn("user=clerk", scrubbed)

    def test_safe_row_sample_keeps_identifying_fields(self):
        row = {"court": "Milimani", "caseid_no": "1", "other_details": "sensitive", "custody": "2"}
        self.assertEqual(safe_row_sample(row), {"court": "Milimani", "caseid_no": "1"})


if __name__ == "__main__":
    unittest.main()
