import unittest
from datetime import date

from case_return_schema import CaseReturnRow, create_date_from_parts
from import_errors import ErrorKind, ImportErrorHandler
from row_validator import CsvRowValidator
from case_return_fixtures import make_row


class CaseReturnRowTests(unittest.TestCase):
    def test_valid_row_is_coerced(self):
        row = CaseReturnRow.model_validate(
            make_row(date_mon="nov", legalrep="Yes", male_applicant="2", judge_2="N/A")
        )
        self.assertEqual(row.date_mon, "Nov")
        self.assertEqual(row.activity_date, date(2023, 11, 6))
        self.assertEqual(row.filed_date, date(2019, 6, 13))
        self.assertEqual(row.case_number, "HCCC-TEST123")
        self.assertTrue(row.has_legal_representation)
        self.assertEqual(row.male_applicant, 2)
        self.assertEqual(row.female_defendant, 0)
        self.assertIsNone(row.judge_2)
        self.assertEqual(row.judges, ["Kendagor, Caroline J"])
        self.assertFalse(row.is_appeal)
        self.assertIsNone(row.next_hearing_date)

    def test_appeal_fields(self):
        row = CaseReturnRow.model_validate(
            make_row(
                original_court="Kibera Law Courts",
                original_code="CMCC",
                original_number="45",
                original_year="2018",
            )
        )
        self.assertTrue(row.is_appeal)
        self.assertEqual(row.original_case_number, "CMCC/45/2018")

    def test_next_hearing_date(self):
        row = CaseReturnRow.model_validate(make_row(next_dd="2", next_mon="Feb", next_yyyy="2024"))
        self.assertEqual(row.next_hearing_date, date(2024, 2, 2))

    def test_create_date_from_parts_rejects_impossible_dates(self):
        with self.assertRaisesRegex(ValueError, "Invalid month"):
            create_date_from_parts(1, "Foo", 2023)
        with self.assertRaisesRegex(ValueError, "Invalid date: 30/Feb/2023"):
            create_date_from_parts(30, "Feb", 2023)


class CsvRowValidatorTests(unittest.TestCase):
    def setUp(self):
        self.validator = CsvRowValidator(ImportErrorHandler())

    def test_valid_row(self):
        result = self.validator.validate_row(make_row(), 1)
        self.assertTrue(result.is_valid)
        self.assertEqual(result.errors, [])
        self.assertEqual(result.validated_data.caseid_no, "TEST123")

    def test_day_out_of_range_has_suggestion(self):
        result = self.validator.validate_row(make_row(date_dd="0"), 4)
        self.assertFalse(result.is_valid)
        error = result.errors[0]
        self.assertEqual(error.row_number, 4)
        self.assertEqual(error.field, "date_dd")
        self.assertEqual(error.kind, ErrorKind.DATE_VALIDATION)
        self.assertEqual(error.suggestion, "Day must be between 1-31. Found: 0")
        self.assertEqual(error.raw_value, "0")

    def test_unknown_month(self):
        result = self.validator.validate_row(make_row(filed_mon="Foo"), 2)
        error = result.errors[0]
        self.assertEqual(error.field, "filed_mon")
        self.assertIn("3-letter abbreviation", error.suggestion)

    def test_impossible_date_is_attributed_to_the_date(self):
        result = self.validator.validate_row(make_row(date_dd="30", date_mon="Feb"), 2)
        error = result.errors[0]
        self.assertEqual(error.field, "activity_date")
        self.assertEqual(error.kind, ErrorKind.DATE_VALIDATION)
        self.assertIn("Invalid activity date", error.message)

    def test_missing_required_field(self):
        row = make_row()
        del row["caseid_no"]
        result = self.validator.validate_row(row, 5)
        error = result.errors[0]
        self.assertEqual(error.kind, ErrorKind.MISSING_FIELDS)
        self.assertEqual(error.message, "caseid_no is required but missing")

    def test_legalrep_enum(self):
        result = self.validator.validate_row(make_row(legalrep="yes"), 1)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors[0].field, "legalrep")
        self.assertIn('"Yes" or "No"', result.errors[0].suggestion)

    def test_party_count_bounds(self):
        result = self.validator.validate_row(make_row(male_applicant="1000"), 1)
        self.assertIn("exceeds maximum", result.errors[0].suggestion)
        result = self.validator.validate_row(make_row(male_applicant="-1"), 1)
        self.assertIn("0 or greater", result.errors[0].suggestion)

    def test_old_activity_year(self):
        result = self.validator.validate_row(make_row(date_yyyy="2010"), 1)
        self.assertEqual(result.errors[0].suggestion, "Year must be 2015 or later. Found: 2010")

    def test_validate_batch_keeps_row_numbers(self):
        rows = [(2, make_row()), (3, make_row(date_dd="0")), (5, make_row(caseid_no="X2"))]
        result = self.validator.validate_batch(rows)
        self.assertEqual([number for number, _row in result.valid_rows], [2, 5])
        self.assertEqual(result.failed_rows, 1)
        self.assertFalse(result.stopped_early)
        self.assertEqual(result.total_valid, 2)

    def test_validate_batch_stops_after_consecutive_failures(self):
        rows = [(index, make_row(date_dd="0")) for index in range(1, 13)]
        result = self.validator.validate_batch(rows)
        self.assertTrue(result.stopped_early)
        self.assertEqual(result.failed_rows, 10)
        self.assertEqual(result.errors[-1].kind, ErrorKind.EARLY_FAILURE)
        self.assertEqual(result.errors[-1].row_number, 0)

    def test_success_resets_failure_run(self):
        rows = [(index, make_row(date_dd="0")) for index in range(1, 10)]
        rows.append((10, make_row()))
        rows.extend((index, make_row(date_dd="0")) for index in range(11, 20))
        result = self.validator.validate_batch(rows)
        self.assertFalse(result.stopped_early)
        self.assertEqual(result.failed_rows, 18)
        self.assertEqual(result.total_valid, 1)


if __name__ == "__main__":
    unittest.main()
