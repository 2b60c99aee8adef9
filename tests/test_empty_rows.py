import unittest

from empty_rows import EmptyRowConfig, EmptyRowDetector


class EmptyRowDetectorTests(unittest.TestCase):
    def test_default_sentinels_are_empty(self):
        detector = EmptyRowDetector()
        for value in ("", "  ", "N/A", "NULL", "null", "-", "n/a", None):
            self.assertTrue(detector.is_empty_field(value), value)
        self.assertFalse(detector.is_empty_field("0"))
        self.assertFalse(detector.is_empty_field("Milimani"))

    def test_whitespace_counts_only_when_trimming(self):
        detector = EmptyRowDetector(EmptyRowConfig(trim_whitespace=False))
        self.assertFalse(detector.is_empty_field("   "))
        self.assertFalse(detector.is_empty_field(" N/A "))

    def test_custom_sentinels(self):
        detector = EmptyRowDetector(EmptyRowConfig(custom_empty_values=("", "none")))
        self.assertTrue(detector.is_empty_field("none"))
        self.assertFalse(detector.is_empty_field("N/A"))

    def test_rows_without_data_are_recorded(self):
        detector = EmptyRowDetector()
        self.assertTrue(detector.is_empty_row({}, 3))
        self.assertTrue(detector.is_empty_row({"outcome": "N/A", "details": "-"}, 7))
        self.assertFalse(detector.is_empty_row({"outcome": "Heard"}, 8))
        stats = detector.get_stats()
        self.assertEqual(stats.total_empty_rows, 2)
        self.assertEqual(stats.empty_row_numbers, [3, 7])
        self.assertEqual(stats.critical_fields_missing_rows, 0)

    def test_sentinel_in_critical_field_marks_row_empty(self):
        detector = EmptyRowDetector()
        row = {"court": "N/A", "caseid_no": "12", "outcome": "Heard"}
        self.assertTrue(detector.is_empty_row(row, 4))
        stats = detector.get_stats()
        self.assertEqual(stats.critical_fields_missing_rows, 1)
        self.assertEqual(stats.critical_fields_missing_row_numbers, [4])
        self.assertEqual(stats.total_empty_rows, 1)
        self.assertEqual(stats.empty_row_numbers, [])

    def test_absent_critical_field_is_left_to_validation(self):
        detector = EmptyRowDetector()
        self.assertFalse(detector.is_empty_row({"caseid_no": "12"}, 1))
        self.assertIn("court", detector.get_missing_critical_fields({"caseid_no": "12"}))

    def test_stats_are_copies_and_resettable(self):
        detector = EmptyRowDetector()
        detector.is_empty_row({}, 1)
        stats = detector.get_stats()
        stats.empty_row_numbers.append(99)
        self.assertEqual(detector.get_stats().empty_row_numbers, [1])
        detector.reset_stats()
        self.assertEqual(detector.get_stats().total_empty_rows, 0)

    def test_filter_empty_rows_numbers_from_one(self):
        detector = EmptyRowDetector()
        kept = detector.filter_empty_rows([{"outcome": "Heard"}, {}, {"outcome": ""}])
        self.assertEqual(kept, [{"outcome": "Heard"}])
        self.assertEqual(detector.get_stats().empty_row_numbers, [2, 3])

    def test_update_config(self):
        detector = EmptyRowDetector()
        detector.update_config(treat_missing_critical_fields_as_empty=False)
        self.assertFalse(detector.config.treat_missing_critical_fields_as_empty)
        self.assertFalse(detector.is_empty_row({"court": "N/A", "outcome": "Heard"}))

    def test_stats_as_dict(self):
        detector = EmptyRowDetector()
        detector.is_empty_row({}, 2)
        self.assertEqual(
            detector.get_stats().as_dict(),
            {
                "totalEmptyRows": 1,
                "emptyRowNumbers": [2],
                "criticalFieldsMissingRows": 0,
                "criticalFieldsMissingRowNumbers": [],
            },
        )


if __name__ == "__main__":
    unittest.main()
