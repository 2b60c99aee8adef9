import unittest
from datetime import date

from sqlalchemy import func, select

from case_activity import CaseActivityService, build_parties
from case_return_schema import CaseReturnRow
from import_batches import BatchCreationData, ImportBatchService
from master_data import MasterDataNormalizer, MasterDataTracker
from case_return_fixtures import build_test_database, make_row


def _row(**overrides):
    return CaseReturnRow.model_validate(make_row(**overrides))


class BuildPartiesTests(unittest.TestCase):
    def test_totals(self):
        parties = build_parties(
            _row(male_applicant="1", female_applicant="2", organization_defendant="1")
        )
        self.assertEqual(parties["applicants"]["total"], 3)
        self.assertEqual(parties["defendants"]["organizationCount"], 1)
        self.assertEqual(parties["defendants"]["total"], 1)


class CaseActivityServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.tables = build_test_database()
        self.service = CaseActivityService(self.tables, MasterDataNormalizer(self.tables))
        batch = ImportBatchService(self.engine, self.tables).create_batch(
            BatchCreationData(filename="returns.csv", file_size=10, file_checksum="abc")
        )
        self.batch_id = batch["id"]

    def tearDown(self):
        self.engine.dispose()

    def _import(self, row, tracker=None):
        with self.engine.begin() as conn:
            case = self.service.create_or_update_case(conn, row, tracker)
            created = self.service.create_case_activity(conn, row, case.case_id, self.batch_id, tracker)
        return case, created

    def _count(self, table_name):
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(self.tables[table_name])).scalar()

    def test_first_row_creates_case_and_activity(self):
        tracker = MasterDataTracker()
        case, created = self._import(_row(), tracker)
        self.assertTrue(case.is_new_case)
        self.assertTrue(created)
        self.assertEqual(case.court_name, "Milimani Civil")

        cases = self.tables["cases"]
        courts = self.tables["courts"]
        with self.engine.connect() as conn:
            stored = conn.execute(select(cases).where(cases.c.id == case.case_id)).mappings().one()
            court_type = conn.execute(select(courts.c.court_type)).scalar_one()
        self.assertEqual(stored["case_number"], "HCCC-TEST123")
        self.assertEqual(stored["total_activities"], 1)
        self.assertEqual(stored["filed_date"], date(2019, 6, 13))
        self.assertEqual(stored["last_activity_date"], date(2023, 11, 6))
        self.assertEqual(court_type, "HC")
        stats = tracker.get_stats()
        self.assertEqual((stats.courts_created, stats.case_types_created), (1, 1))

    def test_later_activity_updates_case(self):
        first, _ = self._import(_row())
        second, created = self._import(_row(date_dd="20", legalrep="Yes"))
        self.assertFalse(second.is_new_case)
        self.assertEqual(second.case_id, first.case_id)
        self.assertTrue(created)

        cases = self.tables["cases"]
        with self.engine.connect() as conn:
            stored = conn.execute(select(cases).where(cases.c.id == first.case_id)).mappings().one()
        self.assertEqual(stored["total_activities"], 2)
        self.assertEqual(stored["last_activity_date"], date(2023, 11, 20))
        self.assertTrue(stored["has_legal_representation"])
        self.assertEqual(self._count("case_activities"), 2)

    def test_earlier_activity_keeps_last_activity_date(self):
        first, _ = self._import(_row(date_dd="20"))
        self._import(_row(date_dd="2"))
        cases = self.tables["cases"]
        with self.engine.connect() as conn:
            last = conn.execute(
                select(cases.c.last_activity_date).where(cases.c.id == first.case_id)
            ).scalar_one()
        self.assertEqual(last, date(2023, 11, 20))

    def test_repeated_activity_is_not_inserted(self):
        self._import(_row())
        _case, created = self._import(_row(outcome="Adjourned"))
        self.assertFalse(created)
        self.assertEqual(self._count("case_activities"), 1)

    def test_duplicate_check_only_reads(self):
        row = _row()
        with self.engine.begin() as conn:
            self.assertFalse(self.service.check_for_duplicate_activity(conn, row))
        self.assertEqual(self._count("courts"), 0)
        self.assertEqual(self._count("judges"), 0)

        self._import(row)
        with self.engine.begin() as conn:
            self.assertTrue(self.service.check_for_duplicate_activity(conn, row))
            self.assertFalse(
                self.service.check_for_duplicate_activity(conn, _row(comingfor="Hearing"))
            )

    def test_judges_are_assigned_once_with_a_primary(self):
        row = _row(judge_2="Hon. Kendagor, Caroline J", judge_3="Mutuku, Peter")
        case, _ = self._import(row)
        assignments = self.tables["case_judge_assignments"]
        activities = self.tables["case_activities"]
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(assignments.c.judge_id, assignments.c.is_primary)
                .where(assignments.c.case_id == case.case_id)
                .order_by(assignments.c.id)
            ).all()
            judges = conn.execute(select(activities.c.judges)).scalar_one()
        self.assertEqual([bool(item[1]) for item in rows], [True, False])
        self.assertEqual(self._count("judges"), 2)
        self.assertEqual(judges, ["Kendagor, Caroline J", "Kendagor, Caroline J", "Mutuku, Peter"])

    def test_activity_fields(self):
        self._import(_row(custody="2", next_dd="5", next_mon="Feb", next_yyyy="2024"))
        activities = self.tables["case_activities"]
        with self.engine.connect() as conn:
            stored = conn.execute(select(activities)).mappings().one()
        self.assertEqual(stored["activity_type"], "Mention")
        self.assertEqual(stored["outcome"], "Directions Given")
        self.assertEqual(stored["custody_status"], "IN_CUSTODY")
        self.assertEqual(stored["custody_count"], 2)
        self.assertEqual(stored["next_hearing_date"], date(2024, 2, 5))
        self.assertEqual(stored["import_batch_id"], self.batch_id)

    def test_appeal_records_original_court(self):
        row = _row(
            original_court="Kibera Law Courts",
            original_code="CMCC",
            original_number="45",
            original_year="2018",
        )
        case, _ = self._import(row)
        cases = self.tables["cases"]
        with self.engine.connect() as conn:
            stored = conn.execute(select(cases).where(cases.c.id == case.case_id)).mappings().one()
        self.assertIsNotNone(stored["original_court_id"])
        self.assertNotEqual(stored["original_court_id"], stored["court_id"])
        self.assertEqual(stored["original_case_number"], "CMCC/45/2018")
        self.assertEqual(self._count("courts"), 2)


if __name__ == "__main__":
    unittest.main()
