from __future__ import annotations

from typing import Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    text as sa_text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine

BATCH_STATUSES = ("PENDING", "PROCESSING", "COMPLETED", "FAILED")
JOB_STATUSES = ("queued", "running", "completed", "failed")


def build_engine(database_url: str, **kwargs) -> Engine:
    engine = create_engine(database_url, future=True, pool_pre_ping=True, **kwargs)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine)
    return engine


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first DML statement, which breaks
    # SAVEPOINT scoping; take over transaction demarcation explicitly.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_import_tables(metadata: MetaData) -> Dict[str, Table]:
    json_type = JSON().with_variant(JSONB, "postgresql")

    users = Table(
        "users",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("email", String(255), nullable=False, unique=True),
        Column("name", String(255), nullable=False),
        Column("role", String(40), nullable=False, server_default="DATA_ENTRY"),
        Column("is_active", Boolean, nullable=False, server_default=sa_text("true")),
        Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    )

    courts = Table(
        "courts",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("court_name", String(255), nullable=False, unique=True),
        Column("court_code", String(50), nullable=False, unique=True),
        Column("court_type", String(10), nullable=False),
        Column("is_active", Boolean, nullable=False, server_default=sa_text("true")),
        Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    )

    judges = Table(
        "judges",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("full_name", String(255), nullable=False, unique=True),
        Column("first_name", String(120), nullable=False),
        Column("last_name", String(120), nullable=False),
        Column("is_active", Boolean, nullable=False, server_default=sa_text("true")),
        Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
        Index("ix_judges_first_last", "first_name", "last_name"),
    )

    case_types = Table(
        "case_types",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("case_type_name", String(100), nullable=False, unique=True),
        Column("case_type_code", String(20), nullable=False, unique=True),
        Column("description", Text, nullable=True),
        Column("is_active", Boolean, nullable=False, server_default=sa_text("true")),
        Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    )

    cases = Table(
        "cases",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("case_number", String(80), nullable=False),
        Column("court_name", String(255), nullable=False),
        Column("court_id", Integer, ForeignKey("courts.id"), nullable=False),
        Column("original_court_id", Integer, ForeignKey("courts.id"), nullable=True),
        Column("case_type_id", Integer, ForeignKey("case_types.id"), nullable=False),
        Column("caseid_type", String(20), nullable=False),
        Column("caseid_no", String(50), nullable=False),
        Column("filed_date", Date, nullable=False),
        Column("original_case_number", String(120), nullable=True),
        Column("original_year", Integer, nullable=True),
        Column("parties", json_type, nullable=False),
        Column("male_applicant", Integer, nullable=False, server_default="0"),
        Column("female_applicant", Integer, nullable=False, server_default="0"),
        Column("organization_applicant", Integer, nullable=False, server_default="0"),
        Column("male_defendant", Integer, nullable=False, server_default="0"),
        Column("female_defendant", Integer, nullable=False, server_default="0"),
        Column("organization_defendant", Integer, nullable=False, server_default="0"),
        Column("status", String(20), nullable=False, server_default="ACTIVE"),
        Column("has_legal_representation", Boolean, nullable=False, server_default=sa_text("false")),
        Column("last_activity_date", Date, nullable=True),
        Column("total_activities", Integer, nullable=False, server_default="0"),
        Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
        Column(
            "updated_at",
            DateTime(timezone=True),
            server_default=func.now(),
            onupdate=func.now(),
            nullable=False,
        ),
        UniqueConstraint("case_number", "court_name", name="uq_cases_number_court"),
        Index("ix_cases_court_id", "court_id"),
    )

    case_judge_assignments = Table(
        "case_judge_assignments",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("case_id", Integer, ForeignKey("cases.id"), nullable=False),
        Column("judge_id", Integer, ForeignKey("judges.id"), nullable=False),
        Column("is_primary", Boolean, nullable=False, server_default=sa_text("false")),
        Column("assigned_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
        UniqueConstraint("case_id", "judge_id", name="uq_case_judge"),
    )

    import_batches = Table(
        "import_batches",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("filename", String(255), nullable=False),
        Column("file_size", Integer, nullable=False),
        Column("file_checksum", String(64), nullable=False, unique=True),
        Column("total_records", Integer, nullable=False, server_default="0"),
        Column("successful_records", Integer, nullable=False, server_default="0"),
        Column("failed_records", Integer, nullable=False, server_default="0"),
        Column("empty_rows_skipped", Integer, nullable=False, server_default="0"),
        Column("duplicates_skipped", Integer, nullable=False, server_default="0"),
        Column("status", String(20), nullable=False, server_default="PENDING"),
        Column("failure_category", String(40), nullable=True),
        Column("failure_reason", Text, nullable=True),
        Column("error_logs", json_type, nullable=False),
        Column("created_by", Integer, ForeignKey("users.id"), nullable=False),
        Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
        Column("completed_at", DateTime(timezone=True), nullable=True),
        CheckConstraint(
            "status in ('PENDING','PROCESSING','COMPLETED','FAILED')",
            name="ck_import_batches_status",
        ),
        Index("ix_import_batches_created_at", "created_at"),
    )

    case_activities = Table(
        "case_activities",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("case_id", Integer, ForeignKey("cases.id"), nullable=False),
        Column("activity_date", Date, nullable=False),
        Column("activity_type", String(100), nullable=False),
        Column("outcome", String(100), nullable=False),
        Column("reason_for_adjournment", Text, nullable=True),
        Column("next_hearing_date", Date, nullable=True),
        Column("primary_judge_id", Integer, ForeignKey("judges.id"), nullable=False),
        Column("judges", json_type, nullable=False),
        Column("has_legal_representation", Boolean, nullable=False, server_default=sa_text("false")),
        Column("applicant_witnesses", Integer, nullable=False, server_default="0"),
        Column("defendant_witnesses", Integer, nullable=False, server_default="0"),
        Column("custody_status", String(20), nullable=False),
        Column("custody_count", Integer, nullable=False, server_default="0"),
        Column("details", Text, nullable=True),
        Column("import_batch_id", Integer, ForeignKey("import_batches.id"), nullable=False),
        Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
        UniqueConstraint(
            "case_id",
            "activity_date",
            "activity_type",
            "primary_judge_id",
            name="uq_case_activity_natural_key",
        ),
        Index("ix_case_activities_import_batch_id", "import_batch_id"),
    )

    import_error_details = Table(
        "import_error_details",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("batch_id", Integer, ForeignKey("import_batches.id"), nullable=False),
        Column("row_number", Integer, nullable=False),
        Column("error_type", String(40), nullable=False),
        Column("error_message", Text, nullable=False),
        Column("field_name", String(80), nullable=True),
        Column("suggestion", Text, nullable=True),
        Column("raw_value", Text, nullable=True),
        Column("raw_data", json_type, nullable=True),
        Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
        Index("ix_import_error_details_batch_row", "batch_id", "row_number"),
    )

    import_jobs = Table(
        "import_jobs",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("batch_id", Integer, ForeignKey("import_batches.id"), nullable=False),
        Column("payload", json_type, nullable=False),
        Column("status", String(20), nullable=False, server_default="queued"),
        Column("attempts", Integer, nullable=False, server_default="0"),
        Column("max_attempts", Integer, nullable=False, server_default="3"),
        Column("next_run_at", DateTime(timezone=True), nullable=True),
        Column("last_error", Text, nullable=True),
        Column("started_at", DateTime(timezone=True), nullable=True),
        Column("finished_at", DateTime(timezone=True), nullable=True),
        Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
        CheckConstraint(
            "status in ('queued','running','completed','failed')",
            name="ck_import_jobs_status",
        ),
        Index("ix_import_jobs_status_next_run", "status", "next_run_at"),
    )

    import_status = Table(
        "import_status",
        metadata,
        Column("batch_id", Integer, primary_key=True),
        Column("status", String(20), nullable=False),
        Column("progress", Integer, nullable=False, server_default="0"),
        Column("message", Text, nullable=True),
        Column("stats", json_type, nullable=True),
        Column("details", json_type, nullable=True),
        Column(
            "updated_at",
            DateTime(timezone=True),
            server_default=func.now(),
            onupdate=func.now(),
            nullable=False,
        ),
    )

    return {
        "users": users,
        "courts": courts,
        "judges": judges,
        "case_types": case_types,
        "cases": cases,
        "case_judge_assignments": case_judge_assignments,
        "case_activities": case_activities,
        "import_batches": import_batches,
        "import_error_details": import_error_details,
        "import_jobs": import_jobs,
        "import_status": import_status,
    }
