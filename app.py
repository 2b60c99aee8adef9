import os
from pathlib import Path
from typing import Any, Optional

from flask import Flask, jsonify, request
from sqlalchemy import MetaData
from sqlalchemy import text as sa_text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from import_batches import ImportBatchService
from import_config import build_database_url, load_import_settings
from import_errors import (
    BatchNotFoundError,
    DuplicateImportError,
    ImportInitiationError,
    UploadValidationError,
)
from import_jobs import ImportJobPayload, ImportJobQueue, ImportJobService, ImportStatusStore
from import_logging import redact_database_url
from import_models import build_engine, build_import_tables
from import_service import CsvImportService
from import_worker import ImportJobWorker
from upload_checks import save_uploaded_file, validate_csv_structure, validate_uploaded_file

# Room for multipart boundaries and form fields around the CSV body.
UPLOAD_OVERHEAD_BYTES = 1024 * 1024


def _parse_user_id(raw: Optional[str]) -> Optional[int]:
    if raw is None or not str(raw).strip():
        return None
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise UploadValidationError(["userId must be an integer"]) from exc


def _remove_quietly(app: Flask, path: Any) -> None:
    try:
        os.remove(path)
    except OSError:
        app.logger.warning("Unable to remove uploaded file %s", path)


def create_app() -> Flask:
    app = Flask(__name__)

    settings = load_import_settings()
    database_url = build_database_url()
    engine = build_engine(database_url)
    app.logger.info("Using database %s", redact_database_url(database_url))

    metadata = MetaData()
    tables = build_import_tables(metadata)
    try:
        metadata.create_all(engine)
    except OperationalError as exc:
        if "already exists" in str(exc).lower():
            app.logger.warning("Database tables already exist; skipping create_all.")
        else:
            raise

    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_bytes + UPLOAD_OVERHEAD_BYTES

    status_store = ImportStatusStore(engine, tables)
    queue = ImportJobQueue(
        engine,
        tables,
        logger=app.logger,
        max_attempts=settings.job_max_attempts,
        backoff_seconds=settings.job_backoff_seconds,
    )
    job_service = ImportJobService(queue, status_store, logger=app.logger)
    batch_service = ImportBatchService(
        engine,
        tables,
        status_store=status_store,
        logger=app.logger,
        error_log_limit=settings.error_log_limit,
    )
    import_service = CsvImportService(
        engine,
        tables,
        batch_service=batch_service,
        job_service=job_service,
        settings=settings,
        logger=app.logger,
    )

    app.engine = engine
    app.import_tables = tables
    app.import_settings = settings
    app.import_service = import_service
    app.import_queue = queue
    app.import_worker = ImportJobWorker(import_service, queue, logger=app.logger)

    @app.errorhandler(413)
    def upload_too_large(_error):
        limit_mb = settings.max_upload_bytes // (1024 * 1024)
        return jsonify({"error": f"File too large. Maximum size is {limit_mb}MB"}), 413

    @app.post("/api/import/upload")
    def import_upload():
        uploaded = request.files.get("file")
        filename = uploaded.filename if uploaded else None
        try:
            validate_uploaded_file(filename, None, settings.max_upload_bytes)
            user_id = _parse_user_id(request.form.get("userId"))
        except UploadValidationError as exc:
            return jsonify({"error": str(exc), "errors": exc.errors}), 400

        stored_path = save_uploaded_file(uploaded, settings.upload_dir)
        file_size = stored_path.stat().st_size
        try:
            validate_uploaded_file(filename, file_size, settings.max_upload_bytes)
            validate_csv_structure(stored_path)
        except UploadValidationError as exc:
            _remove_quietly(app, stored_path)
            return jsonify({"error": str(exc), "errors": exc.errors}), 400

        try:
            initiated = import_service.initiate(
                str(stored_path), Path(filename).name, file_size, user_id
            )
        except DuplicateImportError as exc:
            _remove_quietly(app, stored_path)
            return jsonify({"error": str(exc), "batchId": exc.batch_id}), 409
        except ImportInitiationError as exc:
            _remove_quietly(app, stored_path)
            app.logger.error("Import initiation failed: %s", exc)
            return jsonify({"error": str(exc)}), 500

        if (request.form.get("sync") or request.args.get("sync") or "").lower() == "true":
            job = queue.get_job(initiated.job_id)
            result = import_service.process(ImportJobPayload.from_dict(job["payload"]))
            queue.mark_completed(initiated.job_id)
            payload = result.as_dict()
            payload["jobId"] = initiated.job_id
            return jsonify(payload), 200

        return jsonify(initiated.as_dict()), 202

    @app.get("/api/import/status/<int:batch_id>")
    def import_status(batch_id: int):
        status = import_service.get_status(batch_id)
        if status is None:
            return jsonify({"error": f"Import batch {batch_id} not found"}), 404
        return jsonify(status)

    @app.get("/api/import/history")
    def import_history():
        limit = request.args.get("limit", default=20, type=int)
        return jsonify({"imports": import_service.get_history(limit)})

    @app.get("/api/import/<int:batch_id>/errors")
    def import_errors(batch_id: int):
        page = request.args.get("page", default=1, type=int)
        limit = request.args.get("limit", default=50, type=int)
        error_type = request.args.get("errorType") or None
        try:
            report = import_service.get_errors(
                batch_id, page=page, limit=limit, error_type=error_type
            )
        except BatchNotFoundError as exc:
            return jsonify({"error": str(exc)}), 404
        return jsonify(report)

    @app.get("/api/import/verify/<int:batch_id>")
    def import_verify(batch_id: int):
        try:
            report = import_service.verify_batch(batch_id)
        except BatchNotFoundError as exc:
            return jsonify({"error": str(exc)}), 404
        return jsonify(report)

    @app.route("/api/health")
    def api_health():
        try:
            with engine.connect() as conn:
                conn.execute(sa_text("SELECT 1"))
        except SQLAlchemyError:
            app.logger.exception("Database health check failed.")
            return jsonify({"status": "degraded", "database": "error"}), 503
        return jsonify({"status": "ok", "database": "ok"})

    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
