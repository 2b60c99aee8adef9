#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import Any

# Ensure project root is importable when this file is invoked directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app import create_app
from upload_checks import cleanup_old_uploads


def _as_int(name: str, default: int, minimum: int = 1) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    return max(minimum, parsed)


def _run_web() -> None:
    port = str(_as_int("PORT", 5000, minimum=1))
    timeout = str(_as_int("GUNICORN_TIMEOUT", 180, minimum=30))
    os.execvp(
        "gunicorn",
        [
            "gunicorn",
            "--bind",
            f"0.0.0.0:{port}",
            "--timeout",
            timeout,
            "app:create_app()",
        ],
    )


def _run_workers_once(app: Any) -> int:
    max_jobs = _as_int("IMPORT_WORKER_MAX_JOBS", 1, minimum=1)
    return app.import_worker.run_once(max_jobs=max_jobs)


def _cleanup_uploads(app: Any) -> int:
    settings = app.import_settings
    removed = cleanup_old_uploads(
        settings.upload_dir, settings.upload_retention_hours, logger=app.logger
    )
    if removed:
        app.logger.info("Removed %s expired uploads.", removed)
    return removed


def _run_worker_loop() -> None:
    app = create_app()
    interval_seconds = _as_int("WORKER_LOOP_INTERVAL_SECONDS", 30, minimum=5)
    while True:
        processed = _run_workers_once(app)
        app.logger.info("Worker loop processed %s import jobs.", processed)
        time.sleep(interval_seconds)


def _run_cron_once() -> None:
    app = create_app()
    processed = _run_workers_once(app)
    _cleanup_uploads(app)
    app.logger.info("Cron run processed %s import jobs.", processed)


def main() -> None:
    mode = (os.environ.get("SERVICE_MODE") or "web").strip().lower()
    if mode == "web":
        _run_web()
        return
    if mode == "worker":
        _run_worker_loop()
        return
    if mode == "cron":
        _run_cron_once()
        return
    raise SystemExit(f"Unknown SERVICE_MODE={mode!r}. Expected one of: web, worker, cron.")


if __name__ == "__main__":
    main()
