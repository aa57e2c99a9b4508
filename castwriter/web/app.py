"""Flask application factory for the castwriter API."""

import logging
import time
import traceback
from datetime import UTC, datetime
from pathlib import Path

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from castwriter.config import get_settings
from castwriter.core.episode_processor import EpisodeProcessor
from castwriter.core.stage_runner import StageRunner
from castwriter.db import get_session_factory, init_db
from castwriter.repository import SqlRepository
from castwriter.services.llm_service import build_providers
from castwriter.web.api import api_bp
from castwriter.web.jobs import JobManager

logger = logging.getLogger(__name__)


def create_app(settings=None, providers=None) -> Flask:
    """Create and configure the Flask app.

    Args:
        settings: Optional Settings override (used in tests).
        providers: Optional completion providers keyed by name (used in tests).
    """
    app = Flask(__name__)

    if settings is None:
        settings = get_settings()
    if providers is None:
        providers = build_providers(settings)

    app.config["settings"] = settings
    init_db(settings.database_url)
    repository = SqlRepository(get_session_factory(settings.database_url))
    app.config["repository"] = repository
    app.config["processor"] = EpisodeProcessor(
        repository, StageRunner(providers, settings), settings
    )

    # Initialize background job manager
    logs_dir = settings.logs_dir
    Path(logs_dir).mkdir(parents=True, exist_ok=True)
    app.config["job_manager"] = JobManager(logs_dir, settings.reports_dir)

    app.register_blueprint(api_bp, url_prefix="/api")

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Global exception handler for unhandled errors."""
        if isinstance(e, HTTPException):
            return e

        # Log full stack trace to web_errors.log
        error_log = Path(logs_dir) / "web_errors.log"
        try:
            ts = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
            with open(error_log, "a", encoding="utf-8") as f:
                f.write(f"\n{'=' * 80}\n")
                f.write(f"Timestamp: {ts}\n")
                f.write(f"Method: {request.method}\n")
                f.write(f"Path: {request.path}\n")
                f.write(f"Error: {e}\n")
                f.write("Traceback:\n")
                f.write(traceback.format_exc())
                f.write(f"{'=' * 80}\n")
        except OSError:
            logger.warning("Could not write %s", error_log)

        logger.exception("Unhandled exception in request")

        error_str = str(e).lower()
        if "no such column" in error_str or "no such table" in error_str:
            return jsonify(
                {
                    "error": "Database schema out of date",
                    "hint": "Run `castwriter init-db` to create the missing tables.",
                    "details": str(e),
                }
            ), 500

        return jsonify({"error": "Internal server error", "details": str(e)}), 500

    @app.before_request
    def _start_timer():
        g.start_time = time.monotonic()

    @app.after_request
    def _log_request(response):
        duration_ms = (time.monotonic() - getattr(g, "start_time", time.monotonic())) * 1000
        logger.info(
            "%s %s %s %.0fms",
            request.method,
            request.path,
            response.status_code,
            duration_ms,
        )
        return response

    return app
