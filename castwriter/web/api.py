"""API blueprint: episodes, pipeline runs, regeneration and status."""

import logging
from datetime import UTC, datetime
from pathlib import Path

from flask import Blueprint, current_app, jsonify, request

from castwriter.core.stages import list_stages
from castwriter.errors import (
    AnalyzerValidationError,
    InvalidStatusError,
    NotFoundError,
    PersistenceError,
)
from castwriter.models.episode import Episode, StageRecord
from castwriter.web.jobs import JobAlreadyActiveError

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__)


@api_bp.errorhandler(NotFoundError)
def _not_found(e: NotFoundError):
    return jsonify({"error": e.message}), 404


@api_bp.errorhandler(InvalidStatusError)
def _invalid_status(e: InvalidStatusError):
    return jsonify({"error": e.message}), 409


@api_bp.errorhandler(JobAlreadyActiveError)
def _job_active(e: JobAlreadyActiveError):
    return jsonify({"error": "Job already active", "job_id": e.job_id}), 409


@api_bp.errorhandler(AnalyzerValidationError)
def _invalid_input(e: AnalyzerValidationError):
    return jsonify({"error": e.message, "field": e.field}), 400


@api_bp.errorhandler(PersistenceError)
def _store_unavailable(e: PersistenceError):
    logger.error("Store unavailable: %s", e.message)
    return jsonify({"error": e.message, "retryable": True}), 503


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


@api_bp.route("/health")
def health():
    """Health check for monitoring and proxy verification."""
    return jsonify(
        {
            "status": "ok",
            "time": datetime.now(UTC).isoformat(),
            "version": "0.1.0",
        }
    )


def _get_repository():
    return current_app.config["repository"]


def _get_processor():
    return current_app.config["processor"]


def _get_job_manager():
    return current_app.config["job_manager"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _episode_to_dict(ep: Episode) -> dict:
    """Serialize an Episode ORM object to a JSON-safe dict."""
    return {
        "id": ep.id,
        "title": ep.title,
        "status": ep.status.value,
        "current_stage": ep.current_stage,
        "episode_context": ep.episode_context,
        "transcript_chars": len(ep.transcript or ""),
        "total_cost_usd": ep.total_cost_usd,
        "total_duration_seconds": ep.total_duration_seconds,
        "error_message": ep.error_message,
        "pause_requested": ep.pause_requested,
        "created_at": _iso(ep.created_at),
        "processing_started_at": _iso(ep.processing_started_at),
        "processing_completed_at": _iso(ep.processing_completed_at),
    }


def _stage_to_dict(stage: StageRecord, include_output: bool = True) -> dict:
    data = {
        "stage_number": stage.stage_number,
        "sub_stage": stage.sub_stage,
        "stage_name": stage.stage_name,
        "status": stage.status.value,
        "model_used": stage.model_used,
        "provider": stage.provider,
        "input_tokens": stage.input_tokens,
        "output_tokens": stage.output_tokens,
        "cost_usd": stage.cost_usd,
        "started_at": _iso(stage.started_at),
        "completed_at": _iso(stage.completed_at),
        "duration_seconds": stage.duration_seconds,
        "error_message": stage.error_message,
        "retry_count": stage.retry_count,
    }
    if include_output:
        data["output_data"] = stage.output_data
        data["output_text"] = stage.output_text
        data["error_details"] = stage.error_details
    return data


def _submit_job(submit, episode_id, *args):
    """Submit a background job, return (response, status_code)."""
    job = submit(_get_processor(), episode_id, *args)
    return jsonify({"job_id": job.job_id, "state": job.state}), 202


# ---------------------------------------------------------------------------
# Stage table
# ---------------------------------------------------------------------------


@api_bp.route("/stages")
def stage_table():
    return jsonify(list_stages())


# ---------------------------------------------------------------------------
# Episodes
# ---------------------------------------------------------------------------


@api_bp.route("/episodes")
def list_episodes():
    episodes = _get_repository().list_episodes()
    return jsonify([_episode_to_dict(ep) for ep in episodes])


@api_bp.route("/episodes", methods=["POST"])
def create_episode():
    body = request.get_json(silent=True) or {}
    transcript = (body.get("transcript") or "").strip()
    if not transcript:
        raise AnalyzerValidationError("transcript", "a non-empty transcript is required")
    episode_context = body.get("episode_context") or {}
    if not isinstance(episode_context, dict):
        raise AnalyzerValidationError("episode_context", "must be an object")

    episode = _get_repository().create_episode(
        transcript, episode_context=episode_context, title=body.get("title")
    )
    return jsonify(_episode_to_dict(episode)), 201


@api_bp.route("/episodes/<episode_id>")
def get_episode(episode_id: str):
    repo = _get_repository()
    data = _episode_to_dict(repo.find_episode(episode_id))
    data["stages"] = [
        _stage_to_dict(s, include_output=False) for s in repo.find_all_stages(episode_id)
    ]
    return jsonify(data)


@api_bp.route("/episodes/<episode_id>/stages")
def get_stages(episode_id: str):
    repo = _get_repository()
    repo.find_episode(episode_id)
    return jsonify([_stage_to_dict(s) for s in repo.find_all_stages(episode_id)])


@api_bp.route("/episodes/<episode_id>/status")
def get_status(episode_id: str):
    return jsonify(_get_processor().get_processing_status(episode_id).to_dict())


# ---------------------------------------------------------------------------
# Pipeline actions (runs are async via JobManager)
# ---------------------------------------------------------------------------


@api_bp.route("/episodes/<episode_id>/process", methods=["POST"])
def process_episode(episode_id: str):
    body = request.get_json(silent=True) or {}
    start = body.get("start_from_stage", 0)
    if not isinstance(start, int):
        raise AnalyzerValidationError("start_from_stage", "must be an integer")
    return _submit_job(_get_job_manager().submit_processing, episode_id, start)


@api_bp.route("/episodes/<episode_id>/stages/<int:stage_number>/regenerate", methods=["POST"])
def regenerate_stage(episode_id: str, stage_number: int):
    body = request.get_json(silent=True) or {}
    return _submit_job(
        _get_job_manager().submit_regeneration, episode_id, stage_number, body.get("sub_stage")
    )


@api_bp.route("/episodes/<episode_id>/pause", methods=["POST"])
def pause_episode(episode_id: str):
    episode = _get_processor().pause_episode(episode_id)
    return jsonify(
        {
            **_episode_to_dict(episode),
            "message": "Processing will pause after the current phase completes",
        }
    )


@api_bp.route("/episodes/<episode_id>/reset", methods=["POST"])
def reset_episode(episode_id: str):
    return jsonify(_episode_to_dict(_get_processor().reset_episode(episode_id)))


# ---------------------------------------------------------------------------
# Job status + logs
# ---------------------------------------------------------------------------


@api_bp.route("/jobs/<job_id>")
def get_job(job_id: str):
    job = _get_job_manager().get(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404
    return jsonify(job.to_dict())


@api_bp.route("/episodes/<episode_id>/action-log")
def episode_action_log(episode_id: str):
    settings = current_app.config["settings"]
    tail = request.args.get("tail", 200, type=int)
    log_path = Path(settings.logs_dir) / "episodes" / f"{episode_id}.log"

    if not log_path.exists():
        return jsonify({"lines": []})

    lines = log_path.read_text(encoding="utf-8").splitlines()
    return jsonify({"lines": lines[-tail:]})
