"""Background job manager for pipeline runs and stage regenerations.

Uses a single-thread ThreadPoolExecutor so jobs queue up and execute one at
a time, which keeps runs of the same episode from overlapping and suits
SQLite's single writer. Jobs live in memory; on restart they are lost, but
the episode and stage records are always the source of truth.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from castwriter.core.episode_processor import EpisodeProcessor, ProcessingResult, write_report
from castwriter.errors import InvalidStatusError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobAlreadyActiveError(InvalidStatusError):
    """A queued or running job already exists for the episode."""

    def __init__(self, job: "Job"):
        super().__init__(f"Job {job.job_id} is already {job.state} for episode {job.episode_id}")
        self.job_id = job.job_id


@dataclass
class Job:
    job_id: str
    episode_id: str
    action: str  # process|regenerate
    state: str = "queued"  # queued|running|success|paused|error
    stage: str = ""
    message: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    result: dict | None = None
    future: Future | None = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "episode_id": self.episode_id,
            "action": self.action,
            "state": self.state,
            "stage": self.stage,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "result": self.result,
        }


class JobManager:
    def __init__(self, logs_dir: str, reports_dir: str | None = None):
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="castwriter-job",
        )
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()
        self._logs_dir = logs_dir
        self._reports_dir = reports_dir
        Path(logs_dir).mkdir(parents=True, exist_ok=True)
        (Path(logs_dir) / "episodes").mkdir(exist_ok=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit_processing(
        self, processor: EpisodeProcessor, episode_id: str, start_from_stage: int = 0
    ) -> Job:
        """Queue a pipeline run. Validation errors raise before a job exists."""
        job = Job(job_id=uuid.uuid4().hex[:12], episode_id=episode_id, action="process")

        def on_phase(phase_id: str, stages: list[int]) -> None:
            self._update(job, state="running", stage=phase_id)
            self._log(job, f"Running phase {phase_id} (stages {', '.join(map(str, stages))})")

        self._reserve(job)
        try:
            future = processor.start_processing(
                episode_id,
                start_from_stage,
                progress_callback=on_phase,
                executor=self._executor,
            )
        except Exception:
            self._release(job)
            raise
        self._track(job, future, f"Starting pipeline from stage {start_from_stage}")
        return job

    def submit_regeneration(
        self,
        processor: EpisodeProcessor,
        episode_id: str,
        stage_number: int,
        sub_stage: str | None = None,
    ) -> Job:
        job = Job(job_id=uuid.uuid4().hex[:12], episode_id=episode_id, action="regenerate")
        job.stage = f"{stage_number}/{sub_stage}" if sub_stage else str(stage_number)
        self._reserve(job)
        try:
            future = processor.start_regeneration(
                episode_id, stage_number, sub_stage, executor=self._executor
            )
        except Exception:
            self._release(job)
            raise
        self._track(job, future, f"Regenerating stage {job.stage}")
        return job

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def active_for_episode(self, episode_id: str) -> Job | None:
        with self._lock:
            return self._active_locked(episode_id)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _active_locked(self, episode_id: str) -> Job | None:
        for job in self._jobs.values():
            if job.episode_id == episode_id and job.state in ("queued", "running"):
                return job
        return None

    def _reserve(self, job: Job) -> None:
        """Register a queued job unless the episode already has an active one."""
        with self._lock:
            active = self._active_locked(job.episode_id)
            if active is not None:
                raise JobAlreadyActiveError(active)
            self._jobs[job.job_id] = job

    def _release(self, job: Job) -> None:
        with self._lock:
            self._jobs.pop(job.job_id, None)

    def _track(self, job: Job, future: Future, message: str) -> None:
        job.future = future
        self._log(job, message)
        logger.info("Job %s submitted: %s %s", job.job_id, job.action, job.episode_id)
        future.add_done_callback(lambda f: self._settle(job, f))

    def _settle(self, job: Job, future: Future) -> None:
        if future.cancelled():
            self._update(job, state="error", message="cancelled before it started")
            return
        error = future.exception()
        if error is not None:
            logger.error("Job %s failed: %s", job.job_id, error)
            self._update(job, state="error", message=str(error))
            self._log(job, f"ERROR: {error}")
            return

        result = future.result()
        if isinstance(result, ProcessingResult):
            state = "paused" if result.status == "paused" else "success"
            if self._reports_dir:
                write_report(result, self._reports_dir)
            message = f"Pipeline {result.status}: ${result.cost_usd:.4f}"
        else:
            state = "success"
            message = f"Regeneration complete: ${result.cost_usd:.4f}"
        self._update(job, state=state, stage="done", message=message, result=result.to_dict())
        self._log(job, message)

    def _update(self, job: Job, **kwargs) -> None:
        with self._lock:
            for key, value in kwargs.items():
                setattr(job, key, value)
            job.updated_at = _utcnow()

    def _log(self, job: Job, msg: str) -> None:
        ts = _utcnow().strftime("%Y-%m-%d %H:%M:%S")
        line = f"{ts} [{job.action}] {msg}\n"
        log_path = Path(self._logs_dir) / "episodes" / f"{job.episode_id}.log"
        try:
            with open(log_path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError:
            logger.warning("Failed to write episode log: %s", log_path)
