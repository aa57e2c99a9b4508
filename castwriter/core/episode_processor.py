"""Episode processor: drives an episode through the stage pipeline.

This is the only place that turns stage failures into persisted state. The
stage runner and phase executor raise; the processor marks the stage records
``failed``, puts the episode into ``error`` with a message naming the failing
stage, and re-raises to its caller.

Recovery is user-driven: ``process_episode(..., start_from_stage=n)`` resumes
by replaying the stored outputs of stages < n into a fresh context, and
``regenerate_stage`` re-runs a single stage in place.
"""

import json
import logging
import time
from collections import defaultdict
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from castwriter.config import Settings
from castwriter.core.context import ContextLoader, RunContext
from castwriter.core.phase_executor import PhaseExecutor, phase_tasks
from castwriter.core.stage_runner import StageOutput, StageRunner
from castwriter.core.stages import (
    FIRST_STAGE,
    LAST_STAGE,
    TOTAL_STAGES,
    Phase,
    Stage,
    get_definition,
    phase_of,
    phases_from,
    resolve_stage,
    stage_label,
    task_keys,
    validate_sub_stage,
)
from castwriter.errors import InvalidStatusError, PersistenceError, PhaseFailedError
from castwriter.models.episode import Episode, EpisodeStatus, StageStatus
from castwriter.repository import Repository
from castwriter.services.evergreen_service import load_evergreen

logger = logging.getLogger(__name__)

STARTABLE_STATUSES = frozenset({EpisodeStatus.DRAFT, EpisodeStatus.PAUSED, EpisodeStatus.ERROR})

ProgressCallback = Callable[[str, list[int]], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class StageResult:
    stage_number: int
    stage_name: str
    status: str  # "completed", "skipped", "failed", "discarded"
    duration_seconds: float = 0.0
    cost_usd: float = 0.0
    sub_stage: str | None = None
    error: str | None = None


@dataclass
class ProcessingResult:
    episode_id: str
    start_from_stage: int
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    status: str = "processing"  # final: "completed", "paused", "error"
    stages: list[StageResult] = field(default_factory=list)
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    warnings: list[str] = field(default_factory=list)
    resume_from_stage: int | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == EpisodeStatus.COMPLETED.value

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        data["success"] = self.success
        return data


@dataclass
class RegenerationResult:
    episode_id: str
    stage_number: int
    sub_stage: str | None
    stages: list[StageResult] = field(default_factory=list)
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProcessingStatus:
    episode_id: str
    status: str
    current_stage: int
    percent_complete: int
    completed_stages: list[int] = field(default_factory=list)
    in_flight: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)
    pause_requested: bool = False
    total_cost_usd: float = 0.0
    total_duration_seconds: float = 0.0
    error_message: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _stage_result(output: StageOutput) -> StageResult:
    return StageResult(
        stage_number=output.stage_number,
        stage_name=stage_label(output.stage_number, output.sub_stage),
        status="skipped" if output.skipped else "completed",
        duration_seconds=output.duration_seconds,
        cost_usd=output.cost_usd,
        sub_stage=output.sub_stage,
    )


class EpisodeProcessor:
    """Runs, resumes, pauses and regenerates episode pipelines.

    Store access happens only on the thread calling these methods; stage
    tasks inside a phase run on the phase executor's pool and only see
    their own copy of the context.
    """

    def __init__(
        self,
        repository: Repository,
        stage_runner: StageRunner,
        settings: Settings,
        evergreen_loader: Callable[[], dict] | None = None,
        background: Executor | None = None,
    ):
        self._repository = repository
        self._settings = settings
        self._context_loader = ContextLoader(
            repository, evergreen_loader or (lambda: load_evergreen(settings.evergreen_path))
        )
        self._phase_executor = PhaseExecutor(
            stage_runner,
            max_workers=settings.max_parallel_stages,
            timeout=settings.stage_timeout_seconds,
        )
        self._background = background

    # ------------------------------------------------------------------
    # Full runs
    # ------------------------------------------------------------------

    def process_episode(
        self,
        episode_id: str,
        start_from_stage: int = 0,
        progress_callback: ProgressCallback | None = None,
    ) -> ProcessingResult:
        """Run every stage from ``start_from_stage`` through the last stage.

        Args:
            episode_id: Episode to process.
            start_from_stage: First stage to run; earlier completed stages are
                replayed from the store.
            progress_callback: Called with (phase_id, stage_numbers) before
                each phase runs.

        Returns:
            ProcessingResult with status "completed" or "paused".

        Raises:
            NotFoundError: Unknown episode or stage (nothing is modified).
            InvalidStatusError: Episode is not draft, paused or error.
            PhaseFailedError: A stage failed; the episode is now in ``error``.
        """
        resolve_stage(start_from_stage)
        episode = self._require_startable(episode_id)
        result = ProcessingResult(episode_id=episode_id, start_from_stage=start_from_stage)
        base_cost = episode.total_cost_usd or 0.0
        started = time.monotonic()

        context = self._context_loader.load(episode_id)
        self._repository.create_stage_records(episode_id)
        if start_from_stage > FIRST_STAGE:
            result.warnings = self._context_loader.load_previous_stages(context, start_from_stage)

        self._repository.update_episode(
            episode_id,
            status=EpisodeStatus.PROCESSING,
            current_stage=start_from_stage,
            error_message=None,
            pause_requested=False,
            processing_started_at=_utcnow(),
            processing_completed_at=None,
        )
        logger.info(
            "Processing %s from stage %d (previous status '%s')",
            episode_id,
            start_from_stage,
            episode.status.value,
        )

        # Task keys of the phase in flight, added as their records enter processing
        started_tasks: list[tuple[int, str | None]] = []
        try:
            for index, (phase, stages) in enumerate(phases_from(start_from_stage)):
                if index > 0 and self._pause_requested(episode_id):
                    result.status = EpisodeStatus.PAUSED.value
                    result.resume_from_stage = int(stages[0])
                    break
                self._run_phase(
                    episode_id, phase, stages, context, result, progress_callback, started_tasks
                )
                self._repository.update_episode(
                    episode_id, total_cost_usd=round(base_cost + result.cost_usd, 6)
                )
            else:
                result.status = EpisodeStatus.COMPLETED.value
        except PhaseFailedError as e:
            result.status = EpisodeStatus.ERROR.value
            result.error = self._record_phase_failure(episode_id, e, result)
            self._finish(episode_id, result, base_cost, started)
            raise
        except Exception as e:
            result.status = EpisodeStatus.ERROR.value
            result.error = f"Pipeline aborted: {e}"
            logger.error("Processing %s aborted: %s", episode_id, e)
            self._abort_started_tasks(episode_id, started_tasks, result.error)
            self._finish(episode_id, result, base_cost, started)
            raise

        self._finish(episode_id, result, base_cost, started)
        return result

    def _run_phase(
        self,
        episode_id: str,
        phase: Phase,
        stages: tuple[Stage, ...],
        context: RunContext,
        result: ProcessingResult,
        progress_callback: ProgressCallback | None,
        started_tasks: list[tuple[int, str | None]],
    ) -> None:
        tasks = phase_tasks(stages)
        started_tasks.clear()
        for stage_number, sub_stage in tasks:
            self._repository.mark_processing(episode_id, stage_number, sub_stage)
            started_tasks.append((stage_number, sub_stage))
        self._repository.update_episode(episode_id, current_stage=int(stages[0]))
        if progress_callback:
            progress_callback(phase.id, [int(s) for s in stages])

        outcome = self._phase_executor.execute(phase, context, tasks=tasks)

        for output in outcome.outputs:
            self._repository.mark_completed(episode_id, output.stage_number, output)
            result.stages.append(_stage_result(output))
        result.cost_usd = round(result.cost_usd + outcome.cost_usd, 6)
        started_tasks.clear()

    def _record_phase_failure(
        self, episode_id: str, error: PhaseFailedError, result: ProcessingResult | None
    ) -> str:
        """Persist an atomic-phase failure. Returns the episode-facing error message.

        Failed tasks get ``retry_count + 1``. Siblings that finished are
        discarded: their records also end ``failed`` (without a retry
        increment) so no member of the phase is left ``completed`` next to
        a failed one.
        """
        for failure in error.failures:
            self._repository.mark_failed(
                episode_id,
                failure.stage_number,
                failure.message,
                error_details=failure.to_dict(),
                sub_stage=failure.sub_stage,
            )
            if result is not None:
                result.stages.append(
                    StageResult(
                        stage_number=failure.stage_number,
                        stage_name=stage_label(failure.stage_number, failure.sub_stage),
                        status="failed",
                        sub_stage=failure.sub_stage,
                        error=failure.reason,
                    )
                )

        first = error.first_failure
        for output in error.successes:
            self._repository.mark_failed(
                episode_id,
                output.stage_number,
                f"Discarded: phase '{error.phase_id}' failed at stage {first.stage_number}",
                error_details={
                    "discarded": True,
                    "phase": error.phase_id,
                    "failed_stage": first.stage_number,
                    "failed_sub_stage": first.sub_stage,
                },
                sub_stage=output.sub_stage,
                count_retry=False,
            )
            if result is not None:
                result.stages.append(
                    StageResult(
                        stage_number=output.stage_number,
                        stage_name=stage_label(output.stage_number, output.sub_stage),
                        status="discarded",
                        cost_usd=output.cost_usd,
                        sub_stage=output.sub_stage,
                    )
                )
                # The calls were made and paid for even though the output is dropped
                result.cost_usd = round(result.cost_usd + output.cost_usd, 6)

        message = (
            f"Failed at Stage {first.stage_number} "
            f"({stage_label(first.stage_number, first.sub_stage)}): {first.reason}"
        )
        logger.error("Episode %s: %s", episode_id, message)
        return message

    def _abort_started_tasks(
        self, episode_id: str, started_tasks: list[tuple[int, str | None]], message: str
    ) -> None:
        """Fail every record of an interrupted phase so none is left in flight.

        Records of that phase that were already marked completed are failed
        as well: a phase is kept whole or not at all.
        """
        details = {"aborted": True, "reason": message}
        try:
            for stage_number, sub_stage in started_tasks:
                record = self._repository.find_stage(episode_id, stage_number, sub_stage)
                if record.status == StageStatus.PROCESSING:
                    self._repository.mark_failed(
                        episode_id,
                        stage_number,
                        message,
                        error_details=details,
                        sub_stage=sub_stage,
                        count_retry=False,
                    )
                elif record.status == StageStatus.COMPLETED:
                    self._repository.update_stage(
                        episode_id,
                        stage_number,
                        sub_stage,
                        status=StageStatus.FAILED,
                        completed_at=_utcnow(),
                        error_message=message,
                        error_details=details,
                    )
        except PersistenceError:
            # Keep the original failure as the one the caller sees
            logger.exception("Could not fail in-flight stages of %s", episode_id)
        started_tasks.clear()

    def _finish(
        self, episode_id: str, result: ProcessingResult, base_cost: float, started: float
    ) -> None:
        result.completed_at = _utcnow()
        result.duration_seconds = round(time.monotonic() - started, 3)
        fields = {
            "status": EpisodeStatus(result.status),
            "pause_requested": False,
            "total_cost_usd": round(base_cost + result.cost_usd, 6),
        }
        if result.status == EpisodeStatus.COMPLETED.value:
            fields["current_stage"] = int(LAST_STAGE)
            fields["processing_completed_at"] = result.completed_at
        elif result.status == EpisodeStatus.PAUSED.value:
            fields["current_stage"] = result.resume_from_stage
        else:
            fields["error_message"] = result.error

        try:
            episode = self._repository.find_episode(episode_id)
            fields["total_duration_seconds"] = round(
                (episode.total_duration_seconds or 0.0) + result.duration_seconds, 3
            )
            self._repository.update_episode(episode_id, **fields)
        except PersistenceError:
            if result.status != EpisodeStatus.ERROR.value:
                raise
            # Keep the original failure as the one the caller sees
            logger.exception("Could not record failure state for %s", episode_id)

        logger.info(
            "Episode %s %s in %.1fs (run cost $%.4f, total $%.4f)",
            episode_id,
            result.status,
            result.duration_seconds,
            result.cost_usd,
            fields["total_cost_usd"],
        )

    def _pause_requested(self, episode_id: str) -> bool:
        episode = self._repository.find_episode(episode_id)
        if episode.pause_requested:
            logger.info("Pause requested for %s, stopping at phase boundary", episode_id)
            return True
        return False

    def _require_startable(self, episode_id: str) -> Episode:
        episode = self._repository.find_episode(episode_id)
        if episode.status not in STARTABLE_STATUSES:
            raise InvalidStatusError(
                f"Episode {episode_id} is '{episode.status.value}'; processing can only "
                "start from draft, paused or error"
            )
        return episode

    # ------------------------------------------------------------------
    # Single-stage regeneration
    # ------------------------------------------------------------------

    def regenerate_stage(
        self, episode_id: str, stage_number: int, sub_stage: str | None = None
    ) -> RegenerationResult:
        """Re-run one stage (or one sub-stage) against the stored upstream outputs.

        A fan-out stage without ``sub_stage`` regenerates every sub-stage.
        Other stage records and the episode status are left alone; the
        cost of the calls is added to the episode total.

        Raises:
            NotFoundError: Unknown episode, stage or sub-stage.
            InvalidStatusError: The episode is being processed.
            PhaseFailedError: The stage failed; its record is now ``failed``.
        """
        definition = get_definition(stage_number)
        validate_sub_stage(stage_number, sub_stage)
        episode = self._repository.find_episode(episode_id)
        if episode.status == EpisodeStatus.PROCESSING:
            raise InvalidStatusError(
                f"Episode {episode_id} is processing; regenerate after the run settles"
            )

        result = RegenerationResult(
            episode_id=episode_id, stage_number=definition.number, sub_stage=sub_stage
        )
        started = time.monotonic()
        context = self._context_loader.load(episode_id)
        self._repository.create_stage_records(episode_id)
        result.warnings = self._context_loader.load_previous_stages(context, definition.number)

        tasks = [(definition.number, sub_stage)] if sub_stage else task_keys(definition.number)
        logger.info(
            "Regenerating stage %d (%s) for %s",
            definition.number,
            stage_label(definition.number, sub_stage),
            episode_id,
        )

        started_tasks: list[tuple[int, str | None]] = []
        try:
            for number, sub in tasks:
                self._repository.mark_processing(episode_id, number, sub)
                started_tasks.append((number, sub))
            outcome = self._phase_executor.execute(phase_of(definition.number), context, tasks=tasks)
            for output in outcome.outputs:
                self._repository.mark_completed(episode_id, output.stage_number, output)
                result.stages.append(_stage_result(output))
        except PhaseFailedError as e:
            self._record_phase_failure(episode_id, e, None)
            self._add_cost(episode_id, sum(o.cost_usd for o in e.successes))
            raise
        except Exception as e:
            logger.error(
                "Regeneration of stage %d for %s aborted: %s", definition.number, episode_id, e
            )
            self._abort_started_tasks(episode_id, started_tasks, f"Regeneration aborted: {e}")
            raise

        result.cost_usd = outcome.cost_usd
        result.duration_seconds = round(time.monotonic() - started, 3)
        self._add_cost(episode_id, result.cost_usd)
        return result

    def _add_cost(self, episode_id: str, cost: float) -> None:
        if not cost:
            return
        episode = self._repository.find_episode(episode_id)
        self._repository.update_episode(
            episode_id, total_cost_usd=round((episode.total_cost_usd or 0.0) + cost, 6)
        )

    # ------------------------------------------------------------------
    # Status, pause, reset
    # ------------------------------------------------------------------

    def get_processing_status(self, episode_id: str) -> ProcessingStatus:
        """Progress derived from the stage records. Read-only."""
        episode = self._repository.find_episode(episode_id)
        records = self._repository.find_all_stages(episode_id)

        by_stage = defaultdict(list)
        for record in records:
            by_stage[record.stage_number].append(record)

        completed = [
            number
            for number, group in sorted(by_stage.items())
            if all(r.status == StageStatus.COMPLETED for r in group)
        ]
        in_flight = [
            {
                "stage_number": r.stage_number,
                "sub_stage": r.sub_stage,
                "stage_name": r.stage_name,
            }
            for r in records
            if r.status == StageStatus.PROCESSING
        ]
        failed = [
            {
                "stage_number": r.stage_number,
                "sub_stage": r.sub_stage,
                "stage_name": r.stage_name,
                "error_message": r.error_message,
                "retry_count": r.retry_count,
            }
            for r in records
            if r.status == StageStatus.FAILED
        ]

        return ProcessingStatus(
            episode_id=episode_id,
            status=episode.status.value,
            current_stage=episode.current_stage,
            percent_complete=round(100 * len(completed) / TOTAL_STAGES),
            completed_stages=completed,
            in_flight=in_flight,
            failed=failed,
            pause_requested=episode.pause_requested,
            total_cost_usd=episode.total_cost_usd,
            total_duration_seconds=episode.total_duration_seconds,
            error_message=episode.error_message,
        )

    def pause_episode(self, episode_id: str) -> Episode:
        """Ask a running pipeline to stop at the next phase boundary.

        Raises:
            NotFoundError: Unknown episode.
            InvalidStatusError: The episode is not processing.
        """
        episode = self._repository.find_episode(episode_id)
        if not self._repository.request_pause(episode_id):
            raise InvalidStatusError(
                f"Episode {episode_id} is '{episode.status.value}', only a processing "
                "episode can be paused"
            )
        logger.info("Pause requested for %s (takes effect after the current phase)", episode_id)
        return self._repository.find_episode(episode_id)

    def reset_episode(self, episode_id: str) -> Episode:
        """Return every stage record to pending and the episode to draft.

        Accumulated cost and duration are kept: they record spend, not progress.
        """
        episode = self._repository.find_episode(episode_id)
        if episode.status == EpisodeStatus.PROCESSING:
            raise InvalidStatusError(f"Episode {episode_id} is processing; pause it first")
        self._repository.reset_all_stages(episode_id)
        return self._repository.update_episode(
            episode_id,
            status=EpisodeStatus.DRAFT,
            current_stage=int(FIRST_STAGE),
            error_message=None,
            pause_requested=False,
            processing_started_at=None,
            processing_completed_at=None,
        )

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    def start_processing(
        self,
        episode_id: str,
        start_from_stage: int = 0,
        progress_callback: ProgressCallback | None = None,
        executor: Executor | None = None,
    ) -> Future:
        """Validate synchronously, then run ``process_episode`` in the background.

        Validation errors (unknown episode or stage, wrong status) raise
        here. Run failures are delivered through the returned future.
        """
        resolve_stage(start_from_stage)
        self._require_startable(episode_id)
        return (executor or self._executor()).submit(
            self.process_episode, episode_id, start_from_stage, progress_callback
        )

    def start_regeneration(
        self,
        episode_id: str,
        stage_number: int,
        sub_stage: str | None = None,
        executor: Executor | None = None,
    ) -> Future:
        get_definition(stage_number)
        validate_sub_stage(stage_number, sub_stage)
        episode = self._repository.find_episode(episode_id)
        if episode.status == EpisodeStatus.PROCESSING:
            raise InvalidStatusError(
                f"Episode {episode_id} is processing; regenerate after the run settles"
            )
        return (executor or self._executor()).submit(
            self.regenerate_stage, episode_id, stage_number, sub_stage
        )

    def _executor(self) -> Executor:
        if self._background is None:
            # One run at a time: runs of the same episode must not overlap
            self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix="episode")
        return self._background


def write_report(result: ProcessingResult, reports_dir: str) -> str:
    """Write a ProcessingResult as JSON to reports_dir/{episode_id}/.

    Returns:
        Path to the written report file.
    """
    report_dir = Path(reports_dir) / result.episode_id
    report_dir.mkdir(parents=True, exist_ok=True)

    timestamp = result.started_at.strftime("%Y%m%d_%H%M%S")
    path = report_dir / f"report_{timestamp}.json"
    path.write_text(json.dumps(result.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")

    logger.info("Report written: %s", path)
    return str(path)
