"""Phase executor: runs the tasks of one phase concurrently, all-or-nothing.

A task is one stage, or one sub-stage of a fan-out stage. Every task gets its
own deep copy of the run context, so siblings never observe each other's
output. Results are merged into the real context only after every task has
settled and only if all of them succeeded.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from castwriter.core.context import RunContext, apply_outputs
from castwriter.core.stage_runner import StageOutput, StageRunner
from castwriter.core.stages import Phase, Stage, get_definition, task_keys
from castwriter.errors import PhaseFailedError, ProviderTimeoutError, StageExecutionError

logger = logging.getLogger(__name__)


@dataclass
class PhaseOutcome:
    phase_id: str
    outputs: list[StageOutput] = field(default_factory=list)
    cost_usd: float = 0.0
    duration_seconds: float = 0.0


def phase_tasks(stages: tuple[Stage, ...]) -> list[tuple[int, str | None]]:
    """(stage_number, sub_stage) pairs for the given stages, in stage order."""
    tasks = []
    for stage in sorted(stages):
        tasks.extend(task_keys(stage))
    return tasks


class PhaseExecutor:
    """Runs a phase's tasks on a thread pool with a per-phase time budget."""

    def __init__(self, stage_runner: StageRunner, max_workers: int = 5, timeout: float | None = None):
        self._runner = stage_runner
        self._max_workers = max(1, max_workers)
        self._timeout = timeout

    def execute(
        self,
        phase: Phase,
        context: RunContext,
        stages: tuple[Stage, ...] | None = None,
        tasks: list[tuple[int, str | None]] | None = None,
    ) -> PhaseOutcome:
        """Run ``tasks`` (default: every task of ``stages`` or of the phase).

        On success the outputs are merged into ``context`` in stage order and
        returned. On any failure nothing is merged and PhaseFailedError is
        raised carrying every failure and every discarded success.
        """
        if tasks is None:
            tasks = phase_tasks(stages or phase.stages)
        started = time.monotonic()
        logger.info(
            "[%s] Phase '%s' starting: %s",
            context.episode_id,
            phase.id,
            ", ".join(f"{n}/{s}" if s else str(n) for n, s in tasks),
        )

        if len(tasks) == 1:
            outputs, failures = self._run_inline(tasks[0], context)
        else:
            outputs, failures = self._run_parallel(tasks, context)

        duration = round(time.monotonic() - started, 3)
        if failures:
            logger.error(
                "[%s] Phase '%s' failed after %.1fs: %d of %d tasks failed, %d results discarded",
                context.episode_id,
                phase.id,
                duration,
                len(failures),
                len(tasks),
                len(outputs),
            )
            raise PhaseFailedError(phase.id, failures, outputs)

        apply_outputs(context, outputs)
        outcome = PhaseOutcome(
            phase_id=phase.id,
            outputs=outputs,
            cost_usd=round(sum(o.cost_usd for o in outputs), 6),
            duration_seconds=duration,
        )
        logger.info(
            "[%s] Phase '%s' completed in %.1fs ($%.4f)",
            context.episode_id,
            phase.id,
            duration,
            outcome.cost_usd,
        )
        return outcome

    def _run_inline(self, task, context):
        stage_number, sub_stage = task
        try:
            output = self._runner.run_stage(stage_number, context.snapshot(), sub_stage)
        except StageExecutionError as e:
            return [], [e]
        return [output], []

    def _run_parallel(self, tasks, context):
        pool = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(tasks)), thread_name_prefix="stage"
        )
        try:
            futures = {
                pool.submit(self._runner.run_stage, n, context.snapshot(), s): (n, s)
                for n, s in tasks
            }
            done, not_done = wait(futures, timeout=self._timeout)
        finally:
            # Stragglers keep running in the background; their results are ignored
            pool.shutdown(wait=False, cancel_futures=True)

        outputs: list[StageOutput] = []
        failures: list[StageExecutionError] = []
        for future, (stage_number, sub_stage) in futures.items():
            if future in not_done:
                definition = get_definition(stage_number)
                cause = ProviderTimeoutError(definition.provider, self._timeout)
                failures.append(
                    StageExecutionError(
                        stage_number,
                        definition.name,
                        f"did not finish within the {self._timeout:g}s phase budget",
                        sub_stage=sub_stage,
                        cause=cause,
                    )
                )
                continue
            error = future.exception()
            if error is None:
                outputs.append(future.result())
            elif isinstance(error, StageExecutionError):
                failures.append(error)
            else:
                raise error

        return outputs, failures
