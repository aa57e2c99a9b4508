"""Run context: what every stage analyzer sees, and how stage outputs enter it.

Merge rule: a completed stage contributes ``{**output_data, "output_text": output_text}``
to ``previous_stages[stage_number]``. The structured fields are spread at the
top level and ``output_text`` is always present (``None`` when the stage wrote
no prose). The same rule is used for live runs and for replaying stored
records on resume, so a resumed run sees exactly what an uninterrupted one
would have.

A fan-out stage (one record per sub-stage) contributes
``{"sub_stages": {label: merged_entry, ...}, "output_text": None}``.
"""

import copy
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from castwriter.core.stages import get_definition
from castwriter.models.episode import StageStatus

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    episode_id: str
    transcript: str
    episode_context: dict = field(default_factory=dict)
    evergreen: dict = field(default_factory=dict)
    previous_stages: dict[int, dict] = field(default_factory=dict)

    def snapshot(self) -> "RunContext":
        """Deep copy handed to a stage task so siblings never share mutable state."""
        return copy.deepcopy(self)


def merge_stage_output(output_data: dict | None, output_text: str | None) -> dict:
    return {**(output_data or {}), "output_text": output_text or None}


def merge_fan_out(entries: dict[str, dict]) -> dict:
    return {"sub_stages": dict(entries), "output_text": None}


def apply_outputs(context: RunContext, outputs: Iterable) -> None:
    """Merge settled StageOutputs into the context in stage-number order."""
    plain: dict[int, dict] = {}
    fanned: dict[int, dict[str, dict]] = defaultdict(dict)

    for output in outputs:
        entry = merge_stage_output(output.output_data, output.output_text)
        if output.sub_stage:
            fanned[output.stage_number][output.sub_stage] = entry
        else:
            plain[output.stage_number] = entry

    for stage_number in sorted(set(plain) | set(fanned)):
        if stage_number in fanned:
            context.previous_stages[stage_number] = merge_fan_out(fanned[stage_number])
        else:
            context.previous_stages[stage_number] = plain[stage_number]


class ContextLoader:
    """Builds a RunContext from the episode store and shared reference content."""

    def __init__(self, repository, evergreen_loader: Callable[[], dict]):
        self._repository = repository
        self._evergreen_loader = evergreen_loader

    def load(self, episode_id: str) -> RunContext:
        episode = self._repository.find_episode(episode_id)
        evergreen = self._evergreen_loader()
        logger.debug(
            "Context loaded for %s: %d transcript chars, user context keys=%s",
            episode_id,
            len(episode.transcript or ""),
            sorted((episode.episode_context or {}).keys()),
        )
        return RunContext(
            episode_id=episode.id,
            transcript=episode.transcript,
            episode_context=dict(episode.episode_context or {}),
            evergreen=evergreen,
        )

    def load_previous_stages(self, context: RunContext, up_to_stage: int) -> list[str]:
        """Replay completed records with stage_number < up_to_stage into the context.

        Records in that range that are not completed are skipped and reported
        as resume-integrity warnings; the caller decides whether to continue.
        Returns the warning messages.
        """
        records = self._repository.find_all_stages(context.episode_id)
        by_stage = defaultdict(list)
        for record in records:
            if record.stage_number < up_to_stage:
                by_stage[record.stage_number].append(record)

        warnings: list[str] = []
        for stage_number in sorted(by_stage):
            group = by_stage[stage_number]
            incomplete = [r for r in group if r.status != StageStatus.COMPLETED]
            for record in incomplete:
                label = f"{stage_number}/{record.sub_stage}" if record.sub_stage else stage_number
                message = (
                    f"Stage {label} is '{record.status.value}', not completed; "
                    "its output is unavailable to later stages"
                )
                logger.warning("Resume integrity (%s): %s", context.episode_id, message)
                warnings.append(message)

            completed = [r for r in group if r.status == StageStatus.COMPLETED]
            if not completed:
                continue
            if get_definition(stage_number).fans_out:
                context.previous_stages[stage_number] = merge_fan_out(
                    {
                        r.sub_stage: merge_stage_output(r.output_data, r.output_text)
                        for r in completed
                    }
                )
            else:
                record = completed[0]
                context.previous_stages[stage_number] = merge_stage_output(
                    record.output_data, record.output_text
                )

        logger.debug(
            "Replayed stages for %s: %s",
            context.episode_id,
            sorted(context.previous_stages),
        )
        return warnings
