"""Stage runner: executes one stage's analyzer and normalizes its result.

The runner never retries and never swallows errors. Whatever goes wrong
(missing upstream data, a provider failure, an unparseable response) comes
back out as a StageExecutionError whose ``retryable`` flag follows the cause.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from castwriter.analyzers import distribution, planning, preprocess, transcript, writing
from castwriter.analyzers.common import AnalyzerResult
from castwriter.config import Settings
from castwriter.core.context import RunContext
from castwriter.core.stages import (
    OutputShape,
    Stage,
    StageDefinition,
    get_definition,
    stage_label,
    validate_sub_stage,
)
from castwriter.errors import (
    AnalyzerValidationError,
    CastwriterError,
    ProviderError,
    StageExecutionError,
)
from castwriter.services.llm_service import (
    CompletionProvider,
    LLMResponse,
    ModelConfig,
    calculate_cost,
)

logger = logging.getLogger(__name__)

Analyzer = Callable[..., AnalyzerResult]

ANALYZERS: dict[Stage, Analyzer] = {
    Stage.PREPROCESS: preprocess.preprocess_transcript,
    Stage.ANALYZE: transcript.analyze_transcript,
    Stage.QUOTES: transcript.extract_quotes,
    Stage.OUTLINE: planning.outline_post,
    Stage.PARAGRAPHS: planning.outline_paragraphs,
    Stage.HEADLINES: planning.generate_headlines,
    Stage.DRAFT: writing.draft_post,
    Stage.REFINE: writing.refine_post,
    Stage.SOCIAL: distribution.generate_social,
    Stage.EMAIL: distribution.generate_email,
}

_unmapped = set(Stage) - set(ANALYZERS)
if _unmapped:
    raise RuntimeError(f"Stages without an analyzer: {sorted(int(s) for s in _unmapped)}")


@dataclass
class StageOutput:
    """Canonical result of one stage (or sub-stage) run."""

    stage_number: int
    output_data: dict | None
    output_text: str | None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    skipped: bool = False
    sub_stage: str | None = None
    duration_seconds: float = 0.0


class StageCall:
    """Metered completion client handed to one analyzer invocation.

    Uses the stage's model preset, resolves the provider lazily (a skipped
    stage never needs one) and sums tokens and cost over every call the
    analyzer makes.
    """

    def __init__(
        self,
        definition: StageDefinition,
        provider: CompletionProvider | None,
        settings: Settings,
    ):
        self.definition = definition
        self.settings = settings
        self._provider = provider
        self.calls = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.cost_usd = 0.0

    def complete(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        if self._provider is None:
            raise ProviderError(
                self.definition.provider, None, "no API key configured for this provider"
            )
        config = ModelConfig(
            model=self.definition.model,
            temperature=self.definition.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.definition.max_tokens,
        )
        response = self._provider.complete(system_prompt, user_message, config)
        self.calls += 1
        self.input_tokens += response.input_tokens
        self.output_tokens += response.output_tokens
        self.cost_usd += calculate_cost(
            response.model, response.input_tokens, response.output_tokens
        )
        return response


def validate_inputs(definition: StageDefinition, previous_stages: dict[int, dict]) -> None:
    """Check that every required upstream field is present (not None).

    Raises:
        AnalyzerValidationError: Listing every missing input.
    """
    missing = []
    for requirement in definition.inputs:
        if not requirement.required:
            continue
        entry = previous_stages.get(int(requirement.stage))
        for field_name in requirement.fields:
            if entry is None or entry.get(field_name) is None:
                missing.append(requirement.describe(field_name))
    if missing:
        raise AnalyzerValidationError("inputs", "Missing required inputs: " + ", ".join(missing))


def _normalize(
    definition: StageDefinition, result: AnalyzerResult, call: StageCall, sub_stage: str | None
) -> StageOutput:
    output_data = result.output_data
    output_text = result.output_text or None

    if definition.output_shape == OutputShape.STRUCTURED:
        output_text = None
    elif definition.output_shape == OutputShape.TEXT:
        output_data = None

    if definition.output_shape != OutputShape.TEXT and output_data is None:
        raise AnalyzerValidationError("output_data", "analyzer returned no structured output")
    if definition.output_shape != OutputShape.STRUCTURED and output_text is None:
        raise AnalyzerValidationError("output_text", "analyzer returned no text output")

    return StageOutput(
        stage_number=definition.number,
        output_data=output_data,
        output_text=output_text,
        input_tokens=call.input_tokens,
        output_tokens=call.output_tokens,
        cost_usd=round(call.cost_usd, 6),
        skipped=result.skipped,
        sub_stage=sub_stage,
    )


class StageRunner:
    """Runs single stages against a context using injected provider clients."""

    def __init__(self, providers: dict[str, CompletionProvider], settings: Settings):
        self._providers = providers
        self._settings = settings

    def run_stage(
        self, stage_number: int, context: RunContext, sub_stage: str | None = None
    ) -> StageOutput:
        """Run one stage (or one sub-stage of a fan-out stage).

        Args:
            stage_number: Stage to run.
            context: Run context; only read, never mutated.
            sub_stage: Sub-stage label, required for fan-out stages.

        Returns:
            StageOutput with normalized outputs, tokens and cost.

        Raises:
            NotFoundError: Unknown stage or sub-stage.
            StageExecutionError: Anything failing inside the stage.
        """
        definition = get_definition(stage_number)
        validate_sub_stage(stage_number, sub_stage)
        label = stage_label(stage_number, sub_stage)
        if definition.fans_out and sub_stage is None:
            raise StageExecutionError(
                definition.number,
                definition.name,
                "a sub-stage is required (one of: " + ", ".join(definition.sub_stages) + ")",
            )

        logger.info(
            "[%s] Stage %d (%s) starting on %s",
            context.episode_id,
            definition.number,
            label,
            definition.model,
        )
        started = time.monotonic()
        try:
            validate_inputs(definition, context.previous_stages)
            call = StageCall(definition, self._providers.get(definition.provider), self._settings)
            result = ANALYZERS[definition.stage](context, call, sub_stage)
            output = _normalize(definition, result, call, sub_stage)
        except Exception as e:
            reason = e.message if isinstance(e, CastwriterError) else f"{type(e).__name__}: {e}"
            logger.error(
                "[%s] Stage %d (%s) failed: %s", context.episode_id, definition.number, label, reason
            )
            raise StageExecutionError(
                definition.number, definition.name, reason, sub_stage=sub_stage, cause=e
            ) from e

        output.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "[%s] Stage %d (%s) %s in %.1fs (%d in / %d out tokens, $%.4f)",
            context.episode_id,
            definition.number,
            label,
            "skipped" if output.skipped else "completed",
            output.duration_seconds,
            output.input_tokens,
            output.output_tokens,
            output.cost_usd,
        )
        return output
