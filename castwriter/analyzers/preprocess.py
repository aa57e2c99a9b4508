"""Stage 0: condense long transcripts before analysis.

Short transcripts are passed through untouched: the stage completes as
skipped with ``preprocessed: False`` and costs nothing.
"""

import logging

from castwriter.analyzers.common import AnalyzerResult, extract_json, validate_output
from castwriter.models.stage_schemas import PreprocessedTranscript
from castwriter.prompts import preprocess as prompt
from castwriter.services.llm_service import estimate_tokens

logger = logging.getLogger(__name__)


def preprocess_transcript(context, call, sub_stage=None) -> AnalyzerResult:
    threshold = call.settings.preprocess_threshold_tokens
    tokens = estimate_tokens(context.transcript)

    if tokens <= threshold:
        logger.info(
            "Transcript for %s is ~%d tokens (threshold %d), preprocessing skipped",
            context.episode_id,
            tokens,
            threshold,
        )
        return AnalyzerResult(
            output_data={
                "preprocessed": False,
                "estimated_tokens": tokens,
                "comprehensive_summary": None,
                "verbatim_quotes": [],
                "key_topics": [],
                "speakers": None,
                "episode_metadata": None,
            },
            skipped=True,
        )

    logger.info(
        "Transcript for %s is ~%d tokens, condensing with %s",
        context.episode_id,
        tokens,
        call.definition.model,
    )
    response = call.complete(
        prompt.SYSTEM_PROMPT,
        prompt.build_user_prompt(context.transcript, context.episode_context),
    )
    data = validate_output(PreprocessedTranscript, extract_json(response.text))
    return AnalyzerResult(output_data={"preprocessed": True, "estimated_tokens": tokens, **data})
