"""Extract-phase analyzers: transcript analysis (stage 1) and quotes/tips (stage 2)."""

import logging

from castwriter.analyzers.common import (
    AnalyzerResult,
    extract_json,
    format_evergreen,
    format_list,
    validate_output,
)
from castwriter.core.stages import Stage
from castwriter.models.stage_schemas import QuoteExtraction, TranscriptAnalysis
from castwriter.prompts import analyze as analyze_prompt
from castwriter.prompts import quotes as quotes_prompt

logger = logging.getLogger(__name__)


def _analysis_source(context) -> str:
    """The condensed transcript when stage 0 produced one, else the original."""
    pre = context.previous_stages.get(int(Stage.PREPROCESS)) or {}
    if not pre.get("preprocessed"):
        return context.transcript

    quotes = "\n".join(
        f'- "{q["quote"]}" ({q["speaker"]})' for q in pre.get("verbatim_quotes") or []
    )
    return (
        f"SUMMARY:\n{pre.get('comprehensive_summary', '')}\n\n"
        f"KEY TOPICS:\n{format_list(pre.get('key_topics'))}\n\n"
        f"VERBATIM QUOTES:\n{quotes}"
    )


def analyze_transcript(context, call, sub_stage=None) -> AnalyzerResult:
    source = _analysis_source(context)
    if source is not context.transcript:
        logger.info("Analyzing preprocessed summary for %s", context.episode_id)

    response = call.complete(
        analyze_prompt.SYSTEM_PROMPT,
        analyze_prompt.build_user_prompt(
            source, context.episode_context, format_evergreen(context.evergreen)
        ),
    )
    data = validate_output(TranscriptAnalysis, extract_json(response.text))

    # A guest named by the host overrides whatever the model inferred
    guest_name = context.episode_context.get("guest_name")
    if guest_name:
        data["guest_info"] = {**(data.get("guest_info") or {}), "name": guest_name}

    return AnalyzerResult(output_data=data)


def extract_quotes(context, call, sub_stage=None) -> AnalyzerResult:
    # Quotes must be verbatim, so this stage never reads the condensed summary
    response = call.complete(
        quotes_prompt.SYSTEM_PROMPT,
        quotes_prompt.build_user_prompt(context.transcript),
    )
    data = validate_output(QuoteExtraction, extract_json(response.text))
    logger.info(
        "Extracted %d quotes and %d tips for %s",
        len(data["quotes"]),
        len(data["tips"]),
        context.episode_id,
    )
    return AnalyzerResult(output_data=data)
