"""Planning analyzers: outline (stage 3), paragraph plans (stage 4), headlines (stage 5)."""

import logging

from castwriter.analyzers.common import (
    AnalyzerResult,
    extract_json,
    format_quotes,
    validate_output,
)
from castwriter.core.stages import Stage
from castwriter.errors import AnalyzerValidationError
from castwriter.models.stage_schemas import BlogOutline, HeadlineOptions, ParagraphOutline
from castwriter.prompts import headlines as headlines_prompt
from castwriter.prompts import outline as outline_prompt
from castwriter.prompts import paragraphs as paragraphs_prompt

logger = logging.getLogger(__name__)


def outline_post(context, call, sub_stage=None) -> AnalyzerResult:
    analysis = context.previous_stages[int(Stage.ANALYZE)]
    quotes = context.previous_stages[int(Stage.QUOTES)]["quotes"]
    basics = analysis.get("episode_basics") or {}

    response = call.complete(
        outline_prompt.SYSTEM_PROMPT,
        outline_prompt.build_user_prompt(
            analysis["episode_crux"], basics.get("main_topics", []), format_quotes(quotes)
        ),
    )
    data = validate_output(BlogOutline, extract_json(response.text))
    logger.info(
        "Outline for %s: %d sections, ~%d words",
        context.episode_id,
        len(data["post_structure"]["sections"]),
        data["estimated_total_words"],
    )
    return AnalyzerResult(output_data=data)


def outline_paragraphs(context, call, sub_stage=None) -> AnalyzerResult:
    post_structure = context.previous_stages[int(Stage.OUTLINE)]["post_structure"]
    quotes = context.previous_stages[int(Stage.QUOTES)]["quotes"]

    response = call.complete(
        paragraphs_prompt.SYSTEM_PROMPT,
        paragraphs_prompt.build_user_prompt(post_structure, format_quotes(quotes)),
    )
    data = validate_output(ParagraphOutline, extract_json(response.text))

    expected = len(post_structure["sections"])
    if len(data["section_details"]) < expected:
        raise AnalyzerValidationError(
            "section_details",
            f"planned {len(data['section_details'])} sections, outline has {expected}",
        )
    return AnalyzerResult(output_data=data)


def generate_headlines(context, call, sub_stage=None) -> AnalyzerResult:
    crux = context.previous_stages[int(Stage.ANALYZE)]["episode_crux"]
    post_structure = context.previous_stages[int(Stage.OUTLINE)]["post_structure"]

    response = call.complete(
        headlines_prompt.SYSTEM_PROMPT,
        headlines_prompt.build_user_prompt(crux, post_structure),
    )
    return AnalyzerResult(
        output_data=validate_output(HeadlineOptions, extract_json(response.text))
    )
