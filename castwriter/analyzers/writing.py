"""Writing analyzers: draft (stage 6) and refinement (stage 7).

The draft is the one stage that produces both prose and structured data:
the Markdown article goes to ``output_text`` and its validation metrics
(word count, heading structure, AI-sounding phrases) to ``output_data``.
"""

import logging
import re

from castwriter.analyzers.common import AnalyzerResult, format_evergreen, format_quotes
from castwriter.core.stages import Stage
from castwriter.errors import AnalyzerValidationError
from castwriter.prompts import draft as draft_prompt
from castwriter.prompts import refine as refine_prompt

logger = logging.getLogger(__name__)

MIN_WORD_COUNT = draft_prompt.MIN_WORD_COUNT
MIN_CHAR_LENGTH = 3000
MIN_H2_SECTIONS = 2

AI_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"in today's (world|fast-paced|busy)", re.I), "In today's world..."),
    (re.compile(r"have you ever (wondered|felt|thought)", re.I), "Have you ever..."),
    (re.compile(r"let's (dive|explore|take a closer look)", re.I), "Let's dive/explore..."),
    (re.compile(r"it's important to (note|remember|understand)", re.I), "It's important to note..."),
    (re.compile(r"first and foremost", re.I), "First and foremost"),
    (re.compile(r"at the end of the day", re.I), "At the end of the day"),
    (re.compile(r"delve (into|deeper)", re.I), "Delve into"),
    (re.compile(r"navigate the landscape", re.I), "Navigate the landscape"),
    (re.compile(r"game-?changer", re.I), "Game-changer"),
]

_FENCE = re.compile(r"^```(?:markdown|md)?\s*\n(.*?)\n?```\s*$", re.DOTALL)


def strip_fences(text: str) -> str:
    """Remove a code fence wrapped around the whole article, if any."""
    text = (text or "").strip()
    match = _FENCE.match(text)
    return match.group(1).strip() if match else text


def count_words(text: str) -> int:
    return len(text.split())


def detect_ai_patterns(text: str) -> list[str]:
    return [name for pattern, name in AI_PATTERNS if pattern.search(text)]


def measure_draft(text: str) -> dict:
    """Word count, heading structure and AI-pattern check for a Markdown article."""
    lines = text.splitlines()
    h1_count = sum(1 for line in lines if re.match(r"^#\s+\S", line))
    h2_count = sum(1 for line in lines if re.match(r"^##\s+\S", line))
    blockquote_count = sum(1 for line in lines if line.startswith(">"))
    word_count = count_words(text)
    char_count = len(text)

    issues = []
    if char_count < MIN_CHAR_LENGTH:
        issues.append(f"Too short: {char_count} chars (need {MIN_CHAR_LENGTH})")
    if word_count < MIN_WORD_COUNT:
        issues.append(f"Too short: {word_count} words (need {MIN_WORD_COUNT})")
    if h1_count == 0:
        issues.append("Missing H1 title")
    if h2_count < MIN_H2_SECTIONS:
        issues.append(f"Needs at least {MIN_H2_SECTIONS} H2 sections")

    return {
        "word_count": word_count,
        "char_count": char_count,
        "structure": {
            "h1_count": h1_count,
            "h2_count": h2_count,
            "blockquote_count": blockquote_count,
        },
        "ai_patterns": detect_ai_patterns(text),
        "issues": issues,
        "has_issues": bool(issues),
    }


def draft_post(context, call, sub_stage=None) -> AnalyzerResult:
    stages = context.previous_stages
    analysis = stages[int(Stage.ANALYZE)]
    quotes = stages[int(Stage.QUOTES)]
    headlines = stages[int(Stage.HEADLINES)]["headlines"]

    system_prompt = draft_prompt.build_system_prompt(format_evergreen(context.evergreen))
    user_prompt = draft_prompt.build_user_prompt(
        episode_basics=analysis["episode_basics"],
        episode_crux=analysis["episode_crux"],
        headline=headlines[0] if headlines else analysis["episode_basics"].get("title", ""),
        post_structure=stages[int(Stage.OUTLINE)]["post_structure"],
        section_details=stages[int(Stage.PARAGRAPHS)]["section_details"],
        quotes_text=format_quotes(quotes["quotes"]),
        tips=quotes["tips"],
    )

    article = strip_fences(call.complete(system_prompt, user_prompt).text)
    metrics = measure_draft(article)
    attempts = 1

    if metrics["has_issues"]:
        logger.warning(
            "Draft for %s failed validation, retrying once: %s",
            context.episode_id,
            "; ".join(metrics["issues"]),
        )
        retry_prompt = (
            f"{user_prompt}\n\n{draft_prompt.build_correction_prompt(metrics['issues'])}"
        )
        article = strip_fences(call.complete(system_prompt, retry_prompt).text)
        metrics = measure_draft(article)
        attempts = 2
        if metrics["has_issues"]:
            # Keep the draft; refinement and a human can still fix it
            logger.warning(
                "Draft for %s kept with issues: %s",
                context.episode_id,
                "; ".join(metrics["issues"]),
            )

    if not article:
        raise AnalyzerValidationError("output_text", "model returned an empty draft")

    logger.info(
        "Draft for %s: %d words, %d H2, %d AI patterns (attempts=%d)",
        context.episode_id,
        metrics["word_count"],
        metrics["structure"]["h2_count"],
        len(metrics["ai_patterns"]),
        attempts,
    )
    return AnalyzerResult(output_data={**metrics, "attempts": attempts}, output_text=article)


def refine_post(context, call, sub_stage=None) -> AnalyzerResult:
    draft_entry = context.previous_stages.get(int(Stage.DRAFT)) or {}
    draft = draft_entry.get("output_text")
    if not draft:
        raise AnalyzerValidationError("draft", "Missing Stage 6 draft for refinement")

    system_prompt = refine_prompt.build_system_prompt(
        format_evergreen(context.evergreen),
        draft_entry.get("ai_patterns") or detect_ai_patterns(draft),
    )
    refined = strip_fences(call.complete(system_prompt, refine_prompt.build_user_prompt(draft)).text)
    if not refined:
        raise AnalyzerValidationError("output_text", "model returned an empty refinement")

    logger.info(
        "Refined post for %s: %d -> %d words",
        context.episode_id,
        count_words(draft),
        count_words(refined),
    )
    return AnalyzerResult(output_text=refined)
