"""Distribution analyzers: social posts per platform (stage 8) and email (stage 9)."""

import logging

from castwriter.analyzers.common import (
    AnalyzerResult,
    extract_json,
    format_evergreen,
    format_quotes,
    validate_output,
)
from castwriter.core.stages import Stage
from castwriter.errors import AnalyzerValidationError
from castwriter.models.stage_schemas import EmailCampaign, SocialPosts
from castwriter.prompts import email as email_prompt
from castwriter.prompts import social as social_prompt

logger = logging.getLogger(__name__)


def _normalize_hashtags(tags: list[str]) -> list[str]:
    seen = []
    for tag in tags:
        tag = "#" + tag.strip().lstrip("#").replace(" ", "")
        if len(tag) > 1 and tag not in seen:
            seen.append(tag)
    return seen


def generate_social(context, call, sub_stage=None) -> AnalyzerResult:
    if sub_stage not in social_prompt.PLATFORM_GUIDES:
        valid = ", ".join(social_prompt.PLATFORM_GUIDES)
        raise AnalyzerValidationError("sub_stage", f"unknown platform {sub_stage!r} (valid: {valid})")

    guide = social_prompt.PLATFORM_GUIDES[sub_stage]
    refined = context.previous_stages[int(Stage.REFINE)]["output_text"]
    quotes = context.previous_stages[int(Stage.QUOTES)]["quotes"]
    hooks = (context.previous_stages.get(int(Stage.HEADLINES)) or {}).get("social_hooks") or []

    response = call.complete(
        social_prompt.build_system_prompt(sub_stage, format_evergreen(context.evergreen)),
        social_prompt.build_user_prompt(sub_stage, refined, format_quotes(quotes, limit=5), hooks),
    )
    data = validate_output(SocialPosts, extract_json(response.text))

    for i, post in enumerate(data["posts"]):
        if len(post["content"]) > guide["max_chars"]:
            raise AnalyzerValidationError(
                f"posts.{i}.content",
                f"{len(post['content'])} chars exceeds {guide['name']} limit of {guide['max_chars']}",
            )
        post["hashtags"] = _normalize_hashtags(post["hashtags"])

    logger.info("Generated %d %s posts for %s", len(data["posts"]), guide["name"], context.episode_id)
    return AnalyzerResult(output_data={"platform": sub_stage, **data})


def generate_email(context, call, sub_stage=None) -> AnalyzerResult:
    refined = context.previous_stages[int(Stage.REFINE)]["output_text"]
    basics = context.previous_stages[int(Stage.ANALYZE)]["episode_basics"]
    headlines = (context.previous_stages.get(int(Stage.HEADLINES)) or {}).get("headlines") or []

    response = call.complete(
        email_prompt.SYSTEM_PROMPT,
        email_prompt.build_user_prompt(
            refined, basics, headlines, format_evergreen(context.evergreen)
        ),
    )
    return AnalyzerResult(output_data=validate_output(EmailCampaign, extract_json(response.text)))
