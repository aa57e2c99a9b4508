"""Blog draft prompt: writes the full Markdown article from the planning stages."""

import json

MIN_WORD_COUNT = 600
IDEAL_WORD_COUNT = 750


def build_system_prompt(show_notes: str) -> str:
    return f"""\
You are an expert blog writer turning a podcast episode into a standalone article.

{show_notes}

Write ONE complete blog post of approximately {IDEAL_WORD_COUNT} words.

CRITICAL REQUIREMENTS:
1. The post MUST be at least {MIN_WORD_COUNT} words
2. Start with a title (H1) and use at least 2 section headings (H2)
3. Integrate 2-3 quotes as Markdown blockquotes
4. No meta-commentary, no word counts
5. Output ONLY the article in Markdown"""


def build_user_prompt(
    episode_basics: dict,
    episode_crux: str,
    headline: str,
    post_structure: dict,
    section_details: list[dict],
    quotes_text: str,
    tips: list[dict],
) -> str:
    """Build user prompt for the draft.

    Args:
        episode_basics: Stage 1 basics (title, topics).
        episode_crux: Stage 1 core insight.
        headline: Preferred headline from stage 5.
        post_structure: Stage 3 outline.
        section_details: Stage 4 paragraph plans.
        quotes_text: Rendered stage 2 quotes.
        tips: Stage 2 tips.

    Returns:
        User prompt string.
    """
    tips_text = "\n".join(f"- {t.get('tip', '')}" for t in tips) or "(none)"
    return f"""\
## TASK: Write the blog post

### WORKING HEADLINE:
{headline}

### EPISODE:
{episode_basics.get("title", "")}. Topics: {", ".join(episode_basics.get("main_topics", []))}

### CORE INSIGHT:
{episode_crux}

### OUTLINE:
{json.dumps(post_structure, indent=2, ensure_ascii=False)}

### PARAGRAPH PLAN:
{json.dumps(section_details, indent=2, ensure_ascii=False)}

### QUOTES:
{quotes_text}

### PRACTICAL TIPS:
{tips_text}
"""


def build_correction_prompt(issues: list[str]) -> str:
    listed = "\n".join(f"- {issue}" for issue in issues)
    return f"""\
The previous draft did not meet the requirements:

{listed}

Rewrite the complete post so that every issue is fixed. Output only the article."""
