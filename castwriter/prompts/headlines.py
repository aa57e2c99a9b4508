"""Headline and copy options prompt."""

import json

SYSTEM_PROMPT = """\
You are a headline writer. You write specific, honest headlines that promise \
exactly what the article delivers. No clickbait, no listicle cliches. JSON only."""


def build_user_prompt(episode_crux: str, post_structure: dict) -> str:
    return f"""\
## TASK: Write headline and copy options

### CORE INSIGHT:
{episode_crux}

### OUTLINE:
{json.dumps(post_structure, indent=2, ensure_ascii=False)}

### OUTPUT FORMAT:

{{
  "headlines": ["10-15 headline options"],
  "subheadings": ["8-10 subheading options"],
  "taglines": ["5 short taglines"],
  "social_hooks": ["5 one-line hooks for social posts"]
}}
"""
