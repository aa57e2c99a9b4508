"""High-level blog outline prompt: hook, 3-4 sections, call to action."""

SYSTEM_PROMPT = """\
You are a blog editor who turns podcast episodes into ~750 word articles. You \
plan the structure before anyone writes: a hook that earns attention, three or \
four sections with a clear purpose each, and a call to action. JSON only."""


def build_user_prompt(episode_crux: str, main_topics: list[str], quotes_text: str) -> str:
    topics = ", ".join(main_topics) or "(not identified)"
    return f"""\
## TASK: Outline the blog post

### CORE INSIGHT:
{episode_crux}

### MAIN TOPICS:
{topics}

### AVAILABLE QUOTES:
{quotes_text}

### OUTPUT FORMAT:

{{
  "post_structure": {{
    "hook": "opening 1-2 sentences",
    "hook_type": "story | question | statistic | quote | contrarian",
    "context": "what the reader needs to know before section one",
    "sections": [
      {{"section_title": "...", "purpose": "...", "word_count_target": 180}}
    ],
    "cta": "closing call to action"
  }},
  "estimated_total_words": 750
}}

Use 3 or 4 sections. Section targets should add up to roughly 650 words.
"""
