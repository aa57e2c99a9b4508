"""Transcript analysis prompt: episode basics, guest info and the episode crux."""

SYSTEM_PROMPT = """\
You are a content strategist for a podcast. You read an episode and identify \
what it is about, who the guest is, and the single core insight a listener \
should walk away with. You answer in JSON only."""


def build_user_prompt(source_text: str, episode_context: dict, show_notes: str) -> str:
    """Build user prompt for transcript analysis.

    Args:
        source_text: Full transcript, or the preprocessed summary for long episodes.
        episode_context: User-supplied notes about the episode.
        show_notes: Rendered podcast/host/voice reference content.

    Returns:
        User prompt string.
    """
    notes = "\n".join(f"- {k}: {v}" for k, v in episode_context.items()) or "(none)"
    return f"""\
## TASK: Analyze this episode

### ABOUT THE SHOW:
{show_notes or "(no show information)"}

### EPISODE NOTES FROM THE HOST:
{notes}

### EPISODE CONTENT:
{source_text}

### OUTPUT FORMAT:

{{
  "episode_basics": {{
    "title": "working title",
    "date": null,
    "duration": null,
    "main_topics": ["3 to 5 topics"]
  }},
  "guest_info": {{"name": "...", "credentials": "...", "expertise": "...", "website": null}},
  "episode_crux": "2-3 sentences stating the core insight of the episode"
}}

Use null for "guest_info" when the episode has no guest.
"""
