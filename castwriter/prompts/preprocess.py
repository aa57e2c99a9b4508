"""Transcript preprocessing prompt: condense a long transcript without losing quotes."""

SYSTEM_PROMPT = """\
You are a meticulous podcast producer. You condense long interview transcripts \
into a faithful working summary that later writers can rely on instead of the \
full transcript. You never invent content and you copy quotes verbatim."""


def build_user_prompt(transcript: str, episode_context: dict) -> str:
    """Build user prompt for transcript preprocessing.

    Args:
        transcript: Full episode transcript.
        episode_context: User-supplied notes about the episode (may be empty).

    Returns:
        User prompt string.
    """
    notes = "\n".join(f"- {k}: {v}" for k, v in episode_context.items()) or "(none)"
    return f"""\
## TASK: Condense this podcast transcript

### EPISODE NOTES FROM THE HOST:
{notes}

### TRANSCRIPT:
{transcript}

### OUTPUT FORMAT:

Return ONLY a JSON object with these keys:
- "comprehensive_summary": 800-1500 words covering every substantive point in order
- "verbatim_quotes": 10-15 objects {{"quote", "speaker", "timestamp"}} copied exactly
- "key_topics": 3-8 short topic labels
- "speakers": {{"host": {{"name", "role"}}, "guest": {{"name", "role"}} or null}}
- "episode_metadata": {{"inferred_title", "core_message", "estimated_duration"}}

### REMINDERS:
- Quotes must be word-for-word from the transcript
- Keep the speakers' own terminology
- No commentary outside the JSON
"""
