"""Quote and tip extraction prompt. Always runs on the original transcript."""

SYSTEM_PROMPT = """\
You extract the most quotable moments and the most practical advice from \
podcast transcripts. Quotes are copied exactly as spoken. You answer in JSON only."""


def build_user_prompt(transcript: str) -> str:
    return f"""\
## TASK: Extract quotes and tips

### TRANSCRIPT:
{transcript}

### OUTPUT FORMAT:

{{
  "quotes": [
    {{
      "quote": "exact words, at least one full sentence",
      "speaker": "who said it",
      "significance": "why this line matters",
      "usage_suggestion": "where it would work best (headline, pull quote, social)"
    }}
  ],
  "tips": [
    {{"tip": "concrete, actionable advice", "context": "when it applies", "category": "short label"}}
  ]
}}

### REQUIREMENTS:
- 5 to 8 quotes, each verbatim from the transcript
- Tips only where the speakers actually gave advice; an empty list is fine
"""
