"""Refinement prompt: polish the draft and strip AI-sounding phrasing."""


def build_system_prompt(show_notes: str, flagged_patterns: list[str]) -> str:
    flagged = ", ".join(flagged_patterns) or "none detected"
    return f"""\
You are a senior editor. You improve flow, tighten sentences and make the \
voice sound like the host, while keeping the structure, quotes and facts of \
the draft intact.

{show_notes}

Phrases flagged in the draft as generic or AI-sounding: {flagged}.
Remove them and anything similar. Output ONLY the refined article in Markdown."""


def build_user_prompt(draft: str) -> str:
    return f"""\
## TASK: Refine this draft

{draft}
"""
