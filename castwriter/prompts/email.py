"""Email campaign prompt: subject lines, preview text and newsletter body."""

SYSTEM_PROMPT = """\
You write the weekly newsletter for a podcast. Subject lines are specific and \
curiosity-driven without being misleading; the body is personal, short and \
links the listener to the new episode and article. JSON only."""


def build_user_prompt(
    refined_post: str, episode_basics: dict, headlines: list[str], show_notes: str
) -> str:
    headlines_text = "\n".join(f"- {h}" for h in headlines[:5]) or "(none)"
    return f"""\
## TASK: Write the newsletter for this episode

### ABOUT THE SHOW:
{show_notes or "(no show information)"}

### EPISODE:
{episode_basics.get("title", "")}

### HEADLINE OPTIONS:
{headlines_text}

### ARTICLE:
{refined_post}

### OUTPUT FORMAT:

{{
  "subject_lines": ["5 options"],
  "preview_text": ["3 options, under 90 characters"],
  "email_body": "200-350 words, plain text with line breaks"
}}
"""
