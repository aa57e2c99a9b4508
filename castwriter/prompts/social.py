"""Per-platform social content prompts."""

PLATFORM_GUIDES = {
    "instagram": {
        "name": "Instagram",
        "max_chars": 2200,
        "guidance": "Caption-style posts with a strong first line and 5-10 relevant hashtags.",
        "post_types": "carousel, quote_card, reel_caption, story, caption",
    },
    "twitter": {
        "name": "Twitter/X",
        "max_chars": 280,
        "guidance": "Single tweets under 280 characters; punchy, one idea each, 1-2 hashtags.",
        "post_types": "hook, quote, insight, question, cta",
    },
    "linkedin": {
        "name": "LinkedIn",
        "max_chars": 3000,
        "guidance": "Professional, reflective posts with short paragraphs and a question at the end.",
        "post_types": "story, lesson, list, quote, discussion",
    },
    "facebook": {
        "name": "Facebook",
        "max_chars": 2000,
        "guidance": "Warm, conversational posts that invite comments and shares.",
        "post_types": "story, question, quote, tip, episode_promo",
    },
}

POSTS_PER_PLATFORM = 5


def build_system_prompt(platform: str, show_notes: str) -> str:
    guide = PLATFORM_GUIDES[platform]
    return f"""\
You write {guide["name"]} content for a podcast.

{show_notes}

{guide["guidance"]}
Each post must stay under {guide["max_chars"]} characters. JSON only."""


def build_user_prompt(platform: str, refined_post: str, quotes_text: str, hooks: list[str]) -> str:
    guide = PLATFORM_GUIDES[platform]
    hooks_text = "\n".join(f"- {h}" for h in hooks) or "(none)"
    return f"""\
## TASK: Write {POSTS_PER_PLATFORM} {guide["name"]} posts promoting this article

### ARTICLE:
{refined_post}

### QUOTES:
{quotes_text}

### HOOK IDEAS:
{hooks_text}

### OUTPUT FORMAT:

{{
  "posts": [
    {{"type": "one of: {guide["post_types"]}", "content": "...", "hashtags": ["..."]}}
  ]
}}
"""
