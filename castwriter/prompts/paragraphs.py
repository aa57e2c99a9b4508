"""Paragraph-level outline prompt: expands each outline section into paragraph plans."""

import json

SYSTEM_PROMPT = """\
You plan blog posts paragraph by paragraph. For every section of an approved \
outline you decide what each paragraph says and which quotes or examples \
support it. JSON only."""


def build_user_prompt(post_structure: dict, quotes_text: str) -> str:
    return f"""\
## TASK: Plan the paragraphs of every section

### APPROVED OUTLINE:
{json.dumps(post_structure, indent=2, ensure_ascii=False)}

### QUOTES YOU MAY PLACE:
{quotes_text}

### OUTPUT FORMAT:

{{
  "section_details": [
    {{
      "section_number": 1,
      "section_title": "same title as the outline",
      "paragraphs": [
        {{
          "paragraph_number": 1,
          "main_point": "...",
          "supporting_elements": ["quote 2", "example from the episode"],
          "transition_note": "how it leads into the next paragraph"
        }}
      ]
    }}
  ]
}}

Cover every outline section in order, 2-4 paragraphs each.
"""
