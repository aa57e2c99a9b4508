"""Shared fixtures: temp-dir settings, a file-backed SQLite store and a fake LLM."""

import json
import threading

import pytest

from castwriter.config import Settings
from castwriter.core.context import RunContext
from castwriter.core.episode_processor import EpisodeProcessor
from castwriter.core.stage_runner import StageRunner
from castwriter.db import get_session_factory, init_db
from castwriter.repository import SqlRepository
from castwriter.services.llm_service import CompletionProvider, LLMResponse

TRANSCRIPT = (
    "Host: Welcome back to the show. Today I'm talking with Dana Reyes about saving money.\n"
    "Dana: Thanks for having me. The biggest change for me was automating everything.\n"
    "Host: Why does automation matter so much?\n"
    "Dana: Because willpower runs out, but a scheduled transfer never forgets.\n"
)

EVERGREEN = {
    "podcast_info": {"name": "Money Matters", "target_audience": "young professionals"},
    "host_profile": {"name": "Sam Host"},
    "voice_guidelines": {"tone": ["warm", "direct"], "avoid": ["jargon"]},
}

_PARAGRAPH = (
    "Saving a small amount every week builds a habit that outlasts any single market cycle. "
    "The guest described how automating transfers removed the daily temptation to time the "
    "market, and how reviewing the plan once a quarter kept the numbers honest without turning "
    "money into a constant worry. Listeners who try this usually notice the change within a "
    "few months."
)

DRAFT_ARTICLE = "\n\n".join(
    [
        "# Small Habits, Real Wealth",
        _PARAGRAPH,
        _PARAGRAPH,
        "## Start Before You Feel Ready",
        _PARAGRAPH,
        _PARAGRAPH,
        _PARAGRAPH,
        "> Consistency beats intensity when it comes to saving.",
        _PARAGRAPH,
        "## Keep The System Boring",
        _PARAGRAPH,
        _PARAGRAPH,
        _PARAGRAPH,
        _PARAGRAPH,
        "## What To Do This Week",
        _PARAGRAPH,
        _PARAGRAPH,
    ]
)

REFINED_ARTICLE = DRAFT_ARTICLE.replace("# Small Habits, Real Wealth", "# Small Habits Build Real Wealth")

_QUOTES = [
    {
        "quote": f"Willpower runs out, but a scheduled transfer never forgets, number {i}.",
        "speaker": "Dana Reyes",
        "significance": "Core argument for automation",
    }
    for i in range(1, 6)
]

CANNED = {
    "preprocess": {
        "comprehensive_summary": (
            "Dana Reyes explains how automating small weekly transfers changed her finances. "
        )
        * 8,
        "verbatim_quotes": [{"quote": q["quote"], "speaker": q["speaker"]} for q in _QUOTES],
        "key_topics": ["saving", "automation", "investing"],
        "speakers": {"host": {"name": "Sam Host"}, "guest": {"name": "Dana Reyes"}},
        "episode_metadata": {
            "inferred_title": "Automate Your Savings",
            "core_message": "Automation beats willpower",
        },
    },
    "analyze": {
        "episode_basics": {
            "title": "Small Habits, Real Wealth",
            "main_topics": ["saving", "automation", "investing"],
        },
        "guest_info": {"name": "D. Reyes", "expertise": "personal finance"},
        "episode_crux": (
            "Automating small, regular savings removes willpower from the equation "
            "and compounds into real wealth over time."
        ),
    },
    "quotes": {
        "quotes": _QUOTES,
        "tips": [
            {"tip": "Schedule a transfer for the day after payday."},
            {"tip": "Review the plan once a quarter, not every day."},
        ],
    },
    "outline": {
        "post_structure": {
            "hook": "Most people try to save with willpower, and most people fail.",
            "hook_type": "contrarian",
            "sections": [
                {"section_title": "Start small", "purpose": "Lower the barrier", "word_count_target": 200},
                {"section_title": "Automate", "purpose": "Remove decisions", "word_count_target": 250},
                {"section_title": "Stay boring", "purpose": "Avoid tinkering", "word_count_target": 200},
            ],
            "cta": "Set up one automatic transfer before the week is over.",
        },
        "estimated_total_words": 750,
    },
    "paragraphs": {
        "section_details": [
            {
                "section_number": n,
                "section_title": title,
                "paragraphs": [{"paragraph_number": 1, "main_point": f"Point for {title}"}],
            }
            for n, title in enumerate(["Start small", "Automate", "Stay boring"], 1)
        ]
    },
    "headlines": {
        "headlines": [f"Headline option {i}" for i in range(1, 6)],
        "subheadings": [f"Subheading {i}" for i in range(1, 5)],
        "taglines": [f"Tagline {i}" for i in range(1, 4)],
        "social_hooks": [f"Hook {i}" for i in range(1, 4)],
    },
    "social": {
        "posts": [
            {"type": "quote", "content": "Willpower runs out. Automation doesn't.", "hashtags": ["saving", "#money"]},
            {"type": "hook", "content": "One transfer a week changed everything.", "hashtags": ["#habits"]},
        ]
    },
    "email": {
        "subject_lines": [f"Subject {i}" for i in range(1, 6)],
        "preview_text": [f"Preview {i}" for i in range(1, 4)],
        "email_body": "This week Dana Reyes joined the show to talk about saving money. " * 5,
    },
}

_STAGE_MARKERS = (
    ("You are a meticulous podcast producer", "preprocess"),
    ("You are a content strategist", "analyze"),
    ("You extract the most quotable", "quotes"),
    ("You are a blog editor", "outline"),
    ("You plan blog posts paragraph", "paragraphs"),
    ("You are a headline writer", "headlines"),
    ("You are an expert blog writer", "draft"),
    ("You are a senior editor", "refine"),
    ("You write the weekly newsletter", "email"),
    ("You write ", "social"),
)


def identify_stage(system_prompt: str) -> str:
    for marker, key in _STAGE_MARKERS:
        if system_prompt.startswith(marker):
            return key
    raise AssertionError(f"unrecognized system prompt: {system_prompt[:60]!r}")


class FakeLLM(CompletionProvider):
    """Canned completions keyed by stage; overrides may be text, an exception or a callable."""

    name = "fake"

    def __init__(self):
        self.calls: list[dict] = []
        self.overrides: dict = {}
        self._lock = threading.Lock()

    def complete(self, system_prompt, user_message, model_config):
        key = identify_stage(system_prompt)
        with self._lock:
            self.calls.append(
                {
                    "stage": key,
                    "system": system_prompt,
                    "user": user_message,
                    "model": model_config.model,
                }
            )
        override = self.overrides.get(key)
        if isinstance(override, BaseException):
            raise override
        if callable(override):
            text = override(system_prompt, user_message)
        elif override is not None:
            text = override
        elif key == "draft":
            text = DRAFT_ARTICLE
        elif key == "refine":
            text = REFINED_ARTICLE
        else:
            text = json.dumps(CANNED[key])
        return LLMResponse(text=text, input_tokens=1000, output_tokens=500, model=model_config.model)

    def calls_for(self, key: str) -> list[dict]:
        return [c for c in self.calls if c["stage"] == key]


@pytest.fixture
def settings(tmp_path):
    """Settings with temp directories, a per-test database and no real API keys."""
    return Settings(
        anthropic_api_key="",
        openai_api_key="",
        database_url=f"sqlite:///{tmp_path / 'castwriter.db'}",
        reports_dir=str(tmp_path / "reports"),
        logs_dir=str(tmp_path / "logs"),
        evergreen_path=str(tmp_path / "evergreen.yaml"),
        stage_timeout_seconds=30,
    )


@pytest.fixture
def repository(settings):
    init_db(settings.database_url)
    return SqlRepository(get_session_factory(settings.database_url))


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def providers(fake_llm):
    return {"anthropic": fake_llm, "openai": fake_llm}


@pytest.fixture
def runner(providers, settings):
    return StageRunner(providers, settings)


@pytest.fixture
def processor(repository, runner, settings):
    return EpisodeProcessor(repository, runner, settings, evergreen_loader=lambda: dict(EVERGREEN))


@pytest.fixture
def canned():
    return CANNED


@pytest.fixture
def upstream():
    """previous_stages as an uninterrupted run would have them after stage 7."""

    def _entry(data=None, text=None):
        return {**(data or {}), "output_text": text}

    return {
        0: _entry({"preprocessed": False, "estimated_tokens": 60, "comprehensive_summary": None}),
        1: _entry({**CANNED["analyze"], "guest_info": {"name": "Dana Reyes"}}),
        2: _entry(CANNED["quotes"]),
        3: _entry(CANNED["outline"]),
        4: _entry(CANNED["paragraphs"]),
        5: _entry(CANNED["headlines"]),
        6: _entry({"word_count": 720, "ai_patterns": []}, DRAFT_ARTICLE),
        7: _entry(None, REFINED_ARTICLE),
    }


@pytest.fixture
def context_for(upstream):
    """Build a RunContext holding the upstream outputs of stages below ``stage``."""

    def _build(stage, transcript=TRANSCRIPT, replace=None):
        previous = {n: dict(entry) for n, entry in upstream.items() if n < stage}
        previous.update(replace or {})
        return RunContext(
            episode_id="ep001",
            transcript=transcript,
            episode_context={"guest_name": "Dana Reyes"},
            evergreen=dict(EVERGREEN),
            previous_stages=previous,
        )

    return _build


@pytest.fixture
def episode(repository):
    return repository.create_episode(
        TRANSCRIPT,
        episode_context={"guest_name": "Dana Reyes"},
        title="Automate your savings",
        episode_id="ep001",
    )
