"""Static stage and phase tables for the content pipeline.

Each stage has a fixed number (0-9), a model/provider assignment, an output
shape and the upstream fields it reads. Phases group stages that share a
readiness tier; a stage may only read outputs of stages in strictly earlier
phases. ``validate_phase_plan`` checks that at import time.
"""

import enum
from dataclasses import dataclass, field

from castwriter.errors import NotFoundError

CLAUDE_HAIKU = "claude-3-5-haiku-20241022"
CLAUDE_SONNET = "claude-sonnet-4-20250514"
GPT5_MINI = "gpt-5-mini"


class Stage(int, enum.Enum):
    PREPROCESS = 0
    ANALYZE = 1
    QUOTES = 2
    OUTLINE = 3
    PARAGRAPHS = 4
    HEADLINES = 5
    DRAFT = 6
    REFINE = 7
    SOCIAL = 8
    EMAIL = 9


class OutputShape(str, enum.Enum):
    STRUCTURED = "structured"
    TEXT = "text"
    BOTH = "both"


@dataclass(frozen=True)
class InputRequirement:
    """Fields a stage reads from an earlier stage's merged output."""

    stage: Stage
    fields: tuple[str, ...]
    required: bool = True
    label: str = ""

    def describe(self, field_name: str) -> str:
        where = f"stage {int(self.stage)}.{field_name}"
        return f"{self.label} ({where})" if self.label else where


@dataclass(frozen=True)
class StageDefinition:
    stage: Stage
    name: str
    model: str
    provider: str  # "anthropic" or "openai"
    output_shape: OutputShape
    temperature: float
    max_tokens: int
    inputs: tuple[InputRequirement, ...] = ()
    sub_stages: tuple[str, ...] = ()
    description: str = ""

    @property
    def number(self) -> int:
        return int(self.stage)

    @property
    def fans_out(self) -> bool:
        return bool(self.sub_stages)

    @property
    def dependencies(self) -> frozenset[Stage]:
        return frozenset(req.stage for req in self.inputs)


@dataclass(frozen=True)
class Phase:
    id: str
    name: str
    stages: tuple[Stage, ...] = field(default_factory=tuple)


SOCIAL_PLATFORMS: tuple[str, ...] = ("instagram", "twitter", "linkedin", "facebook")

SUB_STAGE_NAMES = {
    "instagram": "Social Content (Instagram)",
    "twitter": "Social Content (Twitter/X)",
    "linkedin": "Social Content (LinkedIn)",
    "facebook": "Social Content (Facebook)",
}

_DRAFT_TEXT = InputRequirement(Stage.DRAFT, ("output_text",), label="draft")
_REFINED_TEXT = InputRequirement(Stage.REFINE, ("output_text",), label="refined post")

STAGE_DEFINITIONS: dict[Stage, StageDefinition] = {
    Stage.PREPROCESS: StageDefinition(
        Stage.PREPROCESS,
        "Transcript Preprocessing",
        CLAUDE_HAIKU,
        "anthropic",
        OutputShape.STRUCTURED,
        temperature=0.3,
        max_tokens=8192,
        description="Condense long transcripts into a summary, quotes and topics",
    ),
    Stage.ANALYZE: StageDefinition(
        Stage.ANALYZE,
        "Transcript Analysis",
        GPT5_MINI,
        "openai",
        OutputShape.STRUCTURED,
        temperature=0.5,
        max_tokens=4096,
        inputs=(InputRequirement(Stage.PREPROCESS, ("preprocessed",), required=False),),
        description="Episode basics, guest info and the episode crux",
    ),
    Stage.QUOTES: StageDefinition(
        Stage.QUOTES,
        "Quote Extraction",
        CLAUDE_HAIKU,
        "anthropic",
        OutputShape.STRUCTURED,
        temperature=0.6,
        max_tokens=4096,
        description="Verbatim quotes and actionable tips (always from the original transcript)",
    ),
    Stage.OUTLINE: StageDefinition(
        Stage.OUTLINE,
        "Blog Outline - High Level",
        GPT5_MINI,
        "openai",
        OutputShape.STRUCTURED,
        temperature=0.7,
        max_tokens=4096,
        inputs=(
            InputRequirement(Stage.ANALYZE, ("episode_crux",)),
            InputRequirement(Stage.QUOTES, ("quotes",)),
        ),
        description="Hook, 3-4 sections and call to action",
    ),
    Stage.PARAGRAPHS: StageDefinition(
        Stage.PARAGRAPHS,
        "Paragraph-Level Outlines",
        GPT5_MINI,
        "openai",
        OutputShape.STRUCTURED,
        temperature=0.6,
        max_tokens=4096,
        inputs=(
            InputRequirement(Stage.QUOTES, ("quotes",)),
            InputRequirement(Stage.OUTLINE, ("post_structure",)),
        ),
        description="Paragraph plans for every outline section",
    ),
    Stage.HEADLINES: StageDefinition(
        Stage.HEADLINES,
        "Headlines & Copy Options",
        GPT5_MINI,
        "openai",
        OutputShape.STRUCTURED,
        temperature=0.8,
        max_tokens=4096,
        inputs=(
            InputRequirement(Stage.ANALYZE, ("episode_crux",)),
            InputRequirement(Stage.OUTLINE, ("post_structure",)),
        ),
        description="Headlines, subheadings, taglines and social hooks",
    ),
    Stage.DRAFT: StageDefinition(
        Stage.DRAFT,
        "Draft Generation",
        GPT5_MINI,
        "openai",
        OutputShape.BOTH,
        temperature=0.7,
        max_tokens=3000,
        inputs=(
            InputRequirement(Stage.ANALYZE, ("episode_basics", "episode_crux")),
            InputRequirement(Stage.QUOTES, ("quotes", "tips")),
            InputRequirement(Stage.OUTLINE, ("post_structure",)),
            InputRequirement(Stage.PARAGRAPHS, ("section_details",)),
            InputRequirement(Stage.HEADLINES, ("headlines",)),
        ),
        description="Complete blog post draft in Markdown plus validation metrics",
    ),
    Stage.REFINE: StageDefinition(
        Stage.REFINE,
        "Refinement Pass",
        CLAUDE_SONNET,
        "anthropic",
        OutputShape.TEXT,
        temperature=0.4,
        max_tokens=4096,
        inputs=(_DRAFT_TEXT,),
        description="Polish prose and remove AI patterns",
    ),
    Stage.SOCIAL: StageDefinition(
        Stage.SOCIAL,
        "Social Content",
        CLAUDE_SONNET,
        "anthropic",
        OutputShape.STRUCTURED,
        temperature=0.8,
        max_tokens=2000,
        inputs=(
            _REFINED_TEXT,
            InputRequirement(Stage.QUOTES, ("quotes",)),
            InputRequirement(Stage.HEADLINES, ("social_hooks",), required=False),
        ),
        sub_stages=SOCIAL_PLATFORMS,
        description="Platform-specific social posts, one sub-stage per platform",
    ),
    Stage.EMAIL: StageDefinition(
        Stage.EMAIL,
        "Email Campaign",
        CLAUDE_SONNET,
        "anthropic",
        OutputShape.STRUCTURED,
        temperature=0.7,
        max_tokens=2000,
        inputs=(
            _REFINED_TEXT,
            InputRequirement(Stage.ANALYZE, ("episode_basics",)),
            InputRequirement(Stage.HEADLINES, ("headlines",), required=False),
        ),
        description="Subject lines, preview text and newsletter body",
    ),
}

PHASES: tuple[Phase, ...] = (
    Phase("pregate", "Pre-Gate: Preprocessing", (Stage.PREPROCESS,)),
    Phase("extract", "Extract", (Stage.ANALYZE, Stage.QUOTES)),
    Phase("outline", "Plan: Outline", (Stage.OUTLINE,)),
    Phase("detail", "Plan: Details", (Stage.PARAGRAPHS, Stage.HEADLINES)),
    Phase("draft", "Write: Draft", (Stage.DRAFT,)),
    Phase("refine", "Write: Refine", (Stage.REFINE,)),
    Phase("distribute", "Distribute", (Stage.SOCIAL, Stage.EMAIL)),
)

FIRST_STAGE = min(Stage)
LAST_STAGE = max(Stage)
TOTAL_STAGES = len(Stage)


def resolve_stage(stage_number: int) -> Stage:
    try:
        return Stage(stage_number)
    except ValueError:
        raise NotFoundError(
            "stage", f"{stage_number} (valid: {int(FIRST_STAGE)}-{int(LAST_STAGE)})"
        ) from None


def get_definition(stage_number: int) -> StageDefinition:
    return STAGE_DEFINITIONS[resolve_stage(stage_number)]


def validate_sub_stage(stage_number: int, sub_stage: str | None) -> None:
    """Raise NotFoundError if ``sub_stage`` is not valid for the stage."""
    definition = get_definition(stage_number)
    if sub_stage is None:
        return
    if sub_stage not in definition.sub_stages:
        valid = ", ".join(definition.sub_stages) or "none"
        raise NotFoundError(
            "sub-stage", f"{stage_number}/{sub_stage} (valid: {valid})"
        )


def stage_label(stage_number: int, sub_stage: str | None = None) -> str:
    definition = get_definition(stage_number)
    if sub_stage:
        return SUB_STAGE_NAMES.get(sub_stage, f"{definition.name} ({sub_stage})")
    return definition.name


def task_keys(stage_number: int) -> list[tuple[int, str | None]]:
    """All (stage, sub_stage) record keys a stage owns."""
    definition = get_definition(stage_number)
    if definition.fans_out:
        return [(definition.number, sub) for sub in definition.sub_stages]
    return [(definition.number, None)]


def all_record_keys() -> list[tuple[int, str | None]]:
    keys = []
    for stage in sorted(Stage):
        keys.extend(task_keys(stage))
    return keys


def phase_of(stage_number: int) -> Phase:
    stage = resolve_stage(stage_number)
    for phase in PHASES:
        if stage in phase.stages:
            return phase
    raise RuntimeError(f"Stage {stage_number} is not assigned to any phase")


def phases_from(start_stage: int) -> list[tuple[Phase, tuple[Stage, ...]]]:
    """Phases to run when starting at ``start_stage``, each with its remaining stages.

    A start inside a multi-stage phase runs only that phase's stages at or
    after the start.
    """
    resolve_stage(start_stage)
    plan = []
    for phase in PHASES:
        remaining = tuple(s for s in phase.stages if s >= start_stage)
        if remaining:
            plan.append((phase, remaining))
    return plan


def validate_phase_plan() -> None:
    """Check the stage/phase tables form a valid DAG.

    Every stage is in exactly one phase, stage numbers increase through the
    phase order, and dependencies point only to strictly earlier phases.
    """
    missing_defs = set(Stage) - set(STAGE_DEFINITIONS)
    if missing_defs:
        raise RuntimeError(f"Stages without definitions: {sorted(missing_defs)}")

    phase_index: dict[Stage, int] = {}
    for idx, phase in enumerate(PHASES):
        for stage in phase.stages:
            if stage in phase_index:
                raise RuntimeError(f"Stage {int(stage)} appears in more than one phase")
            phase_index[stage] = idx

    unassigned = set(Stage) - set(phase_index)
    if unassigned:
        raise RuntimeError(f"Stages not assigned to a phase: {sorted(unassigned)}")

    ordered = [s for phase in PHASES for s in phase.stages]
    if ordered != sorted(ordered):
        raise RuntimeError("Phase order must follow stage numbering")

    for stage, definition in STAGE_DEFINITIONS.items():
        for dep in definition.dependencies:
            if phase_index[dep] >= phase_index[stage]:
                raise RuntimeError(
                    f"Stage {int(stage)} depends on stage {int(dep)} "
                    "which is not in an earlier phase"
                )


def list_stages() -> list[dict]:
    """Serializable view of the stage table (for the API and CLI)."""
    rows = []
    for stage in sorted(Stage):
        definition = STAGE_DEFINITIONS[stage]
        rows.append(
            {
                "number": definition.number,
                "name": definition.name,
                "phase": phase_of(stage).id,
                "model": definition.model,
                "provider": definition.provider,
                "output_shape": definition.output_shape.value,
                "sub_stages": list(definition.sub_stages),
                "depends_on": sorted(int(d) for d in definition.dependencies),
                "description": definition.description,
            }
        )
    return rows


validate_phase_plan()
