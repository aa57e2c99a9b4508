"""Tests for the static stage and phase tables."""

import pytest

from castwriter.core.stages import (
    PHASES,
    SOCIAL_PLATFORMS,
    STAGE_DEFINITIONS,
    Stage,
    all_record_keys,
    get_definition,
    list_stages,
    phase_of,
    phases_from,
    resolve_stage,
    stage_label,
    task_keys,
    validate_sub_stage,
)
from castwriter.errors import NotFoundError


class TestStageTable:
    def test_every_stage_defined_once(self):
        assert sorted(int(s) for s in STAGE_DEFINITIONS) == list(range(10))

    def test_phase_order_matches_stage_numbers(self):
        ordered = [int(s) for phase in PHASES for s in phase.stages]
        assert ordered == list(range(10))

    def test_phase_ids(self):
        assert [p.id for p in PHASES] == [
            "pregate",
            "extract",
            "outline",
            "detail",
            "draft",
            "refine",
            "distribute",
        ]

    def test_dependencies_point_to_earlier_phases(self):
        index = {s: i for i, phase in enumerate(PHASES) for s in phase.stages}
        for stage, definition in STAGE_DEFINITIONS.items():
            for dep in definition.dependencies:
                assert index[dep] < index[stage]

    def test_only_social_fans_out(self):
        fan_out = [int(s) for s, d in STAGE_DEFINITIONS.items() if d.fans_out]
        assert fan_out == [8]
        assert get_definition(8).sub_stages == SOCIAL_PLATFORMS

    def test_draft_produces_text_and_data(self):
        assert get_definition(6).output_shape.value == "both"
        assert get_definition(7).output_shape.value == "text"


class TestLookups:
    def test_resolve_stage(self):
        assert resolve_stage(3) is Stage.OUTLINE

    @pytest.mark.parametrize("number", [-1, 10, 99])
    def test_resolve_unknown_stage(self, number):
        with pytest.raises(NotFoundError, match="stage not found"):
            resolve_stage(number)

    def test_validate_sub_stage(self):
        validate_sub_stage(8, "twitter")
        validate_sub_stage(3, None)
        with pytest.raises(NotFoundError):
            validate_sub_stage(8, "myspace")
        with pytest.raises(NotFoundError):
            validate_sub_stage(3, "twitter")

    def test_stage_label(self):
        assert stage_label(6) == "Draft Generation"
        assert stage_label(8, "twitter") == "Social Content (Twitter/X)"

    def test_task_keys(self):
        assert task_keys(2) == [(2, None)]
        assert task_keys(8) == [(8, p) for p in SOCIAL_PLATFORMS]

    def test_all_record_keys(self):
        keys = all_record_keys()
        assert len(keys) == 13
        assert len(set(keys)) == 13

    def test_phase_of(self):
        assert phase_of(5).id == "detail"
        assert phase_of(0).id == "pregate"


class TestPhasesFrom:
    def test_from_start(self):
        plan = phases_from(0)
        assert [p.id for p, _ in plan] == [p.id for p in PHASES]

    def test_start_inside_multi_stage_phase(self):
        plan = phases_from(5)
        phase, stages = plan[0]
        assert phase.id == "detail"
        assert stages == (Stage.HEADLINES,)
        assert [p.id for p, _ in plan[1:]] == ["draft", "refine", "distribute"]

    def test_last_stage(self):
        plan = phases_from(9)
        assert len(plan) == 1
        assert plan[0][1] == (Stage.EMAIL,)

    def test_unknown_start(self):
        with pytest.raises(NotFoundError):
            phases_from(12)


class TestListStages:
    def test_rows(self):
        rows = list_stages()
        assert len(rows) == 10
        social = rows[8]
        assert social["phase"] == "distribute"
        assert social["sub_stages"] == list(SOCIAL_PLATFORMS)
        assert social["depends_on"] == [2, 5, 7]
        assert rows[0]["depends_on"] == []
