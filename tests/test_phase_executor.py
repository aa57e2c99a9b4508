"""Tests for atomic, concurrent phase execution."""

import json
import threading

import pytest

from castwriter.core.phase_executor import PhaseExecutor, phase_tasks
from castwriter.core.stages import PHASES, SOCIAL_PLATFORMS, Stage, phase_of
from castwriter.errors import PhaseFailedError, ProviderError, ProviderTimeoutError


def _phase(phase_id):
    return next(p for p in PHASES if p.id == phase_id)


class TestPhaseTasks:
    def test_expands_fan_out(self):
        tasks = phase_tasks((Stage.SOCIAL, Stage.EMAIL))
        assert tasks == [(8, p) for p in SOCIAL_PLATFORMS] + [(9, None)]


class TestExecute:
    def test_success_merges_in_stage_order(self, runner, context_for):
        ctx = context_for(1)
        outcome = PhaseExecutor(runner).execute(_phase("extract"), ctx)

        assert [o.stage_number for o in outcome.outputs] == [1, 2]
        assert ctx.previous_stages[1]["episode_crux"].startswith("Automating")
        assert ctx.previous_stages[2]["output_text"] is None
        assert outcome.cost_usd == pytest.approx(sum(o.cost_usd for o in outcome.outputs))

    def test_fan_out_merge_shape(self, runner, context_for):
        ctx = context_for(8)
        PhaseExecutor(runner).execute(_phase("distribute"), ctx)

        social = ctx.previous_stages[8]
        assert social["output_text"] is None
        assert set(social["sub_stages"]) == set(SOCIAL_PLATFORMS)
        assert social["sub_stages"]["linkedin"]["platform"] == "linkedin"
        assert social["sub_stages"]["linkedin"]["output_text"] is None
        assert ctx.previous_stages[9]["subject_lines"]

    def test_failure_merges_nothing(self, runner, fake_llm, context_for):
        fake_llm.overrides["quotes"] = ProviderError("anthropic", 500, "server error")
        ctx = context_for(1)

        with pytest.raises(PhaseFailedError) as exc_info:
            PhaseExecutor(runner).execute(_phase("extract"), ctx)

        err = exc_info.value
        assert err.phase_id == "extract"
        assert [f.stage_number for f in err.failures] == [2]
        assert [o.stage_number for o in err.successes] == [1]
        assert err.retryable is True
        assert 1 not in ctx.previous_stages
        assert 2 not in ctx.previous_stages

    def test_one_failed_sub_stage_fails_the_phase(self, runner, fake_llm, canned, context_for):
        def social(system, user):
            if "Twitter/X" in system:
                return "not json"
            return json.dumps(canned["social"])

        fake_llm.overrides["social"] = social
        ctx = context_for(8)

        with pytest.raises(PhaseFailedError) as exc_info:
            PhaseExecutor(runner).execute(_phase("distribute"), ctx)

        err = exc_info.value
        assert [(f.stage_number, f.sub_stage) for f in err.failures] == [(8, "twitter")]
        assert len(err.successes) == 4
        assert 8 not in ctx.previous_stages

    def test_siblings_see_the_same_input(self, runner, context_for):
        seen = []
        original = runner.run_stage

        def recording(stage_number, context, sub_stage=None):
            seen.append(sorted(context.previous_stages))
            return original(stage_number, context, sub_stage)

        runner.run_stage = recording
        PhaseExecutor(runner).execute(_phase("detail"), context_for(4))
        assert seen == [[0, 1, 2, 3], [0, 1, 2, 3]]

    def test_tasks_run_concurrently(self, runner, fake_llm, canned, context_for):
        # Each response blocks until its sibling has also been called
        barrier = threading.Barrier(2, timeout=5)

        def wait_for_sibling(kind):
            def respond(system, user):
                barrier.wait()
                return json.dumps(canned[kind])

            return respond

        fake_llm.overrides["paragraphs"] = wait_for_sibling("paragraphs")
        fake_llm.overrides["headlines"] = wait_for_sibling("headlines")

        outcome = PhaseExecutor(runner).execute(_phase("detail"), context_for(4))
        assert len(outcome.outputs) == 2

    def test_timeout_fails_unfinished_tasks(self, runner, fake_llm, context_for):
        release = threading.Event()

        def slow(system, user):
            release.wait(5)
            return "{}"

        fake_llm.overrides["headlines"] = slow
        ctx = context_for(4)
        try:
            with pytest.raises(PhaseFailedError) as exc_info:
                PhaseExecutor(runner, timeout=1.0).execute(_phase("detail"), ctx)
        finally:
            release.set()

        err = exc_info.value
        assert [f.stage_number for f in err.failures] == [5]
        assert isinstance(err.failures[0].cause, ProviderTimeoutError)
        assert err.failures[0].retryable is True
        assert [o.stage_number for o in err.successes] == [4]

    def test_explicit_task_subset(self, runner, context_for):
        ctx = context_for(8)
        outcome = PhaseExecutor(runner).execute(phase_of(8), ctx, tasks=[(8, "linkedin")])
        assert [(o.stage_number, o.sub_stage) for o in outcome.outputs] == [(8, "linkedin")]
        assert list(ctx.previous_stages[8]["sub_stages"]) == ["linkedin"]
        assert 9 not in ctx.previous_stages
