"""Tests for episode orchestration: full runs, failures, resume, pause, regeneration."""

import json
from collections import defaultdict
from pathlib import Path

import pytest

from castwriter.core.episode_processor import (
    EpisodeProcessor,
    ProcessingResult,
    StageResult,
    write_report,
)
from castwriter.errors import (
    InvalidStatusError,
    NotFoundError,
    PersistenceError,
    PhaseFailedError,
    ProviderError,
)
from castwriter.models.episode import EpisodeStatus, StageStatus
from castwriter.repository import SqlRepository


class RecordingRepository(SqlRepository):
    """Logs every stage status written, per (stage, sub_stage)."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.status_log = defaultdict(list)

    def update_stage(self, episode_id, stage_number, sub_stage=None, **fields):
        if "status" in fields:
            self.status_log[(stage_number, sub_stage)].append(fields["status"])
        return super().update_stage(episode_id, stage_number, sub_stage, **fields)


@pytest.fixture
def recording_repository(repository):
    return RecordingRepository(repository._session_factory)


def _statuses(repository, episode_id):
    return {(r.stage_number, r.sub_stage): r.status for r in repository.find_all_stages(episode_id)}


class TestFullRun:
    def test_completes_every_stage(self, processor, repository, episode, fake_llm):
        result = processor.process_episode("ep001")

        assert result.success
        assert result.status == "completed"
        assert result.warnings == []
        statuses = _statuses(repository, "ep001")
        assert len(statuses) == 13
        assert set(statuses.values()) == {StageStatus.COMPLETED}

        ep = repository.find_episode("ep001")
        assert ep.status == EpisodeStatus.COMPLETED
        assert ep.current_stage == 9
        assert ep.error_message is None
        assert ep.processing_completed_at is not None
        assert ep.total_duration_seconds > 0

    def test_short_transcript_skips_preprocessing(self, processor, repository, fake_llm):
        transcript = ("word " * 120).strip() + "."
        assert len(transcript) == 600
        repository.create_episode(transcript, episode_id="short")

        result = processor.process_episode("short")

        assert result.status == "completed"
        assert fake_llm.calls_for("preprocess") == []
        stage0 = repository.find_stage("short", 0)
        assert stage0.status == StageStatus.COMPLETED
        assert stage0.output_data["preprocessed"] is False
        assert stage0.cost_usd == 0.0
        assert result.stages[0].status == "skipped"
        assert repository.find_episode("short").total_cost_usd >= 0
        assert result.cost_usd >= 0

    def test_total_cost_is_sum_of_records(self, processor, repository, episode):
        result = processor.process_episode("ep001")
        records = repository.find_all_stages("ep001")
        total = sum(r.cost_usd for r in records)
        assert result.cost_usd == pytest.approx(total)
        assert repository.find_episode("ep001").total_cost_usd == pytest.approx(total)

    def test_long_transcript_is_condensed(self, processor, settings, repository, episode, fake_llm):
        settings.preprocess_threshold_tokens = 10

        processor.process_episode("ep001")

        assert len(fake_llm.calls_for("preprocess")) == 1
        assert "SUMMARY:" in fake_llm.calls_for("analyze")[0]["user"]
        # Quotes are always taken from the original transcript
        assert "scheduled transfer never forgets" in fake_llm.calls_for("quotes")[0]["user"]
        assert repository.find_stage("ep001", 0).output_data["preprocessed"] is True

    def test_progress_callback_sees_every_phase(self, processor, episode):
        seen = []
        processor.process_episode("ep001", progress_callback=lambda phase, stages: seen.append((phase, stages)))
        assert seen == [
            ("pregate", [0]),
            ("extract", [1, 2]),
            ("outline", [3]),
            ("detail", [4, 5]),
            ("draft", [6]),
            ("refine", [7]),
            ("distribute", [8, 9]),
        ]

    def test_guest_name_from_episode_context(self, processor, repository, episode):
        processor.process_episode("ep001")
        analysis = repository.find_stage("ep001", 1).output_data
        assert analysis["guest_info"]["name"] == "Dana Reyes"

    def test_draft_has_word_count_and_text(self, processor, repository, episode, fake_llm):
        processor.process_episode("ep001")
        draft = repository.find_stage("ep001", 6)
        assert draft.output_data["word_count"] >= 600
        assert draft.output_text.startswith("# Small Habits")
        # Refinement reads exactly the stored draft
        assert draft.output_text in fake_llm.calls_for("refine")[0]["user"]

    def test_statuses_are_monotonic(self, recording_repository, runner, settings, episode):
        processor = EpisodeProcessor(recording_repository, runner, settings, evergreen_loader=dict)
        processor.process_episode("ep001")

        assert len(recording_repository.status_log) == 13
        for key, log in recording_repository.status_log.items():
            assert log == [StageStatus.PROCESSING, StageStatus.COMPLETED], key

    def test_record_creation_is_idempotent_across_runs(self, processor, repository, episode):
        processor.process_episode("ep001")
        processor.reset_episode("ep001")
        processor.process_episode("ep001")
        assert len(repository.find_all_stages("ep001")) == 13


class TestValidation:
    def test_unknown_episode(self, processor):
        with pytest.raises(NotFoundError):
            processor.process_episode("missing")

    def test_unknown_stage_modifies_nothing(self, processor, repository, episode):
        with pytest.raises(NotFoundError):
            processor.process_episode("ep001", start_from_stage=42)
        assert repository.find_all_stages("ep001") == []
        assert repository.find_episode("ep001").status == EpisodeStatus.DRAFT

    @pytest.mark.parametrize("status", [EpisodeStatus.PROCESSING, EpisodeStatus.COMPLETED])
    def test_rejects_non_startable_status(self, processor, repository, episode, status):
        repository.update_episode("ep001", status=status)
        with pytest.raises(InvalidStatusError, match="draft, paused or error"):
            processor.process_episode("ep001")
        assert repository.find_all_stages("ep001") == []


class TestFailure:
    def test_failure_marks_episode_and_phase(self, processor, repository, episode, fake_llm):
        fake_llm.overrides["quotes"] = ProviderError("anthropic", 529, "overloaded")

        with pytest.raises(PhaseFailedError) as exc_info:
            processor.process_episode("ep001")

        assert exc_info.value.first_failure.stage_number == 2
        ep = repository.find_episode("ep001")
        assert ep.status == EpisodeStatus.ERROR
        assert ep.error_message.startswith("Failed at Stage 2 (Quote Extraction): anthropic API error (529)")
        assert ep.total_cost_usd > 0

        quotes = repository.find_stage("ep001", 2)
        assert quotes.status == StageStatus.FAILED
        assert quotes.retry_count == 1
        assert quotes.error_details["retryable"] is True

        # The sibling that succeeded is discarded, not left completed
        analysis = repository.find_stage("ep001", 1)
        assert analysis.status == StageStatus.FAILED
        assert analysis.retry_count == 0
        assert analysis.error_details["discarded"] is True

        statuses = _statuses(repository, "ep001")
        assert statuses[(0, None)] == StageStatus.COMPLETED
        assert all(statuses[(n, None)] == StageStatus.PENDING for n in (3, 4, 5, 6, 7, 9))

    def test_retry_of_failed_phase_completes_both(self, processor, repository, episode, fake_llm):
        fake_llm.overrides["quotes"] = ProviderError("anthropic", 500, "server error")
        with pytest.raises(PhaseFailedError):
            processor.process_episode("ep001")

        del fake_llm.overrides["quotes"]
        result = processor.process_episode("ep001", start_from_stage=1)

        assert result.status == "completed"
        assert result.warnings == []
        assert repository.find_stage("ep001", 1).status == StageStatus.COMPLETED
        assert repository.find_stage("ep001", 2).status == StageStatus.COMPLETED
        assert repository.find_stage("ep001", 2).retry_count == 1

    def test_refine_without_draft_names_the_missing_input(self, processor, repository, episode):
        processor.process_episode("ep001")
        processor.reset_episode("ep001")

        with pytest.raises(PhaseFailedError):
            processor.process_episode("ep001", start_from_stage=7)

        ep = repository.find_episode("ep001")
        assert ep.status == EpisodeStatus.ERROR
        assert ep.error_message == (
            "Failed at Stage 7 (Refinement Pass): Validation failed for 'inputs': "
            "Missing required inputs: draft (stage 6.output_text)"
        )

    def test_failure_result_lists_stages(self, processor, episode, fake_llm):
        fake_llm.overrides["email"] = "not json"
        with pytest.raises(PhaseFailedError) as exc_info:
            processor.process_episode("ep001")
        assert exc_info.value.phase_id == "distribute"
        assert {s.sub_stage for s in exc_info.value.successes} == {
            "instagram",
            "twitter",
            "linkedin",
            "facebook",
        }

    def test_callback_error_aborts_run(self, processor, repository, episode):
        def explode(phase, stages):
            if phase == "outline":
                raise RuntimeError("listener crashed")

        with pytest.raises(RuntimeError):
            processor.process_episode("ep001", progress_callback=explode)

        ep = repository.find_episode("ep001")
        assert ep.status == EpisodeStatus.ERROR
        assert ep.error_message == "Pipeline aborted: listener crashed"

        status = processor.get_processing_status("ep001")
        assert status.in_flight == []
        outline = repository.find_stage("ep001", 3)
        assert outline.status == StageStatus.FAILED
        assert outline.error_details["aborted"] is True
        assert outline.retry_count == 0
        assert repository.find_stage("ep001", 4).status == StageStatus.PENDING

    def test_store_error_mid_phase_fails_whole_phase(
        self, repository, runner, settings, episode
    ):
        class FlakyRepository(SqlRepository):
            def mark_completed(self, episode_id, stage_number, output):
                if stage_number == 5:
                    raise PersistenceError("mark_completed", "disk I/O error")
                return super().mark_completed(episode_id, stage_number, output)

        flaky = FlakyRepository(repository._session_factory)
        processor = EpisodeProcessor(flaky, runner, settings, evergreen_loader=dict)

        with pytest.raises(PersistenceError):
            processor.process_episode("ep001")

        statuses = _statuses(repository, "ep001")
        assert statuses[(3, None)] == StageStatus.COMPLETED
        assert statuses[(4, None)] == StageStatus.FAILED
        assert statuses[(5, None)] == StageStatus.FAILED
        assert StageStatus.PROCESSING not in statuses.values()
        assert repository.find_episode("ep001").status == EpisodeStatus.ERROR

    def test_store_error_during_regeneration_leaves_nothing_in_flight(
        self, processor, repository, runner, settings, episode
    ):
        processor.process_episode("ep001")

        class FlakyRepository(SqlRepository):
            def mark_completed(self, episode_id, stage_number, output):
                raise PersistenceError("mark_completed", "disk I/O error")

        flaky = FlakyRepository(repository._session_factory)
        with pytest.raises(PersistenceError):
            EpisodeProcessor(flaky, runner, settings, evergreen_loader=dict).regenerate_stage(
                "ep001", 8, "twitter"
            )

        twitter = repository.find_stage("ep001", 8, "twitter")
        assert twitter.status == StageStatus.FAILED
        assert twitter.error_message.startswith("Regeneration aborted:")
        assert repository.find_stage("ep001", 8, "instagram").status == StageStatus.COMPLETED


class TestResume:
    def test_resume_sees_same_context_as_uninterrupted_run(
        self, processor, repository, episode, fake_llm
    ):
        repository.create_episode(episode.transcript, episode.episode_context, episode_id="ep002")
        processor.process_episode("ep002")
        uninterrupted = fake_llm.calls_for("draft")[-1]["user"]

        fake_llm.overrides["draft"] = ProviderError("openai", 503, "unavailable")
        with pytest.raises(PhaseFailedError):
            processor.process_episode("ep001")
        del fake_llm.overrides["draft"]

        result = processor.process_episode("ep001", start_from_stage=6)

        assert result.status == "completed"
        assert result.warnings == []
        assert fake_llm.calls_for("draft")[-1]["user"] == uninterrupted
        resumed = {r.key: r.output_data for r in repository.find_all_stages("ep001")}
        original = {r.key: r.output_data for r in repository.find_all_stages("ep002")}
        assert resumed == original

    def test_resume_inside_a_phase_runs_only_later_stages(self, processor, repository, episode, fake_llm):
        processor.process_episode("ep001")
        repository.update_episode("ep001", status=EpisodeStatus.ERROR)
        calls_before = len(fake_llm.calls_for("paragraphs"))

        processor.process_episode("ep001", start_from_stage=5)

        assert len(fake_llm.calls_for("paragraphs")) == calls_before
        assert len(fake_llm.calls_for("headlines")) == 2

    def test_resume_warns_about_incomplete_records(self, processor, repository, episode):
        processor.process_episode("ep001")
        repository.update_episode("ep001", status=EpisodeStatus.ERROR)
        repository.update_stage("ep001", 0, status=StageStatus.PENDING)

        result = processor.process_episode("ep001", start_from_stage=3)

        assert result.status == "completed"
        assert len(result.warnings) == 1
        assert "Stage 0 is 'pending'" in result.warnings[0]

    def test_cost_accumulates_across_runs(self, processor, repository, episode):
        first = processor.process_episode("ep001")
        repository.update_episode("ep001", status=EpisodeStatus.ERROR)
        second = processor.process_episode("ep001", start_from_stage=9)
        assert repository.find_episode("ep001").total_cost_usd == pytest.approx(
            first.cost_usd + second.cost_usd
        )


class TestPause:
    def test_pause_takes_effect_after_the_phase(self, processor, repository, episode):
        observed = {}

        def pause_during_extract(phase, stages):
            if phase == "extract":
                processor.pause_episode("ep001")
                observed["status"] = processor.get_processing_status("ep001")

        result = processor.process_episode("ep001", progress_callback=pause_during_extract)

        # The request was visible while the in-flight phase was still running
        assert observed["status"].status == "processing"
        assert observed["status"].pause_requested is True

        assert result.status == "paused"
        assert result.resume_from_stage == 3
        assert [s.stage_number for s in result.stages] == [0, 1, 2]
        ep = repository.find_episode("ep001")
        assert ep.status == EpisodeStatus.PAUSED
        assert ep.current_stage == 3
        assert ep.pause_requested is False
        assert repository.find_stage("ep001", 2).status == StageStatus.COMPLETED
        assert repository.find_stage("ep001", 3).status == StageStatus.PENDING

    def test_resume_after_pause(self, processor, repository, episode):
        def pause_once(phase, stages):
            if phase == "outline":
                processor.pause_episode("ep001")

        paused = processor.process_episode("ep001", progress_callback=pause_once)
        assert paused.resume_from_stage == 4

        result = processor.process_episode("ep001", start_from_stage=paused.resume_from_stage)
        assert result.status == "completed"
        assert result.warnings == []

    def test_pause_requires_processing(self, processor, episode):
        with pytest.raises(InvalidStatusError, match="only a processing episode can be paused"):
            processor.pause_episode("ep001")


class TestRegenerate:
    def test_single_sub_stage(self, processor, repository, episode, fake_llm):
        processor.process_episode("ep001")
        before = {r.key: r.completed_at for r in repository.find_all_stages("ep001")}
        cost_before = repository.find_episode("ep001").total_cost_usd
        social_calls = len(fake_llm.calls_for("social"))

        result = processor.regenerate_stage("ep001", 8, "twitter")

        assert [(s.stage_number, s.sub_stage) for s in result.stages] == [(8, "twitter")]
        assert len(fake_llm.calls_for("social")) == social_calls + 1
        after = {r.key: r.completed_at for r in repository.find_all_stages("ep001")}
        changed = [key for key in before if before[key] != after[key]]
        assert changed == [(8, "twitter")]

        ep = repository.find_episode("ep001")
        assert ep.status == EpisodeStatus.COMPLETED
        assert ep.total_cost_usd == pytest.approx(cost_before + result.cost_usd)

    def test_fan_out_stage_regenerates_every_platform(self, processor, episode, fake_llm):
        processor.process_episode("ep001")
        result = processor.regenerate_stage("ep001", 8)
        assert len(result.stages) == 4

    def test_failure_marks_only_that_stage(self, processor, repository, episode, fake_llm):
        processor.process_episode("ep001")
        fake_llm.overrides["email"] = ProviderError("anthropic", 429, "rate limited")

        with pytest.raises(PhaseFailedError):
            processor.regenerate_stage("ep001", 9)

        email = repository.find_stage("ep001", 9)
        assert email.status == StageStatus.FAILED
        assert email.retry_count == 1
        assert repository.find_stage("ep001", 8, "twitter").status == StageStatus.COMPLETED
        assert repository.find_episode("ep001").status == EpisodeStatus.COMPLETED

    def test_rejected_while_processing(self, processor, repository, episode):
        repository.update_episode("ep001", status=EpisodeStatus.PROCESSING)
        with pytest.raises(InvalidStatusError):
            processor.regenerate_stage("ep001", 3)

    def test_unknown_sub_stage(self, processor, episode):
        with pytest.raises(NotFoundError):
            processor.regenerate_stage("ep001", 8, "myspace")


class TestStatusAndReset:
    def test_status_after_failure(self, processor, episode, fake_llm):
        fake_llm.overrides["outline"] = "nope"
        with pytest.raises(PhaseFailedError):
            processor.process_episode("ep001")

        status = processor.get_processing_status("ep001")
        assert status.status == "error"
        assert status.completed_stages == [0, 1, 2]
        assert status.percent_complete == 30
        assert [f["stage_number"] for f in status.failed] == [3]
        assert status.in_flight == []
        assert "Stage 3" in status.error_message

    def test_status_complete(self, processor, episode):
        processor.process_episode("ep001")
        status = processor.get_processing_status("ep001")
        assert status.percent_complete == 100
        assert status.to_dict()["completed_stages"] == list(range(10))

    def test_reset_keeps_spend(self, processor, repository, episode):
        result = processor.process_episode("ep001")
        ep = processor.reset_episode("ep001")

        assert ep.status == EpisodeStatus.DRAFT
        assert ep.current_stage == 0
        assert set(_statuses(repository, "ep001").values()) == {StageStatus.PENDING}
        assert ep.total_cost_usd == pytest.approx(result.cost_usd)

    def test_reset_rejected_while_processing(self, processor, repository, episode):
        repository.update_episode("ep001", status=EpisodeStatus.PROCESSING)
        with pytest.raises(InvalidStatusError):
            processor.reset_episode("ep001")


class TestBackground:
    def test_start_processing_returns_future(self, processor, repository, episode):
        future = processor.start_processing("ep001")
        result = future.result(timeout=30)
        assert isinstance(result, ProcessingResult)
        assert repository.find_episode("ep001").status == EpisodeStatus.COMPLETED

    def test_validation_errors_raise_synchronously(self, processor, repository, episode):
        repository.update_episode("ep001", status=EpisodeStatus.COMPLETED)
        with pytest.raises(InvalidStatusError):
            processor.start_processing("ep001")
        with pytest.raises(NotFoundError):
            processor.start_regeneration("ep001", 8, "myspace")

    def test_run_failure_is_delivered_by_future(self, processor, episode, fake_llm):
        fake_llm.overrides["headlines"] = "nope"
        future = processor.start_processing("ep001")
        with pytest.raises(PhaseFailedError):
            future.result(timeout=30)


class TestReport:
    def test_write_report(self, tmp_path):
        result = ProcessingResult(episode_id="ep001", start_from_stage=0, status="completed")
        result.stages.append(StageResult(1, "Transcript Analysis", "completed", 1.5, 0.001))

        path = write_report(result, str(tmp_path / "reports"))

        assert Path(path).parent.name == "ep001"
        data = json.loads(Path(path).read_text())
        assert data["success"] is True
        assert data["stages"][0]["stage_name"] == "Transcript Analysis"
