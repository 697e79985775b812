"""Impact analysis of edits to already-passed stage data."""

import pytest

from adpipe.orchestrator import impact, stages
from adpipe.orchestrator.stages import Stage
from adpipe.orchestrator.transitions import ProjectState


def test_analysis_edit_on_completed_project_is_destructive():
    report = impact.analyze(ProjectState(stage=Stage.COMPLETED), Stage.ANALYSIS_REVIEW, {"product_name": "X"})

    assert report.destructive
    assert report.restart_from == Stage.SCRIPTING
    assert report.affected_stages[0] == Stage.SCRIPTING
    assert report.affected_stages[-1] == Stage.EDITING
    assert Stage.COMPLETED not in report.affected_stages
    expected = sum(
        stages.stage_cost_cents(s) for s in report.affected_stages if stages.is_processing(s)
    )
    assert report.estimated_cost_cents == expected
    assert report.estimated_cost_cents > 0
    assert "product_name" in report.warning


def test_edit_before_consumer_ran_is_safe():
    report = impact.analyze(ProjectState(stage=Stage.SCRIPT_REVIEW), Stage.SCRIPT_REVIEW, ["hook", "dialogue"])

    assert not report.destructive
    assert report.affected_stages == []
    assert report.estimated_cost_cents == 0
    assert {f.field for f in report.safe} == {"hook", "dialogue"}


def test_cosmetic_field_is_always_safe():
    report = impact.analyze(ProjectState(stage=Stage.COMPLETED), Stage.SCRIPT_REVIEW, ["notes"])
    assert not report.destructive
    assert report.restart_from is None


def test_only_consumed_fields_count():
    # dialogue feeds voiceover, which has not run at casting_review
    report = impact.analyze(
        ProjectState(stage=Stage.CASTING_REVIEW), Stage.SCRIPT_REVIEW, ["dialogue", "segments"],
    )
    assert report.destructive
    assert [f.field for f in report.destructive_fields] == ["segments"]
    assert [f.field for f in report.safe] == ["dialogue"]
    assert report.affected_stages[0] == Stage.BROLL_PLANNING
    assert report.affected_stages[-1] == Stage.CASTING_REVIEW
    assert Stage.DIRECTING not in report.affected_stages


def _cost_of_restart(restart_from: Stage) -> int:
    """What re-running a completed project from ``restart_from`` costs."""
    return sum(
        stages.stage_cost_cents(s)
        for s in stages.PIPELINE_ORDER
        if stages.is_processing(s) and stages.order_of(s) >= stages.order_of(restart_from)
    )


def test_late_consumer_narrows_affected_stages():
    report = impact.analyze(ProjectState(stage=Stage.COMPLETED), Stage.SCRIPT_REVIEW, ["dialogue"])
    assert report.affected_stages[0] == Stage.VOICEOVER
    assert report.restart_from == Stage.VOICEOVER
    assert report.estimated_cost_cents == (
        stages.stage_cost_cents(Stage.VOICEOVER) + stages.stage_cost_cents(Stage.EDITING)
    )


def test_estimate_matches_work_of_restart_point():
    for target, fields in [
        (Stage.ANALYSIS_REVIEW, ["product_name"]),
        (Stage.ANALYSIS_REVIEW, ["product_image_url"]),
        (Stage.SCRIPT_REVIEW, ["dialogue"]),
        (Stage.SCRIPT_REVIEW, ["dialogue", "hook"]),
        (Stage.CASTING_REVIEW, ["motion_prompts"]),
        (Stage.ANALYZING, ["summary"]),
    ]:
        report = impact.analyze(ProjectState(stage=Stage.COMPLETED), target, fields)
        assert report.destructive
        assert report.affected_stages[0] == report.restart_from
        assert report.estimated_cost_cents == _cost_of_restart(report.restart_from), (target, fields)


def test_processing_stage_output_restarts_at_processing_stage():
    report = impact.analyze(ProjectState(stage=Stage.COMPLETED), Stage.ANALYZING, {"summary": "x"})
    assert report.destructive
    assert report.restart_from == Stage.SCRIPTING
    assert stages.is_processing(report.restart_from)
    assert Stage.ANALYSIS_REVIEW not in report.affected_stages


def test_output_of_last_processing_stage_has_no_consumer():
    report = impact.analyze(ProjectState(stage=Stage.COMPLETED), Stage.EDITING, ["render_url"])
    assert not report.destructive
    assert report.restart_from is None


def test_failed_project_uses_failed_stage_as_reach():
    state = ProjectState(stage=Stage.FAILED, failed_at_stage=Stage.DIRECTING)
    report = impact.analyze(state, Stage.CASTING_REVIEW, ["motion_prompts"])
    assert report.destructive
    assert report.affected_stages == [Stage.DIRECTING]


def test_analysis_does_not_mutate_state():
    state = ProjectState(stage=Stage.COMPLETED, generation_epoch=7)
    before = state.model_copy()
    impact.analyze(state, Stage.ANALYSIS_REVIEW, ["benefits"])
    assert state == before


def test_terminal_target_rejected():
    with pytest.raises(ValueError):
        impact.analyze(ProjectState(stage=Stage.COMPLETED), Stage.COMPLETED, ["x"])
