"""Pure transition engine tests: no database involved."""

import pytest

from adpipe.orchestrator import stages, transitions
from adpipe.orchestrator.errors import InvalidTransition, NotAtReviewGate, StaleAdvance
from adpipe.orchestrator.stages import Stage
from adpipe.orchestrator.transitions import Intent, ProjectState


def state(stage: Stage, **kw) -> ProjectState:
    return ProjectState(stage=stage, **kw)


# ---------------------------------------------------------------------------
# Advance
# ---------------------------------------------------------------------------

def test_advance_moves_to_successor_and_halts_at_gate():
    t = transitions.advance(state(Stage.SCRIPTING), Stage.SCRIPTING)
    assert t.to_stage == Stage.SCRIPT_REVIEW
    assert t.dispatch is None
    assert t.state.last_intent == Intent.ADVANCE


def test_advance_into_processing_dispatches():
    t = transitions.advance(state(Stage.DIRECTING), Stage.DIRECTING)
    assert t.to_stage == Stage.VOICEOVER
    assert t.dispatch == Stage.VOICEOVER


def test_advance_editing_completes():
    t = transitions.advance(state(Stage.EDITING), Stage.EDITING)
    assert t.to_stage == Stage.COMPLETED
    assert t.dispatch is None


def test_stale_from_stage_rejected():
    s = state(Stage.SCRIPT_REVIEW)
    with pytest.raises(StaleAdvance):
        transitions.advance(s, Stage.SCRIPTING)
    assert s.stage == Stage.SCRIPT_REVIEW


def test_stale_epoch_rejected():
    with pytest.raises(StaleAdvance) as exc_info:
        transitions.advance(state(Stage.DIRECTING, generation_epoch=3), Stage.DIRECTING, epoch=2)
    assert exc_info.value.project_epoch == 3


def test_advance_from_gate_is_invalid():
    with pytest.raises(InvalidTransition):
        transitions.advance(state(Stage.SCRIPT_REVIEW), Stage.SCRIPT_REVIEW)


def test_advance_from_failed_is_stale():
    s = state(Stage.FAILED, failed_at_stage=Stage.CASTING)
    with pytest.raises(StaleAdvance):
        transitions.advance(s, Stage.CASTING)


# ---------------------------------------------------------------------------
# Approve / start
# ---------------------------------------------------------------------------

def test_approve_script_review_enters_broll_planning():
    t = transitions.approve(state(Stage.SCRIPT_REVIEW), Stage.SCRIPT_REVIEW)
    assert t.to_stage == Stage.BROLL_PLANNING
    assert t.dispatch == Stage.BROLL_PLANNING
    assert t.path == [Stage.BROLL_PLANNING]


def test_start_enters_analyzing():
    t = transitions.start(state(Stage.CREATED))
    assert t.intent == Intent.START
    assert t.to_stage == Stage.ANALYZING
    assert t.dispatch == Stage.ANALYZING


def test_approve_not_at_gate():
    with pytest.raises(NotAtReviewGate):
        transitions.approve(state(Stage.SCRIPTING))


def test_approve_future_gate_rejected():
    with pytest.raises(NotAtReviewGate):
        transitions.approve(state(Stage.SCRIPT_REVIEW), Stage.CASTING_REVIEW)


def test_approve_non_gate_named():
    with pytest.raises(NotAtReviewGate):
        transitions.approve(state(Stage.SCRIPT_REVIEW), Stage.SCRIPTING)


def test_double_approve_with_gate_is_noop():
    first = transitions.approve(state(Stage.SCRIPT_REVIEW), Stage.SCRIPT_REVIEW)
    second = transitions.approve(first.state, Stage.SCRIPT_REVIEW)
    assert second.noop
    assert second.state == first.state


def test_double_approve_without_gate_is_noop():
    first = transitions.approve(state(Stage.BROLL_REVIEW))
    second = transitions.approve(first.state)
    assert second.noop
    assert second.to_stage == Stage.BROLL_GENERATION


def test_double_start_is_noop():
    first = transitions.start(state(Stage.CREATED))
    assert transitions.start(first.state).noop


def test_gateless_repeat_approve_after_moving_on_is_noop():
    t = transitions.advance(state(Stage.SCRIPTING), Stage.SCRIPTING)
    moved = transitions.approve(t.state)
    assert moved.to_stage == Stage.BROLL_PLANNING
    assert transitions.approve(moved.state).noop


# ---------------------------------------------------------------------------
# Fast mode
# ---------------------------------------------------------------------------

def test_fast_mode_chains_through_gates():
    t = transitions.advance(state(Stage.BROLL_GENERATION, fast_mode=True), Stage.BROLL_GENERATION)
    assert t.path == [Stage.INFLUENCER_SELECTION, Stage.CASTING]
    assert t.to_stage == Stage.CASTING
    assert t.dispatch == Stage.CASTING


def test_fast_mode_start_stops_at_first_processing():
    t = transitions.start(state(Stage.CREATED, fast_mode=True))
    assert t.to_stage == Stage.ANALYZING


def test_fast_mode_chain_bounded():
    for stage in stages.PIPELINE_ORDER:
        if not stages.is_processing(stage):
            continue
        t = transitions.advance(state(stage, fast_mode=True), stage)
        assert len(t.path) <= len(stages.PIPELINE_ORDER)
        assert stages.is_processing(t.to_stage) or t.to_stage == Stage.COMPLETED


# ---------------------------------------------------------------------------
# Fail / retry
# ---------------------------------------------------------------------------

def test_fail_records_stage_and_error():
    t = transitions.fail(state(Stage.CASTING), Stage.CASTING, "provider timeout")
    assert t.to_stage == Stage.FAILED
    assert t.state.failed_at_stage == Stage.CASTING
    assert t.error_info == "provider timeout"


def test_retry_after_fail_reenters_stage():
    failed = transitions.fail(state(Stage.CASTING, generation_epoch=1), Stage.CASTING, "provider timeout")
    t = transitions.retry(failed.state)
    assert t.to_stage == Stage.CASTING
    assert t.dispatch == Stage.CASTING
    assert t.state.failed_at_stage is None
    assert t.state.generation_epoch == 2


def test_duplicate_fail_is_noop():
    failed = transitions.fail(state(Stage.CASTING), Stage.CASTING, "boom")
    assert transitions.fail(failed.state, Stage.CASTING, "boom").noop


def test_fail_of_other_stage_is_stale():
    with pytest.raises(StaleAdvance):
        transitions.fail(state(Stage.VOICEOVER), Stage.DIRECTING, "late")


def test_fail_of_gate_invalid():
    with pytest.raises(InvalidTransition):
        transitions.fail(state(Stage.SCRIPT_REVIEW), Stage.SCRIPT_REVIEW, "nope")


def test_retry_requires_failed():
    with pytest.raises(InvalidTransition):
        transitions.retry(state(Stage.SCRIPT_REVIEW))


def test_double_retry_is_noop():
    failed = transitions.fail(state(Stage.CASTING), Stage.CASTING, "boom")
    first = transitions.retry(failed.state)
    assert transitions.retry(first.state).noop


def test_automatic_retry_consumes_budget():
    failed = transitions.fail(state(Stage.DIRECTING, retry_budget=1), Stage.DIRECTING, "rate limited")
    t = transitions.retry(failed.state, automatic=True)
    assert t.state.retry_budget == 0

    again = transitions.fail(t.state, Stage.DIRECTING, "rate limited")
    with pytest.raises(InvalidTransition):
        transitions.retry(again.state, automatic=True)
    # manual retry still allowed
    assert transitions.retry(again.state).to_stage == Stage.DIRECTING


def test_automatic_retry_needs_policy():
    failed = transitions.fail(state(Stage.SCRIPTING, retry_budget=3), Stage.SCRIPTING, "bad json")
    with pytest.raises(InvalidTransition):
        transitions.retry(failed.state, automatic=True)


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------

def test_rollback_directing_goes_to_casting_review():
    t = transitions.rollback(state(Stage.DIRECTING, generation_epoch=4))
    assert t.to_stage == Stage.CASTING_REVIEW
    assert t.state.generation_epoch == 5
    assert t.dispatch is None

    with pytest.raises(StaleAdvance):
        transitions.advance(t.state, Stage.DIRECTING, epoch=4)


def test_rollback_from_failed_uses_failed_stage_target():
    failed = transitions.fail(state(Stage.VOICEOVER), Stage.VOICEOVER, "tts down")
    t = transitions.rollback(failed.state)
    assert t.to_stage == Stage.CASTING_REVIEW


def test_double_rollback_is_noop():
    first = transitions.rollback(state(Stage.CASTING))
    assert transitions.rollback(first.state).noop


def test_rollback_at_gate_invalid():
    with pytest.raises(InvalidTransition):
        transitions.rollback(state(Stage.SCRIPT_REVIEW))


def test_rollback_does_not_chain_in_fast_mode():
    t = transitions.rollback(state(Stage.DIRECTING, fast_mode=True))
    assert t.to_stage == Stage.CASTING_REVIEW


def test_rollback_to_earlier_processing_stage():
    t = transitions.rollback_to(state(Stage.COMPLETED, generation_epoch=2), Stage.SCRIPTING)
    assert t.to_stage == Stage.SCRIPTING
    assert t.dispatch == Stage.SCRIPTING
    assert t.state.generation_epoch == 3


def test_rollback_to_while_running_invalid():
    with pytest.raises(InvalidTransition):
        transitions.rollback_to(state(Stage.DIRECTING), Stage.SCRIPTING)


def test_rollback_to_ahead_invalid():
    with pytest.raises(InvalidTransition):
        transitions.rollback_to(state(Stage.SCRIPT_REVIEW), Stage.CASTING)


# ---------------------------------------------------------------------------
# Started
# ---------------------------------------------------------------------------

def test_mark_started_sets_in_flight_once():
    t = transitions.mark_started(state(Stage.CASTING), Stage.CASTING, epoch=0)
    assert t.state.in_flight
    assert transitions.mark_started(t.state, Stage.CASTING, epoch=0).noop


def test_mark_started_stale():
    with pytest.raises(StaleAdvance):
        transitions.mark_started(state(Stage.CASTING_REVIEW), Stage.CASTING)
