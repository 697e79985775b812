"""Stage registry ordering, classification and rollback targets."""

import pytest

from adpipe.orchestrator import stages
from adpipe.orchestrator.errors import InvalidTransition
from adpipe.orchestrator.stages import Stage, StageKind


def test_pipeline_order_starts_created_and_ends_terminal():
    assert stages.PIPELINE_ORDER[0] == Stage.CREATED
    assert stages.PIPELINE_ORDER[-2:] == [Stage.COMPLETED, Stage.FAILED]
    assert len(stages.PIPELINE_ORDER) == len(Stage)


def test_classification():
    assert stages.classify(Stage.SCRIPTING) == StageKind.PROCESSING
    assert stages.classify(Stage.SCRIPT_REVIEW) == StageKind.REVIEW_GATE
    assert stages.classify(Stage.INFLUENCER_SELECTION) == StageKind.REVIEW_GATE
    assert stages.classify(Stage.COMPLETED) == StageKind.TERMINAL
    assert stages.classify(Stage.FAILED) == StageKind.TERMINAL
    assert stages.is_review_gate(Stage.CREATED)


def test_successor_inverts_predecessor():
    for stage in stages.PIPELINE_ORDER:
        before = stages.predecessor(stage)
        if before is None or stages.is_terminal(before):
            continue
        assert stages.successor(before) == stage


def test_successor_of_terminal_raises():
    with pytest.raises(InvalidTransition):
        stages.successor(Stage.COMPLETED)
    with pytest.raises(InvalidTransition):
        stages.successor(Stage.FAILED)


def test_successor_of_editing_is_completed():
    assert stages.successor(Stage.EDITING) == Stage.COMPLETED


@pytest.mark.parametrize("stage", [s for s in Stage if stages.is_processing(s)])
def test_rollback_target_strictly_earlier(stage):
    target = stages.rollback_target(stage)
    assert stages.order_of(target) < stages.order_of(stage)
    assert not stages.is_processing(target)


def test_rollback_targets():
    assert stages.rollback_target(Stage.ANALYZING) == Stage.CREATED
    assert stages.rollback_target(Stage.CASTING) == Stage.INFLUENCER_SELECTION
    assert stages.rollback_target(Stage.DIRECTING) == Stage.CASTING_REVIEW
    assert stages.rollback_target(Stage.VOICEOVER) == Stage.CASTING_REVIEW
    assert stages.rollback_target(Stage.EDITING) == Stage.ASSET_REVIEW


def test_rollback_target_of_gate_raises():
    with pytest.raises(InvalidTransition):
        stages.rollback_target(Stage.SCRIPT_REVIEW)


def test_stage_costs():
    assert stages.stage_cost_cents(Stage.DIRECTING) == 480
    assert stages.stage_cost_cents(Stage.CASTING) == 56
    assert stages.stage_cost_cents(Stage.SCRIPT_REVIEW) == 0


def test_setting_owner_defaults_to_scripting():
    assert stages.setting_owner("voice_id") == Stage.VOICEOVER
    assert stages.setting_owner("fast_mode") is None
    assert stages.setting_owner("something_new") == Stage.SCRIPTING


def test_field_consumer():
    assert stages.field_consumer(Stage.SCRIPT_REVIEW, "dialogue") == Stage.VOICEOVER
    assert stages.field_consumer(Stage.SCRIPT_REVIEW, "notes") is None
    assert stages.field_consumer(Stage.SCRIPT_REVIEW, "unlisted") == Stage.BROLL_PLANNING


def test_field_consumer_of_processing_stage_output():
    assert stages.field_consumer(Stage.ANALYZING, "summary") == Stage.SCRIPTING
    assert stages.field_consumer(Stage.BROLL_GENERATION, "images") == Stage.CASTING
    assert stages.field_consumer(Stage.EDITING, "render_url") is None


def test_next_processing():
    assert stages.next_processing(Stage.CREATED) == Stage.ANALYZING
    assert stages.next_processing(Stage.ANALYZING) == Stage.SCRIPTING
    assert stages.next_processing(Stage.ANALYZING, inclusive=True) == Stage.ANALYZING
    assert stages.next_processing(Stage.CASTING_REVIEW) == Stage.DIRECTING
    assert stages.next_processing(Stage.EDITING) is None
    assert stages.next_processing(Stage.COMPLETED, inclusive=True) is None


def test_field_consumers_are_later_processing_stages():
    for gate, consumers in stages.FIELD_CONSUMERS.items():
        for consumer in consumers.values():
            if consumer is not None:
                assert stages.is_processing(consumer)
                assert stages.order_of(consumer) > stages.order_of(gate)
