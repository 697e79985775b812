"""Transition engine: pure state machine over project snapshots.

Each function takes the current ``ProjectState`` plus an intent and returns
a ``Transition`` describing the next legal state, or raises one of the
errors in ``adpipe.orchestrator.errors``. Nothing here touches storage;
``adpipe.orchestrator.pipeline`` applies the result with compare-and-set.

Duplicate deliveries of the same intent (double-clicked approve, retried
network calls, re-sent worker callbacks) resolve to ``noop=True`` instead
of a second state change.
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from adpipe.orchestrator import stages
from adpipe.orchestrator.errors import (
    InvalidTransition,
    NotAtReviewGate,
    StaleAdvance,
)
from adpipe.orchestrator.stages import Stage

logger = logging.getLogger(__name__)

# Upper bound for fast-mode auto-approve chains
MAX_CHAIN_STEPS = len(stages.PIPELINE_ORDER)


class Intent(str, Enum):
    START = "start"
    ADVANCE = "advance"
    APPROVE = "approve"
    FAIL = "fail"
    RETRY = "retry"
    ROLLBACK = "rollback"
    ROLLBACK_TO = "rollback_to"
    STARTED = "started"


class ProjectState(BaseModel):
    """The subset of a project the state machine decides on."""

    stage: Stage
    failed_at_stage: Optional[Stage] = None
    fast_mode: bool = False
    retry_budget: int = 0
    generation_epoch: int = 0
    in_flight: bool = False
    last_intent: Optional[Intent] = None

    @property
    def position(self) -> Stage:
        """Stage the project logically occupies (failed stage when failed)."""
        if self.stage == Stage.FAILED:
            return self.failed_at_stage or Stage.CREATED
        return self.stage


class Transition(BaseModel):
    """Result of applying one intent."""

    intent: Intent
    from_stage: Stage
    state: ProjectState
    path: list[Stage] = Field(default_factory=list)
    dispatch: Optional[Stage] = None
    noop: bool = False
    error_info: Optional[str] = None

    @property
    def to_stage(self) -> Stage:
        return self.state.stage


def _noop(intent: Intent, state: ProjectState) -> Transition:
    logger.info(f"Duplicate {intent.value} ignored at stage {state.stage.value}")
    return Transition(intent=intent, from_stage=state.stage, state=state, noop=True)


def _enter(state: ProjectState, intent: Intent, stage: Stage, **changes) -> Transition:
    """Build the transition into ``stage``, chaining gates under fast mode."""
    path = [stage]
    steps = 0
    while stages.is_review_gate(stage) and state.fast_mode:
        if steps >= MAX_CHAIN_STEPS:
            raise InvalidTransition(f"Auto-approve chain did not terminate at {stage.value}")
        stage = stages.successor(stage)
        path.append(stage)
        steps += 1
    if steps:
        logger.info(f"Fast mode auto-approved through {[s.value for s in path[:-1]]}")

    new_state = state.model_copy(update={
        "stage": stage,
        "failed_at_stage": None,
        "in_flight": False,
        "last_intent": intent,
        **changes,
    })
    return Transition(
        intent=intent,
        from_stage=state.stage,
        state=new_state,
        path=path,
        dispatch=stage if stages.is_processing(stage) else None,
    )


def _check_epoch(state: ProjectState, epoch: Optional[int], what: str) -> None:
    if epoch is not None and epoch != state.generation_epoch:
        raise StaleAdvance(
            f"{what} for epoch {epoch} discarded; project is at epoch {state.generation_epoch}",
            project_stage=state.stage.value,
            project_epoch=state.generation_epoch,
        )


def advance(state: ProjectState, from_stage: Stage, epoch: Optional[int] = None) -> Transition:
    """Move a successfully completed processing stage to its successor.

    Raises:
        StaleAdvance: ``from_stage`` or ``epoch`` no longer match the project.
        InvalidTransition: The project is not at a processing stage.
    """
    from_stage = Stage(from_stage)
    _check_epoch(state, epoch, f"Advance from {from_stage.value}")
    if from_stage != state.stage:
        raise StaleAdvance(
            f"Advance from {from_stage.value} rejected; project is at {state.stage.value}",
            project_stage=state.stage.value,
            project_epoch=state.generation_epoch,
        )
    if not stages.is_processing(state.stage):
        raise InvalidTransition(f"Cannot advance from non-processing stage '{state.stage.value}'")
    return _enter(state, Intent.ADVANCE, stages.successor(state.stage))


def approve(state: ProjectState, gate: Optional[Stage] = None) -> Transition:
    """Approve the review gate the project is halted at.

    ``gate`` names the gate the caller saw; an approve for a gate the project
    has already passed is a no-op success.

    Raises:
        NotAtReviewGate: The project is not at ``gate`` (or any gate).
    """
    current = state.stage
    if gate is not None:
        gate = Stage(gate)
        if not stages.is_review_gate(gate):
            raise NotAtReviewGate(f"'{gate.value}' is not a review gate")
        if current != gate:
            if stages.order_of(state.position) > stages.order_of(gate):
                return _noop(Intent.APPROVE, state)
            raise NotAtReviewGate(
                f"Project is at '{current.value}', not at review gate '{gate.value}'"
            )
    elif not stages.is_review_gate(current):
        if state.last_intent in (Intent.APPROVE, Intent.START):
            return _noop(Intent.APPROVE, state)
        raise NotAtReviewGate(f"Project is not at a review gate (current: {current.value})")

    intent = Intent.START if current == Stage.CREATED else Intent.APPROVE
    return _enter(state, intent, stages.successor(current))


def start(state: ProjectState) -> Transition:
    """Kick off the pipeline from 'created'."""
    return approve(state, Stage.CREATED)


def fail(
    state: ProjectState,
    stage: Stage,
    error_info: str,
    epoch: Optional[int] = None,
) -> Transition:
    """Record a generation failure of the running processing stage.

    Cost is never touched here: money spent on partial generation stays
    accrued on the project.
    """
    stage = Stage(stage)
    _check_epoch(state, epoch, f"Fail of {stage.value}")
    if state.stage == Stage.FAILED and state.failed_at_stage == stage:
        return _noop(Intent.FAIL, state)
    if stage != state.stage:
        raise StaleAdvance(
            f"Fail of {stage.value} rejected; project is at {state.stage.value}",
            project_stage=state.stage.value,
            project_epoch=state.generation_epoch,
        )
    if not stages.is_processing(stage):
        raise InvalidTransition(f"Cannot fail non-processing stage '{stage.value}'")

    new_state = state.model_copy(update={
        "stage": Stage.FAILED,
        "failed_at_stage": stage,
        "in_flight": False,
        "last_intent": Intent.FAIL,
    })
    return Transition(
        intent=Intent.FAIL,
        from_stage=stage,
        state=new_state,
        path=[Stage.FAILED],
        error_info=error_info,
    )


def retry(state: ProjectState, automatic: bool = False) -> Transition:
    """Re-enter the failed processing stage.

    Automatic retries are only allowed for stages with an auto-retry policy
    and consume one unit of ``retry_budget``; manual retries are unlimited.
    The generation epoch moves forward so results of the failed attempt that
    are still in flight are discarded.
    """
    if state.stage != Stage.FAILED:
        if not automatic and state.last_intent == Intent.RETRY and stages.is_processing(state.stage):
            return _noop(Intent.RETRY, state)
        raise InvalidTransition(f"Retry is only possible from 'failed' (current: {state.stage.value})")

    target = state.failed_at_stage
    if target is None:
        logger.warning("Failed project has no failed_at_stage; retrying from the start")
        target = Stage.ANALYZING

    budget = state.retry_budget
    if automatic:
        if not stages.auto_retry_allowed(target):
            raise InvalidTransition(f"Stage '{target.value}' has no automatic retry policy")
        if budget <= 0:
            raise InvalidTransition(f"Retry budget exhausted for stage '{target.value}'")
        budget -= 1

    new_state = state.model_copy(update={
        "stage": target,
        "failed_at_stage": None,
        "in_flight": False,
        "retry_budget": budget,
        "generation_epoch": state.generation_epoch + 1,
        "last_intent": Intent.RETRY,
    })
    return Transition(
        intent=Intent.RETRY,
        from_stage=Stage.FAILED,
        state=new_state,
        path=[target],
        dispatch=target,
    )


def rollback(state: ProjectState) -> Transition:
    """Cancel a running stage or back out of a failure.

    Already dispatched external work is not cancelled; bumping the
    generation epoch makes its late callbacks stale.
    """
    current = state.stage
    if current == Stage.FAILED:
        source = state.failed_at_stage
        if source is None:
            logger.warning("Failed project has no failed_at_stage; rolling back to created")
            target = Stage.CREATED
        else:
            target = stages.rollback_target(source)
    elif stages.is_processing(current):
        target = stages.rollback_target(current)
    elif state.last_intent == Intent.ROLLBACK and stages.is_review_gate(current):
        return _noop(Intent.ROLLBACK, state)
    else:
        raise InvalidTransition(
            f"Cannot roll back from '{current.value}'; only running or failed stages can be cancelled"
        )

    new_state = state.model_copy(update={
        "stage": target,
        "failed_at_stage": None,
        "in_flight": False,
        "generation_epoch": state.generation_epoch + 1,
        "last_intent": Intent.ROLLBACK,
    })
    return Transition(intent=Intent.ROLLBACK, from_stage=current, state=new_state, path=[target])


def rollback_to(state: ProjectState, restart_from: Stage) -> Transition:
    """Restart the pipeline at an earlier processing stage.

    Used to apply the restart point of a confirmed destructive edit, or to
    explicitly re-run a stage from a review gate.
    """
    restart_from = Stage(restart_from)
    if not stages.is_processing(restart_from):
        raise InvalidTransition(f"Cannot restart from non-processing stage '{restart_from.value}'")
    if stages.is_processing(state.stage):
        raise InvalidTransition(
            f"Project is still running '{state.stage.value}'; cancel it before restarting"
        )
    if stages.order_of(restart_from) > stages.order_of(state.position):
        raise InvalidTransition(
            f"Cannot restart at '{restart_from.value}' ahead of '{state.position.value}'"
        )

    new_state = state.model_copy(update={
        "stage": restart_from,
        "failed_at_stage": None,
        "in_flight": False,
        "generation_epoch": state.generation_epoch + 1,
        "last_intent": Intent.ROLLBACK_TO,
    })
    return Transition(
        intent=Intent.ROLLBACK_TO,
        from_stage=state.stage,
        state=new_state,
        path=[restart_from],
        dispatch=restart_from,
    )


def mark_started(state: ProjectState, stage: Stage, epoch: Optional[int] = None) -> Transition:
    """Worker acknowledgement that generation for ``stage`` is running."""
    stage = Stage(stage)
    _check_epoch(state, epoch, f"Start of {stage.value}")
    if stage != state.stage or not stages.is_processing(stage):
        raise StaleAdvance(
            f"Start of {stage.value} rejected; project is at {state.stage.value}",
            project_stage=state.stage.value,
            project_epoch=state.generation_epoch,
        )
    if state.in_flight:
        return _noop(Intent.STARTED, state)
    new_state = state.model_copy(update={"in_flight": True})
    return Transition(intent=Intent.STARTED, from_stage=stage, state=new_state, path=[stage])
