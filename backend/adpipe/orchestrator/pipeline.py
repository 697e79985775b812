"""Persistence layer for the transition engine.

Applies pure transitions from ``adpipe.orchestrator.transitions`` to the
``projects`` table as one atomic read-modify-write per intent:

- Compare-and-set keyed on the (stage, generation_epoch) the decision was
  made from; a lost race raises ConcurrentModification and writes nothing
- Audit trail of applied intents in ``stage_transitions``
- Orphaned generation units of an abandoned epoch flipped to cancelled
- Cost accrual that survives stale callbacks
"""

import logging
import uuid
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from adpipe.config import settings as app_settings
from adpipe.db.models import (
    UNIT_CANCELLED,
    UNIT_IN_FLIGHT,
    GenerationUnit,
    Project,
    StageTransition,
)
from adpipe.orchestrator import impact, stages, transitions
from adpipe.orchestrator.errors import (
    ConcurrentModification,
    ConfirmationRequired,
    InvalidTransition,
    ProjectNotFound,
    StageLocked,
    StaleAdvance,
)
from adpipe.orchestrator.impact import ImpactReport
from adpipe.orchestrator.stages import Stage
from adpipe.orchestrator.transitions import Intent, ProjectState, Transition

logger = logging.getLogger(__name__)

# Intents that start a new generation epoch and orphan the previous one
_EPOCH_BUMPING = {Intent.RETRY, Intent.ROLLBACK, Intent.ROLLBACK_TO}


def clamp_retry_budget(value: Optional[int]) -> int:
    """Clamp a requested retry budget into [0, max_retry_budget]."""
    if value is None:
        value = app_settings.pipeline.default_retry_budget
    return max(0, min(int(value), app_settings.pipeline.max_retry_budget))


async def _load(session: AsyncSession, project_id: uuid.UUID) -> Project:
    """Load a live project, always re-reading persisted columns."""
    result = await session.execute(
        select(Project)
        .where(Project.id == project_id, Project.deleted_at.is_(None))
        .execution_options(populate_existing=True)
    )
    project = result.scalar_one_or_none()
    if project is None:
        raise ProjectNotFound(f"Project {project_id} not found")
    return project


async def _compare_and_set(
    session: AsyncSession,
    project: Project,
    decided_on: ProjectState,
    values: dict[str, Any],
) -> None:
    """Write ``values`` only if the project still has the stage and epoch
    the caller decided on. Does not commit."""
    result = await session.execute(
        update(Project)
        .where(
            Project.id == project.id,
            Project.stage == decided_on.stage.value,
            Project.generation_epoch == decided_on.generation_epoch,
            Project.deleted_at.is_(None),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConcurrentModification(
            f"Project {project.id} changed while applying update "
            f"(expected stage {decided_on.stage.value}, epoch {decided_on.generation_epoch})"
        )


async def _apply(
    session: AsyncSession,
    project: Project,
    transition: Transition,
    *,
    cost_cents: int = 0,
    extra: Optional[dict[str, Any]] = None,
) -> Transition:
    """Persist a non-noop transition atomically and refresh ``project``."""
    if transition.noop:
        return transition

    decided_on = project.to_state()
    new = transition.state
    values: dict[str, Any] = {
        "stage": new.stage.value,
        "failed_at_stage": new.failed_at_stage.value if new.failed_at_stage else None,
        "retry_budget": new.retry_budget,
        "generation_epoch": new.generation_epoch,
        "in_flight": new.in_flight,
        "last_intent": new.last_intent.value if new.last_intent else None,
        "updated_at": func.now(),
    }
    if transition.intent != Intent.STARTED:
        values["stage_started_at"] = func.now() if stages.is_processing(new.stage) else None
    if cost_cents:
        values["cost_cents"] = Project.cost_cents + cost_cents
    if new.stage != decided_on.stage:
        # a pending restart point only applies from the position it was recorded at
        values["restart_from"] = None
    if extra:
        values.update(extra)

    await _compare_and_set(session, project, decided_on, values)

    if transition.intent != Intent.STARTED:
        session.add(StageTransition(
            project_id=project.id,
            intent=transition.intent.value,
            from_stage=transition.from_stage.value,
            to_stage=new.stage.value,
            generation_epoch=new.generation_epoch,
            detail={
                "path": [s.value for s in transition.path],
                "error_info": transition.error_info,
                "cost_cents": cost_cents,
            },
        ))

    if transition.intent in _EPOCH_BUMPING:
        cancelled = await session.execute(
            update(GenerationUnit)
            .where(
                GenerationUnit.project_id == project.id,
                GenerationUnit.generation_epoch == decided_on.generation_epoch,
                GenerationUnit.status.in_(UNIT_IN_FLIGHT),
            )
            .values(status=UNIT_CANCELLED)
            .execution_options(synchronize_session=False)
        )
        if cancelled.rowcount:
            logger.info(
                f"Project {project.id}: cancelled {cancelled.rowcount} in-flight units "
                f"of epoch {decided_on.generation_epoch}"
            )

    await session.commit()
    await session.refresh(project)

    logger.info(
        f"Project {project.id}: {transition.intent.value} "
        f"{transition.from_stage.value} -> {new.stage.value} (epoch {new.generation_epoch})"
    )
    return transition


# ============================================================================
# Project lifecycle
# ============================================================================

async def create_project(
    session: AsyncSession,
    *,
    name: Optional[str] = None,
    product_url: Optional[str] = None,
    settings: Optional[dict] = None,
    fast_mode: Optional[bool] = None,
    retry_budget: Optional[int] = None,
) -> Project:
    """Create a project in the 'created' stage."""
    project = Project(
        name=name,
        product_url=product_url,
        stage=Stage.CREATED.value,
        cost_cents=0,
        fast_mode=app_settings.pipeline.default_fast_mode if fast_mode is None else fast_mode,
        retry_budget=clamp_retry_budget(retry_budget),
        settings=dict(settings or {}),
        stage_data={},
        generation_epoch=0,
        in_flight=False,
    )
    session.add(project)
    await session.commit()
    await session.refresh(project)
    logger.info(f"Created project {project.id} (fast_mode={project.fast_mode})")
    return project


async def get_project(session: AsyncSession, project_id: uuid.UUID) -> Project:
    return await _load(session, project_id)


async def list_projects(session: AsyncSession) -> list[Project]:
    """List live projects, newest first."""
    result = await session.execute(
        select(Project)
        .where(Project.deleted_at.is_(None))
        .order_by(Project.created_at.desc())
    )
    return list(result.scalars().all())


async def delete_project(session: AsyncSession, project_id: uuid.UUID) -> None:
    """Soft-delete a project (admin action, not a pipeline transition)."""
    project = await _load(session, project_id)
    project.deleted_at = func.now()
    await session.commit()
    logger.info(f"Project {project_id} deleted at stage {project.stage}")


# ============================================================================
# Operator intents
# ============================================================================

async def start_project(session: AsyncSession, project_id: uuid.UUID) -> Transition:
    project = await _load(session, project_id)
    return await _apply(session, project, transitions.start(project.to_state()))


async def approve_project(
    session: AsyncSession,
    project_id: uuid.UUID,
    gate: Optional[Stage] = None,
) -> Transition:
    """Approve the current review gate (idempotent against double delivery)."""
    project = await _load(session, project_id)
    return await _apply(session, project, transitions.approve(project.to_state(), gate))


async def retry_project(
    session: AsyncSession,
    project_id: uuid.UUID,
    automatic: bool = False,
) -> Transition:
    project = await _load(session, project_id)
    transition = transitions.retry(project.to_state(), automatic=automatic)
    return await _apply(session, project, transition, extra={"error_message": None})


async def rollback_project(session: AsyncSession, project_id: uuid.UUID) -> Transition:
    """Cancel the running stage or back out of a failure."""
    project = await _load(session, project_id)
    transition = transitions.rollback(project.to_state())
    return await _apply(session, project, transition, extra={"error_message": None})


async def rollback_to_stage(
    session: AsyncSession,
    project_id: uuid.UUID,
    stage: Optional[Stage] = None,
) -> Transition:
    """Restart at ``stage``, or at the restart point a confirmed edit recorded."""
    project = await _load(session, project_id)
    target = stage or project.restart_from
    if target is None:
        raise InvalidTransition(f"Project {project_id} has no pending restart point")
    transition = transitions.rollback_to(project.to_state(), Stage(target))
    return await _apply(
        session, project, transition,
        extra={"error_message": None, "restart_from": None},
    )


# ============================================================================
# Worker callbacks
# ============================================================================

async def accrue_cost(session: AsyncSession, project_id: uuid.UUID, cost_cents: int) -> Project:
    """Add spent money to the project. Never decreases the total."""
    if cost_cents < 0:
        raise ValueError(f"cost_cents must be >= 0, got {cost_cents}")
    project = await _load(session, project_id)
    if cost_cents:
        await session.execute(
            update(Project)
            .where(Project.id == project_id)
            .values(cost_cents=Project.cost_cents + cost_cents)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        await session.refresh(project)
    return project


async def mark_stage_started(
    session: AsyncSession,
    project_id: uuid.UUID,
    stage: Stage,
    epoch: Optional[int] = None,
) -> Transition:
    project = await _load(session, project_id)
    return await _apply(session, project, transitions.mark_started(project.to_state(), stage, epoch))


async def advance_project(
    session: AsyncSession,
    project_id: uuid.UUID,
    from_stage: Stage,
    epoch: Optional[int] = None,
    cost_cents: int = 0,
) -> Transition:
    """Worker success callback.

    A stale callback (rolled-back epoch or out-of-order stage) raises
    StaleAdvance without touching the stage, but its cost is still accrued.
    """
    if cost_cents < 0:
        raise ValueError(f"cost_cents must be >= 0, got {cost_cents}")
    project = await _load(session, project_id)
    try:
        transition = transitions.advance(project.to_state(), from_stage, epoch)
    except StaleAdvance as e:
        logger.warning(f"Project {project_id}: discarding stale advance: {e}")
        if cost_cents:
            await accrue_cost(session, project_id, cost_cents)
        raise
    return await _apply(session, project, transition, cost_cents=cost_cents)


async def fail_project(
    session: AsyncSession,
    project_id: uuid.UUID,
    stage: Stage,
    error_info: str,
    epoch: Optional[int] = None,
    cost_cents: int = 0,
) -> Transition:
    """Worker failure callback; ``error_info`` is stored verbatim."""
    if cost_cents < 0:
        raise ValueError(f"cost_cents must be >= 0, got {cost_cents}")
    project = await _load(session, project_id)
    try:
        transition = transitions.fail(project.to_state(), stage, error_info, epoch)
    except StaleAdvance as e:
        logger.warning(f"Project {project_id}: discarding stale failure: {e}")
        if cost_cents:
            await accrue_cost(session, project_id, cost_cents)
        raise
    if not transition.noop:
        logger.error(f"Project {project_id}: stage {Stage(stage).value} failed: {error_info}")
    return await _apply(
        session, project, transition,
        cost_cents=cost_cents,
        extra={"error_message": error_info},
    )


# ============================================================================
# Settings and stage data
# ============================================================================

def setting_editable(state: ProjectState, key: str) -> bool:
    """Whether ``key`` may change at the project's current stage.

    Owned settings are editable only while halted before the owning stage
    has executed (a failed owner stage may still be reconfigured before
    retry).
    """
    owner = stages.setting_owner(key)
    if owner is None:
        return True
    if stages.is_processing(state.stage) or state.stage == Stage.COMPLETED:
        return False
    if state.stage == Stage.FAILED:
        return stages.order_of(state.position) <= stages.order_of(owner)
    return stages.order_of(state.stage) < stages.order_of(owner)


async def update_settings(
    session: AsyncSession,
    project_id: uuid.UUID,
    changes: dict[str, Any],
) -> Project:
    """Apply settings changes, all or nothing.

    Raises:
        StageLocked: Any key is not editable at the current stage.
    """
    project = await _load(session, project_id)
    state = project.to_state()

    locked = [key for key in changes if not setting_editable(state, key)]
    if locked:
        raise StageLocked(
            f"Settings {locked} are locked at stage '{state.stage.value}'",
            fields=locked,
        )

    values: dict[str, Any] = {"updated_at": func.now()}
    bag = dict(project.settings or {})
    for key, value in changes.items():
        if key == "fast_mode":
            values["fast_mode"] = bool(value)
        elif key == "retry_budget":
            values["retry_budget"] = clamp_retry_budget(value)
        elif key == "name":
            values["name"] = value
        else:
            bag[key] = value
    values["settings"] = bag

    await _compare_and_set(session, project, state, values)
    await session.commit()
    await session.refresh(project)
    logger.info(f"Project {project_id}: updated settings {sorted(changes)}")
    return project


async def analyze_impact(
    session: AsyncSession,
    project_id: uuid.UUID,
    target_stage: Stage,
    changes,
) -> ImpactReport:
    project = await _load(session, project_id)
    return impact.analyze(project.to_state(), target_stage, changes)


async def edit_stage_data(
    session: AsyncSession,
    project_id: uuid.UUID,
    target_stage: Stage,
    changes: dict[str, Any],
    confirm: bool = False,
) -> tuple[Project, ImpactReport]:
    """Edit the output data of a stage, gated by impact analysis.

    Never changes the stage. A confirmed destructive edit records
    ``restart_from``; ``rollback_to_stage`` applies it.

    Raises:
        StageLocked: The project is running, or the stage was not reached.
        ConfirmationRequired: Destructive edit without ``confirm``.
    """
    target_stage = Stage(target_stage)
    project = await _load(session, project_id)
    state = project.to_state()

    if stages.is_processing(state.stage):
        raise StageLocked(
            f"Cannot edit stage data while '{state.stage.value}' is running",
            fields=list(changes),
        )
    reached = stages.order_of(Stage.COMPLETED) if state.stage == Stage.COMPLETED else stages.order_of(state.position)
    if stages.order_of(target_stage) > reached:
        raise StageLocked(
            f"Stage '{target_stage.value}' has not been reached yet",
            fields=list(changes),
        )

    report = impact.analyze(state, target_stage, changes)
    if report.destructive and not confirm:
        raise ConfirmationRequired(report.warning, report)

    data = dict(project.stage_data or {})
    data[target_stage.value] = {**data.get(target_stage.value, {}), **changes}
    values: dict[str, Any] = {"stage_data": data, "updated_at": func.now()}
    if report.destructive:
        values["restart_from"] = report.restart_from.value

    await _compare_and_set(session, project, state, values)
    await session.commit()
    await session.refresh(project)

    if report.destructive:
        logger.warning(
            f"Project {project_id}: destructive edit of {target_stage.value} confirmed, "
            f"restart from {report.restart_from.value} (est. {report.estimated_cost_cents}c)"
        )
    return project, report
