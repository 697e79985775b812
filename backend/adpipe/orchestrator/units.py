"""Bookkeeping for dispatched generation units.

Workers register each unit of paid work (a keyframe, a clip, a voice line)
against the project's current stage and epoch, then report status changes.
Operators can remove a unit from review and restore it again; the restore is
persisted as a first-class operation.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adpipe.db.models import (
    UNIT_CANCELLED,
    UNIT_COMPLETED,
    UNIT_FAILED,
    UNIT_REMOVED,
    UNIT_STATUSES,
    GenerationUnit,
)
from adpipe.orchestrator import stages
from adpipe.orchestrator.errors import InvalidTransition, StaleAdvance, UnitNotFound
from adpipe.orchestrator.pipeline import accrue_cost, get_project
from adpipe.orchestrator.stages import Stage

logger = logging.getLogger(__name__)


async def _load_unit(session: AsyncSession, unit_id: uuid.UUID) -> GenerationUnit:
    unit = await session.get(GenerationUnit, unit_id, populate_existing=True)
    if unit is None:
        raise UnitNotFound(f"Generation unit {unit_id} not found")
    return unit


async def register_unit(
    session: AsyncSession,
    project_id: uuid.UUID,
    stage: Stage,
    epoch: int,
    *,
    unit_type: Optional[str] = None,
    segment_index: Optional[int] = None,
    status: str = "pending",
) -> GenerationUnit:
    """Record a dispatched unit for the active processing stage.

    Raises:
        StaleAdvance: The project already left ``stage`` or ``epoch``.
    """
    stage = Stage(stage)
    if status not in UNIT_STATUSES:
        raise ValueError(f"Unknown unit status '{status}'")
    project = await get_project(session, project_id)
    if project.stage != stage.value or project.generation_epoch != epoch:
        raise StaleAdvance(
            f"Unit for {stage.value}/epoch {epoch} rejected; project is at "
            f"{project.stage}/epoch {project.generation_epoch}",
            project_stage=project.stage,
            project_epoch=project.generation_epoch,
        )
    unit = GenerationUnit(
        project_id=project_id,
        stage=stage.value,
        unit_type=unit_type or stages.STAGES[stage].unit_type,
        segment_index=segment_index,
        status=status,
        generation_epoch=epoch,
    )
    session.add(unit)
    await session.commit()
    await session.refresh(unit)
    return unit


async def update_unit_status(
    session: AsyncSession,
    unit_id: uuid.UUID,
    status: str,
    *,
    cost_cents: int = 0,
    error_message: Optional[str] = None,
) -> GenerationUnit:
    """Report progress of a unit; cost is accrued to the project even if the
    unit has been cancelled meanwhile."""
    if status not in UNIT_STATUSES or status == UNIT_REMOVED:
        raise ValueError(f"Invalid unit status update '{status}'")
    unit = await _load_unit(session, unit_id)

    if cost_cents:
        unit.cost_cents = (unit.cost_cents or 0) + cost_cents
        await accrue_cost(session, unit.project_id, cost_cents)
        unit = await _load_unit(session, unit_id)

    if unit.status in (UNIT_CANCELLED, UNIT_REMOVED):
        logger.info(f"Unit {unit_id} is {unit.status}; ignoring status '{status}'")
        await session.commit()
        return unit

    unit.status = status
    if status == UNIT_FAILED:
        unit.error_message = error_message
    await session.commit()
    await session.refresh(unit)
    return unit


async def remove_unit(session: AsyncSession, unit_id: uuid.UUID) -> GenerationUnit:
    """Mark a finished unit as removed from the project's output."""
    unit = await _load_unit(session, unit_id)
    if unit.status == UNIT_REMOVED:
        return unit
    if unit.status not in (UNIT_COMPLETED, UNIT_FAILED):
        raise InvalidTransition(f"Cannot remove unit in status '{unit.status}'")
    unit.status_before_remove = unit.status
    unit.status = UNIT_REMOVED
    await session.commit()
    await session.refresh(unit)
    logger.info(f"Unit {unit_id} removed")
    return unit


async def restore_unit(session: AsyncSession, unit_id: uuid.UUID) -> GenerationUnit:
    """Undo a remove, returning the unit to its previous status."""
    unit = await _load_unit(session, unit_id)
    if unit.status != UNIT_REMOVED:
        raise InvalidTransition(f"Unit {unit_id} is not removed (status '{unit.status}')")
    unit.status = unit.status_before_remove or UNIT_COMPLETED
    unit.status_before_remove = None
    await session.commit()
    await session.refresh(unit)
    logger.info(f"Unit {unit_id} restored to '{unit.status}'")
    return unit


async def list_units(
    session: AsyncSession,
    project_id: uuid.UUID,
    stage: Optional[Stage] = None,
    epoch: Optional[int] = None,
) -> list[GenerationUnit]:
    query = select(GenerationUnit).where(GenerationUnit.project_id == project_id)
    if stage is not None:
        query = query.where(GenerationUnit.stage == Stage(stage).value)
    if epoch is not None:
        query = query.where(GenerationUnit.generation_epoch == epoch)
    result = await session.execute(
        query.order_by(GenerationUnit.segment_index, GenerationUnit.created_at)
    )
    return list(result.scalars().all())
