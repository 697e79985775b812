"""Per-stage progress counters for polling clients.

Aggregates the generation units dispatched for the active processing stage
(current epoch only) into completed / generating / failed / total counters
plus a human-readable current step. No business logic beyond counting.
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from adpipe.db.models import (
    UNIT_COMPLETED,
    UNIT_FAILED,
    UNIT_GENERATING,
    UNIT_REMOVED,
    GenerationUnit,
    Project,
)
from adpipe.orchestrator import stages
from adpipe.orchestrator.pipeline import get_project
from adpipe.orchestrator.stages import Stage
from adpipe.orchestrator.units import list_units


class ProgressSnapshot(BaseModel):
    stage: Stage
    active: bool
    completed: int = 0
    generating: int = 0
    failed: int = 0
    total: int = 0
    percent: int = 0
    label: str = ""
    current_step: str = ""
    started_at: Optional[datetime] = None
    cost_cents: int = 0


def report(project: Project, units: Sequence[GenerationUnit]) -> ProgressSnapshot:
    """Build a snapshot for the project's active stage.

    ``units`` may contain units of other stages or epochs; only those of
    the active stage and current epoch are counted.
    """
    stage = Stage(project.stage)
    if not stages.is_processing(stage):
        return ProgressSnapshot(
            stage=stage,
            active=False,
            label=stages.label(stage),
            cost_cents=project.cost_cents or 0,
        )

    active_units = [
        u for u in units
        if u.stage == stage.value
        and u.generation_epoch == project.generation_epoch
        and u.status != UNIT_REMOVED
    ]
    completed = sum(1 for u in active_units if u.status == UNIT_COMPLETED)
    generating = sum(1 for u in active_units if u.status == UNIT_GENERATING)
    failed = sum(1 for u in active_units if u.status == UNIT_FAILED)
    total = len(active_units)

    stage_label = stages.label(stage)
    current_step = stage_label
    if total > 1 and completed < total:
        current_step = f"{stage_label} ({completed}/{total})"
    in_progress = next(
        (u for u in active_units if u.status == UNIT_GENERATING and u.segment_index is not None),
        None,
    )
    if in_progress is not None:
        current_step = (
            f"Segment {in_progress.segment_index + 1} - {in_progress.unit_type.replace('_', ' ')}"
        )

    return ProgressSnapshot(
        stage=stage,
        active=True,
        completed=completed,
        generating=generating,
        failed=failed,
        total=total,
        percent=round(completed * 100 / total) if total else 0,
        label=stage_label,
        current_step=current_step,
        started_at=project.stage_started_at,
        cost_cents=project.cost_cents or 0,
    )


async def get_progress(session: AsyncSession, project_id: uuid.UUID) -> ProgressSnapshot:
    project = await get_project(session, project_id)
    units = []
    if stages.is_processing(Stage(project.stage)):
        units = await list_units(session, project_id, project.stage, project.generation_epoch)
    return report(project, units)
