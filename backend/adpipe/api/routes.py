"""API route handlers and Pydantic request schemas."""

import logging
import uuid
from typing import Any, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from adpipe.db import get_session
from adpipe.orchestrator import pipeline, progress, stages, units
from adpipe.orchestrator.impact import ImpactReport
from adpipe.orchestrator.progress import ProgressSnapshot
from adpipe.orchestrator.stages import Stage
from adpipe.orchestrator.transitions import Transition
from adpipe.schemas.project import (
    ProjectSnapshot,
    StageDataResponse,
    StageDescription,
    TransitionResponse,
    UnitResponse,
)
from adpipe.workers.dispatch import get_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ============================================================================
# Request Schemas
# ============================================================================

class CreateProjectRequest(BaseModel):
    name: Optional[str] = None
    product_url: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)
    fast_mode: Optional[bool] = None
    retry_budget: Optional[int] = None


class ApproveRequest(BaseModel):
    stage: Optional[Stage] = Field(default=None, description="Review gate being approved")


class RetryRequest(BaseModel):
    automatic: bool = False


class RollbackToRequest(BaseModel):
    stage: Optional[Stage] = None


class AdvanceRequest(BaseModel):
    from_stage: Stage
    epoch: Optional[int] = None
    cost_cents: int = Field(default=0, ge=0)


class FailRequest(BaseModel):
    stage: Stage
    error_info: str
    epoch: Optional[int] = None
    cost_cents: int = Field(default=0, ge=0)


class StartedRequest(BaseModel):
    stage: Stage
    epoch: Optional[int] = None


class CostRequest(BaseModel):
    cost_cents: int = Field(ge=0)


class ImpactRequest(BaseModel):
    stage: Stage
    changes: Union[dict[str, Any], list[str]]


class StageDataRequest(BaseModel):
    stage: Stage
    changes: dict[str, Any]
    confirm: bool = False


class SettingsRequest(BaseModel):
    changes: dict[str, Any]


class CreateUnitRequest(BaseModel):
    stage: Stage
    epoch: int
    unit_type: Optional[str] = None
    segment_index: Optional[int] = None
    status: str = "pending"


class UpdateUnitRequest(BaseModel):
    status: str
    cost_cents: int = Field(default=0, ge=0)
    error_message: Optional[str] = None


# ============================================================================
# Helpers
# ============================================================================

def _transition_response(
    project_id: uuid.UUID,
    transition: Transition,
    background_tasks: Optional[BackgroundTasks] = None,
) -> TransitionResponse:
    """Build the response and schedule generation for a newly entered stage."""
    dispatched = None
    if transition.dispatch is not None and not transition.noop and background_tasks is not None:
        dispatched = transition.dispatch
        background_tasks.add_task(
            get_dispatcher().dispatch,
            project_id,
            transition.dispatch,
            transition.state.generation_epoch,
        )
    return TransitionResponse(
        project_id=str(project_id),
        intent=transition.intent.value,
        previous_stage=transition.from_stage,
        stage=transition.state.stage,
        path=transition.path,
        generation_epoch=transition.state.generation_epoch,
        noop=transition.noop,
        dispatched=dispatched,
    )


# ============================================================================
# Projects
# ============================================================================

@router.post("/projects", status_code=201, response_model=ProjectSnapshot)
async def create_project(request: CreateProjectRequest, session: AsyncSession = Depends(get_session)):
    project = await pipeline.create_project(
        session,
        name=request.name,
        product_url=request.product_url,
        settings=request.settings,
        fast_mode=request.fast_mode,
        retry_budget=request.retry_budget,
    )
    return ProjectSnapshot.from_project(project)


@router.get("/projects", response_model=list[ProjectSnapshot])
async def list_projects(session: AsyncSession = Depends(get_session)):
    """List all projects ordered by creation date (newest first)."""
    return [ProjectSnapshot.from_project(p) for p in await pipeline.list_projects(session)]


@router.get("/projects/{project_id}", response_model=ProjectSnapshot)
async def get_project(project_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    """Lightweight project state for polling."""
    return ProjectSnapshot.from_project(await pipeline.get_project(session, project_id))


@router.delete("/projects/{project_id}")
async def delete_project(project_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    await pipeline.delete_project(session, project_id)
    return {"project_id": str(project_id), "deleted": True}


# ============================================================================
# Operator intents
# ============================================================================

@router.post("/projects/{project_id}/start", response_model=TransitionResponse)
async def start_project(
    project_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
):
    transition = await pipeline.start_project(session, project_id)
    return _transition_response(project_id, transition, background_tasks)


@router.post("/projects/{project_id}/approve", response_model=TransitionResponse)
async def approve_project(
    project_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    request: Optional[ApproveRequest] = None,
    session: AsyncSession = Depends(get_session),
):
    """Approve the current review gate.

    Pass the gate being approved as ``stage`` so that a repeated click after
    the project moved on is answered with ``noop`` instead of approving the
    next gate.
    """
    gate = request.stage if request else None
    transition = await pipeline.approve_project(session, project_id, gate)
    return _transition_response(project_id, transition, background_tasks)


@router.post("/projects/{project_id}/retry", response_model=TransitionResponse)
async def retry_project(
    project_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    request: Optional[RetryRequest] = None,
    session: AsyncSession = Depends(get_session),
):
    automatic = request.automatic if request else False
    transition = await pipeline.retry_project(session, project_id, automatic=automatic)
    return _transition_response(project_id, transition, background_tasks)


@router.post("/projects/{project_id}/rollback", response_model=TransitionResponse)
async def rollback_project(project_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    """Cancel a running stage or back out of a failure."""
    transition = await pipeline.rollback_project(session, project_id)
    return _transition_response(project_id, transition)


@router.post("/projects/{project_id}/rollback-to", response_model=TransitionResponse)
async def rollback_to_stage(
    project_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    request: Optional[RollbackToRequest] = None,
    session: AsyncSession = Depends(get_session),
):
    stage = request.stage if request else None
    transition = await pipeline.rollback_to_stage(session, project_id, stage)
    return _transition_response(project_id, transition, background_tasks)


# ============================================================================
# Worker callbacks
# ============================================================================

@router.post("/projects/{project_id}/started", response_model=TransitionResponse)
async def stage_started(
    project_id: uuid.UUID,
    request: StartedRequest,
    session: AsyncSession = Depends(get_session),
):
    transition = await pipeline.mark_stage_started(session, project_id, request.stage, request.epoch)
    return _transition_response(project_id, transition)


@router.post("/projects/{project_id}/advance", response_model=TransitionResponse)
async def advance_project(
    project_id: uuid.UUID,
    request: AdvanceRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
):
    transition = await pipeline.advance_project(
        session, project_id, request.from_stage, request.epoch, request.cost_cents,
    )
    return _transition_response(project_id, transition, background_tasks)


@router.post("/projects/{project_id}/fail", response_model=TransitionResponse)
async def fail_project(
    project_id: uuid.UUID,
    request: FailRequest,
    session: AsyncSession = Depends(get_session),
):
    transition = await pipeline.fail_project(
        session, project_id, request.stage, request.error_info, request.epoch, request.cost_cents,
    )
    return _transition_response(project_id, transition)


@router.post("/projects/{project_id}/cost", response_model=ProjectSnapshot)
async def accrue_cost(
    project_id: uuid.UUID,
    request: CostRequest,
    session: AsyncSession = Depends(get_session),
):
    project = await pipeline.accrue_cost(session, project_id, request.cost_cents)
    return ProjectSnapshot.from_project(project)


# ============================================================================
# Impact, stage data, settings, progress
# ============================================================================

@router.post("/projects/{project_id}/impact", response_model=ImpactReport)
async def analyze_impact(
    project_id: uuid.UUID,
    request: ImpactRequest,
    session: AsyncSession = Depends(get_session),
):
    return await pipeline.analyze_impact(session, project_id, request.stage, request.changes)


@router.patch("/projects/{project_id}/stage-data", response_model=StageDataResponse)
async def edit_stage_data(
    project_id: uuid.UUID,
    request: StageDataRequest,
    session: AsyncSession = Depends(get_session),
):
    project, report = await pipeline.edit_stage_data(
        session, project_id, request.stage, request.changes, confirm=request.confirm,
    )
    return StageDataResponse(project=ProjectSnapshot.from_project(project), impact=report)


@router.patch("/projects/{project_id}/settings", response_model=ProjectSnapshot)
async def update_settings(
    project_id: uuid.UUID,
    request: SettingsRequest,
    session: AsyncSession = Depends(get_session),
):
    project = await pipeline.update_settings(session, project_id, request.changes)
    return ProjectSnapshot.from_project(project)


@router.get("/projects/{project_id}/progress", response_model=ProgressSnapshot)
async def get_progress(project_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    return await progress.get_progress(session, project_id)


# ============================================================================
# Generation units
# ============================================================================

@router.post("/projects/{project_id}/units", status_code=201, response_model=UnitResponse)
async def register_unit(
    project_id: uuid.UUID,
    request: CreateUnitRequest,
    session: AsyncSession = Depends(get_session),
):
    unit = await units.register_unit(
        session, project_id, request.stage, request.epoch,
        unit_type=request.unit_type,
        segment_index=request.segment_index,
        status=request.status,
    )
    return UnitResponse.from_unit(unit)


@router.get("/projects/{project_id}/units", response_model=list[UnitResponse])
async def list_units(
    project_id: uuid.UUID,
    stage: Optional[Stage] = None,
    session: AsyncSession = Depends(get_session),
):
    await pipeline.get_project(session, project_id)
    return [UnitResponse.from_unit(u) for u in await units.list_units(session, project_id, stage)]


@router.patch("/units/{unit_id}", response_model=UnitResponse)
async def update_unit(
    unit_id: uuid.UUID,
    request: UpdateUnitRequest,
    session: AsyncSession = Depends(get_session),
):
    unit = await units.update_unit_status(
        session, unit_id, request.status,
        cost_cents=request.cost_cents,
        error_message=request.error_message,
    )
    return UnitResponse.from_unit(unit)


@router.post("/units/{unit_id}/remove", response_model=UnitResponse)
async def remove_unit(unit_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    return UnitResponse.from_unit(await units.remove_unit(session, unit_id))


@router.post("/units/{unit_id}/restore", response_model=UnitResponse)
async def restore_unit(unit_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    """Undo a remove; persisted like any other unit update."""
    return UnitResponse.from_unit(await units.restore_unit(session, unit_id))


# ============================================================================
# Registry and health
# ============================================================================

@router.get("/stages", response_model=list[StageDescription])
async def list_stages():
    return [
        StageDescription(
            stage=stage,
            order=stages.order_of(stage),
            kind=info.kind,
            label=info.label,
            rollback_target=info.rollback_to,
            unit_type=info.unit_type,
            units=info.units,
            unit_cost_cents=info.unit_cost_cents,
            auto_retry=info.auto_retry,
        )
        for stage, info in stages.STAGES.items()
    ]


@router.get("/health")
async def health_check():
    return {"status": "ok"}
