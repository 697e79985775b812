"""Pydantic schemas shared by the HTTP API and the sync client."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from adpipe.orchestrator import stages
from adpipe.orchestrator.impact import ImpactReport
from adpipe.orchestrator.stages import Stage, StageKind


class ProjectSnapshot(BaseModel):
    """Read model returned by GetProject."""

    project_id: str
    name: Optional[str] = None
    stage: Stage
    stage_kind: StageKind
    stage_label: str
    failed_at_stage: Optional[Stage] = None
    error_message: Optional[str] = None
    cost_cents: int = 0
    fast_mode: bool = False
    retry_budget: int = 0
    settings: dict[str, Any] = Field(default_factory=dict)
    stage_data: dict[str, Any] = Field(default_factory=dict)
    generation_epoch: int = 0
    in_flight: bool = False
    restart_from: Optional[Stage] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_processing(self) -> bool:
        return self.stage_kind == StageKind.PROCESSING

    @property
    def cost_usd(self) -> float:
        return round(self.cost_cents / 100, 2)

    @classmethod
    def from_project(cls, project) -> "ProjectSnapshot":
        stage = Stage(project.stage)
        return cls(
            project_id=str(project.id),
            name=project.name,
            stage=stage,
            stage_kind=stages.classify(stage),
            stage_label=stages.label(stage),
            failed_at_stage=project.failed_at_stage,
            error_message=project.error_message,
            cost_cents=project.cost_cents or 0,
            fast_mode=bool(project.fast_mode),
            retry_budget=project.retry_budget or 0,
            settings=project.settings or {},
            stage_data=project.stage_data or {},
            generation_epoch=project.generation_epoch or 0,
            in_flight=bool(project.in_flight),
            restart_from=project.restart_from,
            created_at=project.created_at.isoformat() if project.created_at else None,
            updated_at=project.updated_at.isoformat() if project.updated_at else None,
        )


class TransitionResponse(BaseModel):
    """Outcome of an intent."""

    project_id: str
    intent: str
    previous_stage: Stage
    stage: Stage
    path: list[Stage] = Field(default_factory=list)
    generation_epoch: int
    noop: bool = False
    dispatched: Optional[Stage] = None
    discarded: bool = False


class StageDescription(BaseModel):
    stage: Stage
    order: int
    kind: StageKind
    label: str
    rollback_target: Optional[Stage] = None
    unit_type: Optional[str] = None
    units: int = 0
    unit_cost_cents: int = 0
    auto_retry: bool = False


class UnitResponse(BaseModel):
    unit_id: str
    project_id: str
    stage: Stage
    unit_type: str
    segment_index: Optional[int] = None
    status: str
    generation_epoch: int
    cost_cents: int = 0
    error_message: Optional[str] = None

    @classmethod
    def from_unit(cls, unit) -> "UnitResponse":
        return cls(
            unit_id=str(unit.id),
            project_id=str(unit.project_id),
            stage=unit.stage,
            unit_type=unit.unit_type,
            segment_index=unit.segment_index,
            status=unit.status,
            generation_epoch=unit.generation_epoch,
            cost_cents=unit.cost_cents or 0,
            error_message=unit.error_message,
        )


class StageDataResponse(BaseModel):
    project: ProjectSnapshot
    impact: ImpactReport
