"""SQLAlchemy 2.0 ORM models for the ad pipeline."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, JSON, Integer, Boolean, ForeignKey, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from adpipe.orchestrator.stages import Stage
from adpipe.orchestrator.transitions import ProjectState


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


# Generation unit statuses
UNIT_PENDING = "pending"
UNIT_GENERATING = "generating"
UNIT_COMPLETED = "completed"
UNIT_FAILED = "failed"
UNIT_CANCELLED = "cancelled"
UNIT_REMOVED = "removed"

UNIT_STATUSES = {
    UNIT_PENDING,
    UNIT_GENERATING,
    UNIT_COMPLETED,
    UNIT_FAILED,
    UNIT_CANCELLED,
    UNIT_REMOVED,
}

# Units a rollback orphans
UNIT_IN_FLIGHT = (UNIT_PENDING, UNIT_GENERATING)


class Project(Base):
    """One unit of pipeline work.

    Only the transition engine writes stage, failed_at_stage, cost_cents and
    generation_epoch.
    """
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    product_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stage: Mapped[str] = mapped_column(String(50), default=Stage.CREATED.value, index=True)
    failed_at_stage: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cost_cents: Mapped[int] = mapped_column(Integer, default=0)
    fast_mode: Mapped[bool] = mapped_column(Boolean, default=False)
    retry_budget: Mapped[int] = mapped_column(Integer, default=2)
    settings: Mapped[dict] = mapped_column(JSON, default=dict)
    stage_data: Mapped[dict] = mapped_column(JSON, default=dict)
    generation_epoch: Mapped[int] = mapped_column(Integer, default=0)
    in_flight: Mapped[bool] = mapped_column(Boolean, default=False)
    stage_started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_intent: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    restart_from: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )

    def to_state(self) -> ProjectState:
        """Snapshot the fields the transition engine decides on."""
        return ProjectState(
            stage=Stage(self.stage),
            failed_at_stage=Stage(self.failed_at_stage) if self.failed_at_stage else None,
            fast_mode=bool(self.fast_mode),
            retry_budget=self.retry_budget or 0,
            generation_epoch=self.generation_epoch or 0,
            in_flight=bool(self.in_flight),
            last_intent=self.last_intent,
        )


class GenerationUnit(Base):
    """One dispatched unit of paid generation work (keyframe, clip, audio...)."""
    __tablename__ = "generation_units"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), index=True)
    stage: Mapped[str] = mapped_column(String(50))
    unit_type: Mapped[str] = mapped_column(String(50))
    segment_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=UNIT_PENDING)
    status_before_remove: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    generation_epoch: Mapped[int] = mapped_column(Integer, default=0)
    cost_cents: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )


class StageTransition(Base):
    """Append-only audit record of an applied intent."""
    __tablename__ = "stage_transitions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), index=True)
    intent: Mapped[str] = mapped_column(String(20))
    from_stage: Mapped[str] = mapped_column(String(50))
    to_stage: Mapped[str] = mapped_column(String(50))
    generation_epoch: Mapped[int] = mapped_column(Integer)
    detail: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
