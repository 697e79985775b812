"""Impact analysis for edits to data of an already-passed stage.

Computes which downstream stages already consumed the edited data and what
regenerating them would cost, so the operator can confirm before a
destructive edit is applied. Pure function of the project snapshot and the
proposed change; never mutates state.
"""

from typing import Iterable, Mapping, Optional, Union

from pydantic import BaseModel, Field

from adpipe.orchestrator import stages
from adpipe.orchestrator.stages import Stage
from adpipe.orchestrator.transitions import ProjectState


class FieldImpact(BaseModel):
    field: str
    description: str
    affected_stages: list[Stage] = Field(default_factory=list)


class ImpactReport(BaseModel):
    """Ephemeral preview of downstream regeneration scope and cost."""

    target_stage: Stage
    affected_stages: list[Stage] = Field(default_factory=list)
    estimated_cost_cents: int = 0
    restart_from: Optional[Stage] = None
    destructive: bool = False
    safe: list[FieldImpact] = Field(default_factory=list)
    destructive_fields: list[FieldImpact] = Field(default_factory=list)
    warning: str = ""

    @property
    def estimated_cost_usd(self) -> float:
        return round(self.estimated_cost_cents / 100, 2)


def _passed_through(state: ProjectState) -> int:
    """Order index of the last stage whose work the project has produced."""
    if state.stage == Stage.COMPLETED:
        return stages.order_of(Stage.COMPLETED) - 1
    return stages.order_of(state.position)


def analyze(
    state: ProjectState,
    target_stage: Union[Stage, str],
    proposed_changes: Union[Mapping[str, object], Iterable[str]],
) -> ImpactReport:
    """Evaluate the blast radius of editing ``target_stage``'s data.

    Args:
        state: Current project snapshot.
        target_stage: Stage whose output is being edited.
        proposed_changes: Mapping of field -> new value, or iterable of field
            names. Only the field names matter.

    Returns:
        ImpactReport; ``destructive`` is False when no stage after the
        target has consumed any of the changed fields yet. Otherwise
        ``restart_from`` is the earliest consuming processing stage, so
        ``affected_stages`` and the estimate cover exactly what a restart
        there regenerates.
    """
    target = Stage(target_stage)
    if stages.is_terminal(target):
        raise ValueError(f"Cannot edit data of terminal stage '{target.value}'")

    fields = list(proposed_changes.keys() if isinstance(proposed_changes, Mapping) else proposed_changes)
    target_order = stages.order_of(target)
    reached = _passed_through(state)

    safe: list[FieldImpact] = []
    destructive_fields: list[FieldImpact] = []
    earliest: Optional[int] = None

    for field in fields:
        consumer = stages.field_consumer(target, field)
        if consumer is None:
            safe.append(FieldImpact(field=field, description="No downstream stage uses this field"))
            continue
        consumer_order = stages.order_of(consumer)
        if consumer_order > reached:
            safe.append(FieldImpact(
                field=field,
                description=f"{stages.label(consumer)} has not run yet",
            ))
            continue
        field_stages = [
            s for s in stages.PIPELINE_ORDER
            if consumer_order <= stages.order_of(s) <= reached and not stages.is_terminal(s)
        ]
        destructive_fields.append(FieldImpact(
            field=field,
            description=f"Already used by {stages.label(consumer)}",
            affected_stages=field_stages,
        ))
        earliest = consumer_order if earliest is None else min(earliest, consumer_order)

    if earliest is None:
        return ImpactReport(target_stage=target, safe=safe)

    affected = [
        s for s in stages.PIPELINE_ORDER
        if target_order < stages.order_of(s) <= reached
        and stages.order_of(s) >= earliest
        and not stages.is_terminal(s)
    ]
    cost = sum(stages.stage_cost_cents(s) for s in affected if stages.is_processing(s))

    regenerated = [
        f"{stages.label(s)} (${stages.stage_cost_cents(s) / 100:.2f})"
        for s in affected if stages.is_processing(s)
    ]
    warning = (
        f"Editing {', '.join(f.field for f in destructive_fields)} will require regenerating: "
        f"{', '.join(regenerated)}."
    )

    return ImpactReport(
        target_stage=target,
        affected_stages=affected,
        estimated_cost_cents=cost,
        restart_from=stages.next_processing(stages.PIPELINE_ORDER[earliest], inclusive=True),
        destructive=True,
        safe=safe,
        destructive_fields=destructive_fields,
        warning=warning,
    )
