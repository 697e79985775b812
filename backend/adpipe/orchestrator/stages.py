"""Stage registry: the single source of truth for pipeline stages.

Defines the ordered stage list, which stages are review gates, where a
cancellation or failure rolls back to, and the static per-unit generation
cost model used for impact estimates. Every other component consults this
table instead of hard-coding stage names.
"""

from enum import Enum
from typing import Dict, NamedTuple, Optional

from adpipe.orchestrator.errors import InvalidTransition


class Stage(str, Enum):
    """Pipeline stages in execution order."""

    CREATED = "created"
    ANALYZING = "analyzing"
    ANALYSIS_REVIEW = "analysis_review"
    SCRIPTING = "scripting"
    SCRIPT_REVIEW = "script_review"
    BROLL_PLANNING = "broll_planning"
    BROLL_REVIEW = "broll_review"
    BROLL_GENERATION = "broll_generation"
    INFLUENCER_SELECTION = "influencer_selection"
    CASTING = "casting"
    CASTING_REVIEW = "casting_review"
    DIRECTING = "directing"
    VOICEOVER = "voiceover"
    ASSET_REVIEW = "asset_review"
    EDITING = "editing"
    COMPLETED = "completed"
    FAILED = "failed"


class StageKind(str, Enum):
    PROCESSING = "processing"
    REVIEW_GATE = "review_gate"
    TERMINAL = "terminal"


class StageInfo(NamedTuple):
    """Static description of one stage."""

    kind: StageKind
    label: str
    rollback_to: Optional[Stage] = None
    unit_type: Optional[str] = None
    units: int = 0
    unit_cost_cents: int = 0
    auto_retry: bool = False


_P = StageKind.PROCESSING
_G = StageKind.REVIEW_GATE
_T = StageKind.TERMINAL

# Order of this mapping is the pipeline order. Unit costs are in cents
# (chat 0.01, image 0.07, video 1.20, tts 0.05, render 0.50).
STAGES: Dict[Stage, StageInfo] = {
    Stage.CREATED: StageInfo(_G, "Ready to Start"),
    Stage.ANALYZING: StageInfo(
        _P, "Analyzing Product", Stage.CREATED, "analysis", 1, 1,
    ),
    Stage.ANALYSIS_REVIEW: StageInfo(_G, "Review Analysis"),
    Stage.SCRIPTING: StageInfo(
        _P, "Writing Script", Stage.ANALYSIS_REVIEW, "script", 1, 1,
    ),
    Stage.SCRIPT_REVIEW: StageInfo(_G, "Review Script"),
    Stage.BROLL_PLANNING: StageInfo(
        _P, "Planning B-Roll Shots", Stage.SCRIPT_REVIEW, "broll_plan", 1, 1,
    ),
    Stage.BROLL_REVIEW: StageInfo(_G, "Review B-Roll Plan"),
    Stage.BROLL_GENERATION: StageInfo(
        _P, "Generating B-Roll Images", Stage.BROLL_REVIEW, "broll_image", 4, 7,
        auto_retry=True,
    ),
    Stage.INFLUENCER_SELECTION: StageInfo(_G, "Select Influencer"),
    Stage.CASTING: StageInfo(
        _P, "Generating Keyframes", Stage.INFLUENCER_SELECTION, "keyframe", 8, 7,
        auto_retry=True,
    ),
    Stage.CASTING_REVIEW: StageInfo(_G, "Review Keyframes"),
    Stage.DIRECTING: StageInfo(
        _P, "Generating Videos", Stage.CASTING_REVIEW, "video", 4, 120,
        auto_retry=True,
    ),
    Stage.VOICEOVER: StageInfo(
        _P, "Generating Voiceovers", Stage.CASTING_REVIEW, "audio", 4, 5,
        auto_retry=True,
    ),
    Stage.ASSET_REVIEW: StageInfo(_G, "Review Assets"),
    Stage.EDITING: StageInfo(
        _P, "Composing Final Video", Stage.ASSET_REVIEW, "final_video", 1, 50,
    ),
    Stage.COMPLETED: StageInfo(_T, "Completed"),
    Stage.FAILED: StageInfo(_T, "Failed"),
}

PIPELINE_ORDER: list[Stage] = list(STAGES)
_ORDER: Dict[Stage, int] = {stage: i for i, stage in enumerate(PIPELINE_ORDER)}

# Project settings and the stage that consumes them. Unowned settings
# (None) may be edited at any time.
SETTING_OWNERS: Dict[str, Optional[Stage]] = {
    "name": None,
    "fast_mode": None,
    "retry_budget": None,
    "tone": Stage.SCRIPTING,
    "character_id": Stage.SCRIPTING,
    "script_template_id": Stage.SCRIPTING,
    "broll_style": Stage.BROLL_PLANNING,
    "influencer_id": Stage.CASTING,
    "style_preset_id": Stage.CASTING,
    "scene_preset_id": Stage.CASTING,
    "video_model": Stage.DIRECTING,
    "interaction_preset_id": Stage.DIRECTING,
    "voice_id": Stage.VOICEOVER,
    "render_template": Stage.EDITING,
}

# Stage output fields and the first stage that reads them. Fields missing
# here feed the next processing stage after the edited one (for a review
# gate that is its successor); fields mapped to None are cosmetic.
FIELD_CONSUMERS: Dict[Stage, Dict[str, Optional[Stage]]] = {
    Stage.ANALYSIS_REVIEW: {
        "product_name": Stage.SCRIPTING,
        "product_category": Stage.SCRIPTING,
        "benefits": Stage.SCRIPTING,
        "product_image_url": Stage.CASTING,
        "notes": None,
    },
    Stage.SCRIPT_REVIEW: {
        "hook": Stage.BROLL_PLANNING,
        "segments": Stage.BROLL_PLANNING,
        "dialogue": Stage.VOICEOVER,
        "notes": None,
    },
    Stage.BROLL_REVIEW: {
        "shots": Stage.BROLL_GENERATION,
        "notes": None,
    },
    Stage.CASTING_REVIEW: {
        "keyframe_prompts": Stage.DIRECTING,
        "motion_prompts": Stage.DIRECTING,
        "notes": None,
    },
    Stage.ASSET_REVIEW: {
        "captions": Stage.EDITING,
        "music_track": Stage.EDITING,
        "notes": None,
    },
}

COSMETIC_FIELDS = frozenset({"name", "notes"})


def _info(stage: Stage) -> StageInfo:
    return STAGES[Stage(stage)]


def order_of(stage: Stage) -> int:
    """Return the zero-based position of a stage in pipeline order."""
    return _ORDER[Stage(stage)]


def classify(stage: Stage) -> StageKind:
    return _info(stage).kind


def is_review_gate(stage: Stage) -> bool:
    return _info(stage).kind == StageKind.REVIEW_GATE


def is_processing(stage: Stage) -> bool:
    return _info(stage).kind == StageKind.PROCESSING


def is_terminal(stage: Stage) -> bool:
    return _info(stage).kind == StageKind.TERMINAL


def label(stage: Stage) -> str:
    """Human-readable stage label."""
    return _info(stage).label


def auto_retry_allowed(stage: Stage) -> bool:
    return _info(stage).auto_retry


def successor(stage: Stage) -> Stage:
    """Return the next stage in pipeline order.

    Raises:
        InvalidTransition: If called on a terminal stage.
    """
    stage = Stage(stage)
    if is_terminal(stage):
        raise InvalidTransition(f"Terminal stage '{stage.value}' has no successor")
    return PIPELINE_ORDER[_ORDER[stage] + 1]


def predecessor(stage: Stage) -> Optional[Stage]:
    """Inverse of successor(); None for the first stage and for 'failed'."""
    stage = Stage(stage)
    if stage in (Stage.CREATED, Stage.FAILED):
        return None
    return PIPELINE_ORDER[_ORDER[stage] - 1]


def next_processing(stage: Stage, inclusive: bool = False) -> Optional[Stage]:
    """First processing stage after ``stage`` (or at it, when ``inclusive``).

    Returns None when no processing stage follows.
    """
    start = _ORDER[Stage(stage)] + (0 if inclusive else 1)
    for candidate in PIPELINE_ORDER[start:]:
        if is_processing(candidate):
            return candidate
    return None


def rollback_target(stage: Stage) -> Stage:
    """Return the checkpoint a cancelled or failed processing stage returns to.

    Raises:
        InvalidTransition: If the stage is not a processing stage.
    """
    info = _info(stage)
    if info.rollback_to is None:
        raise InvalidTransition(
            f"Stage '{Stage(stage).value}' is not a processing stage and has no rollback target"
        )
    return info.rollback_to


def stage_cost_cents(stage: Stage) -> int:
    """Estimated cost of regenerating every unit of a stage."""
    info = _info(stage)
    return info.units * info.unit_cost_cents


def setting_owner(key: str) -> Optional[Stage]:
    """Stage that consumes a setting; unknown keys belong to scripting."""
    return SETTING_OWNERS.get(key, Stage.SCRIPTING)


def field_consumer(target: Stage, field: str) -> Optional[Stage]:
    """First processing stage that reads ``field`` of ``target``'s output.

    Unlisted fields fall back to the next processing stage, so editing the
    raw output of a processing stage (e.g. ``analyzing``) lands on the stage
    after its review gate. None for cosmetic fields and for outputs no
    later stage reads.
    """
    target = Stage(target)
    if field in COSMETIC_FIELDS:
        return None
    consumers = FIELD_CONSUMERS.get(target, {})
    if field in consumers:
        return consumers[field]
    return next_processing(target)


def _validate_registry() -> None:
    """Check ordering and rollback invariants at import time."""
    terminals = [s for s in PIPELINE_ORDER if is_terminal(s)]
    if PIPELINE_ORDER[-len(terminals):] != terminals:
        raise RuntimeError("Terminal stages must close the pipeline order")
    for stage, info in STAGES.items():
        if info.kind == StageKind.PROCESSING:
            if info.rollback_to is None:
                raise RuntimeError(f"Processing stage {stage.value} has no rollback target")
            if order_of(info.rollback_to) >= order_of(stage):
                raise RuntimeError(f"Rollback target of {stage.value} does not precede it")
            if info.units <= 0:
                raise RuntimeError(f"Processing stage {stage.value} declares no units")
        elif info.rollback_to is not None:
            raise RuntimeError(f"Non-processing stage {stage.value} declares a rollback target")
    for key, owner in SETTING_OWNERS.items():
        if owner is not None and not is_processing(owner):
            raise RuntimeError(f"Setting {key} is owned by non-processing stage {owner.value}")
    for gate, consumers in FIELD_CONSUMERS.items():
        for field, consumer in consumers.items():
            if consumer is None:
                continue
            if not is_processing(consumer) or order_of(consumer) <= order_of(gate):
                raise RuntimeError(
                    f"Field {gate.value}.{field} must feed a later processing stage, not {consumer.value}"
                )


_validate_registry()
