"""Exception taxonomy for the orchestration core.

Every error here is a local, recoverable condition: transitions are applied
atomically, so raising one of these never leaves a project half-updated.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all orchestration errors."""


class NotFound(PipelineError):
    """Base for lookups that resolve to nothing."""


class ProjectNotFound(NotFound):
    """Raised when a project id does not resolve to a live project."""


class UnitNotFound(NotFound):
    """Raised when a generation unit id does not exist."""


class InvalidTransition(PipelineError):
    """Intent is not legal from the project's current stage."""


class NotAtReviewGate(InvalidTransition):
    """Approve requested while the project is not halted at a review gate."""


class StaleAdvance(PipelineError):
    """Worker result for a stage or generation epoch the project has left.

    Raised for late callbacks after a rollback and for out-of-order
    deliveries whose ``from_stage`` no longer matches the persisted stage.
    """

    def __init__(self, message: str, *, project_stage: Optional[str] = None,
                 project_epoch: Optional[int] = None):
        super().__init__(message)
        self.project_stage = project_stage
        self.project_epoch = project_epoch


class StageLocked(PipelineError):
    """Setting or stage data edit rejected at the current stage."""

    def __init__(self, message: str, *, fields: Optional[list[str]] = None):
        super().__init__(message)
        self.fields = fields or []


class ConcurrentModification(PipelineError):
    """Optimistic-concurrency loss: the project changed under this write.

    Callers should refetch and re-decide the intent rather than resubmit
    the same stale data.
    """


class ConfirmationRequired(PipelineError):
    """A destructive edit was requested without explicit confirmation."""

    def __init__(self, message: str, report):
        super().__init__(message)
        self.report = report


class ExternalGenerationFailure(PipelineError):
    """A generation provider call failed.

    ``error_info`` is preserved verbatim for operator display when the
    failure is turned into a Fail transition.
    """

    def __init__(self, error_info: str, *, retriable: bool = False):
        super().__init__(error_info)
        self.error_info = error_info
        self.retriable = retriable
