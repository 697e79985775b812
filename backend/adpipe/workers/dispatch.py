"""Hand-off of processing stages to the external generation workers.

The transition engine never calls providers itself. Whenever a transition
enters a processing stage, the API passes ``(project_id, stage, epoch)`` to
the configured dispatcher; the worker later reports back through Advance or
Fail carrying that epoch.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from adpipe.orchestrator.stages import Stage

logger = logging.getLogger(__name__)

# generate(project, epoch) -> cost in cents spent on this attempt
StageGenerator = Callable[..., Awaitable[int]]


class GenerationDispatcher(ABC):
    """Starts generation for a processing stage."""

    @abstractmethod
    async def dispatch(self, project_id: uuid.UUID, stage: Stage, epoch: int) -> None:
        """Start generation; must not wait for it to finish."""
        ...


class LoggingDispatcher(GenerationDispatcher):
    """Default dispatcher for deployments where workers poll on their own."""

    async def dispatch(self, project_id: uuid.UUID, stage: Stage, epoch: int) -> None:
        logger.info(f"Dispatch requested: project {project_id} stage {Stage(stage).value} epoch {epoch}")


class InProcessDispatcher(GenerationDispatcher):
    """Runs registered stage generators in this process via the job runner."""

    def __init__(self, generators: Optional[dict[Stage, StageGenerator]] = None, session_factory=None):
        self.generators: dict[Stage, StageGenerator] = dict(generators or {})
        self.session_factory = session_factory

    def register(self, stage: Stage, generator: StageGenerator) -> None:
        self.generators[Stage(stage)] = generator

    async def dispatch(self, project_id: uuid.UUID, stage: Stage, epoch: int) -> None:
        from adpipe.workers.runner import run_stage_job

        generator = self.generators.get(Stage(stage))
        if generator is None:
            logger.warning(f"No generator registered for stage {Stage(stage).value}; project {project_id} waits")
            return
        await run_stage_job(
            project_id, stage, epoch, generator,
            session_factory=self.session_factory,
        )


_dispatcher: GenerationDispatcher = LoggingDispatcher()


def get_dispatcher() -> GenerationDispatcher:
    return _dispatcher


def set_dispatcher(dispatcher: GenerationDispatcher) -> None:
    global _dispatcher
    _dispatcher = dispatcher
