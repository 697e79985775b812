"""Worker-side wrapper around one processing stage attempt.

Marks the stage started, runs the stage generator under the stage's
internal retry budget, then reports Advance or Fail with the generation
epoch the job was dispatched with. Late results of an abandoned epoch are
discarded by the transition engine; the runner just logs them.
"""

import logging
import uuid
from typing import Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from adpipe.config import settings
from adpipe.db import async_session
from adpipe.orchestrator.errors import (
    ConcurrentModification,
    ExternalGenerationFailure,
    StaleAdvance,
)
from adpipe.orchestrator.pipeline import (
    accrue_cost,
    advance_project,
    fail_project,
    get_project,
    mark_stage_started,
)
from adpipe.orchestrator.stages import Stage
from adpipe.orchestrator.transitions import Transition
from adpipe.workers.dispatch import StageGenerator

logger = logging.getLogger(__name__)


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying."""
    if isinstance(exc, ExternalGenerationFailure):
        return exc.retriable
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False


async def _ensure_current(session_factory, project_id: uuid.UUID, stage: Stage, epoch: int) -> None:
    """Raise StaleAdvance if the project left this stage/epoch."""
    async with session_factory() as session:
        project = await get_project(session, project_id)
    if project.stage != stage.value or project.generation_epoch != epoch:
        raise StaleAdvance(
            f"Project {project_id} moved to {project.stage}/epoch {project.generation_epoch}",
            project_stage=project.stage,
            project_epoch=project.generation_epoch,
        )


async def run_stage_job(
    project_id: uuid.UUID,
    stage: Stage,
    epoch: int,
    generate: StageGenerator,
    *,
    session_factory=None,
    max_attempts: Optional[int] = None,
    wait=None,
) -> Optional[Transition]:
    """Run one stage attempt and report its outcome.

    Args:
        project_id: Project to work on.
        stage: Processing stage being generated.
        epoch: Generation epoch the job was dispatched with.
        generate: ``async generate(project, epoch) -> cost_cents``.
        session_factory: Session factory (defaults to the app's).
        max_attempts: Internal retry budget (defaults to settings).
        wait: tenacity wait strategy override.

    Returns:
        The applied Advance/Fail transition, or None if the result was
        discarded as stale.
    """
    stage = Stage(stage)
    session_factory = session_factory or async_session
    attempts = max_attempts or settings.pipeline.worker_max_attempts
    wait = wait or wait_exponential(
        multiplier=settings.pipeline.worker_retry_base_delay,
        max=settings.pipeline.worker_retry_max_delay,
    )

    async with session_factory() as session:
        try:
            await mark_stage_started(session, project_id, stage, epoch)
        except StaleAdvance as e:
            logger.info(f"Job for project {project_id} {stage.value} discarded before start: {e}")
            return None
        project = await get_project(session, project_id)

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait,
            retry=retry_if_exception(_is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    await _ensure_current(session_factory, project_id, stage, epoch)
                cost_cents = await generate(project, epoch)
    except StaleAdvance as e:
        logger.info(f"Job for project {project_id} {stage.value} abandoned: {e}")
        return None
    except Exception as e:
        if isinstance(e, ExternalGenerationFailure):
            error_info = e.error_info
        else:
            error_info = f"{type(e).__name__}: {e}"
        logger.error(f"Generation failed for project {project_id} at {stage.value}: {error_info}")
        async with session_factory() as session:
            try:
                return await fail_project(session, project_id, stage, error_info, epoch)
            except (StaleAdvance, ConcurrentModification) as stale:
                logger.info(f"Failure of project {project_id} {stage.value} discarded: {stale}")
                return None

    async with session_factory() as session:
        try:
            return await advance_project(
                session, project_id, stage, epoch, cost_cents=cost_cents or 0,
            )
        except StaleAdvance as e:
            logger.info(f"Result of project {project_id} {stage.value} discarded: {e}")
            return None
        except ConcurrentModification as e:
            logger.info(f"Result of project {project_id} {stage.value} lost a race: {e}")
            if cost_cents:
                await accrue_cost(session, project_id, cost_cents)
            return None
