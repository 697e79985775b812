"""Worker job runner: retries, failure reporting and stale-result discard."""

import pytest
from tenacity import wait_none

from adpipe.orchestrator import pipeline
from adpipe.orchestrator.errors import ExternalGenerationFailure
from adpipe.orchestrator.stages import Stage
from adpipe.workers.dispatch import InProcessDispatcher
from adpipe.workers.runner import run_stage_job


async def _started_project(session):
    project = await pipeline.create_project(session)
    await pipeline.start_project(session, project.id)
    return await pipeline.get_project(session, project.id)


@pytest.mark.asyncio
async def test_successful_job_advances(session, session_factory):
    project = await _started_project(session)

    async def generate(p, epoch):
        assert p.stage == Stage.ANALYZING.value
        return 1

    t = await run_stage_job(project.id, Stage.ANALYZING, 0, generate, session_factory=session_factory)
    assert t.to_stage == Stage.ANALYSIS_REVIEW

    loaded = await pipeline.get_project(session, project.id)
    assert loaded.stage == Stage.ANALYSIS_REVIEW.value
    assert loaded.cost_cents == 1


@pytest.mark.asyncio
async def test_transient_failure_is_retried(session, session_factory):
    project = await _started_project(session)
    calls = []

    async def generate(p, epoch):
        calls.append(epoch)
        if len(calls) == 1:
            raise ExternalGenerationFailure("503 from provider", retriable=True)
        return 2

    t = await run_stage_job(
        project.id, Stage.ANALYZING, 0, generate,
        session_factory=session_factory, max_attempts=3, wait=wait_none(),
    )
    assert len(calls) == 2
    assert t.to_stage == Stage.ANALYSIS_REVIEW


@pytest.mark.asyncio
async def test_permanent_failure_fails_project(session, session_factory):
    project = await _started_project(session)
    calls = []

    async def generate(p, epoch):
        calls.append(epoch)
        raise ExternalGenerationFailure("quota exceeded")

    t = await run_stage_job(
        project.id, Stage.ANALYZING, 0, generate,
        session_factory=session_factory, max_attempts=3, wait=wait_none(),
    )
    assert len(calls) == 1
    assert t.to_stage == Stage.FAILED

    loaded = await pipeline.get_project(session, project.id)
    assert loaded.stage == Stage.FAILED.value
    assert loaded.failed_at_stage == Stage.ANALYZING.value
    assert loaded.error_message == "quota exceeded"


@pytest.mark.asyncio
async def test_exhausted_retries_fail_project(session, session_factory):
    project = await _started_project(session)

    async def generate(p, epoch):
        raise ExternalGenerationFailure("timeout", retriable=True)

    t = await run_stage_job(
        project.id, Stage.ANALYZING, 0, generate,
        session_factory=session_factory, max_attempts=2, wait=wait_none(),
    )
    assert t.to_stage == Stage.FAILED


@pytest.mark.asyncio
async def test_result_after_cancel_is_discarded(session, session_factory):
    project = await _started_project(session)

    async def generate(p, epoch):
        async with session_factory() as other:
            await pipeline.rollback_project(other, p.id)
        return 10

    t = await run_stage_job(project.id, Stage.ANALYZING, 0, generate, session_factory=session_factory)
    assert t is None

    loaded = await pipeline.get_project(session, project.id)
    assert loaded.stage == Stage.CREATED.value
    assert loaded.generation_epoch == 1
    assert loaded.cost_cents == 10


@pytest.mark.asyncio
async def test_job_for_old_epoch_never_runs(session, session_factory):
    project = await _started_project(session)
    called = False

    async def generate(p, epoch):
        nonlocal called
        called = True
        return 0

    assert await run_stage_job(project.id, Stage.ANALYZING, 5, generate, session_factory=session_factory) is None
    assert not called


@pytest.mark.asyncio
async def test_in_process_dispatcher_runs_registered_generator(session, session_factory):
    project = await _started_project(session)

    async def generate(p, epoch):
        return 3

    dispatcher = InProcessDispatcher(session_factory=session_factory)
    dispatcher.register(Stage.ANALYZING, generate)
    await dispatcher.dispatch(project.id, Stage.ANALYZING, 0)

    loaded = await pipeline.get_project(session, project.id)
    assert loaded.stage == Stage.ANALYSIS_REVIEW.value
    assert loaded.cost_cents == 3

    # no generator for scripting: the project simply waits
    await pipeline.approve_project(session, project.id, Stage.ANALYSIS_REVIEW)
    await dispatcher.dispatch(project.id, Stage.SCRIPTING, 0)
    loaded = await pipeline.get_project(session, project.id)
    assert loaded.stage == Stage.SCRIPTING.value
