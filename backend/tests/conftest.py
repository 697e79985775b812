"""Shared fixtures: a file-backed SQLite database per test."""

import pytest
import pytest_asyncio

from adpipe.db import init_database
from adpipe.db.engine import build_engine, build_sessionmaker
from adpipe.orchestrator import pipeline, stages
from adpipe.orchestrator.stages import Stage


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'adpipe_test.db'}")
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


async def _drive_to(session, project_id, target: Stage, cost_cents: int = 0):
    """Walk a project forward by approving gates and advancing processing
    stages until it sits at ``target``."""
    for _ in range(len(stages.PIPELINE_ORDER)):
        project = await pipeline.get_project(session, project_id)
        current = Stage(project.stage)
        if current == target:
            return project
        if stages.is_review_gate(current):
            await pipeline.approve_project(session, project_id, current)
        elif stages.is_processing(current):
            await pipeline.advance_project(
                session, project_id, current, project.generation_epoch, cost_cents,
            )
        else:
            break
    raise AssertionError(f"Could not reach {target.value}")


@pytest.fixture
def drive_to():
    return _drive_to
