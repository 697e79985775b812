"""Progress counters and generation unit bookkeeping."""

import uuid

import pytest

from adpipe.orchestrator import pipeline, progress, units
from adpipe.orchestrator.errors import InvalidTransition, StaleAdvance, UnitNotFound
from adpipe.orchestrator.stages import Stage


async def _project_at_casting(session, drive_to):
    project = await pipeline.create_project(session)
    await pipeline.start_project(session, project.id)
    return await drive_to(session, project.id, Stage.CASTING)


@pytest.mark.asyncio
async def test_progress_inactive_at_gate(session):
    project = await pipeline.create_project(session)
    snap = await progress.get_progress(session, project.id)
    assert not snap.active
    assert snap.total == 0
    assert snap.percent == 0
    assert snap.label == "Ready to Start"


@pytest.mark.asyncio
async def test_progress_with_no_units_reports_zero(session):
    project = await pipeline.create_project(session)
    await pipeline.start_project(session, project.id)
    snap = await progress.get_progress(session, project.id)
    assert snap.active
    assert snap.total == 0
    assert snap.percent == 0
    assert snap.started_at is not None


@pytest.mark.asyncio
async def test_progress_counts_current_stage_units(session, drive_to):
    project = await _project_at_casting(session, drive_to)
    epoch = project.generation_epoch
    ids = []
    for i in range(4):
        unit = await units.register_unit(session, project.id, Stage.CASTING, epoch, segment_index=i)
        ids.append(unit.id)
    await units.update_unit_status(session, ids[0], "completed", cost_cents=7)
    await units.update_unit_status(session, ids[1], "generating")
    await units.update_unit_status(session, ids[2], "failed", error_message="nsfw filter")

    snap = await progress.get_progress(session, project.id)
    assert (snap.completed, snap.generating, snap.failed, snap.total) == (1, 1, 1, 4)
    assert snap.percent == 25
    assert snap.current_step == "Segment 2 - keyframe"
    assert snap.cost_cents == 7


@pytest.mark.asyncio
async def test_progress_ignores_removed_and_old_epoch_units(session, drive_to):
    project = await _project_at_casting(session, drive_to)
    old = await units.register_unit(session, project.id, Stage.CASTING, project.generation_epoch)
    await units.update_unit_status(session, old.id, "failed")

    await pipeline.fail_project(session, project.id, Stage.CASTING, "timeout", project.generation_epoch)
    await pipeline.retry_project(session, project.id)
    project = await pipeline.get_project(session, project.id)

    done = await units.register_unit(session, project.id, Stage.CASTING, project.generation_epoch)
    await units.update_unit_status(session, done.id, "completed")
    gone = await units.register_unit(session, project.id, Stage.CASTING, project.generation_epoch)
    await units.update_unit_status(session, gone.id, "completed")
    await units.remove_unit(session, gone.id)

    snap = await progress.get_progress(session, project.id)
    assert snap.total == 1
    assert snap.completed == 1
    assert snap.percent == 100


@pytest.mark.asyncio
async def test_register_unit_for_stale_epoch_rejected(session, drive_to):
    project = await _project_at_casting(session, drive_to)
    with pytest.raises(StaleAdvance):
        await units.register_unit(session, project.id, Stage.CASTING, project.generation_epoch + 1)
    with pytest.raises(StaleAdvance):
        await units.register_unit(session, project.id, Stage.DIRECTING, project.generation_epoch)


@pytest.mark.asyncio
async def test_remove_and_restore_unit(session, drive_to):
    project = await _project_at_casting(session, drive_to)
    unit = await units.register_unit(session, project.id, Stage.CASTING, project.generation_epoch)

    with pytest.raises(InvalidTransition):
        await units.remove_unit(session, unit.id)

    await units.update_unit_status(session, unit.id, "failed", error_message="blurry")
    removed = await units.remove_unit(session, unit.id)
    assert removed.status == "removed"

    restored = await units.restore_unit(session, unit.id)
    assert restored.status == "failed"
    assert restored.status_before_remove is None

    with pytest.raises(InvalidTransition):
        await units.restore_unit(session, unit.id)


@pytest.mark.asyncio
async def test_cancelled_unit_still_accrues_cost(session, drive_to):
    project = await _project_at_casting(session, drive_to)
    unit = await units.register_unit(session, project.id, Stage.CASTING, project.generation_epoch, status="generating")
    await pipeline.rollback_project(session, project.id)

    late = await units.update_unit_status(session, unit.id, "completed", cost_cents=7)
    assert late.status == "cancelled"
    loaded = await pipeline.get_project(session, project.id)
    assert loaded.cost_cents == 7


@pytest.mark.asyncio
async def test_unknown_unit(session):
    with pytest.raises(UnitNotFound):
        await units.remove_unit(session, uuid.uuid4())


@pytest.mark.asyncio
async def test_invalid_unit_status(session, drive_to):
    project = await _project_at_casting(session, drive_to)
    unit = await units.register_unit(session, project.id, Stage.CASTING, project.generation_epoch)
    with pytest.raises(ValueError):
        await units.update_unit_status(session, unit.id, "exploded")
