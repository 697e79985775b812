"""Scoped polling of one project while it is processing.

A watcher owns exactly one asyncio task. Leaving the ``async with`` block
(or calling ``stop()``) cancels that task and waits for it, so no timer
outlives the caller that asked for updates.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

import httpx

from adpipe.client.backoff import BackoffPolicy
from adpipe.client.http import PipelineClient, ProjectId
from adpipe.orchestrator.progress import ProgressSnapshot
from adpipe.schemas.project import ProjectSnapshot

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


async def _call(callback: Optional[Callback], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _is_transient(exc: Exception) -> bool:
    """Network errors and 5xx responses are retried with backoff."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class ProjectWatcher:
    """Polls ``get_project`` until the project stops processing.

    Polling stops on its own once the project halts at a review gate or
    reaches a terminal stage. Failed polls back off per ``policy``; after
    ``policy.degraded_threshold`` consecutive failures ``degraded`` is set
    and ``on_degraded`` fires once, and polling keeps going. The next
    successful poll clears the flag and fires ``on_recovered``.

    Callbacks may be plain functions or coroutines.
    """

    def __init__(
        self,
        client: PipelineClient,
        project_id: ProjectId,
        *,
        policy: Optional[BackoffPolicy] = None,
        on_update: Optional[Callback] = None,
        on_progress: Optional[Callback] = None,
        on_degraded: Optional[Callback] = None,
        on_recovered: Optional[Callback] = None,
        with_progress: bool = False,
    ):
        self.client = client
        self.project_id = project_id
        self.policy = policy or BackoffPolicy.from_settings()
        self.on_update = on_update
        self.on_progress = on_progress
        self.on_degraded = on_degraded
        self.on_recovered = on_recovered
        self.with_progress = with_progress

        self.consecutive_failures = 0
        self.degraded = False
        self.polls = 0
        self.last_snapshot: Optional[ProjectSnapshot] = None
        self.last_progress: Optional[ProgressSnapshot] = None
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "ProjectWatcher":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"watch-{self.project_id}")

    async def stop(self) -> None:
        """Cancel the polling task and wait until it has exited."""
        task, self._task = self._task, None
        if task is None:
            return
        if task.done():
            # Outcome already delivered through wait(), or deliberately dropped.
            if not task.cancelled() and task.exception() is not None:
                logger.debug(f"Watcher for project {self.project_id} ended with {task.exception()!r}")
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait(self) -> Optional[ProjectSnapshot]:
        """Block until polling finishes; returns the final snapshot."""
        if self._task is None:
            return self.last_snapshot
        return await self._task

    async def _poll_once(self) -> ProjectSnapshot:
        snapshot = await self.client.get_project(self.project_id)
        progress = None
        if self.with_progress and snapshot.is_processing:
            progress = await self.client.get_progress(self.project_id)
        self.polls += 1
        self.last_snapshot = snapshot
        await _call(self.on_update, snapshot)
        if progress is not None:
            self.last_progress = progress
            await _call(self.on_progress, progress)
        return snapshot

    async def _record_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        logger.warning(
            f"Poll of project {self.project_id} failed "
            f"({self.consecutive_failures} in a row): {type(exc).__name__}: {exc}"
        )
        if not self.degraded and self.policy.is_degraded(self.consecutive_failures):
            self.degraded = True
            logger.warning(f"Connection degraded while watching project {self.project_id}")
            await _call(self.on_degraded, self.consecutive_failures)

    async def _record_success(self) -> None:
        self.consecutive_failures = 0
        if self.degraded:
            self.degraded = False
            logger.info(f"Connection recovered while watching project {self.project_id}")
            await _call(self.on_recovered)

    async def _run(self) -> Optional[ProjectSnapshot]:
        while True:
            try:
                snapshot = await self._poll_once()
            except Exception as e:
                if not _is_transient(e):
                    raise
                await self._record_failure(e)
                await asyncio.sleep(self.policy.next_delay(self.consecutive_failures))
                continue

            await self._record_success()
            if not snapshot.is_processing:
                logger.info(f"Project {self.project_id} at {snapshot.stage.value}; polling stopped")
                return snapshot
            await asyncio.sleep(self.policy.next_delay(0))
