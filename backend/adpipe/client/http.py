"""Async HTTP client for the pipeline API.

Usage:
    from adpipe.client import PipelineClient

    client = PipelineClient("http://127.0.0.1:8000")
    project = await client.create_project(name="Summer promo")
    await client.start(project.project_id)
    ...
    await client.close()

Error responses are raised as the same exception types the server raised,
so callers handle ``ConcurrentModification`` or ``StageLocked`` identically
whether they talk to the service layer directly or over HTTP.
"""

import logging
import uuid
from typing import Any, Optional, Union

import httpx

from adpipe.config import settings as app_settings
from adpipe.orchestrator.errors import (
    ConcurrentModification,
    ConfirmationRequired,
    InvalidTransition,
    NotFound,
    StageLocked,
    StaleAdvance,
)
from adpipe.orchestrator.impact import ImpactReport
from adpipe.orchestrator.progress import ProgressSnapshot
from adpipe.orchestrator.stages import Stage
from adpipe.schemas.project import (
    ProjectSnapshot,
    StageDataResponse,
    StageDescription,
    TransitionResponse,
    UnitResponse,
)

logger = logging.getLogger(__name__)

ProjectId = Union[str, uuid.UUID]


def _raise_for_error(response: httpx.Response) -> None:
    """Translate API error bodies back into orchestration exceptions."""
    if response.is_success:
        return
    try:
        body = response.json()
    except ValueError:
        body = {}
    detail = body.get("detail", response.text) if isinstance(body, dict) else response.text
    if response.status_code == 404:
        raise NotFound(str(detail))
    if response.status_code == 423:
        raise StageLocked(str(detail), fields=body.get("fields"))
    if response.status_code == 409:
        if body.get("retryable"):
            raise ConcurrentModification(str(detail))
        if "impact" in body:
            raise ConfirmationRequired(str(detail), ImpactReport.model_validate(body["impact"]))
        raise InvalidTransition(str(detail))
    # 5xx and anything unexpected stay transport-level errors.
    response.raise_for_status()


class PipelineClient:
    """Async client for the pipeline orchestration API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.base_url = (base_url or app_settings.api_base_url).rstrip("/")
        self._transport = transport
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                transport=self._transport,
                timeout=httpx.Timeout(self._timeout, connect=10.0),
            )
        return self._client

    async def close(self):
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PipelineClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(self, method: str, path: str, json: Any = None, params: Any = None) -> Any:
        response = await self.client.request(method, f"/api{path}", json=json, params=params)
        logger.debug(f"{method} {path} -> HTTP {response.status_code}")
        _raise_for_error(response)
        return response.json()

    async def _transition(self, project_id: ProjectId, action: str, body: Optional[dict] = None) -> TransitionResponse:
        data = await self._request("POST", f"/projects/{project_id}/{action}", json=body)
        if data.get("discarded"):
            raise StaleAdvance(
                data.get("detail", "Result discarded"),
                project_stage=data.get("stage"),
                project_epoch=data.get("generation_epoch"),
            )
        return TransitionResponse.model_validate(data)

    # -- projects ---------------------------------------------------------

    async def create_project(
        self,
        *,
        name: Optional[str] = None,
        product_url: Optional[str] = None,
        settings: Optional[dict[str, Any]] = None,
        fast_mode: Optional[bool] = None,
        retry_budget: Optional[int] = None,
    ) -> ProjectSnapshot:
        body = {
            "name": name,
            "product_url": product_url,
            "settings": settings or {},
            "fast_mode": fast_mode,
            "retry_budget": retry_budget,
        }
        return ProjectSnapshot.model_validate(await self._request("POST", "/projects", json=body))

    async def list_projects(self) -> list[ProjectSnapshot]:
        return [ProjectSnapshot.model_validate(p) for p in await self._request("GET", "/projects")]

    async def get_project(self, project_id: ProjectId) -> ProjectSnapshot:
        return ProjectSnapshot.model_validate(await self._request("GET", f"/projects/{project_id}"))

    async def delete_project(self, project_id: ProjectId) -> None:
        await self._request("DELETE", f"/projects/{project_id}")

    # -- operator intents -------------------------------------------------

    async def start(self, project_id: ProjectId) -> TransitionResponse:
        return await self._transition(project_id, "start")

    async def approve(self, project_id: ProjectId, stage: Optional[Stage] = None) -> TransitionResponse:
        body = {"stage": Stage(stage).value} if stage else None
        return await self._transition(project_id, "approve", body)

    async def retry(self, project_id: ProjectId, automatic: bool = False) -> TransitionResponse:
        return await self._transition(project_id, "retry", {"automatic": automatic})

    async def rollback(self, project_id: ProjectId) -> TransitionResponse:
        return await self._transition(project_id, "rollback")

    async def rollback_to(self, project_id: ProjectId, stage: Optional[Stage] = None) -> TransitionResponse:
        body = {"stage": Stage(stage).value} if stage else None
        return await self._transition(project_id, "rollback-to", body)

    # -- worker callbacks -------------------------------------------------

    async def mark_started(self, project_id: ProjectId, stage: Stage, epoch: Optional[int] = None) -> TransitionResponse:
        return await self._transition(project_id, "started", {"stage": Stage(stage).value, "epoch": epoch})

    async def advance(
        self,
        project_id: ProjectId,
        from_stage: Stage,
        epoch: Optional[int] = None,
        cost_cents: int = 0,
    ) -> TransitionResponse:
        body = {"from_stage": Stage(from_stage).value, "epoch": epoch, "cost_cents": cost_cents}
        return await self._transition(project_id, "advance", body)

    async def fail(
        self,
        project_id: ProjectId,
        stage: Stage,
        error_info: str,
        epoch: Optional[int] = None,
        cost_cents: int = 0,
    ) -> TransitionResponse:
        body = {
            "stage": Stage(stage).value,
            "error_info": error_info,
            "epoch": epoch,
            "cost_cents": cost_cents,
        }
        return await self._transition(project_id, "fail", body)

    async def accrue_cost(self, project_id: ProjectId, cost_cents: int) -> ProjectSnapshot:
        data = await self._request("POST", f"/projects/{project_id}/cost", json={"cost_cents": cost_cents})
        return ProjectSnapshot.model_validate(data)

    # -- impact, edits, settings, progress --------------------------------

    async def analyze_impact(self, project_id: ProjectId, stage: Stage, changes) -> ImpactReport:
        if not isinstance(changes, dict):
            changes = list(changes)
        data = await self._request(
            "POST", f"/projects/{project_id}/impact",
            json={"stage": Stage(stage).value, "changes": changes},
        )
        return ImpactReport.model_validate(data)

    async def edit_stage_data(
        self,
        project_id: ProjectId,
        stage: Stage,
        changes: dict[str, Any],
        confirm: bool = False,
    ) -> StageDataResponse:
        data = await self._request(
            "PATCH", f"/projects/{project_id}/stage-data",
            json={"stage": Stage(stage).value, "changes": changes, "confirm": confirm},
        )
        return StageDataResponse.model_validate(data)

    async def update_settings(self, project_id: ProjectId, changes: dict[str, Any]) -> ProjectSnapshot:
        data = await self._request("PATCH", f"/projects/{project_id}/settings", json={"changes": changes})
        return ProjectSnapshot.model_validate(data)

    async def get_progress(self, project_id: ProjectId) -> ProgressSnapshot:
        return ProgressSnapshot.model_validate(await self._request("GET", f"/projects/{project_id}/progress"))

    # -- generation units -------------------------------------------------

    async def register_unit(
        self,
        project_id: ProjectId,
        stage: Stage,
        epoch: int,
        *,
        unit_type: Optional[str] = None,
        segment_index: Optional[int] = None,
        status: str = "pending",
    ) -> UnitResponse:
        body = {
            "stage": Stage(stage).value,
            "epoch": epoch,
            "unit_type": unit_type,
            "segment_index": segment_index,
            "status": status,
        }
        data = await self._request("POST", f"/projects/{project_id}/units", json=body)
        if isinstance(data, dict) and data.get("discarded"):
            raise StaleAdvance(
                data.get("detail", "Unit rejected"),
                project_stage=data.get("stage"),
                project_epoch=data.get("generation_epoch"),
            )
        return UnitResponse.model_validate(data)

    async def list_units(self, project_id: ProjectId, stage: Optional[Stage] = None) -> list[UnitResponse]:
        params = {"stage": Stage(stage).value} if stage else None
        data = await self._request("GET", f"/projects/{project_id}/units", params=params)
        return [UnitResponse.model_validate(u) for u in data]

    async def update_unit(
        self,
        unit_id: ProjectId,
        status: str,
        *,
        cost_cents: int = 0,
        error_message: Optional[str] = None,
    ) -> UnitResponse:
        body = {"status": status, "cost_cents": cost_cents, "error_message": error_message}
        return UnitResponse.model_validate(await self._request("PATCH", f"/units/{unit_id}", json=body))

    async def remove_unit(self, unit_id: ProjectId) -> UnitResponse:
        return UnitResponse.model_validate(await self._request("POST", f"/units/{unit_id}/remove"))

    async def restore_unit(self, unit_id: ProjectId) -> UnitResponse:
        return UnitResponse.model_validate(await self._request("POST", f"/units/{unit_id}/restore"))

    # -- registry ---------------------------------------------------------

    async def list_stages(self) -> list[StageDescription]:
        return [StageDescription.model_validate(s) for s in await self._request("GET", "/stages")]

    async def health(self) -> bool:
        data = await self._request("GET", "/health")
        return data.get("status") == "ok"
