"""AWX client for job templates and workflow job templates (REST API v2)."""

import json
import logging
from typing import Optional

import httpx

from config import settings
from errors import BackendError, PermanentLaunchError
from models.job_execution import ResourceType, TargetType
from services.execution_client import (
    ExecutionClient,
    ExecutionTarget,
    LaunchResult,
    StatusReport,
)

logger = logging.getLogger(__name__)


class AwxClient(ExecutionClient):
    """Launches and polls AWX jobs.

    Job templates launch at /job_templates/{id}/launch/ and are polled at
    /jobs/{id}/; workflows use /workflow_job_templates/{id}/launch/ and
    /workflow_jobs/{id}/. AWX has no result classification.
    """

    target_type = TargetType.AWX

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs):
        kwargs.setdefault("base_url", settings.awx_base_url)
        kwargs.setdefault("auth", settings.awx_auth)
        super().__init__(transport=transport, **kwargs)

    @staticmethod
    def _is_workflow(target: ExecutionTarget) -> bool:
        return target.resource_type == ResourceType.WORKFLOW

    def _launch_url(self, target: ExecutionTarget) -> str:
        kind = "workflow_job_templates" if self._is_workflow(target) else "job_templates"
        return f"{self.base_url}/api/v2/{kind}/{target.resource_id}/launch/"

    def _status_url(self, execution_id: str, target: ExecutionTarget) -> str:
        kind = "workflow_jobs" if self._is_workflow(target) else "jobs"
        return f"{self.base_url}/api/v2/{kind}/{execution_id}/"

    async def launch(self, target: ExecutionTarget, payload: dict) -> LaunchResult:
        if not target.resource_id:
            raise PermanentLaunchError("AWX launch requires a resource id", backend=self.backend_name)

        url = self._launch_url(target)
        kind = (target.resource_type or ResourceType.JOB_TEMPLATE).value
        logger.info(f"Launching AWX {kind} {target.resource_id}")
        response = await self._request("POST", url, json=payload, launch=True)
        data = self._json(response)

        # Workflow launches answer with "workflow_job", job templates with "job"
        job_id = data.get("id") or data.get("workflow_job") or data.get("job")
        if not job_id:
            raise BackendError(
                "AWX launch response has no job id",
                backend=self.backend_name,
                status_code=response.status_code,
                response=response.text[:2000],
            )

        logger.info(f"AWX launched job {job_id} for template {target.resource_id}")
        return LaunchResult(execution_id=str(job_id), raw_response=json.dumps(data))

    async def get_status(self, execution_id: str, target: ExecutionTarget) -> StatusReport:
        response = await self._request("GET", self._status_url(execution_id, target))
        data = self._json(response)

        status = data.get("status")
        if not status:
            raise BackendError(
                f"AWX job {execution_id} response has no status",
                backend=self.backend_name,
                status_code=response.status_code,
                response=response.text[:2000],
            )
        return StatusReport(status=str(status), raw_response=response.text)
