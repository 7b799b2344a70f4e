"""Operations Orchestration (OO) client for flows."""

import logging
from typing import Optional

import httpx

from config import settings
from errors import BackendError
from models.job_execution import TargetType
from services.execution_client import (
    ExecutionClient,
    ExecutionTarget,
    LaunchResult,
    StatusReport,
)

logger = logging.getLogger(__name__)


class OoClient(ExecutionClient):
    """Launches and polls OO flow executions.

    POST /executions answers with the execution id as a bare number in the
    body. Status and result both come from /executions/{id}/execution-log
    under "executionSummary".
    """

    target_type = TargetType.OO

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs):
        kwargs.setdefault("base_url", settings.oo_base_url)
        kwargs.setdefault("auth", settings.oo_auth)
        super().__init__(transport=transport, **kwargs)

    def _log_url(self, execution_id: str) -> str:
        return f"{self.base_url}/executions/{execution_id}/execution-log"

    async def launch(self, target: ExecutionTarget, payload: dict) -> LaunchResult:
        url = f"{self.base_url}/executions"
        logger.info(f"Launching OO flow {target.resource_id}")
        response = await self._request("POST", url, json=payload, launch=True)

        execution_id = response.text.strip().strip('"')
        if not execution_id.isdigit():
            raise BackendError(
                f"OO did not return a valid execution id: {execution_id[:100]!r}",
                backend=self.backend_name,
                status_code=response.status_code,
                response=response.text[:2000],
            )

        logger.info(f"OO launched execution {execution_id} for flow {target.resource_id}")
        return LaunchResult(execution_id=execution_id, raw_response=response.text)

    async def _execution_summary(self, execution_id: str) -> tuple:
        response = await self._request("GET", self._log_url(execution_id))
        data = self._json(response)
        summary = data.get("executionSummary")
        if not isinstance(summary, dict):
            raise BackendError(
                f"OO execution {execution_id} log has no executionSummary",
                backend=self.backend_name,
                status_code=response.status_code,
                response=response.text[:2000],
            )
        return summary, response.text

    async def get_status(self, execution_id: str, target: ExecutionTarget) -> StatusReport:
        summary, raw = await self._execution_summary(execution_id)
        status = summary.get("status")
        if not status:
            raise BackendError(
                f"OO execution {execution_id} has no status",
                backend=self.backend_name,
                response=raw[:2000],
            )
        return StatusReport(status=str(status), raw_response=raw)

    async def get_result_classification(
        self, execution_id: str, target: ExecutionTarget
    ) -> Optional[str]:
        summary, _ = await self._execution_summary(execution_id)
        return summary.get("resultStatusType")
