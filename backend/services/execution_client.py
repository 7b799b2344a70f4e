"""Uniform interface over the automation backends.

One ExecutionClient subclass exists per TargetType. Every call is a single
HTTP request bounded by ``http_timeout_seconds``; there is no
retry inside a call. Callers (dispatcher, reconciler) own retry.

httpx failures are translated into the errors.py taxonomy:
- timeouts, connection failures, undecodable bodies -> TransportError
- HTTP status errors -> BackendError, or PermanentLaunchError for launch
  rejections that retrying cannot fix
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from config import settings
from errors import BackendError, PermanentLaunchError, TransportError
from models.job_execution import ResourceType, TargetType

logger = logging.getLogger(__name__)

# 4xx answers to a launch that mean the template/flow or the payload is wrong
PERMANENT_LAUNCH_STATUS_CODES = frozenset({400, 404, 405, 409, 422})


@dataclass
class ExecutionTarget:
    """What to launch: backend kind, AWX resource kind, resource id."""

    target_type: TargetType
    resource_id: str
    resource_type: Optional[ResourceType] = None


@dataclass
class LaunchResult:
    """Backend-assigned execution id plus the raw launch response body."""

    execution_id: str
    raw_response: Optional[str] = None


@dataclass
class StatusReport:
    """Backend status string, verbatim, plus the raw response body."""

    status: str
    raw_response: Optional[str] = None


class ExecutionClient(ABC):
    """Base class for automation backend clients.

    Uses a shared httpx.AsyncClient for connection pooling. Pass
    ``transport`` to route requests elsewhere (tests use httpx.MockTransport).
    """

    target_type: TargetType

    def __init__(
        self,
        base_url: str,
        auth: Optional[tuple] = None,
        timeout: Optional[float] = None,
        verify: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.timeout = httpx.Timeout(
            timeout if timeout is not None else settings.http_timeout_seconds
        )
        self.verify = (not settings.allow_invalid_ssl) if verify is None else verify
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def backend_name(self) -> str:
        return self.target_type.value

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                auth=self.auth,
                verify=self.verify,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        json: Optional[dict] = None,
        launch: bool = False,
    ) -> httpx.Response:
        """Send one request and translate failures.

        ``launch`` marks requests whose 4xx rejections are permanent.
        """
        client = await self._get_client()
        try:
            response = await client.request(method, url, json=json)
        except httpx.RequestError as e:
            # Anything that kept us from getting a usable response
            raise TransportError(
                f"{self.backend_name} {method} {url} failed: {e.__class__.__name__}: {e}",
                backend=self.backend_name,
            ) from e

        logger.debug(
            f"{self.backend_name} {method} {url} -> {response.status_code}"
        )

        if response.is_success:
            return response

        body = response.text[:2000]
        message = f"{self.backend_name} {method} {url} returned {response.status_code}"
        if launch and response.status_code in PERMANENT_LAUNCH_STATUS_CODES:
            raise PermanentLaunchError(
                message, backend=self.backend_name,
                status_code=response.status_code, response=body,
            )
        raise BackendError(
            message, backend=self.backend_name,
            status_code=response.status_code, response=body,
        )

    def _json(self, response: httpx.Response) -> dict:
        """Decode a JSON object body or raise BackendError."""
        try:
            data = response.json()
        except ValueError as e:
            raise BackendError(
                f"{self.backend_name} returned a non-JSON body",
                backend=self.backend_name,
                status_code=response.status_code,
                response=response.text[:2000],
            ) from e
        if not isinstance(data, dict):
            raise BackendError(
                f"{self.backend_name} returned unexpected JSON",
                backend=self.backend_name,
                status_code=response.status_code,
                response=response.text[:2000],
            )
        return data

    @abstractmethod
    async def launch(self, target: ExecutionTarget, payload: dict) -> LaunchResult:
        """Submit a job. Called at most once per launch attempt."""
        ...

    @abstractmethod
    async def get_status(self, execution_id: str, target: ExecutionTarget) -> StatusReport:
        """Return the backend's raw status for a launched execution."""
        ...

    async def get_result_classification(
        self, execution_id: str, target: ExecutionTarget
    ) -> Optional[str]:
        """Return the backend's raw result tag, or None when it has none.

        Only the flow runner reports one; the default is None.
        """
        return None
