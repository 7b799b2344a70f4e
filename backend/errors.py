"""Centralized exception hierarchy for the job orchestrator.

Provides a structured exception hierarchy for consistent error handling
across the application. All exceptions inherit from OrchestratorError.

Retry policy keys off the class, not the message:
- TransportError and BackendError are retryable (launch backoff, next sweep)
- PermanentLaunchError stops launch retry and fails the execution
"""


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        details = {k: v for k, v in self.details.items() if v is not None}
        if details:
            return f"{self.message} ({details})"
        return self.message


class ExecutionClientError(OrchestratorError):
    """Failure talking to an automation backend."""

    def __init__(self, message: str, backend: str = None, details: dict = None):
        super().__init__(message, {"backend": backend, **(details or {})})
        self.backend = backend


class TransportError(ExecutionClientError):
    """Network error or timeout reaching the backend. Always retryable."""


class BackendError(ExecutionClientError):
    """Backend answered with a structured failure (HTTP error, bad body)."""

    def __init__(
        self,
        message: str,
        backend: str = None,
        status_code: int = None,
        response: str = None,
    ):
        super().__init__(message, backend, {"status_code": status_code})
        self.status_code = status_code
        self.response = response


class PermanentLaunchError(BackendError):
    """Launch rejected in a way retrying cannot fix."""


class PollingTimeoutError(OrchestratorError):
    """Polling ceiling exceeded while the job was still running."""

    def __init__(self, attempts: int):
        super().__init__(f"Polling timeout after {attempts} attempts")
        self.attempts = attempts


class DuplicateEventError(OrchestratorError):
    """A job execution already exists for this request id."""

    def __init__(self, request_id: str):
        super().__init__(
            f"Job execution already exists for request {request_id}",
            {"request_id": request_id},
        )
        self.request_id = request_id


class InvalidTransitionError(OrchestratorError):
    """Status change that would move an execution backwards."""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot transition from {current} to {target}",
            {"current": current, "target": target},
        )
        self.current = current
        self.target = target


class ConfigurationError(OrchestratorError):
    """Invalid or missing configuration."""

    def __init__(self, message: str, setting: str = None):
        super().__init__(message, {"setting": setting})
        self.setting = setting
