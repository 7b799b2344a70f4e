"""Job execution model: one dispatch of a request and its full audit trail.

A JobExecution is created when a "request created" event is first seen,
launched on an automation backend, then polled until it reaches a
terminal state. Status only moves forward:

    pending -> running -> success | failed
    pending -> failed (permanent launch rejection)

The transition methods below are the only code that changes ``status``;
each one refuses to move an execution out of a terminal state.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, DateTime, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from database import Base
from errors import InvalidTransitionError


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ExecutionStatus(str, enum.Enum):
    """Canonical, backend-agnostic lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = (ExecutionStatus.SUCCESS.value, ExecutionStatus.FAILED.value)
ACTIVE_STATUSES = (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value)


def _lookup_code(enum_cls, codes: dict, code):
    # bool is an int subclass; True must not pass for 1
    if isinstance(code, bool) or code not in codes:
        raise ValueError(f"Unknown {enum_cls.__name__} code: {code!r}")
    return codes[code]


class TargetType(str, enum.Enum):
    """Automation backend kind."""

    AWX = "awx"  # Job templates and workflows
    OO = "oo"  # Flows

    @classmethod
    def from_code(cls, code: int) -> "TargetType":
        """Map the integer codes used by older event producers (0=AWX, 1=OO)."""
        return _lookup_code(cls, {0: cls.AWX, 1: cls.OO}, code)


class ResourceType(str, enum.Enum):
    """What kind of AWX resource to launch. Not used for OO."""

    JOB_TEMPLATE = "job_template"
    WORKFLOW = "workflow"

    @classmethod
    def from_code(cls, code: int) -> "ResourceType":
        """Map the integer codes used by older event producers (0=JobTemplate, 1=Workflow)."""
        return _lookup_code(cls, {0: cls.JOB_TEMPLATE, 1: cls.WORKFLOW}, code)


class ResultClassification(str, enum.Enum):
    """Outcome tag reported by OO for a completed flow."""

    SUCCESS = "success"
    DIAGNOSED = "diagnosed"
    NO_ACTION_TAKEN = "no_action_taken"


class JobExecution(Base):
    """Tracks one request's dispatch to an automation backend.

    Launch bookkeeping (launch_attempts, next_launch_attempt_at,
    last_launch_error) is written by the dispatcher while the execution is
    pending. Polling bookkeeping (polling_attempts, last_polled_at) is
    written by the reconciler while it is running. Payload and response
    columns hold the raw JSON exchanged with the backend, verbatim.
    """

    __tablename__ = "job_executions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # One execution per originating request
    request_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)

    # Target descriptor
    target_type: Mapped[str] = mapped_column(String(16))
    resource_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    resource_id: Mapped[str] = mapped_column(String(255))

    # Form data from the request, kept so launches can be re-driven
    form_data: Mapped[str] = mapped_column(Text, default="{}")

    # Audit payloads (opaque)
    execution_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    execution_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Status
    status: Mapped[str] = mapped_column(
        String(16), default=ExecutionStatus.PENDING.value, index=True
    )
    backend_job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    backend_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    result_classification: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )

    # Launch retry
    launch_attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_launch_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    last_launch_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Polling
    polling_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_polled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Sweep query: active executions, oldest first
    __table_args__ = (
        Index("ix_job_executions_status_created_at", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<JobExecution {self.id} request={self.request_id} status={self.status}>"

    @classmethod
    def create(
        cls,
        request_id: str,
        target_type: TargetType,
        resource_id: str,
        form_data: str,
        resource_type: Optional[ResourceType] = None,
    ) -> "JobExecution":
        """Create a new pending execution with zeroed counters."""
        return cls(
            id=str(uuid.uuid4()),
            request_id=request_id,
            target_type=TargetType(target_type).value,
            resource_type=ResourceType(resource_type).value if resource_type else None,
            resource_id=resource_id,
            form_data=form_data,
            status=ExecutionStatus.PENDING.value,
            launch_attempts=0,
            polling_attempts=0,
            created_at=utcnow(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def target(self) -> TargetType:
        return TargetType(self.target_type)

    def _require(self, allowed: tuple, target: ExecutionStatus) -> None:
        if self.status not in allowed:
            raise InvalidTransitionError(self.status, target.value)

    def mark_dispatched(
        self,
        backend_job_id: str,
        payload: str,
        response: Optional[str],
        now: datetime,
    ) -> None:
        """Record a successful launch: pending -> running."""
        self._require((ExecutionStatus.PENDING.value,), ExecutionStatus.RUNNING)
        self.status = ExecutionStatus.RUNNING.value
        self.backend_job_id = backend_job_id
        self.execution_payload = payload
        self.execution_response = response
        self.dispatched_at = now
        self.next_launch_attempt_at = None
        self.last_launch_error = None
        self.error_message = None

    def record_launch_failure(
        self,
        error: str,
        payload: Optional[str],
        next_attempt_at: datetime,
    ) -> None:
        """Record a retryable launch failure. Status stays pending."""
        self._require((ExecutionStatus.PENDING.value,), ExecutionStatus.PENDING)
        self.launch_attempts = (self.launch_attempts or 0) + 1
        self.next_launch_attempt_at = next_attempt_at
        self.last_launch_error = error
        self.error_message = error
        if payload is not None:
            self.execution_payload = payload

    def record_poll(
        self,
        now: datetime,
        backend_status: Optional[str] = None,
        response: Optional[str] = None,
    ) -> None:
        """Count one polling attempt, successful or not."""
        self._require((ExecutionStatus.RUNNING.value,), ExecutionStatus.RUNNING)
        self.polling_attempts = (self.polling_attempts or 0) + 1
        self.last_polled_at = now
        if backend_status is not None:
            self.backend_status = backend_status
        if response is not None:
            self.execution_response = response

    def mark_succeeded(
        self,
        now: datetime,
        classification: Optional[ResultClassification] = None,
    ) -> None:
        """running -> success. OO executions must carry a classification."""
        self._require((ExecutionStatus.RUNNING.value,), ExecutionStatus.SUCCESS)
        if (self.target == TargetType.OO) != (classification is not None):
            raise ValueError(
                f"Result classification is required for OO and forbidden for "
                f"{self.target_type} (got {classification!r})"
            )
        self.status = ExecutionStatus.SUCCESS.value
        self.result_classification = (
            ResultClassification(classification).value if classification else None
        )
        self.completed_at = now
        self.error_message = None

    def mark_failed(self, error_message: str, now: datetime) -> None:
        """pending|running -> failed."""
        self._require(ACTIVE_STATUSES, ExecutionStatus.FAILED)
        self.status = ExecutionStatus.FAILED.value
        self.completed_at = now
        self.error_message = error_message

    def launch_due(self, now: datetime) -> bool:
        """Whether a pending execution may be launched at ``now``."""
        return self.status == ExecutionStatus.PENDING.value and (
            self.next_launch_attempt_at is None or self.next_launch_attempt_at <= now
        )
