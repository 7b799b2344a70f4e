"""Database models."""

from .job_execution import (
    JobExecution,
    ExecutionStatus,
    TargetType,
    ResourceType,
    ResultClassification,
)
from .job_run import JobRun

__all__ = [
    "JobExecution",
    "ExecutionStatus",
    "TargetType",
    "ResourceType",
    "ResultClassification",
    "JobRun",
]
