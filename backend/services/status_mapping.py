"""Translation from backend status vocabularies to canonical status.

AWX reports lowercase statuses (new, pending, waiting, running, successful,
failed, error, canceled). OO reports uppercase ones (RUNNING, COMPLETED,
SYSTEM_FAILURE, PAUSED, PENDING_PAUSE, CANCELED, PENDING_CANCEL). Both are
folded into {running, success, failed} through one table keyed by
(target type, raw status). Anything not in the table counts as running.
"""

from typing import Optional

from models.job_execution import ExecutionStatus, ResultClassification, TargetType

RUNNING = ExecutionStatus.RUNNING
SUCCESS = ExecutionStatus.SUCCESS
FAILED = ExecutionStatus.FAILED

STATUS_TABLE = {
    # AWX
    (TargetType.AWX, "new"): RUNNING,
    (TargetType.AWX, "pending"): RUNNING,
    (TargetType.AWX, "waiting"): RUNNING,
    (TargetType.AWX, "running"): RUNNING,
    (TargetType.AWX, "successful"): SUCCESS,
    (TargetType.AWX, "failed"): FAILED,
    (TargetType.AWX, "error"): FAILED,
    (TargetType.AWX, "canceled"): FAILED,
    # OO
    (TargetType.OO, "RUNNING"): RUNNING,
    (TargetType.OO, "PAUSED"): RUNNING,
    (TargetType.OO, "PENDING_PAUSE"): RUNNING,
    (TargetType.OO, "PENDING_CANCEL"): RUNNING,
    (TargetType.OO, "COMPLETED"): SUCCESS,
    (TargetType.OO, "SYSTEM_FAILURE"): FAILED,
    (TargetType.OO, "CANCELED"): FAILED,
}

RESULT_TABLE = {
    "RESOLVED": ResultClassification.SUCCESS,
    "DIAGNOSED": ResultClassification.DIAGNOSED,
    "NO_ACTION_TAKEN": ResultClassification.NO_ACTION_TAKEN,
}


def map_status(target_type: TargetType, raw_status: str) -> ExecutionStatus:
    """Map a raw backend status to the canonical status."""
    return STATUS_TABLE.get((TargetType(target_type), raw_status), RUNNING)


def is_known_status(target_type: TargetType, raw_status: str) -> bool:
    return (TargetType(target_type), raw_status) in STATUS_TABLE


def map_result_classification(raw_result: Optional[str]) -> Optional[ResultClassification]:
    """Map an OO resultStatusType. ERROR and unknown values map to None."""
    if raw_result is None:
        return None
    return RESULT_TABLE.get(raw_result.upper())
