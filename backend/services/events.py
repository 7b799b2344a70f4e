"""Message contracts exchanged over the bus.

Both events use camelCase on the wire (the producers and consumers of these
messages are not Python services). Inbound bodies may arrive wrapped in a
bus envelope ``{"message": {...}}``; ``parse_request_created`` unwraps it.
"""

import json
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from models.job_execution import (
    ExecutionStatus,
    ResourceType,
    ResultClassification,
    TargetType,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestCreatedEvent(_CamelModel):
    """A user submitted a request that must run on an automation backend."""

    request_id: str
    offer_id: Optional[str] = None
    offer_name: Optional[str] = None
    form_definition_id: Optional[str] = None
    target_type: TargetType
    resource_type: Optional[ResourceType] = None
    resource_id: str
    user_id: Optional[str] = None
    form_data: str = "{}"
    created_at_utc: Optional[datetime] = None

    @field_validator(
        "request_id", "offer_id", "form_definition_id", "resource_id", "user_id", mode="before"
    )
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        return str(value) if value is not None else None

    @field_validator("target_type", mode="before")
    @classmethod
    def _target_from_code(cls, value: Any) -> Any:
        if isinstance(value, int):
            return TargetType.from_code(value)
        return value

    @field_validator("resource_type", mode="before")
    @classmethod
    def _resource_from_code(cls, value: Any) -> Any:
        if isinstance(value, int):
            return ResourceType.from_code(value)
        return value

    @field_validator("form_data", mode="before")
    @classmethod
    def _form_data_as_json(cls, value: Any) -> Any:
        # Producers send either a JSON string or an already-decoded object
        if value is None:
            return "{}"
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value


class RequestStatusUpdatedEvent(_CamelModel):
    """Status change of a request's job execution, for the Requests service."""

    request_id: str
    status: ExecutionStatus
    result_type: Optional[ResultClassification] = None
    backend_raw_status: Optional[str] = None
    execution_id: Optional[str] = None
    error_message: Optional[str] = None
    updated_at_utc: datetime

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def parse_request_created(body: Union[bytes, str]) -> RequestCreatedEvent:
    """Decode an inbound message body into a RequestCreatedEvent.

    Raises:
        ValueError / pydantic.ValidationError on malformed bodies.
    """
    data = json.loads(body)
    if isinstance(data, dict) and isinstance(data.get("message"), dict):
        data = data["message"]
    return RequestCreatedEvent.model_validate(data)
