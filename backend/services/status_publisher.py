"""Publishes request status changes to the bus.

Delivery is fire-and-forget: a failed publish is logged and never undoes
or blocks the state change that triggered it.
"""

import logging
from typing import Optional

from config import settings
from models.job_execution import ExecutionStatus, JobExecution, utcnow
from services.events import RequestStatusUpdatedEvent
from services.messaging import RabbitMQConnection

logger = logging.getLogger(__name__)


def build_status_event(execution: JobExecution) -> RequestStatusUpdatedEvent:
    """Snapshot an execution into the outbound event."""
    return RequestStatusUpdatedEvent(
        request_id=execution.request_id,
        status=ExecutionStatus(execution.status),
        result_type=execution.result_classification,
        backend_raw_status=execution.backend_status,
        execution_id=execution.backend_job_id,
        error_message=execution.error_message,
        updated_at_utc=utcnow(),
    )


class StatusPublisher:
    """Emits RequestStatusUpdatedEvent for running and terminal transitions.

    Without a connection (bus disabled) events are only logged.
    """

    def __init__(
        self,
        connection: Optional[RabbitMQConnection] = None,
        exchange: Optional[str] = None,
        routing_key: Optional[str] = None,
    ):
        self.connection = connection
        self.exchange = exchange if exchange is not None else settings.status_exchange
        self.routing_key = routing_key if routing_key is not None else settings.status_routing_key

    async def publish(self, execution: JobExecution) -> Optional[RequestStatusUpdatedEvent]:
        """Publish the execution's current status. Never raises."""
        try:
            event = build_status_event(execution)
        except Exception as e:
            logger.error(f"Could not build status event for execution {execution.id}: {e}")
            return None

        if self.connection is None:
            logger.info(
                f"Status update (bus disabled) request={event.request_id} "
                f"status={event.status.value}"
            )
            return event

        try:
            await self.connection.publish(
                self.exchange,
                self.routing_key,
                event.to_json(),
                message_id=f"{execution.id}:{event.status.value}",
            )
            logger.info(
                f"Published status request={event.request_id} status={event.status.value}"
            )
        except Exception as e:
            logger.error(
                f"Failed to publish status for request {event.request_id}: {e}"
            )
        return event
