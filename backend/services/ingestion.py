"""Event ingestion: turns "request created" events into job executions.

Handling is idempotent per request id. A redelivered event, or two copies
racing each other, still yields a single execution and a single launch.

The consumer never hands an exception back to the bus. Once the execution
row exists it is the reconciler's job to get it launched, so an immediate
launch attempt that blows up is logged and the message is still acked.
"""

import logging
from typing import Optional

from aio_pika.abc import AbstractIncomingMessage
from pydantic import ValidationError

from errors import DuplicateEventError
from models.job_execution import JobExecution
from services.dispatcher import Dispatcher
from services.events import RequestCreatedEvent, parse_request_created
from services.job_store import JobExecutionStore

logger = logging.getLogger(__name__)


class RequestCreatedConsumer:
    """Consumes RequestCreatedEvent messages."""

    def __init__(self, store: JobExecutionStore, dispatcher: Dispatcher):
        self.store = store
        self.dispatcher = dispatcher
        self.processed = 0
        self.duplicates = 0
        self.rejected = 0

    async def handle(self, event: RequestCreatedEvent) -> Optional[JobExecution]:
        """Create the execution for ``event`` and make the first launch attempt.

        Returns the new execution, or None when the request was already seen.
        """
        existing = await self.store.get_by_request_id(event.request_id)
        if existing is not None:
            self.duplicates += 1
            logger.info(
                f"Request {event.request_id} already has execution {existing.id} "
                f"({existing.status}), ignoring"
            )
            return None

        execution = JobExecution.create(
            request_id=event.request_id,
            target_type=event.target_type,
            resource_id=event.resource_id,
            form_data=event.form_data,
            resource_type=event.resource_type,
        )
        try:
            execution = await self.store.create(execution)
        except DuplicateEventError:
            self.duplicates += 1
            logger.info(f"Request {event.request_id} was created concurrently, ignoring")
            return None

        self.processed += 1
        logger.info(
            f"Created execution {execution.id} for request {event.request_id} "
            f"({execution.target_type} {execution.resource_id})"
        )

        try:
            outcome = await self.dispatcher.attempt_launch(execution.id)
            logger.debug(f"Initial launch of {execution.id}: {outcome.value}")
        except Exception:
            # Row is pending; the next sweep retries the launch
            logger.exception(f"Initial launch attempt failed for execution {execution.id}")

        return execution

    async def on_message(self, message: AbstractIncomingMessage) -> None:
        """aio-pika callback. Acks every message, valid or not."""
        async with message.process(ignore_processed=True):
            try:
                event = parse_request_created(message.body)
            except (ValueError, ValidationError) as e:
                self.rejected += 1
                logger.error(
                    f"Discarding malformed request-created message "
                    f"{message.message_id}: {e}"
                )
                return
            except Exception:
                self.rejected += 1
                logger.exception(
                    f"Discarding unreadable request-created message {message.message_id}"
                )
                return

            try:
                await self.handle(event)
            except Exception:
                logger.exception(f"Failed to ingest request {event.request_id}")
