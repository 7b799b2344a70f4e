"""Builds the orchestration components from settings and owns their lifecycle."""

import logging
from typing import Dict, Optional

from config import settings
from models.job_execution import TargetType
from services.awx_client import AwxClient
from services.dispatcher import Dispatcher
from services.execution_client import ExecutionClient
from services.ingestion import RequestCreatedConsumer
from services.job_store import JobExecutionStore
from services.messaging import RabbitMQConnection
from services.oo_client import OoClient
from services.reconciler import Reconciler
from services.status_publisher import StatusPublisher

logger = logging.getLogger(__name__)


class Orchestrator:
    """Store, clients, dispatcher, reconciler and consumer for one worker.

    The bus connection is opened by ``start`` only when this worker consumes
    events or runs the sweep; without it status events are just logged.
    """

    def __init__(
        self,
        store: Optional[JobExecutionStore] = None,
        clients: Optional[Dict[TargetType, ExecutionClient]] = None,
        connection: Optional[RabbitMQConnection] = None,
    ):
        self.store = store or JobExecutionStore()
        self.clients = clients if clients is not None else {
            TargetType.AWX: AwxClient(),
            TargetType.OO: OoClient(),
        }
        self.connection = connection
        self.publisher = StatusPublisher(connection)
        self.dispatcher = Dispatcher(self.store, self.clients, self.publisher)
        self.reconciler = Reconciler(self.store, self.dispatcher, self.publisher)
        self.consumer = RequestCreatedConsumer(self.store, self.dispatcher)
        self.consumer_tag: Optional[str] = None

    @property
    def consuming(self) -> bool:
        return self.consumer_tag is not None

    async def start(self, consume: bool = False):
        """Open the bus connection and optionally start consuming events."""
        if self.connection is None:
            self.connection = RabbitMQConnection()
            self.publisher.connection = self.connection
        await self.connection.connect()

        if consume:
            self.consumer_tag = await self.connection.consume(
                settings.request_created_queue, self.consumer.on_message
            )
            logger.info(f"Consuming request-created events from {settings.request_created_queue}")

    async def stop(self):
        """Close the bus connection and the backend HTTP clients."""
        if self.connection is not None:
            await self.connection.close()
        self.consumer_tag = None
        for target_type, client in self.clients.items():
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Failed to close {target_type.value} client: {e}")


# Engine shared by the scheduler jobs and the API of this process
_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator()
    return _orchestrator


def current_orchestrator() -> Optional[Orchestrator]:
    """The process-wide orchestrator, without creating one."""
    return _orchestrator


def set_orchestrator(orchestrator: Optional[Orchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator
