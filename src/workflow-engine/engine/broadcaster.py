"""
Progress broadcaster contract.
"""

import logging
from abc import ABC, abstractmethod

from models.execution import ExecutionEvent

logger = logging.getLogger(__name__)


class ProgressBroadcaster(ABC):
    """
    Publishes run-status events to subscribers of a run.

    Delivery is fire-and-forget and at-most-once to current subscribers.
    The contract promises no history; a backing may replay the latest
    event of a run to a late subscriber (the WebSocket backing does).
    """

    @abstractmethod
    async def publish(self, execution_id: str, event: ExecutionEvent) -> None:
        """
        Publish an event for a run.

        Args:
            execution_id: Run the event belongs to
            event: Event payload
        """
        pass


class NullBroadcaster(ProgressBroadcaster):
    """Broadcaster that drops every event."""

    async def publish(self, execution_id: str, event: ExecutionEvent) -> None:
        logger.debug(f"Dropping {event.type} event for execution {execution_id}")
