from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from ..models.notification import NotificationEvent, NotificationStatus


class AsyncNotificationQueue(ABC):
    """
    Outbound channel for low-balance warnings and reconciliation alerts.

    Events are stored before they are published, so a broker (Redis,
    RabbitMQ, Kafka, ...) only needs at-least-once delivery of the
    event id and payload.
    """

    @abstractmethod
    async def publish(self, event: NotificationEvent) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """Collects published events; used for tests and local development."""

    def __init__(self) -> None:
        self.events: List[NotificationEvent] = []

    async def publish(self, event: NotificationEvent) -> None:
        event.status = NotificationStatus.SENT
        self.events.append(event)

    def drain(self) -> List[NotificationEvent]:
        drained, self.events = self.events, []
        return drained
