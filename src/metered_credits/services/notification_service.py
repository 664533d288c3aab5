from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue

if TYPE_CHECKING:
    from .credit_ledger import CreditLedger


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Orchestrates notification creation and dispatch via a message queue.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        credit_ledger: "CreditLedger",
        low_credit_threshold: int,
    ) -> None:
        self._db = db
        self._queue = queue
        self._credit_ledger = credit_ledger
        self._low_credit_threshold = low_credit_threshold

    async def notify_low_credits(self, user_id: str) -> bool:
        """Queue a warning when the available balance is at or below the threshold."""
        result = await self._credit_ledger.get_balance(user_id)
        if not result.success or result.balance is None:
            return False
        if result.balance.available > self._low_credit_threshold:
            return False

        await self._dispatch(
            user_id,
            NotificationType.LOW_CREDITS,
            {
                "available_credits": result.balance.available,
                "threshold": self._low_credit_threshold,
            },
        )
        return True

    async def notify_reconciliation_required(
        self, user_id: str, message: str, details: Dict[str, Any]
    ) -> None:
        await self._dispatch(
            user_id,
            NotificationType.RECONCILIATION_REQUIRED,
            {"message": message, "details": details},
        )

    async def _dispatch(
        self, user_id: str, notification_type: NotificationType, payload: Dict[str, Any]
    ) -> NotificationEvent:
        event = NotificationEvent(
            user_id=user_id,
            notification_type=notification_type,
            payload=payload,
            status=NotificationStatus.PENDING,
        )
        event = await self._db.add_notification_event(event)
        try:
            await self._queue.publish(event)
        except Exception:
            event.status = NotificationStatus.FAILED
            logger.exception(
                "Failed to publish %s notification for user %s",
                notification_type.value,
                user_id,
            )
        return event
