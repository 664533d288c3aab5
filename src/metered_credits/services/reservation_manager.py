from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime
from typing import Any, Dict, Optional

from ..exceptions import (
    CONFIRMATION_FAILED_MESSAGE,
    CreditConfirmationFailedError,
    CreditError,
    DuplicateReservationError,
    InsufficientCreditsError,
    InvalidAmountError,
    ReservationAlreadyResolvedError,
    ReservationNotFoundError,
    TransactionFailureError,
)
from ..models.account import UserCreditAccount
from ..models.reservation import ReservationRecord, ReservationStatus
from ..models.results import CreditOperationResult
from ..models.transaction import (
    ChatSpendMetadata,
    ReservationReleaseMetadata,
    TransactionOperation,
)
from .credit_ledger import CreditLedger
from .notification_service import NotificationService
from .transaction_log import TransactionLog


logger = logging.getLogger(__name__)

COMPENSATING_RELEASE_REASON = "confirmation-failed"


def new_reservation_id() -> str:
    """Millisecond timestamp plus a random suffix; unique without coordination."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"


class ReservationManager:
    """
    Reserve -> confirm/release protocol bracketing a metered external call.

    Each reservation id moves OPEN -> CONFIRMED or OPEN -> RELEASED exactly
    once. Whoever reserves must resolve: every successful `reserve` needs
    one `confirm` or `release`, including when the external call raises,
    times out or is cancelled.
    """

    def __init__(
        self,
        credit_ledger: CreditLedger,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self._ledger = credit_ledger
        self._notifications = notifications

    async def reserve(
        self,
        user_id: str,
        amount: int,
        operation: str,
        reservation_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditOperationResult:
        def apply(account: UserCreditAccount) -> None:
            if reservation_id in account.reservations:
                raise DuplicateReservationError(reservation_id)
            if account.available_credits < amount:
                raise InsufficientCreditsError(amount, account.available_credits)
            account.available_credits -= amount
            account.reserved_credits += amount
            account.reservations[reservation_id] = ReservationRecord(
                id=reservation_id,
                amount=amount,
                operation=operation,
                metadata=dict(metadata or {}),
            )

        try:
            if amount <= 0:
                raise InvalidAmountError("amount must be positive")
            if not reservation_id:
                raise InvalidAmountError("reservation id is required")
            _, account = await self._ledger.run_account_transaction(
                user_id, apply, "reserve"
            )
        except Exception as exc:
            return await self._ledger.failure_result(
                exc, user_id, operation, {"requested": amount},
                fallback_message="Failed to reserve credits",
                correlation_id=reservation_id,
            )

        await self._ledger.audit(
            user_id,
            "Credits reserved",
            {"amount": amount, "new_balance": account.available_credits},
            operation=operation,
            correlation_id=reservation_id,
        )
        return CreditOperationResult(
            success=True,
            message="Credits reserved successfully",
            remaining_credits=account.available_credits,
        )

    async def confirm(
        self,
        user_id: str,
        reservation_id: str,
        actual_usage_tokens: int,
        operation: str,
        metadata: Optional[ChatSpendMetadata] = None,
    ) -> CreditOperationResult:
        """
        Settle a reservation against the actual usage.

        Surplus returns to the available balance. A shortfall is drawn from
        the available balance as far as it goes; whatever it cannot cover is
        booked as account debt (`uncollected_credits` on the transaction).

        If the store fails while committing, the reservation is released as
        a compensating action and `CREDIT_CONFIRMATION_FAILED` is returned
        for manual reconciliation. This path is never retried here.
        """
        actual = self._ledger.tokens_to_credits(actual_usage_tokens)

        def apply(account: UserCreditAccount) -> int:
            reservation = self._open_reservation(account, reservation_id)
            held = reservation.amount
            account.reserved_credits -= held
            uncollected = 0
            if actual <= held:
                account.available_credits += held - actual
            else:
                shortfall = actual - held
                drawn = min(shortfall, account.available_credits)
                account.available_credits -= drawn
                uncollected = shortfall - drawn
                account.debt_credits += uncollected
            account.used_credits += actual
            reservation.status = ReservationStatus.CONFIRMED
            reservation.resolved_at = datetime.utcnow()

            spend = metadata or ChatSpendMetadata()
            update: Dict[str, Any] = {
                "reservation_id": reservation_id,
                "tokens_used": actual_usage_tokens,
                "cost": actual,
                "uncollected_credits": uncollected,
            }
            if spend.estimated_tokens is None:
                update["estimated_tokens"] = reservation.metadata.get("estimated_tokens")
            TransactionLog.record(account, -actual, operation, spend.model_copy(update=update))
            return uncollected

        try:
            if actual_usage_tokens < 0:
                raise InvalidAmountError("actual usage must not be negative")
            uncollected, account = await self._ledger.run_account_transaction(
                user_id, apply, "confirm"
            )
        except CreditError as exc:
            if not isinstance(exc, TransactionFailureError):
                return await self._ledger.failure_result(
                    exc, user_id, operation,
                    {"reservation_id": reservation_id, "tokens": actual_usage_tokens},
                    correlation_id=reservation_id,
                )
            return await self._confirmation_failed(
                exc, user_id, reservation_id, actual_usage_tokens, operation
            )
        except Exception as exc:
            return await self._confirmation_failed(
                exc, user_id, reservation_id, actual_usage_tokens, operation
            )

        await self._ledger.audit(
            user_id,
            "Reserved credits confirmed",
            {
                "credits": actual,
                "tokens": actual_usage_tokens,
                "uncollected": uncollected,
                "new_balance": account.available_credits,
            },
            operation=operation,
            correlation_id=reservation_id,
        )
        return CreditOperationResult(
            success=True,
            message="Reserved credits confirmed successfully",
            remaining_credits=account.available_credits,
            credits_deducted=actual,
        )

    async def release(
        self, user_id: str, reservation_id: str, reason: str
    ) -> CreditOperationResult:
        """
        Undo a hold: the reserved amount goes back to the available balance
        unchanged and a zero-amount audit transaction records `reason`.
        """
        operation = TransactionOperation.RESERVATION_RELEASE.value

        def apply(account: UserCreditAccount) -> int:
            reservation = self._open_reservation(account, reservation_id)
            held = reservation.amount
            account.reserved_credits -= held
            account.available_credits += held
            reservation.status = ReservationStatus.RELEASED
            reservation.resolved_at = datetime.utcnow()
            TransactionLog.record(
                account,
                0,
                operation,
                ReservationReleaseMetadata(
                    reservation_id=reservation_id,
                    released_credits=held,
                    reason=reason,
                ),
            )
            return held

        try:
            held, account = await self._ledger.run_account_transaction(
                user_id, apply, "release"
            )
        except Exception as exc:
            return await self._ledger.failure_result(
                exc, user_id, operation,
                {"reservation_id": reservation_id, "reason": reason},
                fallback_message="Failed to release reserved credits",
                correlation_id=reservation_id,
            )

        await self._ledger.audit(
            user_id,
            "Reserved credits released",
            {"credits": held, "reason": reason, "new_balance": account.available_credits},
            operation=operation,
            correlation_id=reservation_id,
        )
        return CreditOperationResult(
            success=True,
            message="Reserved credits released successfully",
            remaining_credits=account.available_credits,
        )

    async def _confirmation_failed(
        self,
        exc: BaseException,
        user_id: str,
        reservation_id: str,
        actual_usage_tokens: int,
        operation: str,
    ) -> CreditOperationResult:
        details = {
            "reservation_id": reservation_id,
            "tokens": actual_usage_tokens,
            "credits": self._ledger.tokens_to_credits(actual_usage_tokens),
            "cause": repr(exc),
        }
        logger.error(
            "Credit confirmation failed for user %s, reservation %s",
            user_id,
            reservation_id,
            exc_info=exc,
            extra={"user_id": user_id, "details": details},
        )

        release = await self.release(user_id, reservation_id, COMPENSATING_RELEASE_REASON)
        details["compensating_release"] = release.success
        if not release.success:
            logger.error(
                "Compensating release failed for user %s, reservation %s: %s",
                user_id,
                reservation_id,
                release.message,
            )

        error = CreditConfirmationFailedError(reservation_id, released=release.success)
        try:
            await self._ledger.ledger_logger.log_critical(
                message="Credit confirmation failed; manual reconciliation required",
                details=details,
                user_id=user_id,
                operation=operation,
                error_code=error.code.value,
                correlation_id=reservation_id,
            )
            if self._notifications is not None:
                await self._notifications.notify_reconciliation_required(
                    user_id, CONFIRMATION_FAILED_MESSAGE, details
                )
        except Exception:
            logger.exception(
                "Failed to record confirmation failure", extra={"user_id": user_id}
            )

        return CreditOperationResult.failure(error)

    @staticmethod
    def _open_reservation(
        account: UserCreditAccount, reservation_id: str
    ) -> ReservationRecord:
        reservation = account.reservations.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        if not reservation.is_open:
            raise ReservationAlreadyResolvedError(reservation_id, reservation.status.value)
        return reservation
