from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from ..cache.base import AsyncCacheBackend, BalanceCache
from ..config import CreditSettings, get_settings
from ..db.base import BaseDBManager
from ..exceptions import (
    CreditError,
    InsufficientCreditsError,
    InvalidAmountError,
    TransactionFailureError,
    UserNotFoundError,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.account import (
    CreditBalance,
    SubscriptionInfo,
    SubscriptionPlanName,
    UserCreditAccount,
)
from ..models.results import (
    CreditBalanceResult,
    CreditCheckResult,
    CreditHistoryResult,
    CreditOperationResult,
)
from ..models.transaction import (
    ChatSpendMetadata,
    GrantMetadata,
    TransactionMetadata,
    TransactionOperation,
)
from ..utils.retry import retry_on_conflict
from .transaction_log import TransactionLog


T = TypeVar("T")

logger = logging.getLogger(__name__)


class CreditLedger:
    """
    Owns per-user credit accounts and their atomic balance operations.

    Every mutation is one read-modify-write of the account document inside
    `BaseDBManager.transaction()`, re-applied on version conflicts. Public
    methods never raise: failures come back as structured results.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger_logger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
        settings: Optional[CreditSettings] = None,
    ) -> None:
        self._db = db
        self._ledger_logger = ledger_logger
        self._settings = settings or get_settings()
        self._balances = (
            BalanceCache(cache, self._settings.balance_cache_ttl_seconds)
            if cache is not None
            else None
        )

    @property
    def ledger_logger(self) -> LedgerLogger:
        return self._ledger_logger

    def tokens_to_credits(self, tokens: int) -> int:
        """Credits owed for `tokens` provider tokens, rounded up."""
        if tokens <= 0:
            return 0
        return -(-tokens // self._settings.tokens_per_credit)

    async def run_account_transaction(
        self,
        user_id: str,
        mutate: Callable[[UserCreditAccount], T],
        operation_name: str,
    ) -> Tuple[T, UserCreditAccount]:
        """
        Apply `mutate` to the freshly read account and commit it atomically.

        `mutate` must only touch the document it is given; raising from it
        aborts the transaction with nothing written. On a version conflict
        the account is re-read and `mutate` runs again.
        """

        async def attempt() -> Tuple[T, UserCreditAccount]:
            async with self._db.transaction():
                account = await self._db.get_account(user_id)
                if account is None:
                    raise UserNotFoundError(user_id)
                outcome = mutate(account)
                account.updated_at = datetime.utcnow()
                await self._db.update_account(account)
                return outcome, account

        outcome, account = await retry_on_conflict(
            attempt,
            max_attempts=self._settings.transaction_max_attempts,
            base_delay=self._settings.transaction_retry_delay_seconds,
            operation_name=operation_name,
        )
        await self._store_balance_cache(account)
        return outcome, account

    async def provision_account(
        self, user_id: str, initial_credits: Optional[int] = None
    ) -> CreditOperationResult:
        """
        Create the account with its free-tier grant. Provisioning an
        existing account changes nothing and reports its current balance.
        """
        grant = (
            self._settings.free_tier_credits
            if initial_credits is None
            else initial_credits
        )
        operation = TransactionOperation.FREE_TIER_GRANT.value

        async def attempt() -> Tuple[UserCreditAccount, bool]:
            async with self._db.transaction():
                existing = await self._db.get_account(user_id)
                if existing is not None:
                    return existing, False
                account = UserCreditAccount(
                    id=user_id,
                    available_credits=grant,
                    subscription=SubscriptionInfo(
                        plan=SubscriptionPlanName.FREE,
                        credits_per_month=self._settings.free_tier_credits,
                    ),
                )
                if grant > 0:
                    TransactionLog.record(
                        account, grant, operation, GrantMetadata(note="free tier")
                    )
                await self._db.add_account(account)
                return account, True

        try:
            if grant < 0:
                raise InvalidAmountError("initial credits must not be negative")
            account, created = await retry_on_conflict(
                attempt,
                max_attempts=self._settings.transaction_max_attempts,
                base_delay=self._settings.transaction_retry_delay_seconds,
                operation_name="provision_account",
            )
        except Exception as exc:
            return await self.failure_result(
                exc, user_id, operation, {"initial_credits": grant},
                fallback_message="Failed to provision account",
            )

        if not created:
            return CreditOperationResult(
                success=True,
                message="Account already provisioned",
                remaining_credits=account.available_credits,
            )

        await self._store_balance_cache(account)
        await self.audit(
            user_id,
            "Account provisioned",
            {"initial_credits": grant},
            operation=operation,
        )
        return CreditOperationResult(
            success=True,
            message="Account provisioned successfully",
            remaining_credits=account.available_credits,
        )

    async def deduct(
        self,
        user_id: str,
        amount: int,
        operation: str,
        metadata: Optional[TransactionMetadata] = None,
    ) -> CreditOperationResult:
        def apply(account: UserCreditAccount) -> None:
            if account.available_credits < amount:
                raise InsufficientCreditsError(amount, account.available_credits)
            account.available_credits -= amount
            account.used_credits += amount
            TransactionLog.record(account, -amount, operation, metadata)

        try:
            self._require_positive(amount)
            _, account = await self.run_account_transaction(user_id, apply, "deduct")
        except Exception as exc:
            return await self.failure_result(
                exc, user_id, operation, {"requested": amount},
                fallback_message="Failed to deduct credits",
            )

        await self.audit(
            user_id,
            "Credits deducted",
            {"amount": amount, "new_balance": account.available_credits},
            operation=operation,
        )
        return CreditOperationResult(
            success=True,
            message="Credits deducted successfully",
            remaining_credits=account.available_credits,
            credits_deducted=amount,
        )

    async def add(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[TransactionMetadata] = None,
    ) -> CreditOperationResult:
        """
        Grant credits (purchase, admin top-up, allocation). Outstanding debt
        from under-reserved confirmations is settled before the remainder
        becomes spendable.
        """

        def apply(account: UserCreditAccount) -> int:
            settled = min(account.debt_credits, amount)
            account.debt_credits -= settled
            account.available_credits += amount - settled
            TransactionLog.record(account, amount, reason, metadata)
            return settled

        try:
            self._require_positive(amount)
            settled, account = await self.run_account_transaction(user_id, apply, "add")
        except Exception as exc:
            return await self.failure_result(
                exc, user_id, reason, {"amount": amount},
                fallback_message="Failed to add credits",
            )

        await self.audit(
            user_id,
            "Credits added",
            {
                "amount": amount,
                "debt_settled": settled,
                "new_balance": account.available_credits,
            },
            operation=reason,
        )
        return CreditOperationResult(
            success=True,
            message="Credits added successfully",
            remaining_credits=account.available_credits,
        )

    async def deduct_for_tokens(
        self,
        user_id: str,
        tokens_used: int,
        operation: str,
        metadata: Optional[ChatSpendMetadata] = None,
    ) -> CreditOperationResult:
        credits = self.tokens_to_credits(tokens_used)
        if tokens_used < 0:
            return await self.failure_result(
                InvalidAmountError("tokens used must not be negative"),
                user_id, operation, {"tokens_used": tokens_used},
            )
        if credits == 0:
            balance = await self.get_balance(user_id)
            if not balance.success:
                return CreditOperationResult(
                    success=False, message=balance.message, error_code=balance.error_code
                )
            return CreditOperationResult(
                success=True,
                message="No credits to deduct",
                remaining_credits=balance.balance.available if balance.balance else None,
                credits_deducted=0,
            )

        spend = (metadata or ChatSpendMetadata()).model_copy(
            update={"tokens_used": tokens_used, "cost": credits}
        )
        result = await self.deduct(user_id, credits, operation, spend)
        return result.model_copy(update={"credits_deducted": credits})

    async def check_credits(self, user_id: str, required: int) -> CreditCheckResult:
        """
        Advisory pre-flight check; may be stale under concurrency and may be
        served from cache. Never use it to guard a spend.
        """
        try:
            balance = await self._cached_balance(user_id)
            if balance is None:
                account = await self._db.get_account(user_id)
                if account is None:
                    return CreditCheckResult(
                        has_enough=False, available=0, message="User not found"
                    )
                balance = account.to_balance()
                await self._store_balance_cache(account)
        except Exception:
            logger.exception("Error checking credits", extra={"user_id": user_id})
            return CreditCheckResult(
                has_enough=False, available=0, message="Failed to check credits"
            )

        has_enough = balance.available >= required
        return CreditCheckResult(
            has_enough=has_enough,
            available=balance.available,
            message=(
                "Sufficient credits available"
                if has_enough
                else f"Insufficient credits. Required: {required}, Available: {balance.available}"
            ),
        )

    async def get_balance(self, user_id: str) -> CreditBalanceResult:
        try:
            account = await self._db.get_account(user_id)
            if account is None:
                raise UserNotFoundError(user_id)
        except Exception as exc:
            failure = await self.failure_result(
                exc, user_id, "get_balance", {},
                fallback_message="Failed to get balance",
            )
            return CreditBalanceResult(
                success=False, message=failure.message, error_code=failure.error_code
            )
        return CreditBalanceResult(
            success=True, message="OK", balance=account.to_balance()
        )

    async def get_history(
        self, user_id: str, limit: Optional[int] = None
    ) -> CreditHistoryResult:
        try:
            account = await self._db.get_account(user_id)
        except Exception:
            logger.exception("Error getting credit history", extra={"user_id": user_id})
            return CreditHistoryResult(
                success=False,
                message="Failed to get credit history",
                error_code=TransactionFailureError.code,
            )
        if account is None:
            return CreditHistoryResult(
                success=False,
                message="User not found",
                error_code=UserNotFoundError.code,
            )
        return CreditHistoryResult(
            success=True,
            message="OK",
            history=TransactionLog.newest_first(account, limit),
        )

    async def audit(
        self,
        user_id: str,
        message: str,
        details: Dict[str, Any],
        operation: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Write a committed event to the audit ledger."""
        try:
            await self._ledger_logger.log_transaction(
                user_id=user_id,
                message=message,
                details=details,
                operation=operation,
                correlation_id=correlation_id,
            )
        except Exception:
            # The balance change is already committed; only its audit copy is lost.
            logger.exception(
                "Failed to write ledger entry",
                extra={"user_id": user_id, "ledger_message": message},
            )

    async def failure_result(
        self,
        exc: BaseException,
        user_id: str,
        operation: str,
        details: Dict[str, Any],
        fallback_message: str = "Credit operation failed",
        correlation_id: Optional[str] = None,
    ) -> CreditOperationResult:
        """
        Log a failed operation and convert it into a structured result.

        Domain errors keep their own message; anything else is reported as
        a generic `TRANSACTION_FAILURE`.
        """
        if isinstance(exc, CreditError) and not isinstance(exc, TransactionFailureError):
            error: CreditError = exc
            logger.info(
                "%s rejected for user %s: %s",
                operation,
                user_id,
                exc,
                extra={"user_id": user_id, "error_code": exc.code.value},
            )
        else:
            error = TransactionFailureError(fallback_message)
            logger.error(
                "%s failed for user %s",
                operation,
                user_id,
                exc_info=exc,
                extra={"user_id": user_id, "details": details},
            )

        remaining = exc.available if isinstance(exc, InsufficientCreditsError) else None
        log_details = dict(details)
        if remaining is not None:
            log_details["available"] = remaining
        try:
            await self._ledger_logger.log_error(
                message=str(error),
                details=log_details,
                user_id=user_id,
                operation=operation,
                error_code=error.code.value,
                correlation_id=correlation_id,
            )
        except Exception:
            logger.exception("Failed to write ledger error entry", extra={"user_id": user_id})
        return CreditOperationResult.failure(error, remaining_credits=remaining)

    async def _cached_balance(self, user_id: str) -> Optional[CreditBalance]:
        if self._balances is None:
            return None
        return await self._balances.get(user_id)

    async def _store_balance_cache(self, account: UserCreditAccount) -> None:
        if self._balances is not None:
            await self._balances.put(account.to_balance())

    @staticmethod
    def _require_positive(amount: int) -> None:
        if amount <= 0:
            raise InvalidAmountError("amount must be positive")
