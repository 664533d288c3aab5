from __future__ import annotations

from typing import List, Optional

from ..models.account import UserCreditAccount
from ..models.transaction import CreditTransaction, TransactionMetadata


class TransactionLog:
    """
    Append-only view over an account's `credit_history`.

    Entries are only ever appended, in commit order, by the ledger and
    reservation services while they hold the account transaction.
    """

    @staticmethod
    def record(
        account: UserCreditAccount,
        amount: int,
        operation: str,
        metadata: Optional[TransactionMetadata] = None,
    ) -> CreditTransaction:
        tx = CreditTransaction(amount=amount, operation=operation, metadata=metadata)
        account.credit_history.append(tx)
        return tx

    @staticmethod
    def newest_first(
        account: UserCreditAccount, limit: Optional[int] = None
    ) -> List[CreditTransaction]:
        # Insertion order is chronological; timestamps can tie.
        history = list(reversed(account.credit_history))
        if limit is not None:
            history = history[:limit]
        return history
