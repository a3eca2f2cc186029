"""
Lease Plane Ledger
==================

Debits and credits against an account's coin and real balances.

Every balance movement is written in the same unit of work as a
LedgerEntry journal row, so the journal always sums to the balance.

with_debit() is the only way to spend: it re-reads the account under
its unit of work, refuses if the balance is short, and runs the caller's
body inside the same unit of work. If the body raises, the debit and
everything the body staged roll back together.
"""

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, TypeVar

from lease_plane.errors import InsufficientFundsError, ValidationError
from lease_plane.models import Currency, LedgerEntry
from lease_plane.store.base import RecordStore, UnitOfWork

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Ledger:
    """Serialized balance changes with a journal entry per change."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def with_debit(
        self,
        account_id: str,
        currency: Currency,
        amount: Decimal,
        body: Callable[[UnitOfWork], Awaitable[T]],
        reason: str = "debit",
        reference: str = "",
    ) -> T:
        """
        Debit `amount` and run `body` atomically with it.

        Args:
            account_id: Account to charge
            currency: Which balance to charge
            amount: Non-negative amount
            body: Async callable run inside the same unit of work
            reason: Journal reason (purchase, renewal, ...)
            reference: Journal reference (plan or instance id)

        Returns:
            Whatever `body` returns

        Raises:
            ValidationError: Unknown account or negative amount
            InsufficientFundsError: Balance below `amount`
        """
        if amount < 0:
            raise ValidationError("Amount must not be negative")

        async with self.store.unit_of_work(account_id) as uow:
            account = await uow.get_account()
            if account is None:
                raise ValidationError("Unknown account")

            balance = account.balance(currency)
            if balance < amount:
                logger.info(
                    f"Insufficient {currency.value} balance: has {balance}, needs {amount}",
                    extra={"account_id": account_id},
                )
                raise InsufficientFundsError(
                    f"Insufficient {currency.value} balance",
                    details={"balance": str(balance), "required": str(amount)},
                )

            new_balance = balance - amount
            await uow.set_balance(currency, new_balance)
            await uow.record_entry(LedgerEntry(
                account_id=account_id,
                currency=currency,
                amount=-amount,
                balance_after=new_balance,
                reason=reason,
                reference=reference,
            ))
            result = await body(uow)

        logger.info(
            f"Debited {amount} {currency.value} ({reason}) new balance {new_balance}",
            extra={"account_id": account_id},
        )
        return result

    async def credit(
        self,
        account_id: str,
        currency: Currency,
        amount: Decimal,
        reason: str = "credit",
        reference: str = "",
    ) -> Decimal:
        """Add `amount` to the balance unconditionally. Returns the new balance."""
        if amount < 0:
            raise ValidationError("Amount must not be negative")

        async with self.store.unit_of_work(account_id) as uow:
            account = await uow.get_account()
            if account is None:
                raise ValidationError("Unknown account")

            new_balance = account.balance(currency) + amount
            await uow.set_balance(currency, new_balance)
            await uow.record_entry(LedgerEntry(
                account_id=account_id,
                currency=currency,
                amount=amount,
                balance_after=new_balance,
                reason=reason,
                reference=reference,
            ))

        logger.info(
            f"Credited {amount} {currency.value} ({reason}) new balance {new_balance}",
            extra={"account_id": account_id},
        )
        return new_balance

    async def balance(self, account_id: str) -> Dict[str, str]:
        account = await self.store.get_account(account_id)
        if account is None:
            raise ValidationError("Unknown account")
        return {
            "account_id": account.id,
            Currency.COIN.value: str(account.coin_balance),
            Currency.REAL.value: str(account.real_balance),
        }

    async def history(self, account_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        entries = await self.store.list_entries(account_id, limit=limit)
        return [e.to_dict() for e in entries]
