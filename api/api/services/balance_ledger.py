"""Prepaid SMS balance ledger.

Every mutation is a single conditional ``UPDATE`` executed by
:class:`~zeus_core.state.repository.AccountRepository`; concurrent debits can
never take a balance below zero and a refused debit changes nothing.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession
from zeus_core.state.repository import AccountRepository

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def _money(amount: Decimal | int | str) -> Decimal:
    return Decimal(str(amount)).quantize(_CENT)


class BalanceLedger:
    """Debit and credit operations on an account's prepaid balance."""

    def __init__(self, session: AsyncSession) -> None:
        self._accounts = AccountRepository(session)

    async def balance(self, account_id: str) -> Decimal | None:
        return await self._accounts.get_balance(account_id)

    async def can_afford(self, account_id: str, amount: Decimal) -> bool:
        current = await self._accounts.get_balance(account_id)
        return current is not None and current >= _money(amount)

    async def debit(self, account_id: str, amount: Decimal) -> Decimal | None:
        """Subtract *amount* if the balance covers it.

        Returns the new balance, or ``None`` when the debit was refused.
        The balance is never clamped or driven negative.
        """
        amount = _money(amount)
        new_balance = await self._accounts.debit_if_sufficient(account_id, amount)
        if new_balance is None:
            logger.info("Debit refused: account=%s amount=%s", account_id, amount)
        else:
            logger.info("Debited account=%s amount=%s balance=%s", account_id, amount, new_balance)
        return new_balance

    async def credit(self, account_id: str, amount: Decimal) -> Decimal:
        """Add *amount* to the balance and the lifetime-funded total.

        Raises
        ------
        ValueError
            If *amount* is not positive.
        LookupError
            If the account does not exist.
        """
        amount = _money(amount)
        new_balance = await self._accounts.credit(account_id, amount)
        if new_balance is None:
            raise LookupError(f"Account {account_id} not found")
        logger.info("Credited account=%s amount=%s balance=%s", account_id, amount, new_balance)
        return new_balance
