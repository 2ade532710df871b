"""Tests for the prepaid balance ledger.

Covers:
- Affordability checks
- Debit rounding, refusal and the spend-down sequence
- Concurrent debits from separate sessions never overspend
- Credit of unknown accounts and non-positive amounts
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from zeus_core.state.repository import AccountRepository

from api.services.balance_ledger import BalanceLedger


class TestBalanceLedger:
    """Debit and credit semantics."""

    @pytest.mark.asyncio
    async def test_can_afford(self, session_factory, seed_account) -> None:
        account_id = await seed_account("0.25")
        async with session_factory() as session:
            ledger = BalanceLedger(session)
            assert await ledger.can_afford(account_id, Decimal("0.25"))
            assert not await ledger.can_afford(account_id, Decimal("0.26"))
            assert not await ledger.can_afford("missing", Decimal("0.01"))

    @pytest.mark.asyncio
    async def test_spend_down(self, session_factory, seed_account) -> None:
        account_id = await seed_account("1.00")
        async with session_factory() as session:
            ledger = BalanceLedger(session)
            balances = [await ledger.debit(account_id, Decimal("0.25")) for _ in range(5)]
            await session.commit()

        assert balances == [Decimal("0.75"), Decimal("0.50"), Decimal("0.25"), Decimal("0.00"), None]

    @pytest.mark.asyncio
    async def test_debit_quantises_to_cents(self, session_factory, seed_account) -> None:
        account_id = await seed_account("1.00")
        async with session_factory() as session:
            assert await BalanceLedger(session).debit(account_id, Decimal("0.254")) == Decimal("0.75")

    @pytest.mark.asyncio
    async def test_credit(self, session_factory, seed_account) -> None:
        account_id = await seed_account("0.00")
        async with session_factory() as session:
            assert await BalanceLedger(session).credit(account_id, Decimal("10")) == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_credit_unknown_account(self, session_factory) -> None:
        async with session_factory() as session:
            with pytest.raises(LookupError):
                await BalanceLedger(session).credit("missing", Decimal("10"))

    @pytest.mark.asyncio
    async def test_credit_must_be_positive(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        async with session_factory() as session:
            with pytest.raises(ValueError):
                await BalanceLedger(session).credit(account_id, Decimal("0"))


class TestConcurrentDebits:
    """Debits racing in independent sessions."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("balance", "cost", "attempts", "expected_successes"),
        [
            ("1.00", "0.30", 8, 3),
            ("1.00", "0.25", 6, 4),
            ("0.20", "0.25", 3, 0),
        ],
    )
    async def test_at_most_affordable_debits_succeed(
        self,
        session_factory,
        seed_account,
        balance: str,
        cost: str,
        attempts: int,
        expected_successes: int,
    ) -> None:
        account_id = await seed_account(balance)

        async def _debit() -> Decimal | None:
            async with session_factory() as session:
                new_balance = await BalanceLedger(session).debit(account_id, Decimal(cost))
                await session.commit()
                return new_balance

        results = await asyncio.gather(*(_debit() for _ in range(attempts)))

        successes = [r for r in results if r is not None]
        assert len(successes) == expected_successes
        assert all(r >= 0 for r in successes)
        async with session_factory() as session:
            final = await AccountRepository(session).get_balance(account_id)
        assert final == Decimal(balance) - expected_successes * Decimal(cost)
        assert final >= 0
