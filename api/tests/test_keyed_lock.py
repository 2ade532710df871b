"""Tests for the per-key asyncio lock registry.

Covers:
- Holders of the same key run one at a time
- Different keys do not block each other
- Locks are dropped once no task holds or awaits them, including on error
"""

from __future__ import annotations

import asyncio

import pytest

from api.services.keyed_lock import KeyedLock


class TestKeyedLock:
    """Serialisation and cleanup."""

    @pytest.mark.asyncio
    async def test_same_key_serialised(self) -> None:
        locks = KeyedLock()
        active = 0
        peak = 0

        async def _work() -> None:
            nonlocal active, peak
            async with locks.hold("acct-1"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(_work() for _ in range(5)))

        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_keys_independent(self) -> None:
        locks = KeyedLock()
        entered = asyncio.Event()

        async def _holder() -> None:
            async with locks.hold("acct-1"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def _other() -> None:
            async with locks.hold("acct-2"):
                entered.set()

        await asyncio.gather(_holder(), _other())

        assert entered.is_set()

    @pytest.mark.asyncio
    async def test_idle_lock_dropped(self) -> None:
        locks = KeyedLock()

        async with locks.hold("acct-1"):
            assert "acct-1" in locks
            assert len(locks) == 1

        assert "acct-1" not in locks
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_dropped_after_error(self) -> None:
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("acct-1"):
                raise RuntimeError("boom")

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_waiter_keeps_lock_alive(self) -> None:
        locks = KeyedLock()
        order: list[str] = []

        async def _first() -> None:
            async with locks.hold("acct-1"):
                await asyncio.sleep(0.01)
                order.append("first")

        async def _second() -> None:
            await asyncio.sleep(0)
            async with locks.hold("acct-1"):
                order.append("second")

        await asyncio.gather(_first(), _second())

        assert order == ["first", "second"]
        assert len(locks) == 0
