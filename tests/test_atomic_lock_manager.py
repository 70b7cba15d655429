"""
Test Atomic Lock Manager
Keyed locks serializing work per source address and per entity
"""

import asyncio

import pytest

from services.atomic_lock_manager import AtomicLockManager, LockOperationType, LockTimeoutError


class TestAtomicLockManager:
    """Test atomic lock manager functionality"""

    @pytest.mark.asyncio
    async def test_atomic_lock_acquisition(self):
        """Lock is held inside the block and dropped afterwards"""
        manager = AtomicLockManager()

        async with manager.acquire("source_address:0xabc", LockOperationType.NONCE_SEQUENCING) as token:
            assert token
            assert manager.is_locked("source_address:0xabc")

        assert not manager.is_locked("source_address:0xabc")
        assert manager.active_lock_count == 0
        assert manager.metrics["locks_acquired"] == manager.metrics["locks_released"] == 1

    @pytest.mark.asyncio
    async def test_atomic_lock_contention(self):
        """Same key runs one holder at a time, in order"""
        manager = AtomicLockManager()
        events = []

        async def worker(name):
            async with manager.acquire("customer_wallet:1", LockOperationType.WALLET_BALANCE_UPDATE):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"), worker("c"))

        assert events == ["a-start", "a-end", "b-start", "b-end", "c-start", "c-end"]
        assert manager.metrics["lock_contentions"] >= 1
        assert manager.active_lock_count == 0

    @pytest.mark.asyncio
    async def test_distinct_keys_run_concurrently(self):
        manager = AtomicLockManager()
        both_held = asyncio.Event()
        holders = 0

        async def worker(key):
            nonlocal holders
            async with manager.acquire(key, LockOperationType.RECEIPT_MINT):
                holders += 1
                if holders == 2:
                    both_held.set()
                await asyncio.wait_for(both_held.wait(), 1)

        await asyncio.gather(worker("nft_receipt:1:S1"), worker("nft_receipt:1:S2"))

    @pytest.mark.asyncio
    async def test_lock_timeout(self):
        manager = AtomicLockManager()

        async with manager.acquire("wallet_binding:C1", LockOperationType.WALLET_BINDING):
            with pytest.raises(LockTimeoutError) as exc_info:
                async with manager.acquire(
                    "wallet_binding:C1", LockOperationType.WALLET_BINDING, timeout_seconds=0.05
                ):
                    pass

        assert exc_info.value.lock_name == "wallet_binding:C1"
        assert manager.metrics["lock_timeouts"] == 1
        assert manager.active_lock_count == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        manager = AtomicLockManager()

        with pytest.raises(RuntimeError):
            async with manager.acquire("crypto_payment:7", LockOperationType.PAYMENT_PROCESSING):
                raise RuntimeError("boom")

        async with manager.acquire("crypto_payment:7", LockOperationType.PAYMENT_PROCESSING, timeout_seconds=0.05):
            pass
