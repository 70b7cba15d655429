"""
Transaction Orchestrator
Submission, inclusion wait, timeouts and per-address serialization
"""

import asyncio
from decimal import Decimal

import pytest

from conftest import CUSTOMER_ADDRESS, OTHER_ADDRESS, RECEIPT_CONTRACT, SIGNER_ADDRESS, STORE_ADDRESS
from services.contract_encoding import RECEIPT_MINT
from services.ledger_client import TRANSFER_GAS_LIMIT
from services.transaction_orchestrator import TransactionOrchestrator
from services.web3_errors import (
    InvalidAmount, LedgerNotConfigured, NodeUnavailable, SubmissionError, SubmissionReason,
)


async def _wait_for(predicate, timeout=1.0):
    """Yield to the loop until predicate() holds"""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestSubmitTransfer:

    @pytest.mark.asyncio
    async def test_transfer_uses_standard_gas_and_node_price(self, orchestrator, fake_ledger):
        outcome = await orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, Decimal("1"))

        assert outcome.submitted
        assert outcome.transaction_id.startswith("0x")
        assert outcome.block_number == fake_ledger.block_height

        tx = fake_ledger.submitted[0]
        assert tx.gas_limit == TRANSFER_GAS_LIMIT
        assert tx.gas_price == fake_ledger.gas_price
        assert tx.value == 10**18
        assert tx.to_address == STORE_ADDRESS

    @pytest.mark.asyncio
    async def test_waits_for_inclusion(self, orchestrator, fake_ledger):
        fake_ledger.auto_include = False
        task = asyncio.create_task(orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, "0.5"))

        await _wait_for(lambda: len(fake_ledger.submitted) == 1)
        await asyncio.sleep(0.05)
        assert not task.done()

        fake_ledger.include(fake_ledger.pending_ids()[0], block_number=150)
        outcome = await task
        assert outcome.block_number == 150

    @pytest.mark.asyncio
    async def test_rejection_is_reported_not_retried(self, orchestrator, fake_ledger):
        fake_ledger.submit_error = SubmissionError("nonce too low", reason=SubmissionReason.NONCE_CONFLICT)

        with pytest.raises(SubmissionError) as exc_info:
            await orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, 1)

        assert exc_info.value.reason == SubmissionReason.NONCE_CONFLICT
        assert fake_ledger.submitted == []

    @pytest.mark.asyncio
    async def test_inclusion_timeout_carries_transaction_id(self, fake_ledger, lock_manager):
        orchestrator = TransactionOrchestrator(fake_ledger, lock_manager, inclusion_timeout=0.1, poll_interval=0.01)
        fake_ledger.auto_include = False

        with pytest.raises(SubmissionError) as exc_info:
            await orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, 1)

        error = exc_info.value
        assert error.is_timeout
        assert error.transaction_id in fake_ledger.transactions
        assert not lock_manager.is_locked(f"source_address:{CUSTOMER_ADDRESS.lower()}")

    @pytest.mark.asyncio
    async def test_node_loss_during_wait_keeps_transaction_id(self, orchestrator, fake_ledger):
        fake_ledger.auto_include = False

        async def unreachable(transaction_id):
            raise NodeUnavailable("connection refused")

        fake_ledger.get_transaction = unreachable

        with pytest.raises(NodeUnavailable) as exc_info:
            await orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, 1)
        assert exc_info.value.transaction_id is not None

    @pytest.mark.asyncio
    async def test_node_error_during_wait_keeps_transaction_id(self, orchestrator, fake_ledger):
        fake_ledger.auto_include = False

        async def reverted_lookup(transaction_id):
            raise SubmissionError("execution reverted", reason=SubmissionReason.REVERTED)

        fake_ledger.get_transaction = reverted_lookup

        with pytest.raises(SubmissionError) as exc_info:
            await orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, 1)
        assert exc_info.value.reason == SubmissionReason.REVERTED
        assert exc_info.value.transaction_id == fake_ledger.pending_ids()[0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1, "not-a-number", "0.0000000000000000001"])
    async def test_invalid_amounts(self, orchestrator, fake_ledger, amount):
        with pytest.raises(InvalidAmount):
            await orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, amount)
        assert fake_ledger.submitted == []


class TestSourceAddressSerialization:

    @pytest.mark.asyncio
    async def test_same_source_submits_one_at_a_time(self, orchestrator, fake_ledger):
        fake_ledger.auto_include = False
        first = asyncio.create_task(orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, 1))
        second = asyncio.create_task(orchestrator.submit_transfer(CUSTOMER_ADDRESS.lower(), STORE_ADDRESS, 2))

        await _wait_for(lambda: len(fake_ledger.submitted) == 1)
        await asyncio.sleep(0.05)
        assert len(fake_ledger.submitted) == 1

        fake_ledger.include(fake_ledger.pending_ids()[0])
        await _wait_for(lambda: len(fake_ledger.submitted) == 2)
        fake_ledger.include(fake_ledger.pending_ids()[0])

        await asyncio.gather(first, second)
        assert fake_ledger.max_in_flight[CUSTOMER_ADDRESS.lower()] == 1

    @pytest.mark.asyncio
    async def test_different_sources_do_not_block_each_other(self, orchestrator, fake_ledger):
        fake_ledger.auto_include = False
        tasks = [
            asyncio.create_task(orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, 1)),
            asyncio.create_task(orchestrator.submit_transfer(OTHER_ADDRESS, STORE_ADDRESS, 1)),
        ]

        await _wait_for(lambda: len(fake_ledger.submitted) == 2)
        for transaction_id in fake_ledger.pending_ids():
            fake_ledger.include(transaction_id)
        outcomes = await asyncio.gather(*tasks)
        assert all(outcome.submitted for outcome in outcomes)

    @pytest.mark.asyncio
    async def test_nonce_managing_client_skips_serialization(self, orchestrator, fake_ledger):
        fake_ledger.auto_include = False
        fake_ledger.manages_nonces = True
        tasks = [
            asyncio.create_task(orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, 1)),
            asyncio.create_task(orchestrator.submit_transfer(CUSTOMER_ADDRESS, STORE_ADDRESS, 2)),
        ]

        await _wait_for(lambda: len(fake_ledger.submitted) == 2)
        for transaction_id in fake_ledger.pending_ids():
            fake_ledger.include(transaction_id)
        await asyncio.gather(*tasks)
        assert fake_ledger.max_in_flight[CUSTOMER_ADDRESS.lower()] == 2


class TestSubmitContractCall:

    @pytest.mark.asyncio
    async def test_contract_call_uses_configured_signer(self, orchestrator, fake_ledger):
        outcome = await orchestrator.submit_contract_call(RECEIPT_CONTRACT, RECEIPT_MINT, [CUSTOMER_ADDRESS, 42])

        assert outcome.submitted
        contract, method, args, signer = fake_ledger.contract_calls[0]
        assert contract == RECEIPT_CONTRACT
        assert method == RECEIPT_MINT
        assert args == [CUSTOMER_ADDRESS, 42]
        assert signer == SIGNER_ADDRESS
        assert fake_ledger.submitted[0].data.startswith("0x40c10f19")

    @pytest.mark.asyncio
    async def test_contract_call_without_signer(self, fake_ledger, lock_manager, monkeypatch):
        monkeypatch.setattr("services.transaction_orchestrator.Config.SIGNER_ADDRESS", "")
        orchestrator = TransactionOrchestrator(fake_ledger, lock_manager)

        with pytest.raises(LedgerNotConfigured):
            await orchestrator.submit_contract_call(RECEIPT_CONTRACT, RECEIPT_MINT, [CUSTOMER_ADDRESS, 1])
        assert fake_ledger.contract_calls == []
