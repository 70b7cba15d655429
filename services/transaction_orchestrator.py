"""
Transaction Orchestrator
Drives one logical ledger operation (transfer or contract call) from
submission to inclusion.

Each operation suspends twice: on the submission round trip and while
waiting for inclusion. Neither blocks unrelated operations. Submissions from
the same source address are serialized so that at most one unconfirmed
transaction per address is in flight, unless the ledger client allocates
nonces itself.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

from config import Config
from services.atomic_lock_manager import AtomicLockManager, LockOperationType, LockTimeoutError
from services.contract_encoding import AbiMethod
from services.ledger_client import LedgerClient, TRANSFER_GAS_LIMIT, TransactionRequest
from services.web3_errors import (
    InvalidAmount, LedgerNotConfigured, NodeUnavailable, SubmissionError, SubmissionReason
)
from utils.decimal_precision import MonetaryDecimal, to_base_units

logger = logging.getLogger(__name__)


@dataclass
class TransactionOutcome:
    """Result of one orchestrated operation (not persisted)"""
    submitted: bool
    transaction_id: Optional[str] = None
    block_number: Optional[int] = None
    error: Optional[str] = None


class TransactionOrchestrator:
    """Submits transactions through a LedgerClient and waits for inclusion"""

    def __init__(
        self,
        ledger_client: LedgerClient,
        lock_manager: Optional[AtomicLockManager] = None,
        inclusion_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        source_lock_timeout: Optional[float] = None,
        signer_address: Optional[str] = None,
    ):
        self.ledger_client = ledger_client
        self.lock_manager = lock_manager or AtomicLockManager()
        self.inclusion_timeout = (
            inclusion_timeout if inclusion_timeout is not None else Config.LEDGER_INCLUSION_TIMEOUT
        )
        self.poll_interval = poll_interval if poll_interval is not None else Config.LEDGER_POLL_INTERVAL
        self.source_lock_timeout = source_lock_timeout
        self.signer_address = signer_address or Config.SIGNER_ADDRESS

    async def submit_transfer(
        self,
        from_address: str,
        to_address: str,
        amount,
        decimals: int = Config.NATIVE_DECIMALS,
    ) -> TransactionOutcome:
        """
        Transfer native value and wait until the node reports inclusion

        Args:
            from_address: Paying address (key held by the node)
            to_address: Receiving address
            amount: Amount in whole native units (e.g. ETH)
            decimals: Native token precision

        Raises:
            InvalidAmount: Non-positive amount or more precision than the chain supports
            SubmissionError: Node rejected the transaction or inclusion timed out
            NodeUnavailable: Transport failure
        """
        value = self._to_base_units(amount, decimals)

        async with self._source_slot(from_address):
            gas_price = await self.ledger_client.get_gas_price()
            tx = TransactionRequest(
                from_address=from_address,
                to_address=to_address,
                value=value,
                gas_limit=TRANSFER_GAS_LIMIT,
                gas_price=gas_price,
            )
            transaction_id = await self.ledger_client.submit_transaction(tx)
            logger.info(f"🚀 TRANSFER_SUBMITTED: {transaction_id} {from_address} -> {to_address} value={value}")
            block_number = await self._await_inclusion(transaction_id)

        logger.info(f"✅ TRANSFER_INCLUDED: {transaction_id} in block {block_number}")
        return TransactionOutcome(submitted=True, transaction_id=transaction_id, block_number=block_number)

    async def submit_contract_call(
        self,
        contract_address: str,
        method: AbiMethod,
        args: Sequence[Any],
        signer: Optional[str] = None,
    ) -> TransactionOutcome:
        """
        Submit a state-changing contract call and wait for inclusion

        The call is signed by `signer`, or the configured signer address.

        Raises:
            SubmissionError: Encoding failure, node rejection or inclusion timeout
            NodeUnavailable: Transport failure
        """
        signer = signer or self.signer_address
        if not signer:
            raise LedgerNotConfigured("No signer address configured for contract calls")

        async with self._source_slot(signer):
            transaction_id = await self.ledger_client.call(contract_address, method, args, signer)
            logger.info(f"🚀 CONTRACT_CALL_SUBMITTED: {transaction_id} {method.signature} on {contract_address}")
            block_number = await self._await_inclusion(transaction_id)

        logger.info(f"✅ CONTRACT_CALL_INCLUDED: {transaction_id} in block {block_number}")
        return TransactionOutcome(submitted=True, transaction_id=transaction_id, block_number=block_number)

    @staticmethod
    def _to_base_units(amount, decimals: int) -> int:
        amount_decimal = MonetaryDecimal.to_decimal(amount, "transfer_amount")
        if amount_decimal <= 0:
            raise InvalidAmount(f"Transfer amount must be positive: {amount}")
        try:
            return to_base_units(amount_decimal, decimals)
        except ValueError as e:
            raise InvalidAmount(str(e)) from e

    @asynccontextmanager
    async def _source_slot(self, source_address: str) -> AsyncIterator[None]:
        """Hold the per-address submission slot from submit until inclusion"""
        if self.ledger_client.manages_nonces:
            yield
            return

        lock_name = f"source_address:{source_address.lower()}"
        try:
            async with self.lock_manager.acquire(
                lock_name,
                LockOperationType.NONCE_SEQUENCING,
                resource_id=source_address,
                timeout_seconds=self.source_lock_timeout,
            ):
                yield
        except LockTimeoutError as e:
            raise SubmissionError(
                f"Another transaction from {source_address} is still awaiting inclusion",
                reason=SubmissionReason.NONCE_CONFLICT,
            ) from e

    async def _await_inclusion(self, transaction_id: str) -> int:
        """
        Suspend until the transaction is in a block

        A timeout is a reporting decision only: the transaction may still be
        included later, so its id travels with the error for later settlement.
        Any ledger error raised while polling carries the id the same way.
        """
        try:
            return await asyncio.wait_for(self._poll_inclusion(transaction_id), self.inclusion_timeout)
        except NodeUnavailable as e:
            raise NodeUnavailable(
                f"Lost contact with ledger node while waiting for {transaction_id}: {e}",
                transaction_id=transaction_id,
            ) from e
        except SubmissionError as e:
            raise SubmissionError(
                f"Error while waiting for {transaction_id}: {e.message}",
                reason=e.reason,
                transaction_id=transaction_id,
            ) from e
        except asyncio.TimeoutError:
            logger.warning(
                f"⏰ INCLUSION_TIMEOUT: {transaction_id} not included after {self.inclusion_timeout}s"
            )
            raise SubmissionError(
                f"Transaction {transaction_id} not included within {self.inclusion_timeout}s",
                reason=SubmissionReason.TIMEOUT,
                transaction_id=transaction_id,
            )

    async def _poll_inclusion(self, transaction_id: str) -> int:
        while True:
            transaction = await self.ledger_client.get_transaction(transaction_id)
            if transaction is not None and transaction.block_number is not None:
                return transaction.block_number
            await asyncio.sleep(self.poll_interval)
