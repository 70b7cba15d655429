"""
Confirmation Tracker
Counts confirmations for a transaction relative to current chain height.

Nothing is cached: every call re-queries both the transaction and the chain
height, so a reorganization that moves (or drops) the inclusion block is seen
on the next call.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from config import Config
from services.ledger_client import LedgerClient

logger = logging.getLogger(__name__)


@dataclass
class ConfirmationStatus:
    """Snapshot of a transaction's settlement at query time"""
    transaction_id: str
    block_number: Optional[int]
    confirmations: int

    @property
    def included(self) -> bool:
        return self.block_number is not None


class ConfirmationTracker:
    """Reports settlement progress for transactions from the ledger node"""

    def __init__(
        self,
        ledger_client: LedgerClient,
        finality_confirmations: Optional[Dict[str, int]] = None,
        default_finality: Optional[int] = None,
    ):
        self.ledger_client = ledger_client
        self.finality_confirmations = dict(
            finality_confirmations if finality_confirmations is not None else Config.FINALITY_CONFIRMATIONS
        )
        self.default_finality = (
            default_finality if default_finality is not None else Config.DEFAULT_FINALITY_CONFIRMATIONS
        )

    async def status_of(self, transaction_id: str) -> ConfirmationStatus:
        transaction = await self.ledger_client.get_transaction(transaction_id)
        if transaction is None or transaction.block_number is None:
            return ConfirmationStatus(transaction_id, None, 0)

        height = await self.ledger_client.get_block_height()
        confirmations = max(0, height - transaction.block_number + 1)
        logger.debug(
            f"🔎 CONFIRMATIONS: {transaction_id} block={transaction.block_number} "
            f"height={height} confirmations={confirmations}"
        )
        return ConfirmationStatus(transaction_id, transaction.block_number, confirmations)

    async def confirmations_of(self, transaction_id: str) -> int:
        """
        Number of blocks since inclusion, counting the inclusion block itself

        Returns 0 for unknown or pending transactions. Never negative.
        """
        return (await self.status_of(transaction_id)).confirmations

    async def is_confirmed(self, transaction_id: str, required_confirmations: int = 1) -> bool:
        return await self.confirmations_of(transaction_id) >= required_confirmations

    def required_confirmations_for(self, currency: str) -> int:
        """Finality threshold for a payment currency"""
        return self.finality_confirmations.get(currency, self.default_finality)

    async def is_final(self, transaction_id: str, currency: str) -> bool:
        return await self.is_confirmed(transaction_id, self.required_confirmations_for(currency))
