"""
Web3 Service - request boundary for the ledger core

One coroutine per use case. Each returns an OperationResult instead of
raising for domain failures, so routes and jobs can report the outcome
without knowing the error hierarchy.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from models import CryptoPaymentStatus, Sale
from services.address_binding_registry import AddressBindingRegistry
from services.atomic_lock_manager import AtomicLockManager
from services.confirmation_tracker import ConfirmationTracker
from services.ledger_client import LedgerClient
from services.rate_oracle import ConfiguredRateOracle, RateOracle
from services.reward_receipt_ledger import RewardReceiptLedger
from services.transaction_orchestrator import TransactionOrchestrator
from services.web3_errors import NotFound, SubmissionError, Web3ErrorKind, Web3ServiceError

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Outcome of a boundary operation; soft outcomes are ok with an error_kind"""
    ok: bool
    data: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"ok": self.ok}
        if self.data is not None:
            result["data"] = self.data
        if self.error_kind is not None:
            result["error_kind"] = self.error_kind
        if self.message:
            result["message"] = self.message
        return result


class Web3Service:
    """Binds customer wallets, settles payments, mints receipts and rewards"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: AddressBindingRegistry,
        ledger: RewardReceiptLedger,
        tracker: ConfirmationTracker,
        rate_oracle: RateOracle,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.ledger = ledger
        self.tracker = tracker
        self.rate_oracle = rate_oracle

    async def _run(self, operation: str, action: Callable[[], Awaitable[OperationResult]]) -> OperationResult:
        try:
            return await action()
        except Web3ServiceError as e:
            data = None
            if isinstance(e, SubmissionError):
                data = {"reason": e.reason.value}
            if getattr(e, "transaction_id", None):
                data = dict(data or {}, transaction_hash=e.transaction_id)

            if e.kind in (Web3ErrorKind.SUBMISSION_ERROR, Web3ErrorKind.NODE_UNAVAILABLE):
                logger.error(f"❌ {operation.upper()}_FAILED: [{e.kind.value}] {e.message}")
            else:
                logger.warning(f"⚠️ {operation.upper()}_REJECTED: [{e.kind.value}] {e.message}")
            return OperationResult(ok=False, data=data, error_kind=e.kind.value, message=e.message)

    async def connect_wallet(self, customer_id: str, address: str, kind: Optional[str] = None) -> OperationResult:
        async def action():
            wallet = await self.registry.bind(customer_id, address, kind)
            return OperationResult(ok=True, data=wallet.to_dict(), message="Wallet connected successfully")

        return await self._run("connect_wallet", action)

    async def process_payment(self, sale_id: str, address: str, amount, currency: str) -> OperationResult:
        async def action():
            payment = await self.ledger.record_payment(sale_id, address, currency, amount, self.rate_oracle)
            return OperationResult(ok=True, data=payment.to_dict(), message="Crypto payment processed successfully")

        return await self._run("process_payment", action)

    async def mint_receipt(self, sale_id: str) -> OperationResult:
        async def action():
            async with self.session_factory() as session:
                sale = await session.get(Sale, sale_id)
            if sale is None:
                raise NotFound(f"Sale {sale_id} not found")

            wallet = await self.registry.lookup(sale.customer_id)
            result = await self.ledger.mint_receipt(wallet, sale)
            if result.duplicate:
                return OperationResult(
                    ok=True,
                    data=result.receipt.to_dict(),
                    error_kind=Web3ErrorKind.DUPLICATE_RECEIPT.value,
                    message="NFT receipt already minted for this sale",
                )
            return OperationResult(ok=True, data=result.receipt.to_dict(), message="NFT receipt minted successfully")

        return await self._run("mint_receipt", action)

    async def issue_reward(self, customer_id: str, purchase_amount) -> OperationResult:
        async def action():
            wallet = await self.registry.lookup(customer_id)
            result = await self.ledger.issue_reward(wallet, purchase_amount)
            if result.below_threshold:
                return OperationResult(
                    ok=True,
                    data=result.to_dict(),
                    error_kind=Web3ErrorKind.BELOW_THRESHOLD.value,
                    message="Purchase amount too small for loyalty tokens",
                )
            return OperationResult(
                ok=True,
                data=result.to_dict(),
                message=f"Issued {result.tokens_issued} loyalty tokens successfully",
            )

        return await self._run("issue_reward", action)

    async def get_wallet_info(self, customer_id: str) -> OperationResult:
        async def action():
            wallet = await self.registry.lookup(customer_id)
            return OperationResult(ok=True, data=wallet.to_dict())

        return await self._run("get_wallet_info", action)

    async def get_loyalty_balance(self, customer_id: str) -> OperationResult:
        async def action():
            wallet = await self.registry.lookup(customer_id)
            return OperationResult(ok=True, data=await self.ledger.get_loyalty_balance(wallet))

        return await self._run("get_loyalty_balance", action)

    async def verify_payment(self, payment_id: int) -> OperationResult:
        async def action():
            payment = await self.ledger.refresh_payment(payment_id)
            required = self.tracker.required_confirmations_for(payment.currency)
            data = payment.to_dict()
            data["required_confirmations"] = required
            data["is_final"] = payment.status == CryptoPaymentStatus.COMPLETED.value and payment.confirmations >= required
            return OperationResult(ok=True, data=data)

        return await self._run("verify_payment", action)


def create_web3_service(
    session_factory: async_sessionmaker,
    ledger_client: LedgerClient,
    rate_oracle: Optional[RateOracle] = None,
    lock_manager: Optional[AtomicLockManager] = None,
) -> Web3Service:
    """Wire the ledger core around one ledger client with configured defaults"""
    lock_manager = lock_manager or AtomicLockManager()
    orchestrator = TransactionOrchestrator(ledger_client, lock_manager)
    tracker = ConfirmationTracker(ledger_client)
    ledger = RewardReceiptLedger(session_factory, orchestrator, tracker, lock_manager)
    registry = AddressBindingRegistry(session_factory, lock_manager)
    return Web3Service(
        session_factory=session_factory,
        registry=registry,
        ledger=ledger,
        tracker=tracker,
        rate_oracle=rate_oracle or ConfiguredRateOracle(),
    )
