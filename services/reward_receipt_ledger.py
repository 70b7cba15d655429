"""
Reward/Receipt Ledger
Translates orchestrator outcomes into durable domain records.

Handles:
- Crypto payments: pending record -> settlement -> completed/failed
- NFT receipts: one receipt per sale per wallet, checked before any mint call
- Loyalty rewards: whole tokens per reward unit, balance kept in step with mints
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from database import managed_session
from models import (
    CryptoPayment, CryptoPaymentStatus, CustomerWallet, NftReceipt, PaymentCurrency,
    Sale, WalletKind, utc_now,
)
from services.atomic_lock_manager import AtomicLockManager, LockOperationType
from services.confirmation_tracker import ConfirmationTracker
from services.contract_encoding import (
    ERC20_TRANSFER, LOYALTY_BALANCE_OF, LOYALTY_MINT, RECEIPT_MINT, receipt_token_id,
)
from services.rate_oracle import RateOracle
from services.transaction_orchestrator import TransactionOrchestrator, TransactionOutcome
from services.web3_errors import (
    InvalidAddress, InvalidAmount, LedgerNotConfigured, NodeUnavailable, NotFound,
    SubmissionError, UnsupportedCurrency,
)
from utils.address_validation import validate_wallet_address
from utils.decimal_precision import MonetaryDecimal, format_token_amount, to_base_units

logger = logging.getLogger(__name__)

# Currencies that settle on the ledger this core talks to
SETTLEABLE_CURRENCIES = (PaymentCurrency.ETH, PaymentCurrency.USDT, PaymentCurrency.USDC)


@dataclass
class MintReceiptResult:
    """Receipt for a sale; `duplicate` when it already existed and nothing was minted"""
    receipt: NftReceipt
    duplicate: bool = False


@dataclass
class RewardIssueResult:
    """Outcome of a reward issuance; `below_threshold` marks a zero-effect success"""
    tokens_issued: int
    transaction_id: Optional[str] = None
    below_threshold: bool = False
    new_balance: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens_issued": self.tokens_issued,
            "transaction_hash": self.transaction_id,
            "loyalty_token_balance": self.new_balance,
        }


def parse_payment_currency(currency: Union[str, PaymentCurrency, None]) -> PaymentCurrency:
    """Resolve a currency code; unknown codes are unsupported"""
    if isinstance(currency, PaymentCurrency):
        return currency
    try:
        return PaymentCurrency(str(currency or PaymentCurrency.ETH.value).upper())
    except ValueError:
        raise UnsupportedCurrency(f"Unsupported payment currency: {currency}")


class RewardReceiptLedger:
    """Idempotent bookkeeping for payments, receipts and loyalty rewards"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        orchestrator: TransactionOrchestrator,
        tracker: ConfirmationTracker,
        lock_manager: AtomicLockManager,
        receipt_contract_address: Optional[str] = None,
        loyalty_contract_address: Optional[str] = None,
        loyalty_decimals: Optional[int] = None,
        reward_unit_value: Optional[Decimal] = None,
        store_wallet_address: Optional[str] = None,
        stablecoin_contracts: Optional[Dict[str, str]] = None,
        stablecoin_decimals: Optional[Dict[str, int]] = None,
        fiat_currency: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.tracker = tracker
        self.lock_manager = lock_manager
        self.receipt_contract_address = (
            receipt_contract_address if receipt_contract_address is not None
            else Config.NFT_RECEIPT_CONTRACT_ADDRESS
        )
        self.loyalty_contract_address = (
            loyalty_contract_address if loyalty_contract_address is not None
            else Config.LOYALTY_TOKEN_CONTRACT_ADDRESS
        )
        self.loyalty_decimals = loyalty_decimals if loyalty_decimals is not None else Config.LOYALTY_TOKEN_DECIMALS
        self.reward_unit_value = MonetaryDecimal.to_decimal(
            reward_unit_value if reward_unit_value is not None else Config.REWARD_UNIT_VALUE,
            "reward_unit_value",
        )
        if self.reward_unit_value <= 0:
            raise ValueError(f"Reward unit value must be positive: {self.reward_unit_value}")
        self.store_wallet_address = (
            store_wallet_address if store_wallet_address is not None else Config.STORE_WALLET_ADDRESS
        )
        self.stablecoin_contracts = dict(
            stablecoin_contracts if stablecoin_contracts is not None else Config.STABLECOIN_CONTRACTS
        )
        self.stablecoin_decimals = dict(
            stablecoin_decimals if stablecoin_decimals is not None else Config.STABLECOIN_DECIMALS
        )
        self.fiat_currency = fiat_currency or Config.FIAT_CURRENCY

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def record_payment(
        self,
        sale_id: str,
        wallet_address: str,
        currency: Union[str, PaymentCurrency],
        amount,
        rate_oracle: RateOracle,
    ) -> CryptoPayment:
        """
        Price, record and settle a crypto payment for a sale

        The record is written as pending before submission. It becomes
        completed on inclusion, or failed when the node rejects the
        transaction. When the node accepted the transaction but inclusion was
        not observed (timeout, lost contact) the record stays pending with the
        transaction hash so the confirmation monitor can settle it later.

        Args:
            sale_id: Sale being paid
            wallet_address: Paying address (key held by the node)
            currency: Payment currency code
            amount: Amount in whole units of `currency`
            rate_oracle: Source of the currency -> fiat rate

        Returns:
            The completed CryptoPayment

        Raises:
            UnsupportedCurrency, InvalidAmount, InvalidAddress, NotFound,
            RateUnavailable, LedgerNotConfigured: before anything is written
            SubmissionError, NodeUnavailable: after the pending record is written
        """
        payment_currency = parse_payment_currency(currency)
        if payment_currency not in SETTLEABLE_CURRENCIES:
            raise UnsupportedCurrency(f"{payment_currency.value} payments cannot settle on this ledger")

        amount_decimal = MonetaryDecimal.to_decimal(amount, "payment_amount")
        if amount_decimal <= 0:
            raise InvalidAmount(f"Payment amount must be positive: {amount}")

        is_valid, message = validate_wallet_address(wallet_address, WalletKind.ETHEREUM)
        if not is_valid:
            raise InvalidAddress(message)

        if not self.store_wallet_address:
            raise LedgerNotConfigured("STORE_WALLET_ADDRESS is not configured")

        token_contract = None
        decimals = Config.NATIVE_DECIMALS
        if payment_currency != PaymentCurrency.ETH:
            token_contract = self.stablecoin_contracts.get(payment_currency.value)
            if not token_contract:
                raise LedgerNotConfigured(f"No token contract configured for {payment_currency.value}")
            decimals = int(self.stablecoin_decimals.get(payment_currency.value, 6))

        try:
            base_units = to_base_units(amount_decimal, decimals)
        except ValueError as e:
            raise InvalidAmount(str(e)) from e

        async with self.session_factory() as session:
            sale = await session.get(Sale, sale_id)
            if sale is None:
                raise NotFound(f"Sale {sale_id} not found")
            customer_id = sale.customer_id

        rate = MonetaryDecimal.quantize_rate(
            await rate_oracle.get_rate(payment_currency.value, self.fiat_currency)
        )
        amount_in_fiat = MonetaryDecimal.multiply_precise(amount_decimal, rate)

        payment = CryptoPayment(
            sale_id=sale_id,
            customer_id=customer_id,
            wallet_address=wallet_address,
            currency=payment_currency.value,
            amount=amount_decimal,
            amount_in_fiat=amount_in_fiat,
            exchange_rate=rate,
            status=CryptoPaymentStatus.PENDING.value,
            confirmations=0,
        )
        async with managed_session(self.session_factory) as session:
            session.add(payment)
        payment_id = payment.id

        logger.info(
            f"💳 PAYMENT_PENDING: id={payment_id} sale={sale_id} {amount_decimal} {payment_currency.value} "
            f"= {amount_in_fiat} {self.fiat_currency} @ {rate}"
        )

        try:
            if token_contract is None:
                outcome = await self.orchestrator.submit_transfer(
                    wallet_address, self.store_wallet_address, amount_decimal, decimals
                )
            else:
                outcome = await self.orchestrator.submit_contract_call(
                    token_contract, ERC20_TRANSFER, [self.store_wallet_address, base_units], signer=wallet_address
                )
        except (SubmissionError, NodeUnavailable) as e:
            await self._record_settlement_failure(payment_id, e)
            raise

        return await self._complete_payment(payment_id, outcome.transaction_id, outcome.block_number, 1)

    async def _record_settlement_failure(self, payment_id: int, error: Union[SubmissionError, NodeUnavailable]):
        async with self.lock_manager.acquire(
            f"crypto_payment:{payment_id}", LockOperationType.PAYMENT_PROCESSING, resource_id=str(payment_id)
        ):
            async with self.session_factory() as session:
                payment = await session.get(CryptoPayment, payment_id)
                payment.error_message = error.message
                payment.updated_at = utc_now()
                if error.transaction_id:
                    # Accepted by the node; settlement is decided from confirmations later
                    payment.transaction_hash = error.transaction_id
                    logger.warning(
                        f"⏳ PAYMENT_AWAITING_CONFIRMATION: id={payment_id} tx={error.transaction_id}: {error.message}"
                    )
                else:
                    payment.status = CryptoPaymentStatus.FAILED.value
                    logger.error(f"❌ PAYMENT_FAILED: id={payment_id}: {error.message}")
                await session.commit()

    async def _complete_payment(
        self,
        payment_id: int,
        transaction_id: str,
        block_number: Optional[int],
        confirmations: int,
    ) -> CryptoPayment:
        """Move a pending payment to completed and credit the sale in one commit"""
        async with self.lock_manager.acquire(
            f"crypto_payment:{payment_id}", LockOperationType.PAYMENT_PROCESSING, resource_id=str(payment_id)
        ):
            async with self.session_factory() as session:
                payment = await session.get(CryptoPayment, payment_id)
                if payment is None:
                    raise NotFound(f"Payment {payment_id} not found")
                if payment.status != CryptoPaymentStatus.PENDING.value:
                    return payment

                now = utc_now()
                payment.status = CryptoPaymentStatus.COMPLETED.value
                payment.transaction_hash = transaction_id
                payment.block_number = block_number
                payment.confirmations = max(1, confirmations)
                payment.error_message = None
                payment.completed_at = now
                payment.updated_at = now

                await session.execute(
                    update(Sale)
                    .where(Sale.id == payment.sale_id)
                    .values(paid=Sale.paid + payment.amount_in_fiat)
                )
                await session.commit()

        logger.info(
            f"✅ PAYMENT_COMPLETED: id={payment_id} tx={transaction_id} block={block_number} "
            f"credited {payment.amount_in_fiat} to sale {payment.sale_id}"
        )
        return payment

    async def refresh_payment(self, payment_id: int) -> CryptoPayment:
        """
        Re-query the ledger for a payment's transaction and update the record

        Pending payments with a transaction hash are completed once included.
        Completed payments get a fresh confirmation count. Failed payments are
        terminal and returned unchanged. Nothing is ever resubmitted.
        """
        async with self.session_factory() as session:
            payment = await session.get(CryptoPayment, payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")
        if payment.status == CryptoPaymentStatus.FAILED.value or not payment.transaction_hash:
            return payment

        status = await self.tracker.status_of(payment.transaction_hash)

        if payment.status == CryptoPaymentStatus.PENDING.value:
            if not status.included:
                logger.info(f"⏳ PAYMENT_STILL_PENDING: id={payment_id} tx={payment.transaction_hash}")
                return payment
            return await self._complete_payment(
                payment_id, payment.transaction_hash, status.block_number, status.confirmations
            )

        if not status.included:
            logger.warning(
                f"⚠️ PAYMENT_TX_NOT_INCLUDED: completed payment {payment_id} tx={payment.transaction_hash} "
                f"is not in a block at the moment - keeping last known confirmations"
            )
            return payment

        async with self.lock_manager.acquire(
            f"crypto_payment:{payment_id}", LockOperationType.PAYMENT_PROCESSING, resource_id=str(payment_id)
        ):
            async with self.session_factory() as session:
                payment = await session.get(CryptoPayment, payment_id)
                payment.confirmations = status.confirmations
                payment.block_number = status.block_number
                payment.updated_at = utc_now()
                await session.commit()

        logger.debug(f"🔎 PAYMENT_CONFIRMATIONS: id={payment_id} confirmations={status.confirmations}")
        return payment

    async def list_unsettled_payments(self, limit: int = 100) -> List[Tuple[int, str]]:
        """Payments the monitor should re-query: pending with a hash, or completed short of finality"""
        finality_target = max(
            [self.tracker.default_finality, *self.tracker.finality_confirmations.values()]
        )
        async with self.session_factory() as session:
            result = await session.execute(
                select(CryptoPayment.id, CryptoPayment.status)
                .where(CryptoPayment.transaction_hash.is_not(None))
                .where(
                    or_(
                        CryptoPayment.status == CryptoPaymentStatus.PENDING.value,
                        (CryptoPayment.status == CryptoPaymentStatus.COMPLETED.value)
                        & (CryptoPayment.confirmations < finality_target),
                    )
                )
                .order_by(CryptoPayment.created_at)
                .limit(limit)
            )
            return [(payment_id, status) for payment_id, status in result.all()]

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def mint_receipt(self, wallet: CustomerWallet, sale: Sale) -> MintReceiptResult:
        """
        Mint the receipt token for a sale unless the wallet already has one

        The duplicate check runs before any contract call, under a lock keyed
        by wallet and sale, so concurrent requests mint at most once.

        Raises:
            InvalidAddress: Wallet is not on the chain-native kind
            LedgerNotConfigured: No receipt contract configured
            SubmissionError, NodeUnavailable: Mint call failed
        """
        async with self.lock_manager.acquire(
            f"nft_receipt:{wallet.id}:{sale.id}", LockOperationType.RECEIPT_MINT, resource_id=sale.id
        ):
            async with self.session_factory() as session:
                existing = await self._find_receipt(session, wallet.id, sale.id)
            if existing is not None:
                logger.info(f"♻️ RECEIPT_DUPLICATE: sale={sale.id} already has token {existing.token_id}")
                return MintReceiptResult(receipt=existing, duplicate=True)

            if wallet.wallet_type != WalletKind.ETHEREUM.value:
                raise InvalidAddress(f"Receipts can only be minted to {WalletKind.ETHEREUM.value} wallets")
            if not self.receipt_contract_address:
                raise LedgerNotConfigured("NFT_RECEIPT_CONTRACT_ADDRESS is not configured")

            token_id = receipt_token_id(sale.id)
            outcome = await self.orchestrator.submit_contract_call(
                self.receipt_contract_address, RECEIPT_MINT, [wallet.wallet_address, token_id]
            )
            return await self._store_receipt(wallet, sale, token_id, outcome)

    async def _store_receipt(
        self, wallet: CustomerWallet, sale: Sale, token_id: int, outcome: TransactionOutcome
    ) -> MintReceiptResult:
        receipt = NftReceipt(
            wallet_id=wallet.id,
            token_id=str(token_id),
            sale_id=sale.id,
            transaction_hash=outcome.transaction_id,
        )
        async with self.session_factory() as session:
            session.add(receipt)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_receipt(session, wallet.id, sale.id)
                if existing is None:
                    raise
                logger.warning(f"♻️ RECEIPT_DUPLICATE: sale={sale.id} recorded concurrently by another process")
                return MintReceiptResult(receipt=existing, duplicate=True)

        logger.info(
            f"🧾 RECEIPT_MINTED: sale={sale.id} token={token_id} wallet={wallet.wallet_address} "
            f"tx={outcome.transaction_id}"
        )
        return MintReceiptResult(receipt=receipt)

    @staticmethod
    async def _find_receipt(session: AsyncSession, wallet_id: int, sale_id: str) -> Optional[NftReceipt]:
        result = await session.execute(
            select(NftReceipt).where(NftReceipt.wallet_id == wallet_id, NftReceipt.sale_id == sale_id)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Loyalty rewards
    # ------------------------------------------------------------------

    def tokens_for(self, purchase_amount) -> int:
        """Whole loyalty tokens earned for a purchase"""
        amount = MonetaryDecimal.to_decimal(purchase_amount, "purchase_amount")
        return int((amount / self.reward_unit_value).to_integral_value(rounding=ROUND_FLOOR))

    async def issue_reward(self, wallet: CustomerWallet, purchase_amount) -> RewardIssueResult:
        """
        Mint loyalty tokens for a purchase and credit the wallet balance

        Returns a below-threshold result (no mint, balance unchanged) when the
        purchase earns no whole token.

        Raises:
            InvalidAddress: Wallet is not on the chain-native kind
            LedgerNotConfigured: No loyalty token contract configured
            SubmissionError, NodeUnavailable: Mint call failed
        """
        tokens_issued = self.tokens_for(purchase_amount)
        if tokens_issued <= 0:
            logger.info(
                f"🪙 REWARD_BELOW_THRESHOLD: customer={wallet.customer_id} purchase={purchase_amount} "
                f"unit={self.reward_unit_value}"
            )
            return RewardIssueResult(
                tokens_issued=0, below_threshold=True, new_balance=wallet.loyalty_token_balance
            )

        if wallet.wallet_type != WalletKind.ETHEREUM.value:
            raise InvalidAddress(f"Loyalty tokens can only be minted to {WalletKind.ETHEREUM.value} wallets")
        if not self.loyalty_contract_address:
            raise LedgerNotConfigured("LOYALTY_TOKEN_CONTRACT_ADDRESS is not configured")

        async with self.lock_manager.acquire(
            f"customer_wallet:{wallet.id}", LockOperationType.WALLET_BALANCE_UPDATE, resource_id=wallet.customer_id
        ):
            outcome = await self.orchestrator.submit_contract_call(
                self.loyalty_contract_address,
                LOYALTY_MINT,
                [wallet.wallet_address, tokens_issued * 10 ** self.loyalty_decimals],
            )

            async with self.session_factory() as session:
                await session.execute(
                    update(CustomerWallet)
                    .where(CustomerWallet.id == wallet.id)
                    .values(
                        loyalty_token_balance=CustomerWallet.loyalty_token_balance + tokens_issued,
                        updated_at=utc_now(),
                    )
                )
                await session.commit()
                new_balance = await session.scalar(
                    select(CustomerWallet.loyalty_token_balance).where(CustomerWallet.id == wallet.id)
                )

        logger.info(
            f"🪙 REWARD_ISSUED: customer={wallet.customer_id} tokens={tokens_issued} "
            f"balance={new_balance} tx={outcome.transaction_id}"
        )
        return RewardIssueResult(
            tokens_issued=tokens_issued, transaction_id=outcome.transaction_id, new_balance=new_balance
        )

    async def get_loyalty_balance(self, wallet: CustomerWallet) -> Dict[str, Any]:
        """On-chain loyalty token balance for a wallet"""
        if wallet.wallet_type != WalletKind.ETHEREUM.value:
            raise InvalidAddress(f"Loyalty balances exist only for {WalletKind.ETHEREUM.value} wallets")
        if not self.loyalty_contract_address:
            raise LedgerNotConfigured("LOYALTY_TOKEN_CONTRACT_ADDRESS is not configured")

        (raw_balance,) = await self.orchestrator.ledger_client.read(
            self.loyalty_contract_address, LOYALTY_BALANCE_OF, [wallet.wallet_address]
        )
        return {
            "wallet_address": wallet.wallet_address,
            "balance": format_token_amount(raw_balance, self.loyalty_decimals),
            "raw_balance": str(raw_balance),
            "recorded_balance": wallet.loyalty_token_balance,
        }
