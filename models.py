"""
W3bStore Ledger Core - Database Schema
======================================

Persisted state owned by the blockchain orchestration layer:
- Customer wallet bindings (one on-chain address per customer)
- NFT receipt records minted for sales
- Crypto payment records and their confirmation state

Customers and sales are kept to the columns the ledger core reads and writes;
the rest of the store's CRUD lives elsewhere.
"""

from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class WalletKind(Enum):
    """Address families a customer wallet can be bound to"""
    ETHEREUM = "ethereum"  # chain-native kind
    BITCOIN = "bitcoin"
    OTHER = "other"


class PaymentCurrency(Enum):
    """Currencies accepted for crypto payments"""
    ETH = "ETH"    # native
    USDT = "USDT"  # stable A
    USDC = "USDC"  # stable B
    BTC = "BTC"
    OTHER = "OTHER"


class CryptoPaymentStatus(Enum):
    """Crypto payment lifecycle states"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================================
# DOMAIN STORE - Customers and sales
# ============================================================================

class Customer(Base):
    """Store customer"""
    __tablename__ = 'customers'

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    wallet = relationship("CustomerWallet", back_populates="customer", uselist=False)


class Sale(Base):
    """Sale made to a customer; `paid` accumulates settled payments in fiat"""
    __tablename__ = 'sales'

    id = Column(String(64), primary_key=True)
    customer_id = Column(String(64), ForeignKey('customers.id'), nullable=False, index=True)
    product_name = Column(String(255), nullable=True)
    amount = Column(Numeric(38, 2), nullable=False)
    paid = Column(Numeric(38, 2), default=0, nullable=False)
    sales_date = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


# ============================================================================
# LEDGER CORE ENTITIES
# ============================================================================

class CustomerWallet(Base):
    """On-chain address bound to exactly one customer"""
    __tablename__ = 'customer_wallets'

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(64), ForeignKey('customers.id'), unique=True, nullable=False)

    wallet_address = Column(String(128), nullable=False)
    # Case-folded form for hex address families; enforces uniqueness across bindings
    address_key = Column(String(128), unique=True, nullable=False, index=True)
    wallet_type = Column(String(20), default=WalletKind.ETHEREUM.value, nullable=False)

    loyalty_token_balance = Column(BigInteger, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    customer = relationship("Customer", back_populates="wallet")
    receipts = relationship(
        "NftReceipt",
        back_populates="wallet",
        order_by="NftReceipt.id",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint('loyalty_token_balance >= 0', name='ck_wallet_loyalty_balance_positive'),
        CheckConstraint(
            f"wallet_type IN ('{WalletKind.ETHEREUM.value}', '{WalletKind.BITCOIN.value}', '{WalletKind.OTHER.value}')",
            name='ck_wallet_type_valid'
        ),
    )

    def to_dict(self) -> dict:
        return {
            "wallet_address": self.wallet_address,
            "wallet_type": self.wallet_type,
            "loyalty_token_balance": self.loyalty_token_balance,
            "nft_receipts": [receipt.to_dict() for receipt in self.receipts],
        }


class NftReceipt(Base):
    """Receipt token minted for a sale; at most one per sale per wallet"""
    __tablename__ = 'nft_receipts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey('customer_wallets.id'), nullable=False, index=True)
    token_id = Column(String(78), nullable=False)
    sale_id = Column(String(64), ForeignKey('sales.id'), nullable=False)
    transaction_hash = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    wallet = relationship("CustomerWallet", back_populates="receipts")

    __table_args__ = (
        UniqueConstraint('wallet_id', 'sale_id', name='uq_receipt_wallet_sale'),
        UniqueConstraint('wallet_id', 'token_id', name='uq_receipt_wallet_token'),
    )

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "sale_id": self.sale_id,
            "transaction_hash": self.transaction_hash,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class CryptoPayment(Base):
    """Crypto payment submitted against a sale"""
    __tablename__ = 'crypto_payments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    sale_id = Column(String(64), ForeignKey('sales.id'), nullable=False, index=True)
    customer_id = Column(String(64), ForeignKey('customers.id'), nullable=False, index=True)
    wallet_address = Column(String(128), nullable=False)

    currency = Column(String(10), default=PaymentCurrency.ETH.value, nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)
    amount_in_fiat = Column(Numeric(38, 2), nullable=False)
    exchange_rate = Column(Numeric(38, 8), nullable=False)

    # Set once submitted; kept even when inclusion wait times out
    transaction_hash = Column(String(100), nullable=True, index=True)
    block_number = Column(BigInteger, nullable=True)
    status = Column(String(20), default=CryptoPaymentStatus.PENDING.value, nullable=False)
    confirmations = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    payment_date = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            f"status IN ('{CryptoPaymentStatus.PENDING.value}', '{CryptoPaymentStatus.COMPLETED.value}', '{CryptoPaymentStatus.FAILED.value}')",
            name='ck_crypto_payment_status_valid'
        ),
        CheckConstraint('amount > 0', name='ck_crypto_payment_amount_positive'),
        CheckConstraint('confirmations >= 0', name='ck_crypto_payment_confirmations_positive'),
        Index('ix_crypto_payments_status_created', 'status', 'created_at'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (CryptoPaymentStatus.COMPLETED.value, CryptoPaymentStatus.FAILED.value)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "wallet_address": self.wallet_address,
            "currency": self.currency,
            "amount": str(self.amount),
            "amount_in_fiat": str(self.amount_in_fiat),
            "exchange_rate": str(self.exchange_rate),
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "status": self.status,
            "confirmations": self.confirmations,
            "error_message": self.error_message,
        }
