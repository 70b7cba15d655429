"""
Address Binding Registry
Maps each customer to exactly one on-chain address
"""

import logging
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import Customer, CustomerWallet, WalletKind, utc_now
from services.atomic_lock_manager import AtomicLockManager, LockOperationType
from services.web3_errors import AddressInUse, InvalidAddress, NotFound
from utils.address_validation import normalize_address_key, validate_wallet_address

logger = logging.getLogger(__name__)


def parse_wallet_kind(kind: Union[str, WalletKind, None]) -> WalletKind:
    """Accept enum members, their values, or None (chain-native default)"""
    if kind is None or kind == "":
        return WalletKind.ETHEREUM
    if isinstance(kind, WalletKind):
        return kind
    try:
        return WalletKind(str(kind).lower())
    except ValueError:
        raise InvalidAddress(f"Unsupported wallet type: {kind}")


class AddressBindingRegistry:
    """Creates, rebinds and looks up customer wallet bindings"""

    def __init__(self, session_factory: async_sessionmaker, lock_manager: AtomicLockManager):
        self.session_factory = session_factory
        self.lock_manager = lock_manager

    async def bind(
        self,
        customer_id: str,
        address: str,
        kind: Union[str, WalletKind, None] = WalletKind.ETHEREUM,
    ) -> CustomerWallet:
        """
        Bind an address to a customer, overwriting any previous binding

        Args:
            customer_id: Customer receiving the binding
            address: On-chain address, checked against the format for `kind`
            kind: Wallet kind (defaults to the chain-native kind)

        Returns:
            The created or updated CustomerWallet

        Raises:
            InvalidAddress: Address does not match the format for `kind`
            AddressInUse: Address is bound to a different customer
            NotFound: Customer does not exist
        """
        wallet_kind = parse_wallet_kind(kind)
        is_valid, message = validate_wallet_address(address, wallet_kind)
        if not is_valid:
            logger.warning(f"🚫 WALLET_BIND_REJECTED: customer={customer_id} reason={message}")
            raise InvalidAddress(message)

        address_key = normalize_address_key(address, wallet_kind)

        # Customer lock serializes rebinds; address lock serializes claims on the address
        async with self.lock_manager.acquire(
            f"wallet_binding:{customer_id}", LockOperationType.WALLET_BINDING, resource_id=customer_id
        ), self.lock_manager.acquire(
            f"wallet_address:{address_key}", LockOperationType.WALLET_BINDING, resource_id=customer_id
        ):
            async with self.session_factory() as session:
                customer = await session.get(Customer, customer_id)
                if customer is None:
                    raise NotFound(f"Customer {customer_id} not found")

                holder = await self._find_by_address_key(session, address_key)
                if holder is not None and holder.customer_id != customer_id:
                    logger.warning(
                        f"🚫 WALLET_ADDRESS_IN_USE: {address} already bound to customer {holder.customer_id}"
                    )
                    raise AddressInUse(f"Address {address} is already bound to another customer")

                wallet = await self._find_by_customer(session, customer_id)
                if wallet is not None:
                    wallet.wallet_address = address
                    wallet.address_key = address_key
                    wallet.wallet_type = wallet_kind.value
                    wallet.updated_at = utc_now()
                    action = "REBOUND"
                else:
                    wallet = CustomerWallet(
                        customer_id=customer_id,
                        wallet_address=address,
                        address_key=address_key,
                        wallet_type=wallet_kind.value,
                        loyalty_token_balance=0,
                    )
                    session.add(wallet)
                    action = "CREATED"

                try:
                    await session.commit()
                except IntegrityError as e:
                    # Another process claimed the address between check and commit
                    await session.rollback()
                    raise AddressInUse(f"Address {address} is already bound to another customer") from e

                await session.refresh(wallet, attribute_names=["receipts"])
                logger.info(f"✅ WALLET_{action}: customer={customer_id} address={address} kind={wallet_kind.value}")
                return wallet

    async def lookup(self, customer_id: str) -> CustomerWallet:
        """Return the customer's binding or raise NotFound"""
        async with self.session_factory() as session:
            wallet = await self._find_by_customer(session, customer_id)
        if wallet is None:
            raise NotFound(f"Customer {customer_id} does not have a connected wallet")
        return wallet

    @staticmethod
    async def _find_by_customer(session: AsyncSession, customer_id: str) -> Optional[CustomerWallet]:
        result = await session.execute(
            select(CustomerWallet).where(CustomerWallet.customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_by_address_key(session: AsyncSession, address_key: str) -> Optional[CustomerWallet]:
        result = await session.execute(
            select(CustomerWallet).where(CustomerWallet.address_key == address_key)
        )
        return result.scalar_one_or_none()
