"""
Shared fixtures for the ledger core test suite

Key Components:
1. Per-test SQLite database (aiosqlite) seeded with customers and sales
2. FakeLedgerClient: in-memory ledger node with controllable inclusion
3. Fully wired registry, orchestrator, tracker, ledger and Web3Service
"""

import itertools
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio

from database import build_async_engine, build_session_factory, create_tables
from models import Customer, Sale
from services.address_binding_registry import AddressBindingRegistry
from services.atomic_lock_manager import AtomicLockManager
from services.confirmation_tracker import ConfirmationTracker
from services.contract_encoding import AbiMethod, encode_call
from services.ledger_client import LedgerClient, LedgerTransaction, TransactionRequest
from services.rate_oracle import ConfiguredRateOracle
from services.reward_receipt_ledger import RewardReceiptLedger
from services.transaction_orchestrator import TransactionOrchestrator
from services.web3_service import Web3Service

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

CUSTOMER_ADDRESS = "0x" + "A" * 40
OTHER_ADDRESS = "0x" + "b" * 40
STORE_ADDRESS = "0x" + "5" * 40
SIGNER_ADDRESS = "0x" + "1" * 40
RECEIPT_CONTRACT = "0x" + "c" * 40
LOYALTY_CONTRACT = "0x" + "d" * 40
USDT_CONTRACT = "0x" + "e" * 40


class FakeLedgerClient(LedgerClient):
    """
    In-memory ledger node

    Submitted transactions are included at the current height immediately
    when `auto_include` is set; otherwise tests include them with `include()`.
    """

    def __init__(self, block_height: int = 100, gas_price: int = 20 * 10**9):
        self.block_height = block_height
        self.gas_price = gas_price
        self.auto_include = True
        self.submit_error: Optional[Exception] = None
        self.transactions: Dict[str, LedgerTransaction] = {}
        self.submitted: List[TransactionRequest] = []
        self.contract_calls: List[Tuple[str, AbiMethod, Sequence[Any], str]] = []
        self.read_results: Dict[Tuple[str, str], Tuple[Any, ...]] = {}
        self.in_flight: Dict[str, int] = {}
        self.max_in_flight: Dict[str, int] = {}
        self._ids = itertools.count(1)

    async def submit_transaction(self, tx: TransactionRequest) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        transaction_id = "0x" + format(next(self._ids), "064x")
        self.submitted.append(tx)
        self.transactions[transaction_id] = LedgerTransaction(
            transaction_id=transaction_id,
            block_number=None,
            from_address=tx.from_address,
            to_address=tx.to_address,
            value=tx.value,
        )
        source = tx.from_address.lower()
        self.in_flight[source] = self.in_flight.get(source, 0) + 1
        self.max_in_flight[source] = max(self.max_in_flight.get(source, 0), self.in_flight[source])
        if self.auto_include:
            self.include(transaction_id)
        return transaction_id

    def include(self, transaction_id: str, block_number: Optional[int] = None):
        transaction = self.transactions[transaction_id]
        transaction.block_number = self.block_height if block_number is None else block_number
        source = transaction.from_address.lower()
        self.in_flight[source] -= 1

    def pending_ids(self) -> List[str]:
        return [tx_id for tx_id, tx in self.transactions.items() if tx.block_number is None]

    def mine(self, blocks: int = 1):
        self.block_height += blocks

    async def get_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        return self.transactions.get(transaction_id)

    async def get_block_height(self) -> int:
        return self.block_height

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def call(self, contract_address, abi_method, args, signer) -> str:
        self.contract_calls.append((contract_address, abi_method, list(args), signer))
        tx = TransactionRequest(
            from_address=signer,
            to_address=contract_address,
            data=encode_call(abi_method, args),
        )
        return await self.submit_transaction(tx)

    async def read(self, contract_address, abi_method, args) -> Tuple[Any, ...]:
        return self.read_results.get((contract_address, abi_method.name), (0,))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database with customers C123/C456 and sales S1/S2/S3"""
    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger_core.db'}")
    await create_tables(engine)
    factory = build_session_factory(engine)

    async with factory() as session:
        session.add_all([
            Customer(id="C123", name="Ada Buyer", email="ada@example.com"),
            Customer(id="C456", name="Grace Buyer", email="grace@example.com"),
        ])
        await session.flush()
        session.add_all([
            Sale(id="S1", customer_id="C123", product_name="Laptop", amount=Decimal("2000.00"), paid=Decimal("0")),
            Sale(id="S2", customer_id="C123", product_name="Mouse", amount=Decimal("25.00"), paid=Decimal("0")),
            Sale(id="S3", customer_id="C456", product_name="Monitor", amount=Decimal("300.00"), paid=Decimal("0")),
        ])
        await session.commit()

    yield factory
    await engine.dispose()


@pytest.fixture
def fake_ledger():
    return FakeLedgerClient()


@pytest.fixture
def lock_manager():
    return AtomicLockManager()


@pytest.fixture
def orchestrator(fake_ledger, lock_manager):
    return TransactionOrchestrator(
        fake_ledger,
        lock_manager,
        inclusion_timeout=2.0,
        poll_interval=0.01,
        signer_address=SIGNER_ADDRESS,
    )


@pytest.fixture
def tracker(fake_ledger):
    return ConfirmationTracker(fake_ledger, finality_confirmations={"ETH": 12, "USDT": 6}, default_finality=12)


@pytest.fixture
def rate_oracle():
    return ConfiguredRateOracle({"ETH": Decimal("2000"), "USDT": Decimal("1")}, fiat_currency="USD")


@pytest.fixture
def registry(session_factory, lock_manager):
    return AddressBindingRegistry(session_factory, lock_manager)


@pytest.fixture
def reward_ledger(session_factory, orchestrator, tracker, lock_manager):
    return RewardReceiptLedger(
        session_factory,
        orchestrator,
        tracker,
        lock_manager,
        receipt_contract_address=RECEIPT_CONTRACT,
        loyalty_contract_address=LOYALTY_CONTRACT,
        loyalty_decimals=18,
        reward_unit_value=Decimal("10"),
        store_wallet_address=STORE_ADDRESS,
        stablecoin_contracts={"USDT": USDT_CONTRACT, "USDC": ""},
        stablecoin_decimals={"USDT": 6, "USDC": 6},
        fiat_currency="USD",
    )


@pytest.fixture
def web3_service(session_factory, registry, reward_ledger, tracker, rate_oracle):
    return Web3Service(
        session_factory=session_factory,
        registry=registry,
        ledger=reward_ledger,
        tracker=tracker,
        rate_oracle=rate_oracle,
    )


@pytest_asyncio.fixture
async def bound_wallet(registry):
    """C123 bound to CUSTOMER_ADDRESS"""
    return await registry.bind("C123", CUSTOMER_ADDRESS, "ethereum")
