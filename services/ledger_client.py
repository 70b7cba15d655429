"""
Ledger Client - capability for talking to a single ledger node

`LedgerClient` is the abstract capability the orchestration layer depends on.
`JsonRpcLedgerClient` implements it against an Ethereum-style JSON-RPC node
over aiohttp. Instances are constructed explicitly and injected; there is no
module-level shared client.
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp

from config import Config
from services.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from services.contract_encoding import AbiMethod, decode_result, encode_call
from services.web3_errors import NodeUnavailable, SubmissionError, SubmissionReason

logger = logging.getLogger(__name__)

# Standard gas limit for a plain value transfer
TRANSFER_GAS_LIMIT = 21000


@dataclass
class TransactionRequest:
    """Unsigned transaction handed to the node for signing and broadcast"""
    from_address: str
    to_address: str
    value: int = 0
    data: Optional[str] = None
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None
    nonce: Optional[int] = None

    def to_rpc_params(self) -> Dict[str, str]:
        params = {
            "from": self.from_address,
            "to": self.to_address,
            "value": hex(self.value),
        }
        if self.data:
            params["data"] = self.data
        if self.gas_limit is not None:
            params["gas"] = hex(self.gas_limit)
        if self.gas_price is not None:
            params["gasPrice"] = hex(self.gas_price)
        if self.nonce is not None:
            params["nonce"] = hex(self.nonce)
        return params


@dataclass
class LedgerTransaction:
    """Transaction as reported by the node; block_number is None while pending"""
    transaction_id: str
    block_number: Optional[int]
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    value: int = 0

    @property
    def is_pending(self) -> bool:
        return self.block_number is None


class LedgerClient(ABC):
    """Abstract capability for submitting transactions and querying chain state"""

    # True when the client allocates nonces safely under concurrent submissions;
    # otherwise the orchestrator serializes submissions per source address.
    manages_nonces: bool = False

    @abstractmethod
    async def submit_transaction(self, tx: TransactionRequest) -> str:
        """Submit a transaction and return its id"""

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        """Look up a transaction; None if the node does not know it"""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Current chain height"""

    @abstractmethod
    async def get_gas_price(self) -> int:
        """Current gas price in base units"""

    @abstractmethod
    async def call(
        self,
        contract_address: str,
        abi_method: AbiMethod,
        args: Sequence[Any],
        signer: str,
    ) -> str:
        """Submit a state-changing contract call and return the transaction id"""

    @abstractmethod
    async def read(
        self,
        contract_address: str,
        abi_method: AbiMethod,
        args: Sequence[Any],
    ) -> Tuple[Any, ...]:
        """Evaluate a read-only contract call against the latest block"""

    async def close(self) -> None:
        """Release transport resources"""


def _hex_to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    return int(value, 16)


class JsonRpcLedgerClient(LedgerClient):
    """Ledger client for an Ethereum-style JSON-RPC node"""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        timeout: Optional[int] = None,
        read_retry_attempts: Optional[int] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.rpc_url = rpc_url or Config.LEDGER_RPC_URL
        self.timeout = timeout or Config.LEDGER_RPC_TIMEOUT
        self.read_retry_attempts = max(
            1, read_retry_attempts if read_retry_attempts is not None else Config.LEDGER_READ_RETRY_ATTEMPTS
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name="ledger_node",
            failure_threshold=Config.LEDGER_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=Config.LEDGER_CIRCUIT_RECOVERY_TIMEOUT,
            expected_exception=NodeUnavailable,
        )
        self._session = session
        self._owns_session = session is None
        self._request_ids = itertools.count(1)

        logger.info(f"🔧 JsonRpcLedgerClient initialized for {self.rpc_url}")

    async def _get_session(self) -> aiohttp.ClientSession:
        # One pooled session per client; many concurrent operations share it
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST one JSON-RPC request; transport problems become NodeUnavailable"""
        session = await self._get_session()
        try:
            async with session.post(self.rpc_url, json=payload) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise NodeUnavailable(f"Ledger node HTTP {response.status}: {error_text[:200]}")
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise NodeUnavailable(f"Ledger node returned invalid JSON: {e}") from e
        except aiohttp.ClientError as e:
            raise NodeUnavailable(f"Network error talking to ledger node: {e}") from e
        except asyncio.TimeoutError as e:
            raise NodeUnavailable(f"Ledger node timed out after {self.timeout}s") from e

    async def _rpc(self, method: str, params: List[Any], read_only: bool = False) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        try:
            body = await self.circuit_breaker.async_call(self._post, payload)
        except CircuitBreakerOpenError as e:
            raise NodeUnavailable(str(e)) from e

        if body.get("error"):
            if read_only:
                raise self._map_read_error(method, body["error"])
            raise self._map_rpc_error(method, body["error"])
        return body.get("result")

    async def _read_rpc(self, method: str, params: List[Any]) -> Any:
        """Read-only call; transport failures are retried, never for submissions"""
        for attempt in range(1, self.read_retry_attempts + 1):
            try:
                return await self._rpc(method, params, read_only=True)
            except NodeUnavailable as e:
                if attempt >= self.read_retry_attempts:
                    logger.error(f"❌ LEDGER_READ_FAILED: {method} after {attempt} attempt(s): {e}")
                    raise
                delay = 0.5 * attempt
                logger.warning(f"🔄 LEDGER_READ_RETRY: {method} attempt {attempt} failed - retrying in {delay}s")
                await asyncio.sleep(delay)

    @staticmethod
    def _rpc_error_message(error: Any) -> str:
        if isinstance(error, dict):
            return str(error.get("message", error))
        return str(error)

    @classmethod
    def _map_read_error(cls, method: str, error: Any) -> Union[SubmissionError, NodeUnavailable]:
        """
        Map a JSON-RPC error on a read

        Only a contract revert is a verdict on the call itself. Other errors,
        such as provider rate limits, are treated like transport failures.
        """
        message = cls._rpc_error_message(error)
        if "revert" in message.lower():
            logger.warning(f"⚠️ LEDGER_READ_REVERTED: {method}: {message[:200]}")
            return SubmissionError(f"{method} reverted: {message}", reason=SubmissionReason.REVERTED)
        logger.warning(f"⚠️ LEDGER_READ_ERROR: {method}: {message[:200]}")
        return NodeUnavailable(f"{method} failed on ledger node: {message}")

    @classmethod
    def _map_rpc_error(cls, method: str, error: Any) -> SubmissionError:
        """Map a JSON-RPC error object to a submission failure reason"""
        message = cls._rpc_error_message(error)
        lowered = message.lower()

        if "insufficient funds" in lowered:
            reason = SubmissionReason.INSUFFICIENT_FUNDS
        elif (
            "nonce too low" in lowered
            or "nonce too high" in lowered
            or "replacement transaction underpriced" in lowered
            or "already known" in lowered
        ):
            reason = SubmissionReason.NONCE_CONFLICT
        elif "revert" in lowered:
            reason = SubmissionReason.REVERTED
        else:
            reason = SubmissionReason.REJECTED

        logger.warning(f"⚠️ LEDGER_RPC_ERROR: {method} -> {reason.value}: {message[:200]}")
        return SubmissionError(f"{method} rejected by node: {message}", reason=reason)

    async def submit_transaction(self, tx: TransactionRequest) -> str:
        transaction_id = await self._rpc("eth_sendTransaction", [tx.to_rpc_params()])
        if not transaction_id:
            raise SubmissionError("Node accepted eth_sendTransaction but returned no hash")
        logger.info(
            f"📤 LEDGER_SUBMIT: {transaction_id} from={tx.from_address} to={tx.to_address} value={tx.value}"
        )
        return transaction_id

    async def get_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        result = await self._read_rpc("eth_getTransactionByHash", [transaction_id])
        if not result:
            return None
        return LedgerTransaction(
            transaction_id=result.get("hash", transaction_id),
            block_number=_hex_to_int(result.get("blockNumber")),
            from_address=result.get("from"),
            to_address=result.get("to"),
            value=_hex_to_int(result.get("value")) or 0,
        )

    async def get_block_height(self) -> int:
        return _hex_to_int(await self._read_rpc("eth_blockNumber", []))

    async def get_gas_price(self) -> int:
        return _hex_to_int(await self._read_rpc("eth_gasPrice", []))

    async def call(
        self,
        contract_address: str,
        abi_method: AbiMethod,
        args: Sequence[Any],
        signer: str,
    ) -> str:
        tx = TransactionRequest(
            from_address=signer,
            to_address=contract_address,
            data=encode_call(abi_method, args),
        )
        # Gas estimation simulates the call, so reverts surface before broadcast
        tx.gas_limit = _hex_to_int(await self._rpc("eth_estimateGas", [tx.to_rpc_params()]))
        tx.gas_price = await self.get_gas_price()
        logger.info(f"📝 LEDGER_CONTRACT_CALL: {abi_method.signature} on {contract_address} signer={signer}")
        return await self.submit_transaction(tx)

    async def read(
        self,
        contract_address: str,
        abi_method: AbiMethod,
        args: Sequence[Any],
    ) -> Tuple[Any, ...]:
        params = {"to": contract_address, "data": encode_call(abi_method, args)}
        result = await self._read_rpc("eth_call", [params, "latest"])
        return decode_result(abi_method, result or "0x")
