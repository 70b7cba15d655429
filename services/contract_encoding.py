"""
Contract call encoding for the receipt and loyalty token contracts

Methods are described by their Solidity signature; calldata is the 4-byte
selector followed by the ABI-encoded arguments.
"""

import logging
from dataclasses import dataclass
from typing import Any, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError, InsufficientDataBytes
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from services.web3_errors import SubmissionError, SubmissionReason

logger = logging.getLogger(__name__)

# Receipt token ids are folded into this range
RECEIPT_TOKEN_ID_MODULUS = 10_000_000_000


@dataclass(frozen=True)
class AbiMethod:
    """A contract function by name and ABI types"""
    name: str
    input_types: Tuple[str, ...]
    output_types: Tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)


# ERC-721 receipt: mint(address to, uint256 tokenId)
RECEIPT_MINT = AbiMethod("mint", ("address", "uint256"))
# ERC-20 loyalty token
LOYALTY_MINT = AbiMethod("mint", ("address", "uint256"))
LOYALTY_BALANCE_OF = AbiMethod("balanceOf", ("address",), ("uint256",))
# ERC-20 stablecoin settlement
ERC20_TRANSFER = AbiMethod("transfer", ("address", "uint256"), ("bool",))


def _normalize_args(method: AbiMethod, args: Sequence[Any]) -> list:
    if len(args) != len(method.input_types):
        raise SubmissionError(
            f"{method.signature} expects {len(method.input_types)} arguments, got {len(args)}",
            reason=SubmissionReason.ENCODING,
        )
    normalized = []
    for abi_type, value in zip(method.input_types, args):
        if abi_type == "address":
            # Bound addresses are format-checked only; eth-abi insists on valid checksums
            try:
                value = to_checksum_address(value)
            except (ValueError, TypeError) as e:
                raise SubmissionError(
                    f"Invalid address argument for {method.signature}: {e}",
                    reason=SubmissionReason.ENCODING,
                ) from e
        normalized.append(value)
    return normalized


def encode_call(method: AbiMethod, args: Sequence[Any]) -> str:
    """Build hex calldata for a contract call"""
    values = _normalize_args(method, args)
    try:
        encoded_args = encode(list(method.input_types), values)
    except (EncodingError, TypeError, ValueError) as e:
        logger.error(f"❌ CONTRACT_ENCODING_ERROR: {method.signature}: {e}")
        raise SubmissionError(
            f"Cannot encode arguments for {method.signature}: {e}",
            reason=SubmissionReason.ENCODING,
        ) from e
    return "0x" + (method.selector + encoded_args).hex()


def decode_result(method: AbiMethod, data: str) -> Tuple[Any, ...]:
    """
    Decode the return data of a read-only call

    A node answers "0x" when no contract is deployed at the address, which
    cannot be decoded and is reported as a SubmissionError.
    """
    try:
        raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
        return tuple(decode(list(method.output_types), raw))
    except (DecodingError, InsufficientDataBytes, ValueError) as e:
        logger.error(f"❌ CONTRACT_DECODING_ERROR: {method.signature} returned {data[:66]!r}: {e}")
        raise SubmissionError(
            f"Cannot decode result of {method.signature} (is the contract deployed at this address?): {e}",
            reason=SubmissionReason.ENCODING,
        ) from e


def receipt_token_id(sale_id: str) -> int:
    """Deterministic receipt token id for a sale"""
    digest = keccak(text=str(sale_id))
    return int.from_bytes(digest, "big") % RECEIPT_TOKEN_ID_MODULUS
