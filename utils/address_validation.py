"""Address format validation per wallet kind"""

import re
import logging
from typing import Tuple

from models import WalletKind

logger = logging.getLogger(__name__)

# 0x prefix + 40 hex digits = 20-byte account address
ETHEREUM_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
BITCOIN_ADDRESS_PATTERNS = (
    re.compile(r"^[13][1-9A-HJ-NP-Za-km-z]{25,34}$"),   # P2PKH / P2SH
    re.compile(r"^bc1[02-9ac-hj-np-z]{37,61}$"),         # Bech32
)
MAX_OTHER_ADDRESS_LENGTH = 128


def validate_wallet_address(address: str, kind: WalletKind) -> Tuple[bool, str]:
    """
    Check an address against the literal format for its wallet kind

    Returns:
        tuple: (is_valid, message)
    """
    if not isinstance(address, str) or not address:
        return False, "Address cannot be empty"

    if kind == WalletKind.ETHEREUM:
        if len(address) != 42:
            return False, "Ethereum address must be exactly 42 characters"
        if not address.startswith("0x"):
            return False, "Ethereum address must start with 0x"
        if not ETHEREUM_ADDRESS_PATTERN.match(address):
            return False, "Ethereum address must contain 40 hexadecimal digits after 0x"
        return True, "Valid Ethereum address"

    if kind == WalletKind.BITCOIN:
        if any(pattern.match(address) for pattern in BITCOIN_ADDRESS_PATTERNS):
            return True, "Valid Bitcoin address"
        return False, "Invalid Bitcoin address format"

    if address != address.strip() or len(address) > MAX_OTHER_ADDRESS_LENGTH:
        return False, f"Address must be trimmed and at most {MAX_OTHER_ADDRESS_LENGTH} characters"
    return True, "Address accepted"


def normalize_address_key(address: str, kind: WalletKind) -> str:
    """Uniqueness key: hex addresses are case-insensitive, others compared verbatim"""
    if kind == WalletKind.ETHEREUM:
        return address.lower()
    return address
