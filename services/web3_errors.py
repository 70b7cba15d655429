"""
Error taxonomy for the blockchain orchestration layer

Validation errors are raised before any ledger interaction. Ledger failures
carry the underlying reason and are never retried by the core.
"""

from enum import Enum
from typing import Optional


class Web3ErrorKind(Enum):
    """Caller-visible error kinds"""
    INVALID_ADDRESS = "invalid_address"
    ADDRESS_IN_USE = "address_in_use"
    NOT_FOUND = "not_found"
    DUPLICATE_RECEIPT = "duplicate_receipt"    # soft: existing result returned
    BELOW_THRESHOLD = "below_threshold"        # soft: zero-effect success
    SUBMISSION_ERROR = "submission_error"
    NODE_UNAVAILABLE = "node_unavailable"
    INVALID_AMOUNT = "invalid_amount"
    UNSUPPORTED_CURRENCY = "unsupported_currency"
    RATE_UNAVAILABLE = "rate_unavailable"
    NOT_CONFIGURED = "not_configured"


class SubmissionReason(Enum):
    """Why a submission did not reach inclusion"""
    REJECTED = "rejected"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NONCE_CONFLICT = "nonce_conflict"
    TIMEOUT = "timeout"
    REVERTED = "reverted"
    ENCODING = "encoding"


class Web3ServiceError(Exception):
    """Base class for all orchestration layer errors"""

    kind: Web3ErrorKind = Web3ErrorKind.SUBMISSION_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidAddress(Web3ServiceError):
    kind = Web3ErrorKind.INVALID_ADDRESS


class AddressInUse(Web3ServiceError):
    kind = Web3ErrorKind.ADDRESS_IN_USE


class NotFound(Web3ServiceError):
    kind = Web3ErrorKind.NOT_FOUND


class InvalidAmount(Web3ServiceError):
    kind = Web3ErrorKind.INVALID_AMOUNT


class UnsupportedCurrency(Web3ServiceError):
    kind = Web3ErrorKind.UNSUPPORTED_CURRENCY


class RateUnavailable(Web3ServiceError):
    kind = Web3ErrorKind.RATE_UNAVAILABLE


class LedgerNotConfigured(Web3ServiceError):
    """A contract or store account needed for the operation is not configured"""
    kind = Web3ErrorKind.NOT_CONFIGURED


class SubmissionError(Web3ServiceError):
    """
    The node rejected the transaction or it was not included in time.

    `transaction_id` is set when the node accepted the transaction before the
    failure (e.g. inclusion timeout); the transaction may still be mined.
    """

    kind = Web3ErrorKind.SUBMISSION_ERROR

    def __init__(
        self,
        message: str,
        reason: SubmissionReason = SubmissionReason.REJECTED,
        transaction_id: Optional[str] = None,
    ):
        self.reason = reason
        self.transaction_id = transaction_id
        super().__init__(message)

    @property
    def is_timeout(self) -> bool:
        return self.reason == SubmissionReason.TIMEOUT


class NodeUnavailable(Web3ServiceError):
    """
    Transport failure talking to the ledger node

    `transaction_id` is set when the failure happened while waiting on an
    already accepted transaction.
    """
    kind = Web3ErrorKind.NODE_UNAVAILABLE

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        self.transaction_id = transaction_id
        super().__init__(message)
