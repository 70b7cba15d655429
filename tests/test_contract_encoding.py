"""
Contract call encoding and receipt token ids
"""

import pytest
from eth_abi import decode, encode
from eth_utils import keccak

from services.contract_encoding import (
    ERC20_TRANSFER, LOYALTY_BALANCE_OF, LOYALTY_MINT, RECEIPT_MINT, RECEIPT_TOKEN_ID_MODULUS,
    decode_result, encode_call, receipt_token_id,
)
from services.web3_errors import SubmissionError, SubmissionReason

HOLDER = "0x" + "A" * 40


class TestSelectors:

    def test_known_selectors(self):
        assert RECEIPT_MINT.selector.hex() == "40c10f19"
        assert LOYALTY_MINT.signature == "mint(address,uint256)"
        assert LOYALTY_BALANCE_OF.selector.hex() == "70a08231"
        assert ERC20_TRANSFER.selector.hex() == "a9059cbb"


class TestEncodeCall:

    def test_mint_calldata(self):
        calldata = encode_call(LOYALTY_MINT, [HOLDER, 2 * 10**18])

        assert calldata.startswith("0x40c10f19")
        address, amount = decode(["address", "uint256"], bytes.fromhex(calldata[10:]))
        assert address.lower() == HOLDER.lower()
        assert amount == 2 * 10**18

    def test_address_checksum_case_is_not_required(self):
        assert encode_call(LOYALTY_BALANCE_OF, [HOLDER.lower()]) == encode_call(LOYALTY_BALANCE_OF, [HOLDER])

    def test_wrong_argument_count(self):
        with pytest.raises(SubmissionError) as exc_info:
            encode_call(RECEIPT_MINT, [HOLDER])
        assert exc_info.value.reason == SubmissionReason.ENCODING

    def test_bad_address(self):
        with pytest.raises(SubmissionError) as exc_info:
            encode_call(RECEIPT_MINT, ["0x1234", 1])
        assert exc_info.value.reason == SubmissionReason.ENCODING

    def test_negative_uint(self):
        with pytest.raises(SubmissionError):
            encode_call(RECEIPT_MINT, [HOLDER, -1])


class TestDecodeResult:

    def test_balance_of(self):
        data = "0x" + encode(["uint256"], [12345]).hex()
        assert decode_result(LOYALTY_BALANCE_OF, data) == (12345,)

    @pytest.mark.parametrize("data", ["0x", "0x1234", "0xzz"])
    def test_undecodable_result(self, data):
        with pytest.raises(SubmissionError) as exc_info:
            decode_result(LOYALTY_BALANCE_OF, data)
        assert exc_info.value.reason == SubmissionReason.ENCODING


class TestReceiptTokenId:

    def test_deterministic_and_bounded(self):
        token_id = receipt_token_id("S1")
        assert token_id == receipt_token_id("S1")
        assert 0 <= token_id < RECEIPT_TOKEN_ID_MODULUS
        assert token_id == int.from_bytes(keccak(text="S1"), "big") % 10_000_000_000

    def test_distinct_sales(self):
        assert receipt_token_id("S1") != receipt_token_id("S2")
