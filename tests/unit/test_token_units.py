"""
Unit Tests for Token Unit Conversion and Contract ABI Helpers

Reliability Level: L6 Critical
Python 3.8 Compatible

Decimal Integrity: conversions between token amounts and base units must be
exact at 18 decimals, beyond the default 28-digit Decimal context.
"""

from decimal import Decimal

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from commerce.errors import InvalidArgumentError
from commerce.ledger import contract_abi as abi
from commerce.ledger.token_units import (
    TokenUnitGateway,
    from_base_units,
    to_base_units,
    to_decimal,
)


class TestToDecimal:

    @pytest.mark.parametrize("value,expected", [
        ("50", Decimal("50")),
        (" 1.25 ", Decimal("1.25")),
        (7, Decimal("7")),
        (Decimal("0.000000000000000001"), Decimal("0.000000000000000001")),
    ])
    def test_accepts_exact_inputs(self, value, expected):
        assert to_decimal(value) == expected

    @pytest.mark.parametrize("value", [0.1, True, None, "abc", "NaN", "-Infinity", ""])
    def test_rejects_inexact_or_garbage(self, value):
        with pytest.raises(InvalidArgumentError):
            to_decimal(value)


class TestBaseUnits:

    def test_whole_tokens(self):
        assert to_base_units(Decimal("50")) == 50 * 10 ** 18

    def test_smallest_unit(self):
        assert to_base_units("0.000000000000000001") == 1
        assert from_base_units(1) == Decimal("0.000000000000000001")

    def test_too_many_fractional_digits(self):
        with pytest.raises(InvalidArgumentError):
            to_base_units("1.0000000000000000001")

    def test_trailing_zeros_stripped(self):
        assert str(from_base_units(50 * 10 ** 18)) == "50"
        assert from_base_units(0) == Decimal("0")
        assert str(from_base_units(15 * 10 ** 17)) == "1.5"

    def test_beyond_default_context_precision(self):
        amount = Decimal("123456789012345678901234567890.123456789012345678")
        units = to_base_units(amount)
        assert units == 123456789012345678901234567890123456789012345678
        back = from_base_units(units)
        assert back == amount
        assert back.as_tuple() == amount.as_tuple()

    def test_other_decimals(self):
        usdc = TokenUnitGateway(decimals=6)
        assert usdc.to_base_units("1.5") == 1_500_000
        assert usdc.from_base_units(1_500_000) == Decimal("1.5")
        assert usdc.is_representable(Decimal("0.000001"))
        assert not usdc.is_representable(Decimal("0.0000001"))

    def test_decimals_range(self):
        with pytest.raises(ValueError):
            TokenUnitGateway(decimals=-1)

    def test_format_amount_has_no_exponent(self):
        gateway = TokenUnitGateway()
        assert gateway.format_amount(Decimal("1E-18")) == "0.000000000000000001"


class TestContractAbi:

    @pytest.mark.parametrize("address,valid", [
        ("0xB", True),
        ("0x" + "a" * 40, True),
        ("0x" + "A" * 40, True),
        ("0x", False),
        ("B", False),
        ("0x" + "a" * 41, False),
        ("0xG", False),
        (None, False),
    ])
    def test_address_format(self, address, valid):
        assert abi.is_well_formed_address(address) is valid

    def test_address_comparison_ignores_case_and_padding(self):
        assert abi.same_address("0xB", "0x000b")
        assert abi.normalize_address("0xB") == "0x" + "0" * 39 + "b"
        assert abi.is_zero_address("0x0")

    def test_calldata_encoding(self):
        data = abi.encode_call(abi.SELECTOR_RELEASE_ESCROW, abi.encode_bytes32("0x" + "Ab" * 32))
        assert data == "0x" + abi.SELECTOR_RELEASE_ESCROW + "ab" * 32

    def test_bytes32_must_be_full_width(self):
        with pytest.raises(InvalidArgumentError):
            abi.encode_bytes32("0x1234")

    def test_uint256_range(self):
        assert abi.encode_uint256(1) == "0" * 63 + "1"
        with pytest.raises(InvalidArgumentError):
            abi.encode_uint256(-1)

    def test_decode_words(self):
        assert abi.decode_words("0x" + format(5, "064x") + format(7, "064x")) == [5, 7]
        with pytest.raises(ValueError):
            abi.decode_words("0x123")

    def test_explorer_url(self):
        assert abi.explorer_tx_url("baseSepolia", "0xabc") == "https://sepolia.basescan.org/tx/0xabc"
        assert abi.explorer_tx_url("unknown", "0xabc") is None
