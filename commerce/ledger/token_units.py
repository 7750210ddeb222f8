# ============================================================================
# Agent Commerce Escrow v1.0.0
# Token Unit Gateway - Exact Decimal <-> Base Unit Conversion
# ============================================================================
#
# Reliability Level: L6 Critical
# Purpose: Ensures every token amount crossing the ledger boundary is an
#          exact decimal.Decimal that round-trips to the smallest unit
#
# MANDATE:
#   - Float contamination is FORBIDDEN for token amounts
#   - Amounts are NEVER rounded; unrepresentable values are rejected
#   - Default token precision is 18 decimals (1 token = 10**18 base units)
#
# Error Codes:
#   - ESC-001: Amount not convertible / not representable
#
# ============================================================================

from decimal import Decimal, InvalidOperation
from typing import Optional, Union
import logging

from commerce.errors import InvalidArgumentError, EscrowErrorCode

logger = logging.getLogger(__name__)


DEFAULT_TOKEN_DECIMALS = 18


class TokenUnitGateway:
    """
    Central conversion layer between human token amounts and ledger base units.

    Reliability Level: L6 Critical
    Input Constraints: str, int or Decimal (float is refused)
    Side Effects: Logs ESC-001 on conversion failure

    Example Usage:
        gateway = TokenUnitGateway(decimals=18)

        amount = gateway.to_decimal("50")          # Decimal('50')
        wei = gateway.to_base_units(amount)        # 50000000000000000000
        back = gateway.from_base_units(wei)        # Decimal('50')
    """

    def __init__(self, decimals: int = DEFAULT_TOKEN_DECIMALS):
        if decimals < 0 or decimals > 77:
            raise ValueError(f"token decimals out of range: {decimals}")
        self.decimals = decimals

    def to_decimal(
        self,
        value: Union[str, int, Decimal, None],
        correlation_id: Optional[str] = None
    ) -> Decimal:
        """
        Parse a token amount without any rounding.

        Args:
            value: Amount as str, int or Decimal
            correlation_id: Audit trail identifier

        Returns:
            The amount as an exact, finite Decimal

        Raises:
            InvalidArgumentError: On float input, garbage, NaN or infinity
        """
        if isinstance(value, float) or isinstance(value, bool) or value is None:
            self._log_failure(value, "float, bool and None are not token amounts", correlation_id)
            raise InvalidArgumentError(
                f"Token amount must be a decimal string, int or Decimal, got {type(value).__name__}",
                correlation_id=correlation_id,
            )

        try:
            # Always go through str so int and Decimal inputs share one path
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError, TypeError) as e:
            self._log_failure(value, str(e), correlation_id)
            raise InvalidArgumentError(
                f"Cannot convert '{value}' to a token amount",
                correlation_id=correlation_id,
            ) from e

        if not result.is_finite():
            self._log_failure(value, "not finite", correlation_id)
            raise InvalidArgumentError(
                f"Token amount must be finite, got '{value}'",
                correlation_id=correlation_id,
            )

        return result

    def _exact_base_units(self, amount: Decimal) -> Optional[int]:
        """
        Shift amount by the token decimals using integer arithmetic only.

        Decimal multiplication is bounded by the context precision (28
        digits), which is not enough for 18-decimal tokens, so the
        coefficient is shifted as an int instead.

        Returns:
            Base units, or None if the amount has too many fractional digits
        """
        sign, digits, exponent = amount.as_tuple()
        coefficient = int("".join(str(d) for d in digits) or "0")
        shift = exponent + self.decimals
        if shift >= 0:
            units = coefficient * (10 ** shift)
        else:
            divisor = 10 ** (-shift)
            if coefficient % divisor:
                return None
            units = coefficient // divisor
        return -units if sign else units

    def is_representable(self, amount: Decimal) -> bool:
        """True if amount has no precision beyond the token's smallest unit."""
        return self._exact_base_units(amount) is not None

    def to_base_units(
        self,
        amount: Union[str, int, Decimal],
        correlation_id: Optional[str] = None
    ) -> int:
        """
        Convert a token amount to integer base units (parseUnits).

        Raises:
            InvalidArgumentError: If the amount carries more fractional
                digits than the token supports
        """
        value = self.to_decimal(amount, correlation_id)
        units = self._exact_base_units(value)
        if units is None:
            self._log_failure(
                amount,
                f"more than {self.decimals} fractional digits",
                correlation_id,
            )
            raise InvalidArgumentError(
                f"Amount {value} is not representable with {self.decimals} decimals",
                correlation_id=correlation_id,
            )
        return units

    def from_base_units(self, base_units: int) -> Decimal:
        """
        Convert integer base units back to a token amount (formatUnits).

        Built from the digit tuple so no context rounding applies. Trailing
        fractional zeros are stripped: 50 * 10**18 comes back as Decimal('50').
        """
        base_units = int(base_units)
        digits = str(abs(base_units))
        exponent = -self.decimals
        while exponent < 0 and len(digits) > 1 and digits.endswith("0"):
            digits = digits[:-1]
            exponent += 1
        if digits == "0":
            exponent = 0
        sign = 1 if base_units < 0 else 0
        return Decimal((sign, tuple(int(d) for d in digits), exponent))

    def format_amount(self, amount: Decimal) -> str:
        """Render an amount as a plain decimal string (no exponent)."""
        return format(amount, "f")

    def _log_failure(self, value, detail: str, correlation_id: Optional[str]) -> None:
        logger.error(
            f"[{EscrowErrorCode.INVALID_ARGUMENT}] Token amount conversion failed | "
            f"value={value!r} | type={type(value).__name__} | "
            f"detail={detail} | correlation_id={correlation_id}"
        )


# ============================================================================
# Module-level convenience functions
# ============================================================================

_gateway = TokenUnitGateway()


def to_decimal(
    value: Union[str, int, Decimal, None],
    correlation_id: Optional[str] = None
) -> Decimal:
    """Module-level convenience function for exact amount parsing."""
    return _gateway.to_decimal(value, correlation_id)


def to_base_units(
    amount: Union[str, int, Decimal],
    correlation_id: Optional[str] = None
) -> int:
    """Module-level convenience function using the default 18 decimals."""
    return _gateway.to_base_units(amount, correlation_id)


def from_base_units(base_units: int) -> Decimal:
    """Module-level convenience function using the default 18 decimals."""
    return _gateway.from_base_units(base_units)
