"""
============================================================================
Agent Commerce Escrow v1.0.0
Trade Schemas - Pydantic Models for the Escrow Trade API
============================================================================

Reliability Level: L6 Critical
Input Constraints: Amounts arrive as decimal strings or integers, never floats
Side Effects: None (pure validation)

Amounts leave the API as plain decimal strings so no client parses them
into binary floating point on the way in or out.

============================================================================
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from escrow.models import Trade
from escrow.reconciliation import ReconciliationResult


# ============================================================================
# CUSTOM VALIDATORS
# ============================================================================

def parse_amount(value: Any) -> Decimal:
    """
    Parse a request amount without passing through float.

    Raises:
        ValueError: On float input, garbage or non-finite values
    """
    if value is None or isinstance(value, (float, bool)):
        raise ValueError(
            "[ESC-001] amount must be a decimal string or integer, "
            f"received {type(value).__name__}"
        )
    try:
        decimal_value = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"[ESC-001] amount is not a decimal number: {value!r}")
    if not decimal_value.is_finite():
        raise ValueError(f"[ESC-001] amount must be finite, received {value!r}")
    return decimal_value


# ============================================================================
# REQUEST SCHEMAS
# ============================================================================

class TradeCreateRequest(BaseModel):
    """Body of POST /api/trades."""

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "example": {
                "listing_ref": "svc_1",
                "buyer_party": "B",
                "seller_party": "S",
                "buyer_address": "0xB",
                "seller_address": "0xA",
                "amount": "50",
            }
        }
    )

    listing_ref: str = Field(..., min_length=1, max_length=256)
    buyer_party: str = Field(..., min_length=1, max_length=256)
    seller_party: str = Field(..., min_length=1, max_length=256)
    buyer_address: str = Field(..., min_length=3, max_length=42)
    seller_address: str = Field(..., min_length=3, max_length=42)
    amount: Decimal = Field(..., description="Token amount as a decimal string")

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, value: Any) -> Decimal:
        return parse_amount(value)


class SignerRequest(BaseModel):
    """Body of the money-moving endpoints: the account the ledger call is signed by."""

    model_config = ConfigDict(extra="forbid")

    signer_address: str = Field(..., min_length=3, max_length=42)
    timeout_seconds: Optional[float] = Field(
        None, gt=0, description="Bounded confirmation wait, server default if omitted"
    )


# ============================================================================
# RESPONSE SCHEMAS
# ============================================================================

class TradeResponse(BaseModel):
    trade_id: str
    external_id: str
    listing_ref: str
    buyer_party: str
    seller_party: str
    buyer_address: str
    seller_address: str
    amount: str
    state: str
    confirmations: Dict[str, str]
    created_at: str
    updated_at: str
    version: int

    @classmethod
    def from_trade(cls, trade: Trade) -> "TradeResponse":
        data = trade.to_dict()
        data["amount"] = format(trade.amount, "f")
        return cls(**data)


class TradeListResponse(BaseModel):
    trades: List[TradeResponse]
    count: int

    @classmethod
    def from_trades(cls, trades: List[Trade]) -> "TradeListResponse":
        return cls(trades=[TradeResponse.from_trade(t) for t in trades], count=len(trades))


class ReconciliationResponse(BaseModel):
    status: str
    ledger_state: str
    detail: Optional[str] = None
    correlation_id: Optional[str] = None
    trade: TradeResponse

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "ReconciliationResponse":
        return cls(
            status=result.status.value,
            ledger_state=result.ledger_state.name,
            detail=result.detail,
            correlation_id=result.correlation_id,
            trade=TradeResponse.from_trade(result.trade),
        )
