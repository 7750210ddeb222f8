"""
============================================================================
Agent Commerce Escrow v1.0.0
Trade Model and Escrow State Machine
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: amount is decimal.Decimal, persisted as exact text
Traceability: Every transition is logged with trade_id and correlation_id

ESCROW TRADE STATE MACHINE:
    PENDING → LOCKED      (ledger confirmed createEscrow)
    LOCKED → DELIVERED    (seller claims delivery, local only)
    LOCKED → RELEASED     (ledger confirmed releaseEscrow)
    DELIVERED → RELEASED  (ledger confirmed releaseEscrow)
    LOCKED → REFUNDED     (ledger confirmed refundEscrow)

    DELIVERED → REFUNDED is NOT an edge.
    Terminal States: RELEASED, REFUNDED

LEDGER STATE INTERPRETATION:
    NONE      → pending
    LOCKED    → locked | delivered (delivery is not visible on the ledger)
    RELEASED  → released
    REFUNDED  → refunded

============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, FrozenSet
import json
import logging

from commerce.errors import EscrowErrorCode
from commerce.ledger.client import LedgerEscrowState, LedgerOperation

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================

class TradeState(Enum):
    """Escrow trade lifecycle states."""
    PENDING = "pending"
    LOCKED = "locked"
    DELIVERED = "delivered"
    RELEASED = "released"
    REFUNDED = "refunded"


# =============================================================================
# State Machine Constants
# =============================================================================

VALID_TRANSITIONS: Dict[TradeState, List[TradeState]] = {
    TradeState.PENDING: [TradeState.LOCKED],
    TradeState.LOCKED: [TradeState.DELIVERED, TradeState.RELEASED, TradeState.REFUNDED],
    TradeState.DELIVERED: [TradeState.RELEASED],
    TradeState.RELEASED: [],  # Terminal state
    TradeState.REFUNDED: [],  # Terminal state
}

TERMINAL_STATES: FrozenSet[TradeState] = frozenset({
    TradeState.RELEASED,
    TradeState.REFUNDED,
})

ACTIVE_STATES: FrozenSet[TradeState] = frozenset({
    TradeState.PENDING,
    TradeState.LOCKED,
    TradeState.DELIVERED,
})

# Exhaustive: every ledger escrow state has exactly one local interpretation
LEDGER_STATE_INTERPRETATION: Dict[LedgerEscrowState, FrozenSet[TradeState]] = {
    LedgerEscrowState.NONE: frozenset({TradeState.PENDING}),
    LedgerEscrowState.LOCKED: frozenset({TradeState.LOCKED, TradeState.DELIVERED}),
    LedgerEscrowState.RELEASED: frozenset({TradeState.RELEASED}),
    LedgerEscrowState.REFUNDED: frozenset({TradeState.REFUNDED}),
}

# Local state a ledger outcome settles a trade into when adopted
LEDGER_OUTCOME_STATE: Dict[LedgerEscrowState, TradeState] = {
    LedgerEscrowState.LOCKED: TradeState.LOCKED,
    LedgerEscrowState.RELEASED: TradeState.RELEASED,
    LedgerEscrowState.REFUNDED: TradeState.REFUNDED,
}

# Confirmation slot written by the money-moving transition into each state
CONFIRMATION_SLOT: Dict[TradeState, LedgerOperation] = {
    TradeState.LOCKED: LedgerOperation.LOCK,
    TradeState.RELEASED: LedgerOperation.RELEASE,
    TradeState.REFUNDED: LedgerOperation.REFUND,
}


def validate_transition(
    current_state: TradeState,
    target_state: TradeState,
    correlation_id: Optional[str] = None
) -> Tuple[bool, Optional[str]]:
    """
    Check a single edge against VALID_TRANSITIONS.

    Returns:
        (True, None) if the edge exists, (False, "ESC-002") otherwise

    Side Effects: Logs ESC-002 on invalid transitions
    """
    valid_targets = VALID_TRANSITIONS.get(current_state, [])

    if target_state not in valid_targets:
        valid_str = (
            "/".join(s.value for s in valid_targets)
            if valid_targets else "NONE (terminal state)"
        )
        logger.error(
            f"[{EscrowErrorCode.INVALID_STATE}] "
            f"Invalid state transition: {current_state.value} → {target_state.value}. "
            f"Valid transitions from {current_state.value}: {valid_str}. "
            f"correlation_id={correlation_id}"
        )
        return (False, EscrowErrorCode.INVALID_STATE)

    return (True, None)


def is_terminal_state(state: TradeState) -> bool:
    return state in TERMINAL_STATES


def is_consistent_with_ledger(state: TradeState, ledger_state: LedgerEscrowState) -> bool:
    return state in LEDGER_STATE_INTERPRETATION[ledger_state]


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class Trade:
    """
    Escrow trade record.

    Reliability Level: L6 Critical
    Input Constraints: amount > 0, addresses well-formed, datetimes UTC-aware
    Side Effects: None (data container)

    confirmations maps a LedgerOperation value ("lock", "release", "refund")
    to the transaction reference that finalised it. Each slot is written at
    most once.
    """
    trade_id: str
    external_id: str
    listing_ref: str
    buyer_party: str
    seller_party: str
    buyer_address: str
    seller_address: str
    amount: Decimal
    state: TradeState
    created_at: datetime
    updated_at: datetime
    confirmations: Dict[str, str] = field(default_factory=dict)
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def involves(self, party: str) -> bool:
        return party in (self.buyer_party, self.seller_party)

    def confirmation_for(self, operation: LedgerOperation) -> Optional[str]:
        return self.confirmations.get(operation.value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/persistence."""
        return {
            "trade_id": self.trade_id,
            "external_id": self.external_id,
            "listing_ref": self.listing_ref,
            "buyer_party": self.buyer_party,
            "seller_party": self.seller_party,
            "buyer_address": self.buyer_address,
            "seller_address": self.seller_address,
            "amount": str(self.amount),
            "state": self.state.value,
            "confirmations": dict(self.confirmations),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        confirmations = data.get("confirmations") or {}
        if isinstance(confirmations, str):
            confirmations = json.loads(confirmations)

        return cls(
            trade_id=data["trade_id"],
            external_id=data["external_id"],
            listing_ref=data["listing_ref"],
            buyer_party=data["buyer_party"],
            seller_party=data["seller_party"],
            buyer_address=data["buyer_address"],
            seller_address=data["seller_address"],
            amount=Decimal(str(data["amount"])),
            state=TradeState(data["state"]),
            confirmations=dict(confirmations),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
            version=int(data.get("version", 1)),
        )


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
