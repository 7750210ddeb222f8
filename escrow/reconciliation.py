# ============================================================================
# Agent Commerce Escrow v1.0.0
# Trade Reconciliation - Local Record vs Ledger Escrow Record
# ============================================================================
#
# Reliability Level: L6 Critical
# Purpose: Compare a trade with the ledger's own escrow entry and bring the
#          local record up to ledger truth when the ledger is ahead
#
# The ledger is authoritative. Three outcomes:
#   MATCHED       local state is one of the interpretations of the ledger
#                 state (NONE→pending, LOCKED→locked|delivered, ...)
#   LEDGER_AHEAD  the ledger already holds a later outcome (a confirmation
#                 the engine never committed, e.g. after a timeout or a crash
#                 between ledger confirmation and local commit); the local
#                 record can be advanced to it
#   DIVERGED      local claims an outcome the ledger does not hold, or the
#                 ledger escrow for this id carries different parties or a
#                 different amount; never healed automatically
#
# Error Codes:
#   - ESC-013: Local record diverged from ledger escrow record
#
# ============================================================================

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from commerce.errors import ConflictError, EscrowErrorCode
from commerce.ledger.client import (
    EscrowRecord,
    LedgerClient,
    LedgerEscrowState,
    LedgerOperation,
)
from commerce.ledger import contract_abi as abi
from commerce.observability.metrics import record_reconciliation, record_transition
from escrow.models import (
    Trade,
    TradeState,
    LEDGER_OUTCOME_STATE,
    is_consistent_with_ledger,
)
from escrow.trade_store import TradeStore

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

# Used as the confirmation reference when the ledger holds the outcome but
# no finalising event can be located
RECOVERED_REF_PREFIX = "ledger-state"

# Confirmation slots a trade in each state must carry
REQUIRED_SLOTS: Dict[TradeState, List[LedgerOperation]] = {
    TradeState.PENDING: [],
    TradeState.LOCKED: [LedgerOperation.LOCK],
    TradeState.DELIVERED: [LedgerOperation.LOCK],
    TradeState.RELEASED: [LedgerOperation.LOCK, LedgerOperation.RELEASE],
    TradeState.REFUNDED: [LedgerOperation.LOCK, LedgerOperation.REFUND],
}


# ============================================================================
# Enums
# ============================================================================

class ReconciliationStatus(Enum):
    """Reconciliation result status."""
    MATCHED = "MATCHED"
    LEDGER_AHEAD = "LEDGER_AHEAD"
    DIVERGED = "DIVERGED"


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ReconciliationResult:
    """Outcome of comparing one trade with its ledger escrow record."""
    status: ReconciliationStatus
    trade: Trade
    ledger_state: LedgerEscrowState
    target_state: Optional[TradeState] = None
    detail: Optional[str] = None
    correlation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def local_state(self) -> TradeState:
        return self.trade.state

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "trade_id": self.trade.trade_id,
            "external_id": self.trade.external_id,
            "local_state": self.trade.state.value,
            "ledger_state": self.ledger_state.name,
            "target_state": self.target_state.value if self.target_state else None,
            "detail": self.detail,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================================================
# Reconciler
# ============================================================================

def escrow_mismatch(trade: Trade, record: EscrowRecord) -> Optional[str]:
    """Describe how an existing ledger escrow differs from the trade, if it does."""
    if not record.exists:
        return None
    if record.buyer is None or not abi.same_address(record.buyer, trade.buyer_address):
        return f"buyer {record.buyer} != {trade.buyer_address}"
    if record.seller is None or not abi.same_address(record.seller, trade.seller_address):
        return f"seller {record.seller} != {trade.seller_address}"
    if record.amount != trade.amount:
        return f"amount {record.amount} != {trade.amount}"
    return None


def assess(
    trade: Trade,
    record: EscrowRecord,
    correlation_id: Optional[str] = None
) -> ReconciliationResult:
    """
    Classify a trade against its ledger escrow record. Pure.
    """
    mismatch = escrow_mismatch(trade, record)
    if mismatch is not None:
        return ReconciliationResult(
            status=ReconciliationStatus.DIVERGED,
            trade=trade,
            ledger_state=record.state,
            detail=f"ledger escrow does not belong to this trade: {mismatch}",
            correlation_id=correlation_id,
        )

    if is_consistent_with_ledger(trade.state, record.state):
        return ReconciliationResult(
            status=ReconciliationStatus.MATCHED,
            trade=trade,
            ledger_state=record.state,
            correlation_id=correlation_id,
        )

    target = LEDGER_OUTCOME_STATE.get(record.state)
    ledger_ahead = target is not None and (
        trade.state == TradeState.PENDING
        or (
            trade.state in (TradeState.LOCKED, TradeState.DELIVERED)
            and record.state in (LedgerEscrowState.RELEASED, LedgerEscrowState.REFUNDED)
        )
    )

    if ledger_ahead:
        return ReconciliationResult(
            status=ReconciliationStatus.LEDGER_AHEAD,
            trade=trade,
            ledger_state=record.state,
            target_state=target,
            detail=f"ledger already {record.state.name}",
            correlation_id=correlation_id,
        )

    return ReconciliationResult(
        status=ReconciliationStatus.DIVERGED,
        trade=trade,
        ledger_state=record.state,
        detail=f"local state {trade.state.value} not held by ledger ({record.state.name})",
        correlation_id=correlation_id,
    )


class TradeReconciler:
    """
    Ledger reconciliation for single trades.

    Reliability Level: L6 Critical

    Example Usage:
        reconciler = TradeReconciler(ledger, store)
        record = reconciler.fetch(trade)
        result = assess(trade, record, correlation_id)
        if result.status == ReconciliationStatus.LEDGER_AHEAD:
            trade = reconciler.adopt(result)
    """

    def __init__(self, ledger: LedgerClient, store: TradeStore):
        self.ledger = ledger
        self.store = store

    def fetch(self, trade: Trade) -> EscrowRecord:
        """Authoritative ledger escrow entry; LedgerError propagates."""
        return self.ledger.get_escrow(trade.external_id)

    def check(self, trade: Trade, correlation_id: Optional[str] = None) -> ReconciliationResult:
        result = assess(trade, self.fetch(trade), correlation_id)
        record_reconciliation(result.status.value, correlation_id)

        if result.status == ReconciliationStatus.DIVERGED:
            logger.error(
                f"[{EscrowErrorCode.LEDGER_DIVERGED}] Trade diverged from ledger | "
                f"trade_id={trade.trade_id} | local={trade.state.value} | "
                f"ledger={result.ledger_state.name} | detail={result.detail} | "
                f"correlation_id={correlation_id}"
            )
        elif result.status == ReconciliationStatus.LEDGER_AHEAD:
            logger.warning(
                f"[RECONCILE] Ledger ahead of local record | "
                f"trade_id={trade.trade_id} | local={trade.state.value} | "
                f"ledger={result.ledger_state.name} | correlation_id={correlation_id}"
            )
        return result

    def adopt(self, result: ReconciliationResult) -> Trade:
        """
        Advance the local record to the ledger outcome in one store update.

        Missing confirmation slots are filled from the ledger's finalising
        events. Must run inside the trade's exclusive section.
        """
        trade = result.trade
        target = result.target_state
        if result.status != ReconciliationStatus.LEDGER_AHEAD or target is None:
            return trade

        recovered: Dict[str, str] = {}
        for operation in REQUIRED_SLOTS[target]:
            if trade.confirmation_for(operation) is None:
                recovered[operation.value] = self._recover_ref(trade, operation)

        expected_state = trade.state
        trade_id = trade.trade_id

        def _apply(current: Trade) -> Trade:
            if current.state != expected_state:
                raise ConflictError(
                    f"Trade {trade_id} changed while reconciling "
                    f"({expected_state.value} → {current.state.value})",
                    trade_id=trade_id,
                    correlation_id=result.correlation_id,
                )
            confirmations = dict(current.confirmations)
            for slot, ref in recovered.items():
                confirmations.setdefault(slot, ref)
            return replace(
                current,
                state=target,
                confirmations=confirmations,
                updated_at=datetime.now(timezone.utc),
            )

        updated = self.store.update(trade_id, _apply)
        record_transition(expected_state.value, target.value, result.correlation_id)

        logger.info(
            f"[RECONCILE] Adopted ledger outcome | trade_id={trade_id} | "
            f"{expected_state.value} → {target.value} | "
            f"recovered={sorted(recovered)} | correlation_id={result.correlation_id}"
        )
        return updated

    def _recover_ref(self, trade: Trade, operation: LedgerOperation) -> str:
        tx_ref = self.ledger.find_confirmation(trade.external_id, operation)
        if tx_ref is None:
            logger.warning(
                f"[RECONCILE] No finalising event found | trade_id={trade.trade_id} | "
                f"operation={operation.value} | external_id={trade.external_id}"
            )
            return f"{RECOVERED_REF_PREFIX}:{operation.value}:{trade.external_id}"
        return tx_ref
