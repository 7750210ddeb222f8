"""
============================================================================
Agent Commerce Escrow v1.0.0
Escrow Services Layer
============================================================================

Trade model, identity, storage, per-trade exclusive sections, ledger
reconciliation and the lifecycle manager that sequences them.

Reliability Level: L6 Critical
============================================================================
"""

from escrow.models import (
    Trade,
    TradeState,
    VALID_TRANSITIONS,
    TERMINAL_STATES,
    ACTIVE_STATES,
    validate_transition,
)
from escrow.trade_identity import compute_external_id, generate_trade_id
from escrow.trade_store import TradeStore, InMemoryTradeStore
from escrow.sql_trade_store import SqlTradeStore, SqlTradeLeases
from escrow.trade_locks import ExclusiveSections, TradeLockRegistry
from escrow.reconciliation import (
    TradeReconciler,
    ReconciliationResult,
    ReconciliationStatus,
)
from escrow.trade_lifecycle import TradeLifecycleManager

__all__ = [
    "Trade",
    "TradeState",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "ACTIVE_STATES",
    "validate_transition",
    "compute_external_id",
    "generate_trade_id",
    "TradeStore",
    "InMemoryTradeStore",
    "SqlTradeStore",
    "SqlTradeLeases",
    "ExclusiveSections",
    "TradeLockRegistry",
    "TradeReconciler",
    "ReconciliationResult",
    "ReconciliationStatus",
    "TradeLifecycleManager",
]
