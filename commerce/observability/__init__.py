"""
============================================================================
Agent Commerce Escrow v1.0.0
Observability Module - Prometheus Metrics
============================================================================

Reliability Level: L6 Critical
Side Effects: Exposes Prometheus metrics

============================================================================
"""

from commerce.observability.metrics import (
    TRADES_INITIATED,
    TRADE_TRANSITIONS,
    LEDGER_OPERATIONS,
    LEDGER_OPERATION_SECONDS,
    RECONCILIATIONS,
    TRADES_BY_STATE,
    record_trade_initiated,
    record_transition,
    record_ledger_operation,
    record_reconciliation,
    update_trades_by_state,
)

__all__ = [
    "TRADES_INITIATED",
    "TRADE_TRANSITIONS",
    "LEDGER_OPERATIONS",
    "LEDGER_OPERATION_SECONDS",
    "RECONCILIATIONS",
    "TRADES_BY_STATE",
    "record_trade_initiated",
    "record_transition",
    "record_ledger_operation",
    "record_reconciliation",
    "update_trades_by_state",
]
