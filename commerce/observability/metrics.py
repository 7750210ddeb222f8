"""
============================================================================
Agent Commerce Escrow v1.0.0
Prometheus Metrics - Escrow Lifecycle Observability
============================================================================

Reliability Level: L6 Critical
Input Constraints: Label values are enum values, never free text
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- escrow_trades_initiated_total: Counter of trades created
- escrow_trade_transitions_total: Counter of committed state changes
- escrow_ledger_operations_total: Counter of ledger calls by outcome
- escrow_ledger_operation_seconds: Histogram of ledger call latency
- escrow_reconciliations_total: Counter of reconciliation checks by status
- escrow_trades_by_state: Gauge of trades per lifecycle state

Recording helpers never raise; a metrics failure is logged and the
lifecycle operation carries on.

============================================================================
"""

import logging
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Histogram

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

TRADES_INITIATED = Counter(
    "escrow_trades_initiated_total",
    "Total number of escrow trades initiated"
)

TRADE_TRANSITIONS = Counter(
    "escrow_trade_transitions_total",
    "Total number of committed trade state transitions",
    ["from_state", "to_state"]
)

LEDGER_OPERATIONS = Counter(
    "escrow_ledger_operations_total",
    "Total number of money-moving ledger operations by outcome",
    ["operation", "outcome"]
)

# Buckets span a fast local ledger up to the confirmation timeout
LEDGER_OPERATION_SECONDS = Histogram(
    "escrow_ledger_operation_seconds",
    "Latency of money-moving ledger operations including confirmation",
    ["operation"],
    buckets=[0.01, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300]
)

RECONCILIATIONS = Counter(
    "escrow_reconciliations_total",
    "Total number of ledger reconciliation checks by status",
    ["status"]
)

TRADES_BY_STATE = Gauge(
    "escrow_trades_by_state",
    "Current count of active escrow trades by lifecycle state",
    ["state"]
)


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_trade_initiated(correlation_id: Optional[str] = None) -> None:
    try:
        TRADES_INITIATED.inc()
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record trade_initiated metric | error=%s | correlation_id=%s",
            str(e), correlation_id
        )


def record_transition(
    from_state: str,
    to_state: str,
    correlation_id: Optional[str] = None
) -> None:
    """
    Record a committed state change.

    Side Effects: Increments Prometheus counter
    """
    try:
        TRADE_TRANSITIONS.labels(from_state=from_state, to_state=to_state).inc()
        logger.debug(
            "Metric: transition | from=%s | to=%s | correlation_id=%s",
            from_state, to_state, correlation_id
        )
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record transition metric | error=%s",
            str(e)
        )


def record_ledger_operation(
    operation: str,
    outcome: str,
    duration_seconds: float,
    correlation_id: Optional[str] = None
) -> None:
    """
    Record one money-moving ledger call.

    Args:
        operation: lock | release | refund
        outcome: confirmed | rejected | unavailable | timeout
        duration_seconds: Wall time including the confirmation wait
    """
    try:
        LEDGER_OPERATIONS.labels(operation=operation, outcome=outcome).inc()
        LEDGER_OPERATION_SECONDS.labels(operation=operation).observe(duration_seconds)
        logger.debug(
            "Metric: ledger_operation | operation=%s | outcome=%s | seconds=%.3f | "
            "correlation_id=%s",
            operation, outcome, duration_seconds, correlation_id
        )
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record ledger_operation metric | error=%s",
            str(e)
        )


def record_reconciliation(status: str, correlation_id: Optional[str] = None) -> None:
    try:
        RECONCILIATIONS.labels(status=status).inc()
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record reconciliation metric | error=%s | correlation_id=%s",
            str(e), correlation_id
        )


def update_trades_by_state(counts: Dict[str, int]) -> None:
    """Set the per-state gauge; states absent from counts are set to zero by the caller."""
    try:
        for state, count in counts.items():
            TRADES_BY_STATE.labels(state=state).set(count)
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to update trades_by_state metric | error=%s",
            str(e)
        )
