"""
============================================================================
Agent Commerce Escrow v1.0.0
Escrow Error Taxonomy
============================================================================

Reliability Level: L6 Critical
Traceability: Every error carries an error_code and the trade_id/correlation_id
              it was raised for

Every failure the engine surfaces belongs to exactly one kind:

    InvalidArgument    caller error, never retried by the engine
    InvalidState       transition not permitted from the current state
    NotFound           no such trade
    Conflict           concurrent mutation lost the race
    LedgerRejected     ledger business rule violation, did NOT happen
    LedgerUnavailable  transient infrastructure failure, safe to retry
    LedgerTimeout      outcome UNKNOWN, reconcile before retrying

ERROR CODES:
    - ESC-001: Invalid argument
    - ESC-002: Invalid state transition
    - ESC-003: Trade not found
    - ESC-004: Concurrent mutation conflict
    - ESC-010: Ledger rejected operation
    - ESC-011: Ledger unavailable
    - ESC-012: Ledger confirmation timeout
    - ESC-013: Local record diverged from ledger escrow record
    - ESC-014: Unrecognised ledger escrow state code
    - ESC-020: Trade store persistence failure
    - ESC-040: Required configuration missing

============================================================================
"""

from enum import Enum
from typing import Optional, Dict, Any


class EscrowErrorCode:
    """Escrow engine error codes for audit logging."""
    INVALID_ARGUMENT = "ESC-001"
    INVALID_STATE = "ESC-002"
    TRADE_NOT_FOUND = "ESC-003"
    CONFLICT = "ESC-004"
    LEDGER_REJECTED = "ESC-010"
    LEDGER_UNAVAILABLE = "ESC-011"
    LEDGER_TIMEOUT = "ESC-012"
    LEDGER_DIVERGED = "ESC-013"
    LEDGER_UNKNOWN_STATE = "ESC-014"
    DB_PERSISTENCE_FAIL = "ESC-020"
    CONFIG_MISSING = "ESC-040"


class RejectionReason(Enum):
    """Why the ledger refused a money-moving operation."""
    TRADE_EXISTS = "TRADE_EXISTS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_SELLER = "INVALID_SELLER"
    INSUFFICIENT_ALLOWANCE = "INSUFFICIENT_ALLOWANCE"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    NOT_LOCKED = "NOT_LOCKED"
    NOT_BUYER = "NOT_BUYER"
    NOT_EXPIRED = "NOT_EXPIRED"
    ESCROW_MISMATCH = "ESCROW_MISMATCH"
    REVERTED = "REVERTED"


class EscrowError(Exception):
    """
    Base class for every failure surfaced by the escrow engine.

    Reliability Level: L6 Critical
    """

    kind = "EscrowError"
    default_error_code = EscrowErrorCode.INVALID_ARGUMENT
    retryable = False
    requires_reconciliation = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        trade_id: Optional[str] = None,
        correlation_id: Optional[str] = None
    ):
        self.error_code = error_code or self.default_error_code
        self.message = message
        self.trade_id = trade_id
        self.correlation_id = correlation_id
        super().__init__(f"[{self.error_code}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and audit logs."""
        return {
            "error_code": self.error_code,
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "requires_reconciliation": self.requires_reconciliation,
            "trade_id": self.trade_id,
            "correlation_id": self.correlation_id,
        }


class InvalidArgumentError(EscrowError):
    """Malformed caller input (ESC-001)."""
    kind = "InvalidArgument"
    default_error_code = EscrowErrorCode.INVALID_ARGUMENT


class InvalidStateError(EscrowError):
    """Transition not permitted from the trade's current state (ESC-002)."""
    kind = "InvalidState"
    default_error_code = EscrowErrorCode.INVALID_STATE

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        attempted: Optional[str] = None,
        **kwargs: Any
    ):
        self.current_state = current_state
        self.attempted = attempted
        super().__init__(message, **kwargs)


class TradeNotFoundError(EscrowError):
    """No trade with the requested identifier (ESC-003)."""
    kind = "NotFound"
    default_error_code = EscrowErrorCode.TRADE_NOT_FOUND


class ConflictError(EscrowError):
    """A concurrent mutation of the same trade is in flight (ESC-004)."""
    kind = "Conflict"
    default_error_code = EscrowErrorCode.CONFLICT


class TradeStoreError(EscrowError):
    """The trade store could not persist a record (ESC-020)."""
    kind = "StoreFailure"
    default_error_code = EscrowErrorCode.DB_PERSISTENCE_FAIL


# =============================================================================
# Ledger-originated failures
# =============================================================================

class LedgerError(EscrowError):
    """Base class for failures reported by the ledger client."""
    kind = "LedgerError"
    default_error_code = EscrowErrorCode.LEDGER_UNAVAILABLE

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        **kwargs: Any
    ):
        self.operation = operation
        super().__init__(message, **kwargs)


class LedgerRejectedError(LedgerError):
    """
    The ledger refused the operation on business-rule grounds (ESC-010).

    Definitive: the operation did not happen and will not happen if retried
    unchanged.
    """
    kind = "LedgerRejected"
    default_error_code = EscrowErrorCode.LEDGER_REJECTED

    def __init__(
        self,
        message: str,
        reason: RejectionReason = RejectionReason.REVERTED,
        **kwargs: Any
    ):
        self.reason = reason
        super().__init__(message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason.value
        return data


class LedgerUnavailableError(LedgerError):
    """Network or node failure before anything was submitted (ESC-011)."""
    kind = "LedgerUnavailable"
    default_error_code = EscrowErrorCode.LEDGER_UNAVAILABLE
    retryable = True


class LedgerTimeoutError(LedgerError):
    """
    Confirmation did not arrive within the bounded wait (ESC-012).

    The outcome is unknown. tx_ref holds the submitted transaction reference
    when one was obtained before the wait started.
    """
    kind = "LedgerTimeout"
    default_error_code = EscrowErrorCode.LEDGER_TIMEOUT
    requires_reconciliation = True

    def __init__(
        self,
        message: str,
        tx_ref: Optional[str] = None,
        **kwargs: Any
    ):
        self.tx_ref = tx_ref
        super().__init__(message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["tx_ref"] = self.tx_ref
        return data
