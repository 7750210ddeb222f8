"""
============================================================================
Agent Commerce Escrow v1.0.0
Ledger Client Contract
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Token amounts are decimal.Decimal on this side of the
                   boundary and integer base units on the ledger side

The ledger client hides transaction submission, confirmation waiting and
receipt extraction behind calls that block until the ledger has durably
recorded the operation, rejected it, or the bounded wait ran out.

CONFIRMATION SEMANTICS:
    lock_funds     approval (skipped when the allowance already covers the
                   amount) + createEscrow, BOTH confirmed before returning
    release_funds  releaseEscrow confirmed
    refund_funds   refundEscrow confirmed

FAILURES:
    LedgerRejectedError     did not happen (business rule)
    LedgerUnavailableError  did not happen (infrastructure), safe to retry
    LedgerTimeoutError      unknown, reconcile via get_escrow() first

LEDGER STATE MAPPING:
    The contract reports escrow state as a small integer. It is converted
    here, and only here, into LedgerEscrowState. Unknown codes are refused
    (ESC-014) rather than guessed.

============================================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
import logging

from commerce.errors import LedgerUnavailableError, EscrowErrorCode

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================

class LedgerOperation(Enum):
    """Money-moving operations; values double as confirmation slot names."""
    LOCK = "lock"
    RELEASE = "release"
    REFUND = "refund"


class LedgerEscrowState(Enum):
    """
    Escrow state as recorded by the ledger contract.

        NONE      no escrow exists for the trade id
        LOCKED    funds held by the contract
        RELEASED  funds paid to the seller
        REFUNDED  funds returned to the buyer
    """
    NONE = 0
    LOCKED = 1
    RELEASED = 2
    REFUNDED = 3

    @classmethod
    def from_ledger_code(
        cls,
        code: int,
        external_id: Optional[str] = None
    ) -> "LedgerEscrowState":
        """
        Convert the contract's uint8 state into the enum.

        Raises:
            LedgerUnavailableError: (ESC-014) if the code is not one of the
                four known states; the contract is not the one we expect
        """
        for state in cls:
            if state.value == code:
                return state

        error_msg = (
            f"Unrecognised ledger escrow state code {code} | "
            f"external_id={external_id}"
        )
        logger.error(f"[{EscrowErrorCode.LEDGER_UNKNOWN_STATE}] {error_msg}")
        raise LedgerUnavailableError(
            error_msg,
            error_code=EscrowErrorCode.LEDGER_UNKNOWN_STATE,
        )


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class LedgerSigner:
    """
    Opaque handle to an account able to sign and submit ledger transactions.

    The engine never sees key material; address identifies the account the
    signing provider acts for.
    """
    address: str
    label: Optional[str] = None


@dataclass(frozen=True)
class LedgerConfirmation:
    """Proof that a money-moving operation was durably finalised."""
    operation: LedgerOperation
    tx_ref: str
    external_id: str
    block_number: Optional[int] = None
    approval_tx_ref: Optional[str] = None
    confirmed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "tx_ref": self.tx_ref,
            "external_id": self.external_id,
            "block_number": self.block_number,
            "approval_tx_ref": self.approval_tx_ref,
            "confirmed_at": self.confirmed_at.isoformat(),
        }


@dataclass(frozen=True)
class EscrowRecord:
    """The ledger's own escrow entry for a trade id."""
    external_id: str
    state: LedgerEscrowState
    buyer: Optional[str] = None
    seller: Optional[str] = None
    amount: Decimal = Decimal("0")
    created_at: int = 0
    expires_at: int = 0

    @property
    def exists(self) -> bool:
        return self.state != LedgerEscrowState.NONE


# =============================================================================
# Ledger Client Interface
# =============================================================================

class LedgerClient(ABC):
    """
    Abstract ledger client.

    Implementations:
        JsonRpcLedgerClient  Ethereum JSON-RPC node
        SimulatedLedger      in-process ledger with the same contract rules

    All money-moving calls block the calling thread for at most `timeout`
    seconds (implementation default when None).
    """

    @abstractmethod
    def lock_funds(
        self,
        signer: LedgerSigner,
        seller_address: str,
        amount: Decimal,
        external_id: str,
        timeout: Optional[float] = None
    ) -> LedgerConfirmation:
        """Approve if needed, then createEscrow; both confirmed."""

    @abstractmethod
    def release_funds(
        self,
        signer: LedgerSigner,
        external_id: str,
        timeout: Optional[float] = None
    ) -> LedgerConfirmation:
        """releaseEscrow; only the original locker may call."""

    @abstractmethod
    def refund_funds(
        self,
        signer: LedgerSigner,
        external_id: str,
        timeout: Optional[float] = None
    ) -> LedgerConfirmation:
        """refundEscrow; locker after expiry, or the arbiter at any time."""

    @abstractmethod
    def get_escrow(self, external_id: str) -> EscrowRecord:
        """Authoritative escrow record, NONE state if it does not exist."""

    @abstractmethod
    def find_confirmation(
        self,
        external_id: str,
        operation: LedgerOperation
    ) -> Optional[str]:
        """Transaction reference that finalised operation, if the ledger has one."""

    @abstractmethod
    def balance_of(self, address: str) -> Decimal:
        """Token balance of an account."""

    @abstractmethod
    def allowance(self, owner: str) -> Decimal:
        """Amount the escrow contract may currently move on owner's behalf."""
