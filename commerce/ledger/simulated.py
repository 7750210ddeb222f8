"""
============================================================================
Agent Commerce Escrow v1.0.0
Simulated Ledger - In-Process Escrow Token Contract
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Balances held as integer base units, converted via
                   TokenUnitGateway at the boundary

SIMULATED LEDGER:
    Applies the escrow token contract's rules without a node:
    - createEscrow fails if the trade id already has a non-NONE state, the
      seller is the zero address, or the amount is zero
    - createEscrow needs an allowance covering the amount and the balance
    - releaseEscrow: original locker only, escrow must be LOCKED
    - refundEscrow: original locker after expiry, or the arbiter at any
      time, escrow must be LOCKED

TEST CONTROLS:
    - fail_next(operation, error, apply=False) queues a failure; with
      apply=True the ledger applies the operation and THEN raises, which is
      how a confirmation timeout looks from the caller's side
    - set_available(False) makes every call fail with LedgerUnavailableError
    - on_submit hook runs before each money-moving submission, outside the
      ledger mutex, so tests can hold a call in flight
    - submissions records every (operation, external_id) that reached the
      ledger

============================================================================
"""

from collections import defaultdict, deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, List, Tuple, Callable, Deque
import hashlib
import logging
import threading
import time

from commerce.errors import (
    LedgerError,
    LedgerRejectedError,
    LedgerUnavailableError,
    RejectionReason,
)
from commerce.ledger.client import (
    LedgerClient,
    LedgerSigner,
    LedgerConfirmation,
    LedgerOperation,
    LedgerEscrowState,
    EscrowRecord,
)
from commerce.ledger import contract_abi as abi
from commerce.ledger.token_units import TokenUnitGateway, DEFAULT_TOKEN_DECIMALS

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_ESCROW_TIMEOUT_SECONDS = 7 * 24 * 60 * 60


@dataclass
class _Escrow:
    buyer: str
    seller: str
    amount_units: int
    created_at: int
    expires_at: int
    state: LedgerEscrowState


@dataclass
class _QueuedFault:
    error: LedgerError
    apply: bool


class SimulatedLedger(LedgerClient):
    """
    In-process implementation of the escrow token contract.

    Reliability Level: L6 Critical
    Thread Safety: Ledger state guarded by a single mutex

    Example Usage:
        ledger = SimulatedLedger()
        ledger.mint("0xB", Decimal("100"))
        confirmation = ledger.lock_funds(
            LedgerSigner("0xB"), "0xA", Decimal("50"), external_id
        )
    """

    def __init__(
        self,
        token_decimals: int = DEFAULT_TOKEN_DECIMALS,
        escrow_timeout_seconds: int = DEFAULT_ESCROW_TIMEOUT_SECONDS,
        arbiter_address: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        on_submit: Optional[Callable[[LedgerOperation, str], None]] = None
    ):
        self.gateway = TokenUnitGateway(token_decimals)
        self.escrow_timeout_seconds = escrow_timeout_seconds
        self.arbiter_address = arbiter_address
        self.on_submit = on_submit
        self._clock = clock

        self._lock = threading.Lock()
        self._balances: Dict[int, int] = defaultdict(int)
        self._allowances: Dict[int, int] = defaultdict(int)
        self._escrows: Dict[str, _Escrow] = {}
        self._events: Dict[Tuple[str, LedgerOperation], str] = {}
        self._faults: Dict[LedgerOperation, Deque[_QueuedFault]] = defaultdict(deque)
        self._available = True
        self._block_number = 0
        self._tx_counter = 0

        self.submissions: List[Tuple[LedgerOperation, str]] = []
        self.approvals: List[Tuple[str, int]] = []

        logger.info(
            f"[LEDGER-SIM] Simulated ledger initialized | "
            f"decimals={token_decimals} | escrow_timeout={escrow_timeout_seconds}s | "
            f"arbiter={arbiter_address}"
        )

    # =========================================================================
    # Test controls
    # =========================================================================

    def mint(self, address: str, amount: Decimal) -> None:
        with self._lock:
            self._balances[abi.address_to_int(address)] += self.gateway.to_base_units(amount)

    def approve(self, owner: str, amount: Decimal) -> None:
        """Set the escrow allowance directly (approval outside the engine)."""
        with self._lock:
            self._allowances[abi.address_to_int(owner)] = self.gateway.to_base_units(amount)

    def fail_next(
        self,
        operation: LedgerOperation,
        error: LedgerError,
        apply: bool = False
    ) -> None:
        with self._lock:
            self._faults[operation].append(_QueuedFault(error=error, apply=apply))

    def set_available(self, available: bool) -> None:
        with self._lock:
            self._available = available

    def submission_count(self, operation: Optional[LedgerOperation] = None) -> int:
        with self._lock:
            if operation is None:
                return len(self.submissions)
            return sum(1 for op, _ in self.submissions if op == operation)

    # =========================================================================
    # Money-moving operations
    # =========================================================================

    def lock_funds(
        self,
        signer: LedgerSigner,
        seller_address: str,
        amount: Decimal,
        external_id: str,
        timeout: Optional[float] = None
    ) -> LedgerConfirmation:
        operation = LedgerOperation.LOCK
        self._before_submit(operation, external_id)

        with self._lock:
            self._check_available(operation)
            fault = self._pop_fault(operation)
            if fault is not None and not fault.apply:
                raise fault.error

            buyer = abi.address_to_int(signer.address)
            approval_tx_ref = None

            units = self._amount_units(amount, operation)
            if self._allowances[buyer] < units:
                # Approval is skipped when the existing allowance covers the amount
                self._allowances[buyer] = units
                approval_tx_ref = self._next_tx_ref("approve", external_id)
                self.approvals.append((signer.address, units))

            self._validate_create(external_id, seller_address, units, buyer)

            now = int(self._clock())
            self._balances[buyer] -= units
            self._allowances[buyer] -= units
            self._escrows[external_id] = _Escrow(
                buyer=abi.normalize_address(signer.address),
                seller=abi.normalize_address(seller_address),
                amount_units=units,
                created_at=now,
                expires_at=now + self.escrow_timeout_seconds,
                state=LedgerEscrowState.LOCKED,
            )
            confirmation = self._confirm(operation, external_id, approval_tx_ref)

            if fault is not None:
                raise fault.error

        return confirmation

    def release_funds(
        self,
        signer: LedgerSigner,
        external_id: str,
        timeout: Optional[float] = None
    ) -> LedgerConfirmation:
        operation = LedgerOperation.RELEASE
        self._before_submit(operation, external_id)

        with self._lock:
            self._check_available(operation)
            fault = self._pop_fault(operation)
            if fault is not None and not fault.apply:
                raise fault.error

            escrow = self._locked_escrow(external_id, operation)
            if not abi.same_address(signer.address, escrow.buyer):
                raise LedgerRejectedError(
                    f"Only the buyer of record may release {external_id}",
                    reason=RejectionReason.NOT_BUYER,
                    operation=operation.value,
                )

            escrow.state = LedgerEscrowState.RELEASED
            self._balances[abi.address_to_int(escrow.seller)] += escrow.amount_units
            confirmation = self._confirm(operation, external_id)

            if fault is not None:
                raise fault.error

        return confirmation

    def refund_funds(
        self,
        signer: LedgerSigner,
        external_id: str,
        timeout: Optional[float] = None
    ) -> LedgerConfirmation:
        operation = LedgerOperation.REFUND
        self._before_submit(operation, external_id)

        with self._lock:
            self._check_available(operation)
            fault = self._pop_fault(operation)
            if fault is not None and not fault.apply:
                raise fault.error

            escrow = self._locked_escrow(external_id, operation)
            is_arbiter = (
                self.arbiter_address is not None
                and abi.same_address(signer.address, self.arbiter_address)
            )
            is_buyer = abi.same_address(signer.address, escrow.buyer)

            if not is_arbiter:
                if not is_buyer:
                    raise LedgerRejectedError(
                        f"Signer is neither the buyer nor the arbiter for {external_id}",
                        reason=RejectionReason.NOT_BUYER,
                        operation=operation.value,
                    )
                if int(self._clock()) < escrow.expires_at:
                    raise LedgerRejectedError(
                        f"Escrow {external_id} has not expired",
                        reason=RejectionReason.NOT_EXPIRED,
                        operation=operation.value,
                    )

            escrow.state = LedgerEscrowState.REFUNDED
            self._balances[abi.address_to_int(escrow.buyer)] += escrow.amount_units
            confirmation = self._confirm(operation, external_id)

            if fault is not None:
                raise fault.error

        return confirmation

    # =========================================================================
    # Queries
    # =========================================================================

    def get_escrow(self, external_id: str) -> EscrowRecord:
        with self._lock:
            self._check_available(None)
            escrow = self._escrows.get(external_id)
            if escrow is None:
                return EscrowRecord(external_id=external_id, state=LedgerEscrowState.NONE)
            return EscrowRecord(
                external_id=external_id,
                state=escrow.state,
                buyer=escrow.buyer,
                seller=escrow.seller,
                amount=self.gateway.from_base_units(escrow.amount_units),
                created_at=escrow.created_at,
                expires_at=escrow.expires_at,
            )

    def find_confirmation(
        self,
        external_id: str,
        operation: LedgerOperation
    ) -> Optional[str]:
        with self._lock:
            self._check_available(None)
            return self._events.get((external_id, operation))

    def balance_of(self, address: str) -> Decimal:
        with self._lock:
            self._check_available(None)
            return self.gateway.from_base_units(self._balances[abi.address_to_int(address)])

    def allowance(self, owner: str) -> Decimal:
        with self._lock:
            self._check_available(None)
            return self.gateway.from_base_units(self._allowances[abi.address_to_int(owner)])

    # =========================================================================
    # Private Methods
    # =========================================================================

    def _before_submit(self, operation: LedgerOperation, external_id: str) -> None:
        if self.on_submit is not None:
            self.on_submit(operation, external_id)
        with self._lock:
            self.submissions.append((operation, external_id))

    def _check_available(self, operation: Optional[LedgerOperation]) -> None:
        if not self._available:
            raise LedgerUnavailableError(
                "Simulated ledger is unavailable",
                operation=operation.value if operation else None,
            )

    def _pop_fault(self, operation: LedgerOperation) -> Optional[_QueuedFault]:
        queue = self._faults.get(operation)
        if queue:
            return queue.popleft()
        return None

    def _amount_units(self, amount: Decimal, operation: LedgerOperation) -> int:
        if amount <= 0:
            raise LedgerRejectedError(
                f"Escrow amount must be positive, got {amount}",
                reason=RejectionReason.INVALID_AMOUNT,
                operation=operation.value,
            )
        return self.gateway.to_base_units(amount)

    def _validate_create(
        self,
        external_id: str,
        seller_address: str,
        units: int,
        buyer: int
    ) -> None:
        operation = LedgerOperation.LOCK.value
        if external_id in self._escrows:
            raise LedgerRejectedError(
                f"Escrow already exists for {external_id}",
                reason=RejectionReason.TRADE_EXISTS,
                operation=operation,
            )
        if not abi.is_well_formed_address(seller_address) or abi.is_zero_address(seller_address):
            raise LedgerRejectedError(
                f"Invalid seller address: {seller_address!r}",
                reason=RejectionReason.INVALID_SELLER,
                operation=operation,
            )
        if self._balances[buyer] < units:
            raise LedgerRejectedError(
                f"Insufficient balance to escrow {self.gateway.from_base_units(units)}",
                reason=RejectionReason.INSUFFICIENT_BALANCE,
                operation=operation,
            )

    def _locked_escrow(self, external_id: str, operation: LedgerOperation) -> _Escrow:
        escrow = self._escrows.get(external_id)
        if escrow is None or escrow.state != LedgerEscrowState.LOCKED:
            state = escrow.state.name if escrow else LedgerEscrowState.NONE.name
            raise LedgerRejectedError(
                f"Escrow {external_id} is not locked (state={state})",
                reason=RejectionReason.NOT_LOCKED,
                operation=operation.value,
            )
        return escrow

    def _next_tx_ref(self, label: str, external_id: str) -> str:
        self._tx_counter += 1
        self._block_number += 1
        digest = hashlib.sha256(
            f"{self._tx_counter}:{label}:{external_id}".encode()
        ).hexdigest()
        return "0x" + digest

    def _confirm(
        self,
        operation: LedgerOperation,
        external_id: str,
        approval_tx_ref: Optional[str] = None
    ) -> LedgerConfirmation:
        tx_ref = self._next_tx_ref(operation.value, external_id)
        self._events[(external_id, operation)] = tx_ref
        logger.info(
            f"[LEDGER-SIM] {operation.value} confirmed | "
            f"external_id={external_id} | tx={tx_ref} | block={self._block_number}"
        )
        return LedgerConfirmation(
            operation=operation,
            tx_ref=tx_ref,
            external_id=external_id,
            block_number=self._block_number,
            approval_tx_ref=approval_tx_ref,
        )
