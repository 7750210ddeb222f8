"""
============================================================================
Agent Commerce Escrow v1.0.0
Trade Lifecycle Manager Service
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: amount is decimal.Decimal end to end; floats are refused
Traceability: All operations include correlation_id for audit

ESCROW TRADE STATE MACHINE:
    PENDING → LOCKED      lock_funds      (ledger: createEscrow)
    LOCKED → DELIVERED    mark_delivered  (local only)
    LOCKED → RELEASED     release_funds   (ledger: releaseEscrow)
    DELIVERED → RELEASED  release_funds   (ledger: releaseEscrow)
    LOCKED → REFUNDED     refund_funds    (ledger: refundEscrow)

    Terminal States: RELEASED, REFUNDED (no further transitions)

MONEY-MOVING OPERATION FLOW:
    1. Enter the trade's exclusive section (ConflictError if busy)
    2. Check the local state; an illegal edge fails with InvalidStateError
       before the ledger is contacted
    3. Reconcile: read the ledger's escrow record for the external id
       - ledger already holds the requested outcome → adopt it, no submission
       - ledger holds a different outcome → sync to it, InvalidStateError
       - local record ahead of the ledger → LedgerRejectedError (ESC-013)
    4. Submit to the ledger and block until confirmed, rejected or timed out
    5. One store update: new state + confirmation reference
    6. Leave the exclusive section

    Ledger failures leave the record untouched. A timeout means the outcome
    is unknown; step 3 of the next call on the trade resolves it.

ERROR CODES:
    - ESC-001: Invalid argument
    - ESC-002: Invalid state transition attempted
    - ESC-013: Local record diverged from ledger
    - ESC-020: Ledger confirmed but local commit failed (CRITICAL)

============================================================================
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, List, Callable, Union
import logging
import time
import uuid

from commerce.errors import (
    EscrowError,
    EscrowErrorCode,
    ConflictError,
    InvalidArgumentError,
    InvalidStateError,
    LedgerError,
    LedgerRejectedError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    RejectionReason,
)
from commerce.ledger import contract_abi as abi
from commerce.ledger.client import (
    LedgerClient,
    LedgerConfirmation,
    LedgerOperation,
    LedgerSigner,
)
from commerce.ledger.token_units import TokenUnitGateway, DEFAULT_TOKEN_DECIMALS
from commerce.observability.metrics import (
    record_ledger_operation,
    record_trade_initiated,
    record_transition,
    update_trades_by_state,
)
from escrow.models import (
    Trade,
    TradeState,
    ACTIVE_STATES,
    CONFIRMATION_SLOT,
    validate_transition,
)
from escrow.reconciliation import (
    ReconciliationResult,
    ReconciliationStatus,
    TradeReconciler,
)
from escrow.trade_identity import compute_external_id, generate_trade_id
from escrow.trade_locks import ExclusiveSections
from escrow.trade_store import TradeStore

# Configure module logger
logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _outcome_label(error: Exception) -> str:
    if isinstance(error, LedgerRejectedError):
        return "rejected"
    if isinstance(error, LedgerTimeoutError):
        return "timeout"
    if isinstance(error, LedgerUnavailableError):
        return "unavailable"
    return "error"


class TradeLifecycleManager:
    """
    Orchestrates escrow trades against the ledger.

    Reliability Level: L6 Critical
    Input Constraints: store and ledger are shared, thread-safe collaborators
    Side Effects: Ledger submissions, store writes, logs, metrics

    Example Usage:
        manager = TradeLifecycleManager(InMemoryTradeStore(), SimulatedLedger())
        trade = manager.initiate("svc_1", "B", "S", "0xB", "0xA", Decimal("50"))
        trade = manager.lock_funds(trade.trade_id, LedgerSigner("0xB"))
    """

    def __init__(
        self,
        store: TradeStore,
        ledger: LedgerClient,
        locks: Optional[ExclusiveSections] = None,
        token_decimals: int = DEFAULT_TOKEN_DECIMALS,
        confirmation_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = _utc_now
    ) -> None:
        """
        Args:
            store: Trade store
            ledger: Ledger client for money-moving operations
            locks: Per-trade exclusive sections (the store's own if None)
            token_decimals: Decimals of the escrow token, bounds amount precision
            confirmation_timeout: Default bounded wait passed to the ledger
            clock: Source of timezone-aware timestamps
        """
        self.store = store
        self.ledger = ledger
        self.locks = locks or store.exclusive_sections()
        self.reconciler = TradeReconciler(ledger, store)
        self.gateway = TokenUnitGateway(token_decimals)
        self.confirmation_timeout = confirmation_timeout
        self._clock = clock

        logger.info(
            f"[TRADE-LIFECYCLE] Manager initialized | "
            f"store={type(store).__name__} | ledger={type(ledger).__name__} | "
            f"confirmation_timeout={confirmation_timeout}"
        )

    # =========================================================================
    # Creation
    # =========================================================================

    def initiate(
        self,
        listing_ref: str,
        buyer_party: str,
        seller_party: str,
        buyer_address: str,
        seller_address: str,
        amount: Union[Decimal, int, str],
        correlation_id: Optional[str] = None
    ) -> Trade:
        """
        Create a new trade in PENDING state. Purely local.

        Raises:
            InvalidArgumentError: On malformed input
            ConflictError: If the generated identifiers collide
        """
        correlation_id = correlation_id or str(uuid.uuid4())

        for name, value in (
            ("listing_ref", listing_ref),
            ("buyer_party", buyer_party),
            ("seller_party", seller_party),
        ):
            if not isinstance(value, str) or not value.strip():
                self._reject_argument(f"{name} must be a non-empty string", correlation_id)

        for name, address in (("buyer_address", buyer_address), ("seller_address", seller_address)):
            if not isinstance(address, str) or not abi.is_well_formed_address(address):
                self._reject_argument(f"{name} is not a ledger address: {address!r}", correlation_id)
            if abi.is_zero_address(address):
                self._reject_argument(f"{name} must not be the zero address", correlation_id)

        value = self.gateway.to_decimal(amount, correlation_id)
        if value <= 0:
            self._reject_argument(f"amount must be positive, got {value}", correlation_id)
        if not self.gateway.is_representable(value):
            self._reject_argument(
                f"amount {value} has more than {self.gateway.decimals} fractional digits",
                correlation_id,
            )
        if self.gateway.to_base_units(value, correlation_id) >= abi.UINT256_LIMIT:
            self._reject_argument(
                f"amount {value} exceeds the ledger's uint256 range", correlation_id
            )

        now = self._clock()
        trade_id = generate_trade_id()
        trade = Trade(
            trade_id=trade_id,
            external_id=compute_external_id(trade_id, buyer_address, seller_address, now),
            listing_ref=listing_ref,
            buyer_party=buyer_party,
            seller_party=seller_party,
            buyer_address=buyer_address,
            seller_address=seller_address,
            amount=value,
            state=TradeState.PENDING,
            created_at=now,
            updated_at=now,
        )

        trade = self.store.insert(trade)
        record_trade_initiated(correlation_id)

        logger.info(
            f"[TRADE-LIFECYCLE] Trade initiated | trade_id={trade_id} | "
            f"external_id={trade.external_id} | listing_ref={listing_ref} | "
            f"amount={self.gateway.format_amount(value)} | state=pending | "
            f"correlation_id={correlation_id}"
        )
        return trade

    # =========================================================================
    # Transitions
    # =========================================================================

    def lock_funds(
        self,
        trade_id: str,
        signer: LedgerSigner,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Trade:
        """
        PENDING → LOCKED. The signer must be the trade's buyer address.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        self._require_signer(signer, correlation_id)

        def _authorize(trade: Trade) -> None:
            if not abi.same_address(signer.address, trade.buyer_address):
                self._reject_argument(
                    f"lock signer {signer.address} is not the buyer address "
                    f"{trade.buyer_address}",
                    correlation_id,
                    trade_id=trade_id,
                )

        def _submit(trade: Trade) -> LedgerConfirmation:
            return self.ledger.lock_funds(
                signer,
                trade.seller_address,
                trade.amount,
                trade.external_id,
                timeout=self._timeout(timeout),
            )

        return self._move_funds(
            trade_id, LedgerOperation.LOCK, TradeState.LOCKED, _submit, correlation_id,
            authorize=_authorize,
        )

    def mark_delivered(self, trade_id: str, correlation_id: Optional[str] = None) -> Trade:
        """LOCKED → DELIVERED. Purely local."""
        correlation_id = correlation_id or str(uuid.uuid4())

        with self.locks.exclusive(trade_id, "deliver", correlation_id):
            trade = self.store.get(trade_id)
            self._require_edge(trade, TradeState.DELIVERED, correlation_id)

            updated = self.store.update(
                trade_id,
                self._transition_mutator(trade.state, TradeState.DELIVERED, correlation_id),
            )

        record_transition(trade.state.value, updated.state.value, correlation_id)
        logger.info(
            f"[TRADE-LIFECYCLE] Delivery marked | trade_id={trade_id} | "
            f"locked → delivered | correlation_id={correlation_id}"
        )
        return updated

    def release_funds(
        self,
        trade_id: str,
        signer: LedgerSigner,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Trade:
        """LOCKED | DELIVERED → RELEASED."""
        correlation_id = correlation_id or str(uuid.uuid4())
        self._require_signer(signer, correlation_id)

        def _submit(trade: Trade) -> LedgerConfirmation:
            return self.ledger.release_funds(
                signer, trade.external_id, timeout=self._timeout(timeout)
            )

        return self._move_funds(
            trade_id, LedgerOperation.RELEASE, TradeState.RELEASED, _submit, correlation_id
        )

    def refund_funds(
        self,
        trade_id: str,
        signer: LedgerSigner,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Trade:
        """LOCKED → REFUNDED. Not reachable from DELIVERED."""
        correlation_id = correlation_id or str(uuid.uuid4())
        self._require_signer(signer, correlation_id)

        def _submit(trade: Trade) -> LedgerConfirmation:
            return self.ledger.refund_funds(
                signer, trade.external_id, timeout=self._timeout(timeout)
            )

        return self._move_funds(
            trade_id, LedgerOperation.REFUND, TradeState.REFUNDED, _submit, correlation_id
        )

    def reconcile_trade(
        self,
        trade_id: str,
        correlation_id: Optional[str] = None
    ) -> ReconciliationResult:
        """
        Compare a trade with the ledger and adopt the ledger outcome if it is
        ahead. A diverged trade is reported, not changed.
        """
        correlation_id = correlation_id or str(uuid.uuid4())

        with self.locks.exclusive(trade_id, "reconcile", correlation_id):
            trade = self.store.get(trade_id)
            result = self.reconciler.check(trade, correlation_id)
            if result.status == ReconciliationStatus.LEDGER_AHEAD:
                result.trade = self.reconciler.adopt(result)

        logger.info(
            f"[TRADE-LIFECYCLE] Reconciled | trade_id={trade_id} | "
            f"status={result.status.value} | state={result.trade.state.value} | "
            f"correlation_id={correlation_id}"
        )
        return result

    # =========================================================================
    # Queries
    # =========================================================================

    def get_trade(self, trade_id: str) -> Trade:
        return self.store.get(trade_id)

    def list_by_party(self, party: str) -> List[Trade]:
        return self.store.list_by_party(party)

    def list_active(self) -> List[Trade]:
        return self.store.list_active()

    def update_state_metrics(self) -> Dict[str, int]:
        """Refresh the trades-by-state gauge for active states."""
        counts = {state.value: 0 for state in ACTIVE_STATES}
        for trade in self.store.list_active():
            counts[trade.state.value] += 1
        update_trades_by_state(counts)
        return counts

    # =========================================================================
    # Private Methods
    # =========================================================================

    def _move_funds(
        self,
        trade_id: str,
        operation: LedgerOperation,
        target: TradeState,
        submit: Callable[[Trade], LedgerConfirmation],
        correlation_id: str,
        authorize: Optional[Callable[[Trade], None]] = None
    ) -> Trade:
        with self.locks.exclusive(trade_id, operation.value, correlation_id):
            trade = self.store.get(trade_id)
            self._require_edge(trade, target, correlation_id)
            if authorize is not None:
                authorize(trade)

            settled = self._reconcile_before_submit(trade, target, correlation_id)
            if settled is not None:
                return settled

            started = time.monotonic()
            try:
                confirmation = submit(trade)
            except LedgerRejectedError as e:
                record_ledger_operation(
                    operation.value, "rejected", time.monotonic() - started, correlation_id
                )
                if operation == LedgerOperation.LOCK and e.reason == RejectionReason.TRADE_EXISTS:
                    return self._adopt_existing_lock(trade, e, correlation_id)
                raise self._annotate(e, trade_id, correlation_id)
            except LedgerError as e:
                record_ledger_operation(
                    operation.value, _outcome_label(e), time.monotonic() - started, correlation_id
                )
                if isinstance(e, LedgerTimeoutError):
                    logger.warning(
                        f"[{EscrowErrorCode.LEDGER_TIMEOUT}] Outcome unknown, reconcile before retry | "
                        f"trade_id={trade_id} | operation={operation.value} | "
                        f"tx={e.tx_ref} | correlation_id={correlation_id}"
                    )
                raise self._annotate(e, trade_id, correlation_id)

            record_ledger_operation(
                operation.value, "confirmed", time.monotonic() - started, correlation_id
            )
            return self._commit(trade, target, confirmation, correlation_id)

    def _reconcile_before_submit(
        self,
        trade: Trade,
        target: TradeState,
        correlation_id: str
    ) -> Optional[Trade]:
        """
        Returns the settled trade when the ledger already holds the requested
        outcome, None when submission should proceed.
        """
        result = self.reconciler.check(trade, correlation_id)

        if result.status == ReconciliationStatus.MATCHED:
            return None

        if result.status == ReconciliationStatus.DIVERGED:
            raise LedgerRejectedError(
                f"Trade {trade.trade_id} diverged from ledger: {result.detail}",
                reason=RejectionReason.ESCROW_MISMATCH,
                error_code=EscrowErrorCode.LEDGER_DIVERGED,
                trade_id=trade.trade_id,
                correlation_id=correlation_id,
            )

        adopted = self.reconciler.adopt(result)
        if adopted.state == target:
            logger.info(
                f"[TRADE-LIFECYCLE] Ledger already applied {target.value} | "
                f"trade_id={trade.trade_id} | no submission | correlation_id={correlation_id}"
            )
            return adopted

        logger.error(
            f"[{EscrowErrorCode.INVALID_STATE}] Ledger settled trade differently | "
            f"trade_id={trade.trade_id} | requested={target.value} | "
            f"ledger_outcome={adopted.state.value} | correlation_id={correlation_id}"
        )
        raise InvalidStateError(
            f"Trade {trade.trade_id} is {adopted.state.value} on the ledger",
            current_state=adopted.state.value,
            attempted=target.value,
            trade_id=trade.trade_id,
            correlation_id=correlation_id,
        )

    def _adopt_existing_lock(
        self,
        trade: Trade,
        rejection: LedgerRejectedError,
        correlation_id: str
    ) -> Trade:
        """A lock refused with TRADE_EXISTS is "already applied" only if the escrow matches."""
        result = self.reconciler.check(trade, correlation_id)
        if (
            result.status == ReconciliationStatus.LEDGER_AHEAD
            and result.target_state == TradeState.LOCKED
        ):
            return self.reconciler.adopt(result)

        raise LedgerRejectedError(
            f"Escrow for {trade.external_id} exists but does not match trade "
            f"{trade.trade_id}: {result.detail or result.status.value}",
            reason=RejectionReason.ESCROW_MISMATCH,
            error_code=EscrowErrorCode.LEDGER_DIVERGED,
            operation=LedgerOperation.LOCK.value,
            trade_id=trade.trade_id,
            correlation_id=correlation_id,
        ) from rejection

    def _commit(
        self,
        trade: Trade,
        target: TradeState,
        confirmation: LedgerConfirmation,
        correlation_id: str
    ) -> Trade:
        try:
            updated = self.store.update(
                trade.trade_id,
                self._transition_mutator(trade.state, target, correlation_id, confirmation),
            )
        except EscrowError:
            logger.critical(
                f"[{EscrowErrorCode.DB_PERSISTENCE_FAIL}] Ledger confirmed but local commit failed | "
                f"trade_id={trade.trade_id} | operation={confirmation.operation.value} | "
                f"tx={confirmation.tx_ref} | next call reconciles | "
                f"correlation_id={correlation_id}"
            )
            raise

        record_transition(trade.state.value, target.value, correlation_id)
        logger.info(
            f"[TRADE-LIFECYCLE] Transition committed | trade_id={trade.trade_id} | "
            f"{trade.state.value} → {target.value} | tx={confirmation.tx_ref} | "
            f"correlation_id={correlation_id}"
        )
        return updated

    def _transition_mutator(
        self,
        expected: TradeState,
        target: TradeState,
        correlation_id: str,
        confirmation: Optional[LedgerConfirmation] = None
    ) -> Callable[[Trade], Trade]:
        now = self._clock()

        def _apply(current: Trade) -> Trade:
            if current.state != expected:
                raise ConflictError(
                    f"Trade {current.trade_id} changed underneath "
                    f"({expected.value} → {current.state.value})",
                    trade_id=current.trade_id,
                    correlation_id=correlation_id,
                )
            confirmations = dict(current.confirmations)
            if confirmation is not None:
                slot = CONFIRMATION_SLOT[target].value
                if slot in confirmations:
                    raise ConflictError(
                        f"Confirmation slot '{slot}' already written for {current.trade_id}",
                        trade_id=current.trade_id,
                        correlation_id=correlation_id,
                    )
                confirmations[slot] = confirmation.tx_ref
            return replace(current, state=target, confirmations=confirmations, updated_at=now)

        return _apply

    def _require_edge(self, trade: Trade, target: TradeState, correlation_id: str) -> None:
        is_valid, error_code = validate_transition(trade.state, target, correlation_id)
        if not is_valid:
            raise InvalidStateError(
                f"Cannot move trade {trade.trade_id} from {trade.state.value} to {target.value}",
                current_state=trade.state.value,
                attempted=target.value,
                error_code=error_code,
                trade_id=trade.trade_id,
                correlation_id=correlation_id,
            )

    def _require_signer(self, signer: LedgerSigner, correlation_id: str) -> None:
        if not isinstance(signer, LedgerSigner) or not abi.is_well_formed_address(signer.address):
            self._reject_argument(f"signer is not a ledger account: {signer!r}", correlation_id)

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.confirmation_timeout

    @staticmethod
    def _annotate(error: EscrowError, trade_id: str, correlation_id: str) -> EscrowError:
        if error.trade_id is None:
            error.trade_id = trade_id
        if error.correlation_id is None:
            error.correlation_id = correlation_id
        return error

    @staticmethod
    def _reject_argument(
        message: str,
        correlation_id: str,
        trade_id: Optional[str] = None
    ) -> None:
        logger.error(
            f"[{EscrowErrorCode.INVALID_ARGUMENT}] {message} | "
            f"trade_id={trade_id} | correlation_id={correlation_id}"
        )
        raise InvalidArgumentError(message, trade_id=trade_id, correlation_id=correlation_id)
