"""
Unit Tests for Trade Reconciliation and the State Model

Reliability Level: L6 Critical
Python 3.8 Compatible

Tests:
- assess() classification for every (local state, ledger state) pair
- escrow records for a different buyer, seller or amount are DIVERGED
- adopt() fills missing confirmation slots once and refuses stale input
- transition table and ledger interpretation
"""

from dataclasses import FrozenInstanceError, replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from commerce.errors import ConflictError, LedgerUnavailableError
from commerce.ledger.client import EscrowRecord, LedgerEscrowState, LedgerOperation, LedgerSigner
from commerce.ledger.simulated import SimulatedLedger
from escrow.models import (
    LEDGER_STATE_INTERPRETATION,
    Trade,
    TradeState,
    VALID_TRANSITIONS,
    is_consistent_with_ledger,
    is_terminal_state,
    validate_transition,
)
from escrow.reconciliation import (
    ReconciliationStatus,
    TradeReconciler,
    assess,
)
from escrow.trade_identity import compute_external_id
from escrow.trade_store import InMemoryTradeStore


CREATED = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
BUYER = "0xB"
SELLER = "0xA"


def make_trade(state: TradeState = TradeState.PENDING, confirmations=None) -> Trade:
    return Trade(
        trade_id="trade_1",
        external_id=compute_external_id("trade_1", BUYER, SELLER, CREATED),
        listing_ref="svc",
        buyer_party="buyer",
        seller_party="seller",
        buyer_address=BUYER,
        seller_address=SELLER,
        amount=Decimal("50"),
        state=state,
        created_at=CREATED,
        updated_at=CREATED,
        confirmations=dict(confirmations or {}),
    )


def make_record(state: LedgerEscrowState, **overrides) -> EscrowRecord:
    if state == LedgerEscrowState.NONE:
        return EscrowRecord(external_id=make_trade().external_id, state=state)
    fields = dict(
        external_id=make_trade().external_id,
        state=state,
        buyer="0x" + "0" * 39 + "b",
        seller="0x" + "0" * 39 + "a",
        amount=Decimal("50.0"),
    )
    fields.update(overrides)
    return EscrowRecord(**fields)


# =============================================================================
# assess()
# =============================================================================

EXPECTED_STATUS = {
    (TradeState.PENDING, LedgerEscrowState.NONE): ReconciliationStatus.MATCHED,
    (TradeState.PENDING, LedgerEscrowState.LOCKED): ReconciliationStatus.LEDGER_AHEAD,
    (TradeState.PENDING, LedgerEscrowState.RELEASED): ReconciliationStatus.LEDGER_AHEAD,
    (TradeState.PENDING, LedgerEscrowState.REFUNDED): ReconciliationStatus.LEDGER_AHEAD,
    (TradeState.LOCKED, LedgerEscrowState.NONE): ReconciliationStatus.DIVERGED,
    (TradeState.LOCKED, LedgerEscrowState.LOCKED): ReconciliationStatus.MATCHED,
    (TradeState.LOCKED, LedgerEscrowState.RELEASED): ReconciliationStatus.LEDGER_AHEAD,
    (TradeState.LOCKED, LedgerEscrowState.REFUNDED): ReconciliationStatus.LEDGER_AHEAD,
    (TradeState.DELIVERED, LedgerEscrowState.NONE): ReconciliationStatus.DIVERGED,
    (TradeState.DELIVERED, LedgerEscrowState.LOCKED): ReconciliationStatus.MATCHED,
    (TradeState.DELIVERED, LedgerEscrowState.RELEASED): ReconciliationStatus.LEDGER_AHEAD,
    (TradeState.DELIVERED, LedgerEscrowState.REFUNDED): ReconciliationStatus.LEDGER_AHEAD,
    (TradeState.RELEASED, LedgerEscrowState.NONE): ReconciliationStatus.DIVERGED,
    (TradeState.RELEASED, LedgerEscrowState.LOCKED): ReconciliationStatus.DIVERGED,
    (TradeState.RELEASED, LedgerEscrowState.RELEASED): ReconciliationStatus.MATCHED,
    (TradeState.RELEASED, LedgerEscrowState.REFUNDED): ReconciliationStatus.DIVERGED,
    (TradeState.REFUNDED, LedgerEscrowState.NONE): ReconciliationStatus.DIVERGED,
    (TradeState.REFUNDED, LedgerEscrowState.LOCKED): ReconciliationStatus.DIVERGED,
    (TradeState.REFUNDED, LedgerEscrowState.RELEASED): ReconciliationStatus.DIVERGED,
    (TradeState.REFUNDED, LedgerEscrowState.REFUNDED): ReconciliationStatus.MATCHED,
}


class TestAssess:

    @pytest.mark.parametrize("local,ledger", sorted(EXPECTED_STATUS, key=lambda k: (k[0].value, k[1].value)))
    def test_classification(self, local, ledger):
        result = assess(make_trade(local), make_record(ledger))
        assert result.status == EXPECTED_STATUS[(local, ledger)]
        assert result.local_state == local
        assert result.ledger_state == ledger

    def test_ledger_ahead_names_target(self):
        result = assess(make_trade(TradeState.LOCKED), make_record(LedgerEscrowState.REFUNDED))
        assert result.target_state == TradeState.REFUNDED

    @pytest.mark.parametrize("overrides", [
        {"buyer": "0xC"},
        {"seller": "0xC"},
        {"amount": Decimal("49.999999999999999999")},
    ])
    def test_foreign_escrow_diverged(self, overrides):
        result = assess(make_trade(TradeState.PENDING), make_record(LedgerEscrowState.LOCKED, **overrides))
        assert result.status == ReconciliationStatus.DIVERGED
        assert "does not belong" in result.detail

    def test_to_dict(self):
        data = assess(make_trade(), make_record(LedgerEscrowState.NONE), "cid-1").to_dict()
        assert data["status"] == "MATCHED"
        assert data["local_state"] == "pending"
        assert data["ledger_state"] == "NONE"
        assert data["target_state"] is None
        assert data["correlation_id"] == "cid-1"


# =============================================================================
# adopt()
# =============================================================================

class TestAdopt:

    @pytest.fixture
    def ledger(self):
        ledger = SimulatedLedger()
        ledger.mint(BUYER, Decimal("100"))
        return ledger

    @pytest.fixture
    def store(self):
        return InMemoryTradeStore()

    def test_adopt_fills_every_missing_slot(self, ledger, store):
        trade = store.insert(make_trade())
        lock = ledger.lock_funds(LedgerSigner(BUYER), SELLER, trade.amount, trade.external_id)
        release = ledger.release_funds(LedgerSigner(BUYER), trade.external_id)

        reconciler = TradeReconciler(ledger, store)
        result = reconciler.check(trade)
        assert result.status == ReconciliationStatus.LEDGER_AHEAD

        adopted = reconciler.adopt(result)
        assert adopted.state == TradeState.RELEASED
        assert adopted.confirmations == {"lock": lock.tx_ref, "release": release.tx_ref}
        assert adopted.version == trade.version + 1

    def test_adopt_keeps_existing_slots(self, ledger, store):
        trade = store.insert(make_trade(TradeState.LOCKED, {"lock": "0xoriginal"}))
        ledger.lock_funds(LedgerSigner(BUYER), SELLER, trade.amount, trade.external_id)
        ledger.release_funds(LedgerSigner(BUYER), trade.external_id)

        reconciler = TradeReconciler(ledger, store)
        adopted = reconciler.adopt(reconciler.check(trade))
        assert adopted.confirmations["lock"] == "0xoriginal"
        assert adopted.confirmations["release"].startswith("0x")

    def test_adopt_refuses_stale_result(self, ledger, store):
        trade = store.insert(make_trade())
        ledger.lock_funds(LedgerSigner(BUYER), SELLER, trade.amount, trade.external_id)
        reconciler = TradeReconciler(ledger, store)
        result = reconciler.check(trade)

        store.update(trade.trade_id, lambda t: replace(t, state=TradeState.LOCKED))
        with pytest.raises(ConflictError):
            reconciler.adopt(result)

    def test_adopt_of_matched_is_a_no_op(self, ledger, store):
        trade = store.insert(make_trade())
        reconciler = TradeReconciler(ledger, store)
        assert reconciler.adopt(reconciler.check(trade)) == trade
        assert store.get(trade.trade_id).version == 1


# =============================================================================
# State model
# =============================================================================

class TestStateModel:

    def test_transition_table(self):
        assert VALID_TRANSITIONS[TradeState.PENDING] == [TradeState.LOCKED]
        assert TradeState.REFUNDED not in VALID_TRANSITIONS[TradeState.DELIVERED]
        assert is_terminal_state(TradeState.RELEASED)
        assert is_terminal_state(TradeState.REFUNDED)
        assert not is_terminal_state(TradeState.DELIVERED)

    def test_validate_transition(self):
        assert validate_transition(TradeState.LOCKED, TradeState.DELIVERED) == (True, None)
        ok, code = validate_transition(TradeState.DELIVERED, TradeState.REFUNDED)
        assert ok is False
        assert code == "ESC-002"

    def test_every_ledger_state_has_an_interpretation(self):
        assert set(LEDGER_STATE_INTERPRETATION) == set(LedgerEscrowState)
        assert is_consistent_with_ledger(TradeState.DELIVERED, LedgerEscrowState.LOCKED)
        assert not is_consistent_with_ledger(TradeState.PENDING, LedgerEscrowState.LOCKED)

    def test_unknown_ledger_code(self):
        with pytest.raises(LedgerUnavailableError):
            LedgerEscrowState.from_ledger_code(4)
        assert LedgerEscrowState.from_ledger_code(2) == LedgerEscrowState.RELEASED

    def test_trade_dict_round_trip(self):
        trade = make_trade(TradeState.LOCKED, {"lock": "0xabc"})
        assert Trade.from_dict(trade.to_dict()) == trade
        assert trade.to_dict()["amount"] == "50"
        assert trade.confirmation_for(LedgerOperation.LOCK) == "0xabc"
        assert trade.confirmation_for(LedgerOperation.RELEASE) is None

    def test_trade_is_immutable(self):
        trade = make_trade()
        with pytest.raises(FrozenInstanceError):
            trade.state = TradeState.LOCKED
        assert replace(trade, state=TradeState.LOCKED).state == TradeState.LOCKED
        assert trade.state == TradeState.PENDING
