"""
Unit Tests for the Simulated Ledger

Reliability Level: L6 Critical
Python 3.8 Compatible

The simulated ledger must enforce the escrow token contract's rules, since
every lifecycle test relies on it standing in for the chain.
"""

from decimal import Decimal

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from commerce.errors import (
    LedgerRejectedError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    RejectionReason,
)
from commerce.ledger.client import LedgerEscrowState, LedgerOperation, LedgerSigner
from commerce.ledger.simulated import SimulatedLedger


BUYER = "0xB"
SELLER = "0xA"
ARBITER = "0xAA"
TRADE_1 = "0x" + "11" * 32
TRADE_2 = "0x" + "22" * 32


class FakeClock:
    def __init__(self):
        self.now = 1_000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    ledger = SimulatedLedger(escrow_timeout_seconds=60, arbiter_address=ARBITER, clock=clock)
    ledger.mint(BUYER, Decimal("100"))
    return ledger


def _lock(ledger, amount="40", external_id=TRADE_1, seller=SELLER):
    return ledger.lock_funds(LedgerSigner(BUYER), seller, Decimal(amount), external_id)


class TestCreateEscrow:

    def test_lock_moves_funds_into_escrow(self, ledger):
        confirmation = _lock(ledger)

        assert confirmation.operation == LedgerOperation.LOCK
        assert confirmation.tx_ref.startswith("0x") and len(confirmation.tx_ref) == 66
        assert confirmation.approval_tx_ref is not None
        assert ledger.balance_of(BUYER) == Decimal("60")

        record = ledger.get_escrow(TRADE_1)
        assert record.state == LedgerEscrowState.LOCKED
        assert record.amount == Decimal("40")
        assert record.buyer == "0x" + "0" * 39 + "b"
        assert record.expires_at == record.created_at + 60

    def test_existing_allowance_skips_approval(self, ledger):
        ledger.approve(BUYER, Decimal("40"))
        confirmation = _lock(ledger)
        assert confirmation.approval_tx_ref is None
        assert ledger.approvals == []
        assert ledger.allowance(BUYER) == Decimal("0")

    def test_duplicate_id_rejected(self, ledger):
        _lock(ledger)
        with pytest.raises(LedgerRejectedError) as exc_info:
            _lock(ledger, amount="1")
        assert exc_info.value.reason == RejectionReason.TRADE_EXISTS

    @pytest.mark.parametrize("seller", ["0x0", "0x" + "0" * 40, "seller"])
    def test_invalid_seller_rejected(self, ledger, seller):
        with pytest.raises(LedgerRejectedError) as exc_info:
            _lock(ledger, seller=seller)
        assert exc_info.value.reason == RejectionReason.INVALID_SELLER

    def test_zero_amount_rejected(self, ledger):
        with pytest.raises(LedgerRejectedError) as exc_info:
            _lock(ledger, amount="0")
        assert exc_info.value.reason == RejectionReason.INVALID_AMOUNT

    def test_insufficient_balance_rejected(self, ledger):
        with pytest.raises(LedgerRejectedError) as exc_info:
            _lock(ledger, amount="100.000000000000000001")
        assert exc_info.value.reason == RejectionReason.INSUFFICIENT_BALANCE
        assert ledger.get_escrow(TRADE_1).state == LedgerEscrowState.NONE

    def test_unknown_id_reads_as_none(self, ledger):
        record = ledger.get_escrow(TRADE_2)
        assert record.state == LedgerEscrowState.NONE
        assert not record.exists


class TestReleaseAndRefund:

    def test_release_by_buyer_pays_seller(self, ledger):
        _lock(ledger)
        confirmation = ledger.release_funds(LedgerSigner(BUYER), TRADE_1)
        assert confirmation.operation == LedgerOperation.RELEASE
        assert ledger.balance_of(SELLER) == Decimal("40")
        assert ledger.get_escrow(TRADE_1).state == LedgerEscrowState.RELEASED

    def test_release_by_other_rejected(self, ledger):
        _lock(ledger)
        with pytest.raises(LedgerRejectedError) as exc_info:
            ledger.release_funds(LedgerSigner(SELLER), TRADE_1)
        assert exc_info.value.reason == RejectionReason.NOT_BUYER

    def test_release_twice_rejected(self, ledger):
        _lock(ledger)
        ledger.release_funds(LedgerSigner(BUYER), TRADE_1)
        with pytest.raises(LedgerRejectedError) as exc_info:
            ledger.release_funds(LedgerSigner(BUYER), TRADE_1)
        assert exc_info.value.reason == RejectionReason.NOT_LOCKED

    def test_release_of_unknown_escrow(self, ledger):
        with pytest.raises(LedgerRejectedError) as exc_info:
            ledger.release_funds(LedgerSigner(BUYER), TRADE_2)
        assert exc_info.value.reason == RejectionReason.NOT_LOCKED

    def test_buyer_refund_waits_for_expiry(self, ledger, clock):
        _lock(ledger)
        with pytest.raises(LedgerRejectedError) as exc_info:
            ledger.refund_funds(LedgerSigner(BUYER), TRADE_1)
        assert exc_info.value.reason == RejectionReason.NOT_EXPIRED

        clock.now += 60
        ledger.refund_funds(LedgerSigner(BUYER), TRADE_1)
        assert ledger.balance_of(BUYER) == Decimal("100")
        assert ledger.get_escrow(TRADE_1).state == LedgerEscrowState.REFUNDED

    def test_arbiter_refunds_immediately(self, ledger):
        _lock(ledger)
        ledger.refund_funds(LedgerSigner(ARBITER), TRADE_1)
        assert ledger.get_escrow(TRADE_1).state == LedgerEscrowState.REFUNDED

    def test_stranger_cannot_refund(self, ledger, clock):
        _lock(ledger)
        clock.now += 3600
        with pytest.raises(LedgerRejectedError) as exc_info:
            ledger.refund_funds(LedgerSigner("0xC"), TRADE_1)
        assert exc_info.value.reason == RejectionReason.NOT_BUYER


class TestFaultsAndEvents:

    def test_fault_without_apply(self, ledger):
        ledger.fail_next(LedgerOperation.LOCK, LedgerUnavailableError("down"))
        with pytest.raises(LedgerUnavailableError):
            _lock(ledger)
        assert ledger.get_escrow(TRADE_1).state == LedgerEscrowState.NONE

        # Fault consumed; next call succeeds
        _lock(ledger)
        assert ledger.get_escrow(TRADE_1).state == LedgerEscrowState.LOCKED

    def test_fault_with_apply(self, ledger):
        ledger.fail_next(LedgerOperation.LOCK, LedgerTimeoutError("slow"), apply=True)
        with pytest.raises(LedgerTimeoutError):
            _lock(ledger)
        assert ledger.get_escrow(TRADE_1).state == LedgerEscrowState.LOCKED
        assert ledger.find_confirmation(TRADE_1, LedgerOperation.LOCK) is not None

    def test_unavailable_fails_every_call(self, ledger):
        ledger.set_available(False)
        with pytest.raises(LedgerUnavailableError):
            ledger.get_escrow(TRADE_1)
        with pytest.raises(LedgerUnavailableError):
            _lock(ledger)
        with pytest.raises(LedgerUnavailableError):
            ledger.find_confirmation(TRADE_1, LedgerOperation.LOCK)

        ledger.set_available(True)
        _lock(ledger)

    def test_find_confirmation_matches_receipt(self, ledger):
        lock = _lock(ledger)
        release = ledger.release_funds(LedgerSigner(BUYER), TRADE_1)
        assert ledger.find_confirmation(TRADE_1, LedgerOperation.LOCK) == lock.tx_ref
        assert ledger.find_confirmation(TRADE_1, LedgerOperation.RELEASE) == release.tx_ref
        assert ledger.find_confirmation(TRADE_1, LedgerOperation.REFUND) is None

    def test_submissions_are_recorded(self, ledger):
        seen = []
        ledger.on_submit = lambda operation, external_id: seen.append(operation)
        _lock(ledger)
        ledger.release_funds(LedgerSigner(BUYER), TRADE_1)

        assert seen == [LedgerOperation.LOCK, LedgerOperation.RELEASE]
        assert ledger.submission_count() == 2
        assert ledger.submission_count(LedgerOperation.LOCK) == 1
        assert ledger.submissions[0] == (LedgerOperation.LOCK, TRADE_1)

    def test_block_numbers_increase(self, ledger):
        first = _lock(ledger)
        second = _lock(ledger, amount="1", external_id=TRADE_2)
        assert second.block_number > first.block_number
