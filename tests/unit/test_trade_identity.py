"""
Unit Tests for Trade Identity

Reliability Level: L6 Critical
Python 3.8 Compatible

The external identifier binds a trade to its ledger escrow entry, so it must
be a deterministic function of (trade_id, buyer, seller, created_at).
"""

import re
from datetime import datetime, timedelta, timezone

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from commerce.errors import InvalidArgumentError
from escrow.trade_identity import (
    canonical_timestamp,
    compute_external_id,
    generate_trade_id,
)


CREATED = datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
EXTERNAL_ID_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")


class TestTradeId:

    def test_format(self):
        trade_id = generate_trade_id()
        assert re.match(r"^trade_[0-9a-f]{32}$", trade_id)

    def test_unique(self):
        assert len({generate_trade_id() for _ in range(1000)}) == 1000


class TestExternalId:

    def test_deterministic(self):
        first = compute_external_id("trade_1", "0xB", "0xA", CREATED)
        second = compute_external_id("trade_1", "0xB", "0xA", CREATED)
        assert first == second
        assert EXTERNAL_ID_PATTERN.match(first)

    @pytest.mark.parametrize("args", [
        ("trade_2", "0xB", "0xA", CREATED),
        ("trade_1", "0xC", "0xA", CREATED),
        ("trade_1", "0xB", "0xC", CREATED),
        ("trade_1", "0xB", "0xA", CREATED + timedelta(microseconds=1)),
    ])
    def test_every_field_contributes(self, args):
        assert compute_external_id(*args) != compute_external_id("trade_1", "0xB", "0xA", CREATED)

    def test_field_boundaries_are_unambiguous(self):
        assert compute_external_id("trade_1", "0xB1", "0xA", CREATED) != (
            compute_external_id("trade_10", "xB1", "0xA", CREATED)
        )

    def test_same_instant_in_other_timezone(self):
        offset = timezone(timedelta(hours=2))
        assert compute_external_id("trade_1", "0xB", "0xA", CREATED.astimezone(offset)) == (
            compute_external_id("trade_1", "0xB", "0xA", CREATED)
        )

    def test_naive_timestamp_refused(self):
        with pytest.raises(InvalidArgumentError):
            compute_external_id("trade_1", "0xB", "0xA", datetime(2026, 3, 1, 12, 0, 0))

    def test_canonical_timestamp(self):
        assert canonical_timestamp(CREATED) == "2026-03-01T12:00:00.123456Z"
