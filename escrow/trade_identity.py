"""
============================================================================
Agent Commerce Escrow v1.0.0
Trade Identity - Deterministic External Escrow Key
============================================================================

Reliability Level: L6 Critical
Input Constraints: created_at must be timezone-aware
Side Effects: None (pure functions)

DETERMINISM GUARANTEE:
    1. Fixed domain tag prefixes the hash input
    2. Each field is UTF-8 encoded and prefixed with its 4-byte big-endian
       length, so no two distinct tuples share an encoding
    3. created_at is rendered as ISO-8601 UTC with microseconds
    4. SHA-256 over the encoding gives the 32-byte external id

    Recomputing from the same (trade_id, buyer_address, seller_address,
    created_at) always yields the same value, so a retry never mints a new
    ledger key.

============================================================================
"""

from datetime import datetime, timezone
from typing import List
import hashlib
import uuid

from commerce.errors import InvalidArgumentError

EXTERNAL_ID_DOMAIN = b"agent-commerce/trade/v1"
TRADE_ID_PREFIX = "trade_"


def generate_trade_id() -> str:
    """Mint a fresh local trade identifier."""
    return f"{TRADE_ID_PREFIX}{uuid.uuid4().hex}"


def canonical_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        raise InvalidArgumentError("created_at must be timezone-aware")
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _length_prefixed(fields: List[str]) -> bytes:
    encoded = bytearray()
    for value in fields:
        raw = value.encode("utf-8")
        encoded += len(raw).to_bytes(4, "big")
        encoded += raw
    return bytes(encoded)


def compute_external_id(
    trade_id: str,
    buyer_address: str,
    seller_address: str,
    created_at: datetime
) -> str:
    """
    Derive the ledger-side escrow key for a trade.

    Returns:
        '0x' followed by 64 lowercase hex digits (bytes32)
    """
    payload = EXTERNAL_ID_DOMAIN + _length_prefixed([
        trade_id,
        buyer_address,
        seller_address,
        canonical_timestamp(created_at),
    ])
    return "0x" + hashlib.sha256(payload).hexdigest()
