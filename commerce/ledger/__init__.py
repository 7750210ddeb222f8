"""
============================================================================
Agent Commerce Escrow v1.0.0
Ledger Module - Escrow Token Contract Access
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Amounts cross this boundary as decimal.Decimal

============================================================================
"""

from commerce.ledger.client import (
    LedgerClient,
    LedgerSigner,
    LedgerConfirmation,
    LedgerOperation,
    LedgerEscrowState,
    EscrowRecord,
)
from commerce.ledger.token_units import (
    TokenUnitGateway,
    DEFAULT_TOKEN_DECIMALS,
    to_decimal,
    to_base_units,
    from_base_units,
)
from commerce.ledger.rpc_client import JsonRpcLedgerClient
from commerce.ledger.simulated import SimulatedLedger

__all__ = [
    "LedgerClient",
    "LedgerSigner",
    "LedgerConfirmation",
    "LedgerOperation",
    "LedgerEscrowState",
    "EscrowRecord",
    "TokenUnitGateway",
    "DEFAULT_TOKEN_DECIMALS",
    "to_decimal",
    "to_base_units",
    "from_base_units",
    "JsonRpcLedgerClient",
    "SimulatedLedger",
]
