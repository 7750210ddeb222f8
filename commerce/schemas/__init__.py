# ============================================================================
# Agent Commerce Escrow v1.0.0
# Pydantic Schemas - Data Validation Layer
# ============================================================================

from commerce.schemas.trade import (
    TradeCreateRequest,
    SignerRequest,
    TradeResponse,
    TradeListResponse,
    ReconciliationResponse,
)

__all__ = [
    "TradeCreateRequest",
    "SignerRequest",
    "TradeResponse",
    "TradeListResponse",
    "ReconciliationResponse",
]
