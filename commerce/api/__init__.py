# ============================================================================
# Agent Commerce Escrow v1.0.0
# API Routes Module
# ============================================================================

from commerce.api.trades import router as trades_router

__all__ = ["trades_router"]
