"""
============================================================================
Agent Commerce Escrow v1.0.0
Application Layer - Ledger Access, Persistence, Observability and HTTP API
============================================================================

Reliability Level: L6 Critical
============================================================================
"""

__version__ = "1.0.0"
