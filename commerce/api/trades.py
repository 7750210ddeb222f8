"""
============================================================================
Agent Commerce Escrow v1.0.0
Escrow Trade API Endpoints
============================================================================

Reliability Level: L6 Critical
Input Constraints: Amounts as decimal strings; addresses '0x' + hex
Side Effects: Ledger submissions and trade store writes via the manager

ENDPOINTS:
    POST /api/trades                       - Initiate a trade
    GET  /api/trades/active                - List active trades
    GET  /api/trades?party=...             - List a party's trades
    GET  /api/trades/{trade_id}            - Get one trade
    POST /api/trades/{trade_id}/lock       - Lock funds in escrow
    POST /api/trades/{trade_id}/deliver    - Mark delivered
    POST /api/trades/{trade_id}/release    - Release funds to the seller
    POST /api/trades/{trade_id}/refund     - Refund funds to the buyer
    POST /api/trades/{trade_id}/reconcile  - Reconcile against the ledger

ERROR MAPPING:
    InvalidArgument    400
    NotFound           404
    InvalidState       409
    Conflict           409
    LedgerRejected     422
    LedgerUnavailable  503
    LedgerTimeout      504  (outcome unknown, reconcile before retrying)

Endpoints are plain functions: FastAPI runs them in its worker threadpool,
so a blocking confirmation wait never stalls the event loop.

============================================================================
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from commerce.errors import (
    EscrowError,
    EscrowErrorCode,
    ConflictError,
    InvalidArgumentError,
    InvalidStateError,
    LedgerRejectedError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    TradeNotFoundError,
    TradeStoreError,
)
from commerce.ledger.client import LedgerSigner
from commerce.schemas.trade import (
    ReconciliationResponse,
    SignerRequest,
    TradeCreateRequest,
    TradeListResponse,
    TradeResponse,
)
from escrow.models import Trade
from escrow.trade_lifecycle import TradeLifecycleManager

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Router Configuration
# ============================================================================

router = APIRouter()

# Order matters: subclasses before their bases
ERROR_STATUS = (
    (InvalidArgumentError, 400),
    (TradeNotFoundError, 404),
    (InvalidStateError, 409),
    (ConflictError, 409),
    (LedgerRejectedError, 422),
    (LedgerTimeoutError, 504),
    (LedgerUnavailableError, 503),
    (TradeStoreError, 500),
)


def status_for(error: EscrowError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def to_http_exception(error: EscrowError, correlation_id: str) -> HTTPException:
    detail = error.to_dict()
    detail["correlation_id"] = error.correlation_id or correlation_id
    detail["timestamp"] = datetime.now(timezone.utc).isoformat()
    return HTTPException(status_code=status_for(error), detail=detail)


# ============================================================================
# Manager Dependency
# ============================================================================

def get_trade_manager(request: Request) -> TradeLifecycleManager:
    """
    The manager wired by the application lifespan.

    Tests replace this dependency through app.dependency_overrides.
    """
    manager = getattr(request.app.state, "trade_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=503,
            detail={
                "error_code": EscrowErrorCode.CONFIG_MISSING,
                "message": "Trade manager not initialised",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
    return manager


def _guarded(
    action: str,
    trade_id: Optional[str],
    call: Callable[[str], Any],
) -> Any:
    """Run a manager call, mapping EscrowError to a structured HTTPException."""
    correlation_id = str(uuid.uuid4())
    logger.info(
        f"[TRADES-API] {action} | trade_id={trade_id} | correlation_id={correlation_id}"
    )
    try:
        result = call(correlation_id)
    except EscrowError as e:
        logger.warning(
            f"[TRADES-API] {action} failed | trade_id={trade_id} | kind={e.kind} | "
            f"error_code={e.error_code} | correlation_id={correlation_id}"
        )
        raise to_http_exception(e, correlation_id)
    return result


def _run(
    action: str,
    trade_id: Optional[str],
    call: Callable[[str], Trade],
) -> TradeResponse:
    return TradeResponse.from_trade(_guarded(action, trade_id, call))


# ============================================================================
# Endpoints
# ============================================================================

@router.post("", response_model=TradeResponse, status_code=201, tags=["Trades"])
def initiate_trade(
    body: TradeCreateRequest,
    manager: TradeLifecycleManager = Depends(get_trade_manager)
) -> TradeResponse:
    return _run(
        "POST /api/trades",
        None,
        lambda cid: manager.initiate(
            body.listing_ref,
            body.buyer_party,
            body.seller_party,
            body.buyer_address,
            body.seller_address,
            body.amount,
            correlation_id=cid,
        ),
    )


@router.get("/active", response_model=TradeListResponse, tags=["Trades"])
def list_active_trades(
    manager: TradeLifecycleManager = Depends(get_trade_manager)
) -> TradeListResponse:
    trades = _guarded("GET /api/trades/active", None, lambda cid: manager.list_active())
    return TradeListResponse.from_trades(trades)


@router.get("", response_model=TradeListResponse, tags=["Trades"])
def list_party_trades(
    party: str = Query(..., min_length=1),
    manager: TradeLifecycleManager = Depends(get_trade_manager)
) -> TradeListResponse:
    trades = _guarded("GET /api/trades", None, lambda cid: manager.list_by_party(party))
    return TradeListResponse.from_trades(trades)


@router.get("/{trade_id}", response_model=TradeResponse, tags=["Trades"])
def get_trade(
    trade_id: str,
    manager: TradeLifecycleManager = Depends(get_trade_manager)
) -> TradeResponse:
    return _run(f"GET /{trade_id}", trade_id, lambda cid: manager.get_trade(trade_id))


@router.post(
    "/{trade_id}/lock",
    response_model=TradeResponse,
    responses={
        409: {"description": "Trade not pending, or busy (ESC-002 / ESC-004)"},
        422: {"description": "Ledger rejected the lock (ESC-010 / ESC-013)"},
        503: {"description": "Ledger unavailable, safe to retry (ESC-011)"},
        504: {"description": "Confirmation timed out, outcome unknown (ESC-012)"},
    },
    tags=["Trades"],
)
def lock_funds(
    trade_id: str,
    body: SignerRequest,
    manager: TradeLifecycleManager = Depends(get_trade_manager)
) -> TradeResponse:
    return _run(
        f"POST /{trade_id}/lock",
        trade_id,
        lambda cid: manager.lock_funds(
            trade_id,
            LedgerSigner(body.signer_address),
            correlation_id=cid,
            timeout=body.timeout_seconds,
        ),
    )


@router.post("/{trade_id}/deliver", response_model=TradeResponse, tags=["Trades"])
def mark_delivered(
    trade_id: str,
    manager: TradeLifecycleManager = Depends(get_trade_manager)
) -> TradeResponse:
    return _run(
        f"POST /{trade_id}/deliver",
        trade_id,
        lambda cid: manager.mark_delivered(trade_id, correlation_id=cid),
    )


@router.post("/{trade_id}/release", response_model=TradeResponse, tags=["Trades"])
def release_funds(
    trade_id: str,
    body: SignerRequest,
    manager: TradeLifecycleManager = Depends(get_trade_manager)
) -> TradeResponse:
    return _run(
        f"POST /{trade_id}/release",
        trade_id,
        lambda cid: manager.release_funds(
            trade_id,
            LedgerSigner(body.signer_address),
            correlation_id=cid,
            timeout=body.timeout_seconds,
        ),
    )


@router.post("/{trade_id}/refund", response_model=TradeResponse, tags=["Trades"])
def refund_funds(
    trade_id: str,
    body: SignerRequest,
    manager: TradeLifecycleManager = Depends(get_trade_manager)
) -> TradeResponse:
    return _run(
        f"POST /{trade_id}/refund",
        trade_id,
        lambda cid: manager.refund_funds(
            trade_id,
            LedgerSigner(body.signer_address),
            correlation_id=cid,
            timeout=body.timeout_seconds,
        ),
    )


@router.post("/{trade_id}/reconcile", response_model=ReconciliationResponse, tags=["Trades"])
def reconcile_trade(
    trade_id: str,
    manager: TradeLifecycleManager = Depends(get_trade_manager)
) -> ReconciliationResponse:
    result = _guarded(
        f"POST /{trade_id}/reconcile",
        trade_id,
        lambda cid: manager.reconcile_trade(trade_id, correlation_id=cid),
    )
    return ReconciliationResponse.from_result(result)
