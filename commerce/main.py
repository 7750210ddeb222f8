"""
============================================================================
Agent Commerce Escrow v1.0.0
FastAPI Application Entry Point
============================================================================

Reliability Level: L6 Critical
Input Constraints: JSON over HTTP
Side Effects: Builds the trade store, ledger client and lifecycle manager
              at startup; disposes the database engine at shutdown

Run with:
    uvicorn commerce.main:app --host 0.0.0.0 --port 8000

============================================================================
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from commerce import __version__
from commerce.api.trades import router as trades_router
from commerce.database.session import check_database_connection, create_database_engine
from commerce.ledger.client import LedgerClient
from commerce.ledger.rpc_client import JsonRpcLedgerClient
from commerce.ledger.simulated import SimulatedLedger
from escrow.config import EscrowConfig, LEDGER_MODE_RPC, get_escrow_config
from escrow.sql_trade_store import DEFAULT_LEASE_SECONDS, SqlTradeStore
from escrow.trade_lifecycle import TradeLifecycleManager

logger = logging.getLogger(__name__)


# ============================================================================
# WIRING
# ============================================================================

def build_ledger_client(config: EscrowConfig) -> LedgerClient:
    if config.ledger_mode == LEDGER_MODE_RPC:
        return JsonRpcLedgerClient(
            rpc_url=config.rpc_url,
            contract_address=config.contract_address,
            token_decimals=config.token_decimals,
            confirmation_timeout=config.confirmation_timeout_seconds,
            poll_interval=config.poll_interval_seconds,
            required_confirmations=config.required_confirmations,
            log_from_block=config.log_from_block,
            http_timeout=config.http_timeout_seconds,
        )
    logger.warning("[INIT] Simulated ledger in use, no funds move on a real chain")
    return SimulatedLedger(
        token_decimals=config.token_decimals,
        arbiter_address=config.arbiter_address,
    )


def create_app(
    config: Optional[EscrowConfig] = None,
    manager: Optional[TradeLifecycleManager] = None
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Loaded from the environment at startup when None
        manager: Pre-built manager; skips database and ledger wiring
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.engine = None
        if manager is not None:
            app.state.trade_manager = manager
            yield
            return

        settings = config or get_escrow_config()
        logging.getLogger().setLevel(settings.log_level)

        engine = create_database_engine(settings.database_url)
        # Lock waits for approval and createEscrow under one deadline
        store = SqlTradeStore(
            engine,
            lease_seconds=max(DEFAULT_LEASE_SECONDS, settings.confirmation_timeout_seconds * 2),
        )
        store.create_schema()

        app.state.engine = engine
        app.state.trade_manager = TradeLifecycleManager(
            store,
            build_ledger_client(settings),
            token_decimals=settings.token_decimals,
            confirmation_timeout=settings.confirmation_timeout_seconds,
        )
        logger.info(
            f"[INIT] Escrow API ready | ledger_mode={settings.ledger_mode} | "
            f"chain={settings.chain} | started_at={datetime.now(timezone.utc).isoformat()}"
        )

        try:
            yield
        finally:
            engine.dispose()
            logger.info("[SHUTDOWN] Database connections closed")

    app = FastAPI(
        title="Agent Commerce Escrow",
        description=(
            "Escrow trade lifecycle bound to an on-ledger token contract: "
            "initiate, lock, deliver, release, refund and reconcile."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Unhandled errors become a logged 500 with a stable body."""
        logger.exception(f"[SYS-500] Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error_code": "SYS-500",
                "message": "Internal server error. This incident has been logged.",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    app.include_router(trades_router, prefix="/api/trades")

    @app.get("/health", tags=["System"])
    async def health_check(request: Request):
        engine = getattr(request.app.state, "engine", None)
        if engine is not None and not check_database_connection(engine):
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "database": "disconnected"},
            )
        return {
            "status": "healthy",
            "database": "connected" if engine is not None else "not configured",
        }

    @app.get("/metrics", tags=["Observability"])
    async def metrics(request: Request):
        trade_manager = getattr(request.app.state, "trade_manager", None)
        if trade_manager is not None:
            trade_manager.update_state_metrics()
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
