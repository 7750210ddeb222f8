"""
============================================================================
Agent Commerce Escrow v1.0.0
SQL Trade Store - SQLAlchemy Persistence for Escrow Trades
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: amount stored as exact decimal TEXT, never REAL
Side Effects: Database reads and committed writes

TABLE escrow_trades:
    trade_id        TEXT PRIMARY KEY
    external_id     TEXT NOT NULL (UNIQUE INDEX)
    listing_ref     TEXT NOT NULL
    buyer_party     TEXT NOT NULL (INDEX)
    seller_party    TEXT NOT NULL (INDEX)
    buyer_address   TEXT NOT NULL
    seller_address  TEXT NOT NULL
    amount          TEXT NOT NULL
    state           TEXT NOT NULL (INDEX)
    confirmations   TEXT NOT NULL (JSON object)
    created_at      TEXT NOT NULL (ISO-8601 UTC)
    updated_at      TEXT NOT NULL (ISO-8601 UTC)
    version         INTEGER NOT NULL
    in_flight_op    TEXT     (operation holding the lease, NULL when free)
    in_flight_token TEXT     (claim token of the holder)
    in_flight_until BIGINT   (lease expiry, epoch milliseconds)

OPTIMISTIC CONCURRENCY:
    update() reads the row, applies the mutator, then writes with
    WHERE trade_id = :trade_id AND version = :expected_version. Zero rows
    affected means another writer committed first → ConflictError. Updates
    racing inside this process are refused before reading (in-flight set).

EXCLUSIVE SECTIONS (LEASES):
    A money-moving operation claims the row before it reaches the ledger:
    UPDATE ... SET in_flight_op = :op WHERE trade_id = :trade_id AND
    (in_flight_op IS NULL OR in_flight_until <= :now). Zero rows affected
    means another worker on the same database holds the trade → ConflictError.
    The claim is cleared when the section exits. A lease left behind by a
    crashed worker expires after lease_seconds; the next caller reconciles
    against the ledger before submitting anything.

ERROR CODES:
    - ESC-004: Duplicate key on insert / lost version race
    - ESC-020: Database persistence failure (rolled back, re-raised)

============================================================================
"""

from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Iterator, List, Optional, Set, Any, Dict
import json
import logging
import threading
import time
import uuid

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from commerce.errors import (
    ConflictError,
    TradeNotFoundError,
    TradeStoreError,
    EscrowErrorCode,
)
from escrow.models import Trade, ACTIVE_STATES
from escrow.trade_locks import ExclusiveSections, busy_error
from escrow.trade_store import TradeStore, TradeMutator

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Schema
# =============================================================================

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS escrow_trades (
        trade_id TEXT PRIMARY KEY,
        external_id TEXT NOT NULL,
        listing_ref TEXT NOT NULL,
        buyer_party TEXT NOT NULL,
        seller_party TEXT NOT NULL,
        buyer_address TEXT NOT NULL,
        seller_address TEXT NOT NULL,
        amount TEXT NOT NULL,
        state TEXT NOT NULL,
        confirmations TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        version INTEGER NOT NULL,
        in_flight_op TEXT,
        in_flight_token TEXT,
        in_flight_until BIGINT
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS ix_escrow_trades_external_id ON escrow_trades (external_id)",
    "CREATE INDEX IF NOT EXISTS ix_escrow_trades_buyer_party ON escrow_trades (buyer_party)",
    "CREATE INDEX IF NOT EXISTS ix_escrow_trades_seller_party ON escrow_trades (seller_party)",
    "CREATE INDEX IF NOT EXISTS ix_escrow_trades_state ON escrow_trades (state)",
]

_COLUMNS = (
    "trade_id, external_id, listing_ref, buyer_party, seller_party, "
    "buyer_address, seller_address, amount, state, confirmations, "
    "created_at, updated_at, version"
)


def _to_row(trade: Trade) -> Dict[str, Any]:
    row = trade.to_dict()
    row["confirmations"] = json.dumps(trade.confirmations, sort_keys=True)
    return row


def _from_row(row: Any) -> Trade:
    return Trade.from_dict(dict(row._mapping))


DEFAULT_LEASE_SECONDS = 600.0


# =============================================================================
# Row Leases
# =============================================================================

class SqlTradeLeases(ExclusiveSections):
    """
    Exclusive sections stored on the escrow_trades row itself.

    Every SqlTradeStore over the same database sees the same claims, so two
    workers can never both be inside the section of one trade.
    """

    def __init__(
        self,
        engine: Engine,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        self._engine = engine
        self.lease_seconds = lease_seconds
        self._clock = clock

    @contextmanager
    def exclusive(
        self,
        trade_id: str,
        operation: str,
        correlation_id: Optional[str] = None
    ) -> Iterator[None]:
        token = uuid.uuid4().hex
        self._claim(trade_id, operation, token, correlation_id)
        try:
            yield
        finally:
            self._release(trade_id, token, correlation_id)

    def is_held(self, trade_id: str) -> bool:
        row = self._lease_row(trade_id)
        return row is not None and row[0] is not None and row[1] > self._now_ms()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _claim(
        self,
        trade_id: str,
        operation: str,
        token: str,
        correlation_id: Optional[str]
    ) -> None:
        now = self._now_ms()
        claim_sql = text("""
            UPDATE escrow_trades
            SET in_flight_op = :operation,
                in_flight_token = :token,
                in_flight_until = :until
            WHERE trade_id = :trade_id
              AND (in_flight_op IS NULL OR in_flight_until <= :now)
        """)
        params = {
            "trade_id": trade_id,
            "operation": operation,
            "token": token,
            "until": now + int(self.lease_seconds * 1000),
            "now": now,
        }

        with self._engine.connect() as conn:
            try:
                rowcount = conn.execute(claim_sql, params).rowcount
                conn.commit()
            except SQLAlchemyError as e:
                conn.rollback()
                logger.error(
                    f"[{EscrowErrorCode.DB_PERSISTENCE_FAIL}] Lease claim failed: {e} | "
                    f"trade_id={trade_id} | correlation_id={correlation_id}"
                )
                raise TradeStoreError(
                    f"Lease claim failed: {e}",
                    trade_id=trade_id,
                    correlation_id=correlation_id,
                ) from e

        if rowcount == 1:
            return

        row = self._lease_row(trade_id)
        if row is None:
            raise TradeNotFoundError(
                f"Trade {trade_id} not found",
                trade_id=trade_id,
                correlation_id=correlation_id,
            )
        raise busy_error(trade_id, operation, row[0], correlation_id)

    def _release(self, trade_id: str, token: str, correlation_id: Optional[str]) -> None:
        release_sql = text("""
            UPDATE escrow_trades
            SET in_flight_op = NULL, in_flight_token = NULL, in_flight_until = NULL
            WHERE trade_id = :trade_id AND in_flight_token = :token
        """)
        with self._engine.connect() as conn:
            try:
                conn.execute(release_sql, {"trade_id": trade_id, "token": token})
                conn.commit()
            except SQLAlchemyError as e:
                conn.rollback()
                # Raising here would mask the error leaving the section
                logger.error(
                    f"[{EscrowErrorCode.DB_PERSISTENCE_FAIL}] Lease release failed, "
                    f"held until expiry: {e} | trade_id={trade_id} | "
                    f"lease_seconds={self.lease_seconds} | correlation_id={correlation_id}"
                )

    def _lease_row(self, trade_id: str) -> Any:
        query = text("""
            SELECT in_flight_op, in_flight_until FROM escrow_trades
            WHERE trade_id = :trade_id
        """)
        try:
            with self._engine.connect() as conn:
                row = conn.execute(query, {"trade_id": trade_id}).fetchone()
        except SQLAlchemyError as e:
            raise TradeStoreError(f"Lease lookup failed: {e}", trade_id=trade_id) from e
        return row


class SqlTradeStore(TradeStore):
    """
    TradeStore backed by a SQLAlchemy engine (SQLite or PostgreSQL).

    Example Usage:
        engine = create_database_engine("sqlite:///./agent_commerce.db")
        store = SqlTradeStore(engine)
        store.create_schema()
    """

    def __init__(
        self,
        engine: Engine,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            engine: SQLAlchemy engine shared by every worker
            lease_seconds: How long a claimed section outlives a crashed holder;
                must exceed the longest ledger confirmation wait
            clock: Epoch seconds, for lease expiry
        """
        self._engine = engine
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._leases = SqlTradeLeases(engine, lease_seconds, clock)

    def create_schema(self) -> None:
        with self._engine.connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(text(statement))
            conn.commit()
        logger.info("[TRADE-STORE] Schema ready | table=escrow_trades")

    def exclusive_sections(self) -> ExclusiveSections:
        return self._leases

    # =========================================================================
    # Writes
    # =========================================================================

    def insert(self, trade: Trade) -> Trade:
        insert_sql = text(f"""
            INSERT INTO escrow_trades ({_COLUMNS})
            VALUES (
                :trade_id, :external_id, :listing_ref, :buyer_party, :seller_party,
                :buyer_address, :seller_address, :amount, :state, :confirmations,
                :created_at, :updated_at, :version
            )
        """)

        with self._engine.connect() as conn:
            try:
                conn.execute(insert_sql, _to_row(trade))
                conn.commit()
            except IntegrityError as e:
                conn.rollback()
                logger.warning(
                    f"[{EscrowErrorCode.CONFLICT}] Duplicate trade rejected | "
                    f"trade_id={trade.trade_id} | external_id={trade.external_id}"
                )
                raise ConflictError(
                    f"Trade {trade.trade_id} or its external id already exists",
                    trade_id=trade.trade_id,
                ) from e
            except SQLAlchemyError as e:
                conn.rollback()
                raise self._persistence_failure("insert", trade.trade_id, e) from e

        return trade

    def update(self, trade_id: str, mutator: TradeMutator) -> Trade:
        with self._lock:
            if trade_id in self._in_flight:
                raise ConflictError(
                    f"Another update of trade {trade_id} is in flight",
                    trade_id=trade_id,
                )
            self._in_flight.add(trade_id)

        try:
            current = self.get(trade_id)
            updated = replace(mutator(current), version=current.version + 1)

            update_sql = text("""
                UPDATE escrow_trades
                SET state = :state,
                    confirmations = :confirmations,
                    updated_at = :updated_at,
                    version = :version
                WHERE trade_id = :trade_id AND version = :expected_version
            """)
            params = _to_row(updated)
            params["expected_version"] = current.version

            with self._engine.connect() as conn:
                try:
                    rowcount = conn.execute(update_sql, params).rowcount
                    conn.commit()
                except SQLAlchemyError as e:
                    conn.rollback()
                    raise self._persistence_failure("update", trade_id, e) from e

            if rowcount == 0:
                logger.warning(
                    f"[{EscrowErrorCode.CONFLICT}] Version race lost | "
                    f"trade_id={trade_id} | expected_version={current.version}"
                )
                raise ConflictError(
                    f"Trade {trade_id} was modified concurrently",
                    trade_id=trade_id,
                )

            return updated
        finally:
            with self._lock:
                self._in_flight.discard(trade_id)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, trade_id: str) -> Trade:
        rows = self._select("WHERE trade_id = :trade_id", {"trade_id": trade_id})
        if not rows:
            raise TradeNotFoundError(f"Trade {trade_id} not found", trade_id=trade_id)
        return rows[0]

    def get_by_external_id(self, external_id: str) -> Trade:
        rows = self._select("WHERE external_id = :external_id", {"external_id": external_id})
        if not rows:
            raise TradeNotFoundError(f"No trade for external id {external_id}")
        return rows[0]

    def list_by_party(self, party: str) -> List[Trade]:
        return self._select(
            "WHERE buyer_party = :party OR seller_party = :party ORDER BY created_at",
            {"party": party},
        )

    def list_active(self) -> List[Trade]:
        states = sorted(s.value for s in ACTIVE_STATES)
        placeholders = ", ".join(f":s{i}" for i in range(len(states)))
        params = {f"s{i}": state for i, state in enumerate(states)}
        return self._select(f"WHERE state IN ({placeholders}) ORDER BY created_at", params)

    # =========================================================================
    # Private Methods
    # =========================================================================

    def _select(self, clause: str, params: Dict[str, Any]) -> List[Trade]:
        query = text(f"SELECT {_COLUMNS} FROM escrow_trades {clause}")
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except SQLAlchemyError as e:
            raise self._persistence_failure("select", params.get("trade_id"), e) from e
        return [_from_row(row) for row in rows]

    def _persistence_failure(self, action: str, trade_id: Any, error: Exception) -> TradeStoreError:
        logger.error(
            f"[{EscrowErrorCode.DB_PERSISTENCE_FAIL}] Trade store {action} failed: {error} | "
            f"trade_id={trade_id}"
        )
        return TradeStoreError(
            f"Trade store {action} failed: {error}",
            trade_id=trade_id,
        )
