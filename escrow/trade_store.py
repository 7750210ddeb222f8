"""
============================================================================
Agent Commerce Escrow v1.0.0
Trade Store - Keyed Trade Records with Per-Key Atomic Update
============================================================================

Reliability Level: L6 Critical
Thread Safety: All implementations are safe to share between threads

STORE CONTRACT:
    insert(trade)              ConflictError if trade_id or external_id exists
    get(trade_id)              TradeNotFoundError if absent
    get_by_external_id(eid)    TradeNotFoundError if absent
    update(trade_id, mutator)  load → mutator(trade) → persist, atomically;
                               ConflictError if another update of the same
                               trade is in flight, TradeNotFoundError if absent.
                               The store bumps version on every update.
    list_by_party(party)       trades where party is buyer or seller
    list_active()              pending | locked | delivered
    exclusive_sections()       per-trade sections shared by every manager on
                               this store (ExclusiveSections)

    Every successful insert/update is durable before it returns. Trades are
    never deleted. Callers receive copies; mutating a returned Trade never
    changes the stored record.

============================================================================
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable, Dict, List, Set
import copy
import logging
import threading

from commerce.errors import ConflictError, TradeNotFoundError, EscrowErrorCode
from escrow.models import Trade, ACTIVE_STATES
from escrow.trade_locks import ExclusiveSections, TradeLockRegistry

# Configure module logger
logger = logging.getLogger(__name__)

TradeMutator = Callable[[Trade], Trade]


class TradeStore(ABC):
    """Abstract keyed store of Trade records."""

    @abstractmethod
    def insert(self, trade: Trade) -> Trade:
        """Persist a new trade."""

    @abstractmethod
    def get(self, trade_id: str) -> Trade:
        """Load one trade by id."""

    @abstractmethod
    def get_by_external_id(self, external_id: str) -> Trade:
        """Load one trade by its ledger escrow key."""

    @abstractmethod
    def update(self, trade_id: str, mutator: TradeMutator) -> Trade:
        """Atomically apply mutator to the stored trade and persist the result."""

    @abstractmethod
    def list_by_party(self, party: str) -> List[Trade]:
        """Trades where party is the buyer or the seller, oldest first."""

    @abstractmethod
    def list_active(self) -> List[Trade]:
        """Trades not yet in a terminal state, oldest first."""

    @abstractmethod
    def exclusive_sections(self) -> ExclusiveSections:
        """Sections that exclude every writer this store can see."""


class InMemoryTradeStore(TradeStore):
    """
    Process-local trade store.

    A short map lock guards the dictionaries; it is never held while a
    mutator runs. Per-trade atomicity comes from the in-flight set: a second
    update of a trade whose update has not finished fails with ConflictError
    instead of waiting or overwriting.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._trades: Dict[str, Trade] = {}
        self._by_external_id: Dict[str, str] = {}
        self._in_flight: Set[str] = set()
        self._sections = TradeLockRegistry()

    def insert(self, trade: Trade) -> Trade:
        with self._lock:
            if trade.trade_id in self._trades:
                raise ConflictError(
                    f"Trade {trade.trade_id} already exists",
                    trade_id=trade.trade_id,
                )
            if trade.external_id in self._by_external_id:
                raise ConflictError(
                    f"External id {trade.external_id} already assigned",
                    trade_id=trade.trade_id,
                )
            self._trades[trade.trade_id] = copy.deepcopy(trade)
            self._by_external_id[trade.external_id] = trade.trade_id

        return copy.deepcopy(trade)

    def get(self, trade_id: str) -> Trade:
        with self._lock:
            trade = self._trades.get(trade_id)
            if trade is None:
                raise TradeNotFoundError(f"Trade {trade_id} not found", trade_id=trade_id)
            return copy.deepcopy(trade)

    def get_by_external_id(self, external_id: str) -> Trade:
        with self._lock:
            trade_id = self._by_external_id.get(external_id)
            if trade_id is None:
                raise TradeNotFoundError(f"No trade for external id {external_id}")
            return copy.deepcopy(self._trades[trade_id])

    def update(self, trade_id: str, mutator: TradeMutator) -> Trade:
        with self._lock:
            current = self._trades.get(trade_id)
            if current is None:
                raise TradeNotFoundError(f"Trade {trade_id} not found", trade_id=trade_id)
            if trade_id in self._in_flight:
                logger.warning(
                    f"[{EscrowErrorCode.CONFLICT}] Concurrent update rejected | "
                    f"trade_id={trade_id}"
                )
                raise ConflictError(
                    f"Another update of trade {trade_id} is in flight",
                    trade_id=trade_id,
                )
            self._in_flight.add(trade_id)
            snapshot = copy.deepcopy(current)

        try:
            updated = replace(mutator(snapshot), version=current.version + 1)
            with self._lock:
                self._trades[trade_id] = copy.deepcopy(updated)
            return copy.deepcopy(updated)
        finally:
            with self._lock:
                self._in_flight.discard(trade_id)

    def list_by_party(self, party: str) -> List[Trade]:
        with self._lock:
            trades = [copy.deepcopy(t) for t in self._trades.values() if t.involves(party)]
        return sorted(trades, key=lambda t: t.created_at)

    def list_active(self) -> List[Trade]:
        with self._lock:
            trades = [copy.deepcopy(t) for t in self._trades.values() if t.state in ACTIVE_STATES]
        return sorted(trades, key=lambda t: t.created_at)

    def exclusive_sections(self) -> ExclusiveSections:
        return self._sections

    def __len__(self) -> int:
        with self._lock:
            return len(self._trades)
