"""
============================================================================
Agent Commerce Escrow v1.0.0
Per-Trade Exclusive Sections
============================================================================

Reliability Level: L6 Critical
Thread Safety: Registry guarded by one short-lived mutex that is never held
               while a caller is inside a section

Every mutating lifecycle operation runs inside the exclusive section of its
trade_id. Sections are non-blocking: a second caller on a trade that is
already held fails immediately with ConflictError rather than queueing
behind a ledger call that can take minutes. Different trades never contend.

Each store hands out the sections that match its reach: the in-memory
store shares one process-local TradeLockRegistry, the SQL store claims a
lease on the trade's row so that every worker on the same database sees
the same section (see escrow/sql_trade_store.py).

============================================================================
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import ContextManager, Dict, Iterator, Optional
import logging
import threading

from commerce.errors import ConflictError, EscrowErrorCode

# Configure module logger
logger = logging.getLogger(__name__)


class ExclusiveSections(ABC):
    """Per-trade mutual exclusion for lifecycle operations."""

    @abstractmethod
    def exclusive(
        self,
        trade_id: str,
        operation: str,
        correlation_id: Optional[str] = None
    ) -> ContextManager[None]:
        """
        Hold the section for trade_id for the duration of the with block.

        Raises:
            ConflictError: (ESC-004) if another operation holds the section
        """

    @abstractmethod
    def is_held(self, trade_id: str) -> bool:
        """True while some caller is inside the section of trade_id."""


def busy_error(
    trade_id: str,
    operation: str,
    holder: Optional[str],
    correlation_id: Optional[str]
) -> ConflictError:
    logger.warning(
        f"[{EscrowErrorCode.CONFLICT}] Trade busy | "
        f"trade_id={trade_id} | requested={operation} | held_by={holder} | "
        f"correlation_id={correlation_id}"
    )
    return ConflictError(
        f"Trade {trade_id} is busy with {holder}",
        trade_id=trade_id,
        correlation_id=correlation_id,
    )


class TradeLockRegistry(ExclusiveSections):
    """Process-local registry of held sections, keyed by trade_id."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._holders: Dict[str, str] = {}

    @contextmanager
    def exclusive(
        self,
        trade_id: str,
        operation: str,
        correlation_id: Optional[str] = None
    ) -> Iterator[None]:
        with self._mutex:
            holder = self._holders.get(trade_id)
            if holder is not None:
                raise busy_error(trade_id, operation, holder, correlation_id)
            self._holders[trade_id] = operation

        try:
            yield
        finally:
            with self._mutex:
                self._holders.pop(trade_id, None)

    def is_held(self, trade_id: str) -> bool:
        with self._mutex:
            return trade_id in self._holders
