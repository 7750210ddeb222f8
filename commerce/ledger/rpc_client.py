# ============================================================================
# Agent Commerce Escrow v1.0.0
# JSON-RPC Ledger Client - Escrow Token Contract over an Ethereum Node
# ============================================================================
#
# Reliability Level: L6 Critical
# Purpose: Submit lock/release/refund to the escrow token contract and block
#          until the node reports the receipt at the required depth
#
# MANDATE:
#   - Every money-moving call is pre-flighted with eth_call so contract
#     reverts surface as LedgerRejectedError before anything is submitted
#   - Confirmation waits are bounded by a deadline (LedgerTimeoutError)
#   - Transient node errors while polling widen the poll interval
#     (ExponentialBackoff) but never extend the deadline
#   - All token amounts converted via TokenUnitGateway
#
# Signing: transactions are sent with eth_sendTransaction from accounts the
#          node (or a signing proxy in front of it) manages. The engine only
#          holds the opaque LedgerSigner handle.
#
# Error Codes:
#   - ESC-010: Contract reverted / receipt status 0
#   - ESC-011: Node unreachable, HTTP error, malformed JSON-RPC response
#   - ESC-012: No receipt at required depth before the deadline
#
# ============================================================================

import itertools
import logging
import time
from decimal import Decimal
from typing import Optional, Dict, Any, List, Callable, Tuple

import requests
from requests.exceptions import Timeout, ConnectionError as RequestsConnectionError

from commerce.errors import (
    EscrowErrorCode,
    LedgerRejectedError,
    LedgerUnavailableError,
    LedgerTimeoutError,
    RejectionReason,
)
from commerce.ledger.backoff import ExponentialBackoff, Deadline, sleep_until_next_poll
from commerce.ledger.client import (
    LedgerClient,
    LedgerSigner,
    LedgerConfirmation,
    LedgerOperation,
    LedgerEscrowState,
    EscrowRecord,
)
from commerce.ledger import contract_abi as abi
from commerce.ledger.token_units import TokenUnitGateway, DEFAULT_TOKEN_DECIMALS

logger = logging.getLogger(__name__)


# Revert text fragments -> rejection reason, checked in order
REVERT_REASON_PATTERNS: List[Tuple[Tuple[str, ...], RejectionReason]] = [
    (("exist",), RejectionReason.TRADE_EXISTS),
    (("not locked",), RejectionReason.NOT_LOCKED),
    (("not expired", "expir"), RejectionReason.NOT_EXPIRED),
    (("allowance",), RejectionReason.INSUFFICIENT_ALLOWANCE),
    (("balance",), RejectionReason.INSUFFICIENT_BALANCE),
    (("seller", "zero address"), RejectionReason.INVALID_SELLER),
    (("amount",), RejectionReason.INVALID_AMOUNT),
    (("buyer", "authorized", "arbiter"), RejectionReason.NOT_BUYER),
]

EVENT_TOPICS: Dict[LedgerOperation, str] = {
    LedgerOperation.LOCK: abi.TOPIC_ESCROW_CREATED,
    LedgerOperation.RELEASE: abi.TOPIC_ESCROW_RELEASED,
    LedgerOperation.REFUND: abi.TOPIC_ESCROW_REFUNDED,
}


def classify_revert(message: str) -> RejectionReason:
    """Map a node's revert message onto a RejectionReason."""
    text = (message or "").lower()
    for fragments, reason in REVERT_REASON_PATTERNS:
        if any(fragment in text for fragment in fragments):
            return reason
    return RejectionReason.REVERTED


class JsonRpcLedgerClient(LedgerClient):
    """
    Ledger client for the escrow token contract via Ethereum JSON-RPC.

    Reliability Level: L6 Critical
    Decimal Integrity: All amounts converted via TokenUnitGateway

    Example Usage:
        client = JsonRpcLedgerClient(
            rpc_url="https://sepolia.base.org",
            contract_address="0x...",
        )
        confirmation = client.lock_funds(
            LedgerSigner(address="0xBuyer..."),
            seller_address="0xSeller...",
            amount=Decimal("50"),
            external_id=trade.external_id,
        )
    """

    DEFAULT_CONFIRMATION_TIMEOUT = 120.0
    DEFAULT_POLL_INTERVAL = 2.0
    DEFAULT_HTTP_TIMEOUT = 30.0

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        token_decimals: int = DEFAULT_TOKEN_DECIMALS,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        required_confirmations: int = 1,
        log_from_block: int = 0,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        correlation_id: Optional[str] = None
    ):
        """
        Initialize JSON-RPC ledger client.

        Args:
            rpc_url: Node JSON-RPC endpoint
            contract_address: Escrow token contract address
            token_decimals: Token decimals (18 for the escrow token)
            confirmation_timeout: Default bounded wait per operation (seconds)
            poll_interval: Receipt poll interval (seconds)
            required_confirmations: Blocks a receipt must be buried under
            log_from_block: First block searched by find_confirmation
            http_timeout: Per-request HTTP timeout (seconds)
            session: requests.Session to reuse (created when None)
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock (injectable for tests)
            correlation_id: Audit trail identifier
        """
        if not abi.is_well_formed_address(contract_address):
            raise ValueError(f"Malformed contract address: {contract_address!r}")

        self.rpc_url = rpc_url
        self.contract_address = abi.normalize_address(contract_address)
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self.required_confirmations = max(1, int(required_confirmations))
        self.log_from_block = log_from_block
        self.http_timeout = http_timeout
        self.correlation_id = correlation_id

        self.gateway = TokenUnitGateway(token_decimals)
        self._session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self._request_ids = itertools.count(1)

        logger.info(
            f"[LEDGER-RPC] Client initialized | "
            f"rpc_url={rpc_url} | contract={self.contract_address} | "
            f"confirmations={self.required_confirmations} | "
            f"timeout={confirmation_timeout}s | correlation_id={correlation_id}"
        )

    # ========================================================================
    # Money-moving operations
    # ========================================================================

    def lock_funds(
        self,
        signer: LedgerSigner,
        seller_address: str,
        amount: Decimal,
        external_id: str,
        timeout: Optional[float] = None
    ) -> LedgerConfirmation:
        """
        Approve (only if needed) and createEscrow, both confirmed.

        Raises:
            LedgerRejectedError: Non-positive amount, invalid seller, revert
            LedgerUnavailableError: Node errors before submission
            LedgerTimeoutError: Either transaction unconfirmed at the deadline
        """
        operation = LedgerOperation.LOCK
        deadline = Deadline(self._timeout(timeout), self._clock)

        if amount <= 0:
            raise LedgerRejectedError(
                f"Escrow amount must be positive, got {amount}",
                reason=RejectionReason.INVALID_AMOUNT,
                operation=operation.value,
            )
        if not abi.is_well_formed_address(seller_address) or abi.is_zero_address(seller_address):
            raise LedgerRejectedError(
                f"Invalid seller address: {seller_address!r}",
                reason=RejectionReason.INVALID_SELLER,
                operation=operation.value,
            )

        base_units = self.gateway.to_base_units(amount)

        approval_tx_ref = None
        current_allowance = self._allowance_units(signer.address)
        if current_allowance < base_units:
            approve_data = abi.encode_call(
                abi.SELECTOR_APPROVE,
                abi.encode_address(self.contract_address),
                abi.encode_uint256(base_units),
            )
            approval_tx_ref, _ = self._transact(signer, approve_data, operation, external_id, deadline)
            logger.info(
                f"[LEDGER-RPC] Approval confirmed | "
                f"owner={signer.address} | amount={amount} | tx={approval_tx_ref} | "
                f"external_id={external_id}"
            )
        else:
            logger.info(
                f"[LEDGER-RPC] Existing allowance covers amount, approval skipped | "
                f"owner={signer.address} | allowance_units={current_allowance} | "
                f"external_id={external_id}"
            )

        data = abi.encode_call(
            abi.SELECTOR_CREATE_ESCROW,
            abi.encode_address(seller_address),
            abi.encode_uint256(base_units),
            abi.encode_bytes32(external_id),
        )
        tx_ref, receipt = self._transact(signer, data, operation, external_id, deadline)

        return LedgerConfirmation(
            operation=operation,
            tx_ref=tx_ref,
            external_id=external_id,
            block_number=self._block_of(receipt),
            approval_tx_ref=approval_tx_ref,
        )

    def release_funds(
        self,
        signer: LedgerSigner,
        external_id: str,
        timeout: Optional[float] = None
    ) -> LedgerConfirmation:
        data = abi.encode_call(abi.SELECTOR_RELEASE_ESCROW, abi.encode_bytes32(external_id))
        return self._single_transaction(signer, data, LedgerOperation.RELEASE, external_id, timeout)

    def refund_funds(
        self,
        signer: LedgerSigner,
        external_id: str,
        timeout: Optional[float] = None
    ) -> LedgerConfirmation:
        data = abi.encode_call(abi.SELECTOR_REFUND_ESCROW, abi.encode_bytes32(external_id))
        return self._single_transaction(signer, data, LedgerOperation.REFUND, external_id, timeout)

    # ========================================================================
    # Queries
    # ========================================================================

    def get_escrow(self, external_id: str) -> EscrowRecord:
        """
        Read escrows(tradeId) from the contract.

        Raises:
            LedgerUnavailableError: Node errors, malformed return data or an
                unknown state code (ESC-014)
        """
        data = self._eth_call(abi.encode_call(abi.SELECTOR_ESCROWS, abi.encode_bytes32(external_id)))
        try:
            words = abi.decode_words(data or "0x")
        except ValueError as e:
            raise LedgerUnavailableError(
                f"Malformed escrows() return data: {e}",
            ) from e
        if len(words) < 6:
            raise LedgerUnavailableError(
                f"escrows() returned {len(words)} words, expected 6 | external_id={external_id}",
            )

        state = LedgerEscrowState.from_ledger_code(words[5], external_id)
        if state == LedgerEscrowState.NONE:
            return EscrowRecord(external_id=external_id, state=state)

        return EscrowRecord(
            external_id=external_id,
            state=state,
            buyer=abi.word_to_address(words[0]),
            seller=abi.word_to_address(words[1]),
            amount=self.gateway.from_base_units(words[2]),
            created_at=words[3],
            expires_at=words[4],
        )

    def find_confirmation(
        self,
        external_id: str,
        operation: LedgerOperation
    ) -> Optional[str]:
        """Transaction hash of the escrow event for operation, via eth_getLogs."""
        logs = self._rpc("eth_getLogs", [{
            "address": self.contract_address,
            "fromBlock": hex(self.log_from_block),
            "toBlock": "latest",
            "topics": [EVENT_TOPICS[operation], "0x" + abi.encode_bytes32(external_id)],
        }]) or []
        if not logs:
            return None
        return logs[-1].get("transactionHash")

    def balance_of(self, address: str) -> Decimal:
        data = self._eth_call(abi.encode_call(abi.SELECTOR_BALANCE_OF, abi.encode_address(address)))
        return self.gateway.from_base_units(self._single_word(data))

    def allowance(self, owner: str) -> Decimal:
        return self.gateway.from_base_units(self._allowance_units(owner))

    def token_decimals(self) -> int:
        return self._single_word(self._eth_call(abi.encode_call(abi.SELECTOR_DECIMALS)))

    def escrow_timeout_seconds(self) -> int:
        return self._single_word(self._eth_call(abi.encode_call(abi.SELECTOR_ESCROW_TIMEOUT)))

    # ========================================================================
    # Transaction plumbing
    # ========================================================================

    def _single_transaction(
        self,
        signer: LedgerSigner,
        data: str,
        operation: LedgerOperation,
        external_id: str,
        timeout: Optional[float]
    ) -> LedgerConfirmation:
        deadline = Deadline(self._timeout(timeout), self._clock)
        tx_ref, receipt = self._transact(signer, data, operation, external_id, deadline)
        return LedgerConfirmation(
            operation=operation,
            tx_ref=tx_ref,
            external_id=external_id,
            block_number=self._block_of(receipt),
        )

    def _transact(
        self,
        signer: LedgerSigner,
        data: str,
        operation: LedgerOperation,
        external_id: str,
        deadline: Deadline
    ) -> Tuple[str, Dict[str, Any]]:
        """
        Pre-flight, submit and wait for one transaction.

        Returns:
            (transaction hash, receipt)
        """
        sender = abi.normalize_address(signer.address)

        # Reverts surface here, before anything is broadcast
        self._eth_call(data, sender=sender, operation=operation)

        tx_ref = self._rpc(
            "eth_sendTransaction",
            [{"from": sender, "to": self.contract_address, "data": data}],
            operation=operation,
            submitting=True,
        )
        logger.info(
            f"[LEDGER-RPC] Transaction submitted | "
            f"operation={operation.value} | tx={tx_ref} | from={sender} | "
            f"external_id={external_id} | correlation_id={self.correlation_id}"
        )

        receipt = self._wait_for_receipt(tx_ref, operation, external_id, deadline)
        return tx_ref, receipt

    def _wait_for_receipt(
        self,
        tx_ref: str,
        operation: LedgerOperation,
        external_id: str,
        deadline: Deadline
    ) -> Dict[str, Any]:
        backoff = ExponentialBackoff(
            base_delay=self.poll_interval,
            max_delay=self.poll_interval * 8,
            jitter=0.1,
        )

        while True:
            delay = self.poll_interval
            try:
                receipt = self._rpc("eth_getTransactionReceipt", [tx_ref], operation=operation)
                backoff.reset()
            except LedgerUnavailableError as e:
                receipt = None
                delay = backoff.get_delay()
                logger.warning(
                    f"[LEDGER-RPC] Receipt poll failed, backing off | "
                    f"tx={tx_ref} | delay={delay:.2f}s | error={e.message}"
                )

            if receipt:
                if int(receipt.get("status", "0x1"), 16) == 0:
                    logger.error(
                        f"[{EscrowErrorCode.LEDGER_REJECTED}] Transaction reverted on-chain | "
                        f"operation={operation.value} | tx={tx_ref} | external_id={external_id}"
                    )
                    raise LedgerRejectedError(
                        f"Transaction {tx_ref} reverted",
                        reason=RejectionReason.REVERTED,
                        operation=operation.value,
                    )
                try:
                    if self._has_required_depth(receipt):
                        return receipt
                except LedgerUnavailableError as e:
                    # Mined but depth unknown; keep polling until the deadline
                    delay = backoff.get_delay()
                    logger.warning(
                        f"[LEDGER-RPC] Block height poll failed, backing off | "
                        f"tx={tx_ref} | delay={delay:.2f}s | error={e.message}"
                    )

            if deadline.expired():
                logger.warning(
                    f"[{EscrowErrorCode.LEDGER_TIMEOUT}] Confirmation deadline passed | "
                    f"operation={operation.value} | tx={tx_ref} | "
                    f"waited={deadline.seconds}s | external_id={external_id}"
                )
                raise LedgerTimeoutError(
                    f"No confirmation for {operation.value} within {deadline.seconds}s",
                    tx_ref=tx_ref,
                    operation=operation.value,
                )

            sleep_until_next_poll(deadline, delay, self._sleep)

    def _timeout(self, timeout: Optional[float]) -> float:
        return self.confirmation_timeout if timeout is None else timeout

    def _has_required_depth(self, receipt: Dict[str, Any]) -> bool:
        if self.required_confirmations <= 1:
            return True
        block = self._block_of(receipt)
        if block is None:
            return False
        head = int(self._rpc("eth_blockNumber", []), 16)
        return head - block + 1 >= self.required_confirmations

    @staticmethod
    def _block_of(receipt: Dict[str, Any]) -> Optional[int]:
        block = receipt.get("blockNumber")
        return int(block, 16) if block else None

    def _allowance_units(self, owner: str) -> int:
        data = self._eth_call(abi.encode_call(
            abi.SELECTOR_ALLOWANCE,
            abi.encode_address(owner),
            abi.encode_address(self.contract_address),
        ))
        return self._single_word(data)

    @staticmethod
    def _single_word(data: Optional[str]) -> int:
        try:
            words = abi.decode_words(data or "0x")
        except ValueError as e:
            raise LedgerUnavailableError(f"Malformed eth_call return data: {e}") from e
        if not words:
            raise LedgerUnavailableError("Empty eth_call return data")
        return words[0]

    def _eth_call(
        self,
        data: str,
        sender: Optional[str] = None,
        operation: Optional[LedgerOperation] = None
    ) -> str:
        call: Dict[str, Any] = {"to": self.contract_address, "data": data}
        if sender:
            call["from"] = sender
        return self._rpc("eth_call", [call, "latest"], operation=operation)

    # ========================================================================
    # JSON-RPC transport
    # ========================================================================

    def _rpc(
        self,
        method: str,
        params: List[Any],
        operation: Optional[LedgerOperation] = None,
        submitting: bool = False
    ) -> Any:
        """
        Execute one JSON-RPC request.

        A timeout while submitting is ambiguous (the node may have accepted
        the transaction) and is raised as LedgerTimeoutError, not as
        LedgerUnavailableError.
        """
        op_name = operation.value if operation else None
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }

        try:
            response = self._session.post(self.rpc_url, json=payload, timeout=self.http_timeout)
            response.raise_for_status()
            body = response.json()
        except Timeout as e:
            if submitting:
                logger.warning(
                    f"[{EscrowErrorCode.LEDGER_TIMEOUT}] Submission timed out, outcome unknown | "
                    f"method={method} | operation={op_name} | correlation_id={self.correlation_id}"
                )
                raise LedgerTimeoutError(
                    f"{method} timed out after {self.http_timeout}s",
                    operation=op_name,
                ) from e
            raise self._unavailable(method, op_name, f"timeout: {e}") from e
        except RequestsConnectionError as e:
            raise self._unavailable(method, op_name, f"connection error: {e}") from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "N/A"
            raise self._unavailable(method, op_name, f"HTTP {status}") from e
        except (requests.RequestException, ValueError) as e:
            raise self._unavailable(method, op_name, str(e)) from e

        if not isinstance(body, dict):
            raise self._unavailable(method, op_name, "response is not a JSON-RPC object")

        error = body.get("error")
        if error:
            message = str(error.get("message", "")) if isinstance(error, dict) else str(error)
            detail = str(error.get("data", "")) if isinstance(error, dict) else ""
            if "revert" in message.lower() or (isinstance(error, dict) and error.get("code") == 3):
                reason = classify_revert(f"{message} {detail}")
                logger.error(
                    f"[{EscrowErrorCode.LEDGER_REJECTED}] Contract rejected call | "
                    f"method={method} | operation={op_name} | reason={reason.value} | "
                    f"message={message} | correlation_id={self.correlation_id}"
                )
                raise LedgerRejectedError(
                    f"{method} reverted: {message}",
                    reason=reason,
                    operation=op_name,
                )
            raise self._unavailable(method, op_name, f"rpc error: {message}")

        return body.get("result")

    def _unavailable(
        self,
        method: str,
        operation: Optional[str],
        detail: str
    ) -> LedgerUnavailableError:
        logger.error(
            f"[{EscrowErrorCode.LEDGER_UNAVAILABLE}] Ledger request failed | "
            f"method={method} | operation={operation} | detail={detail} | "
            f"correlation_id={self.correlation_id}"
        )
        return LedgerUnavailableError(f"{method} failed: {detail}", operation=operation)
