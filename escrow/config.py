"""
============================================================================
Agent Commerce Escrow v1.0.0
Escrow Engine - Configuration
============================================================================

Reliability Level: L6 Critical
Traceability: Loaded configuration is logged once at startup

This module provides configuration management for the escrow engine:
- Environment variable parsing (a local .env file is honoured)
- Default values for optional configuration
- Fail-closed validation of required configuration (ESC-040)

ENVIRONMENT VARIABLES:
    - ESCROW_LEDGER_MODE: RPC or SIMULATED (default: SIMULATED)
    - ESCROW_CHAIN: Chain preset name (default: baseSepolia)
    - ESCROW_RPC_URL: JSON-RPC endpoint (default: chain preset URL)
    - ESCROW_CHAIN_ID: Chain id (default: chain preset id)
    - ESCROW_CONTRACT_ADDRESS: Escrow token contract (REQUIRED in RPC mode)
    - ESCROW_ARBITER_ADDRESS: Arbiter account for the simulated ledger
    - ESCROW_TOKEN_DECIMALS: Token decimals (default: 18)
    - ESCROW_CONFIRMATION_TIMEOUT_SECONDS: Bounded confirmation wait (default: 120)
    - ESCROW_POLL_INTERVAL_SECONDS: Receipt poll interval (default: 2.0)
    - ESCROW_REQUIRED_CONFIRMATIONS: Block depth for finality (default: 1)
    - ESCROW_LOG_FROM_BLOCK: First block scanned for escrow events (default: 0)
    - ESCROW_HTTP_TIMEOUT_SECONDS: Per-request HTTP timeout (default: 30)
    - ESCROW_DATABASE_URL: SQLAlchemy URL (default: sqlite:///./agent_commerce.db)
    - ESCROW_LOG_LEVEL: Logging level (default: INFO)

ERROR CODES:
    - ESC-040: Required configuration missing

============================================================================
"""

from dataclasses import dataclass
from typing import Optional, List
import logging
import os

from dotenv import load_dotenv

from commerce.errors import EscrowErrorCode
from commerce.ledger import contract_abi as abi
from commerce.ledger.token_units import DEFAULT_TOKEN_DECIMALS

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Default Values
# =============================================================================

LEDGER_MODE_RPC = "RPC"
LEDGER_MODE_SIMULATED = "SIMULATED"
LEDGER_MODES = (LEDGER_MODE_RPC, LEDGER_MODE_SIMULATED)

DEFAULT_LEDGER_MODE = LEDGER_MODE_SIMULATED
DEFAULT_CONFIRMATION_TIMEOUT_SECONDS = 120.0
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_REQUIRED_CONFIRMATIONS = 1
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_DATABASE_URL = "sqlite:///./agent_commerce.db"
DEFAULT_LOG_LEVEL = "INFO"


# =============================================================================
# Configuration Validation Exception
# =============================================================================

class EscrowConfigurationError(Exception):
    """
    Raised during startup when escrow configuration is invalid or missing.
    """

    def __init__(self, message: str, error_code: str = EscrowErrorCode.CONFIG_MISSING):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# =============================================================================
# EscrowConfig Class
# =============================================================================

@dataclass
class EscrowConfig:
    """
    Escrow engine configuration.

    Reliability Level: L6 Critical
    Input Constraints: contract_address required when ledger_mode is RPC
    Side Effects: Logs configuration on load
    """

    ledger_mode: str = DEFAULT_LEDGER_MODE
    chain: str = abi.DEFAULT_CHAIN
    rpc_url: Optional[str] = None
    chain_id: Optional[int] = None
    contract_address: Optional[str] = None
    arbiter_address: Optional[str] = None
    token_decimals: int = DEFAULT_TOKEN_DECIMALS
    confirmation_timeout_seconds: float = DEFAULT_CONFIRMATION_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    required_confirmations: int = DEFAULT_REQUIRED_CONFIRMATIONS
    log_from_block: int = 0
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = DEFAULT_LOG_LEVEL

    def __post_init__(self) -> None:
        """Fill RPC URL and chain id from the chain preset when not given."""
        self.ledger_mode = self.ledger_mode.upper()
        self.log_level = self.log_level.upper()

        preset = abi.CHAIN_CONFIGS.get(self.chain)
        if preset is not None:
            if not self.rpc_url:
                self.rpc_url = str(preset["rpc_url"])
            if self.chain_id is None:
                self.chain_id = int(preset["chain_id"])

    @property
    def explorer_url(self) -> Optional[str]:
        preset = abi.CHAIN_CONFIGS.get(self.chain)
        return str(preset["explorer"]) if preset else None

    def validate(self) -> None:
        """
        Validate configuration completeness.

        Raises:
            EscrowConfigurationError: (ESC-040) if required configuration is
                missing or invalid
        """
        errors: List[str] = []

        if self.ledger_mode not in LEDGER_MODES:
            errors.append(
                f"ESCROW_LEDGER_MODE must be one of {LEDGER_MODES}, got: {self.ledger_mode}"
            )

        if self.ledger_mode == LEDGER_MODE_RPC:
            if not self.rpc_url:
                errors.append("ESCROW_RPC_URL must be set for an unknown ESCROW_CHAIN")
            if not self.contract_address:
                errors.append("ESCROW_CONTRACT_ADDRESS must be set in RPC mode")
            elif not abi.is_well_formed_address(self.contract_address):
                errors.append(
                    f"ESCROW_CONTRACT_ADDRESS is not a ledger address: {self.contract_address}"
                )

        if self.arbiter_address and not abi.is_well_formed_address(self.arbiter_address):
            errors.append(
                f"ESCROW_ARBITER_ADDRESS is not a ledger address: {self.arbiter_address}"
            )

        if self.token_decimals < 0 or self.token_decimals > 77:
            errors.append(f"ESCROW_TOKEN_DECIMALS out of range: {self.token_decimals}")

        if self.confirmation_timeout_seconds <= 0:
            errors.append(
                "ESCROW_CONFIRMATION_TIMEOUT_SECONDS must be positive, "
                f"got: {self.confirmation_timeout_seconds}"
            )

        if self.poll_interval_seconds <= 0:
            errors.append(
                f"ESCROW_POLL_INTERVAL_SECONDS must be positive, got: {self.poll_interval_seconds}"
            )

        if self.required_confirmations < 1:
            errors.append(
                "ESCROW_REQUIRED_CONFIRMATIONS must be at least 1, "
                f"got: {self.required_confirmations}"
            )

        if self.http_timeout_seconds <= 0:
            errors.append(
                f"ESCROW_HTTP_TIMEOUT_SECONDS must be positive, got: {self.http_timeout_seconds}"
            )

        if errors:
            error_msg = "Escrow configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{EscrowErrorCode.CONFIG_MISSING}] {error_msg}")
            raise EscrowConfigurationError(error_msg)

        logger.info(
            f"[ESCROW-CONFIG] Configuration validated | "
            f"ledger_mode={self.ledger_mode} | chain={self.chain} | "
            f"chain_id={self.chain_id} | contract={self.contract_address} | "
            f"confirmation_timeout={self.confirmation_timeout_seconds}s"
        )

    @classmethod
    def from_environment(cls, validate: bool = True) -> "EscrowConfig":
        """
        Load configuration from environment variables.

        Malformed numeric values fall back to their defaults with a warning;
        missing required values fail validation.
        """
        load_dotenv()

        config = cls(
            ledger_mode=os.environ.get("ESCROW_LEDGER_MODE", DEFAULT_LEDGER_MODE).strip(),
            chain=os.environ.get("ESCROW_CHAIN", abi.DEFAULT_CHAIN).strip(),
            rpc_url=os.environ.get("ESCROW_RPC_URL") or None,
            chain_id=_read_optional_int("ESCROW_CHAIN_ID"),
            contract_address=os.environ.get("ESCROW_CONTRACT_ADDRESS") or None,
            arbiter_address=os.environ.get("ESCROW_ARBITER_ADDRESS") or None,
            token_decimals=_read_int("ESCROW_TOKEN_DECIMALS", DEFAULT_TOKEN_DECIMALS),
            confirmation_timeout_seconds=_read_float(
                "ESCROW_CONFIRMATION_TIMEOUT_SECONDS", DEFAULT_CONFIRMATION_TIMEOUT_SECONDS
            ),
            poll_interval_seconds=_read_float(
                "ESCROW_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS
            ),
            required_confirmations=_read_int(
                "ESCROW_REQUIRED_CONFIRMATIONS", DEFAULT_REQUIRED_CONFIRMATIONS
            ),
            log_from_block=_read_int("ESCROW_LOG_FROM_BLOCK", 0),
            http_timeout_seconds=_read_float(
                "ESCROW_HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS
            ),
            database_url=os.environ.get("ESCROW_DATABASE_URL", DEFAULT_DATABASE_URL),
            log_level=os.environ.get("ESCROW_LOG_LEVEL", DEFAULT_LOG_LEVEL).strip(),
        )

        logger.info(
            f"[ESCROW-CONFIG] Loading configuration from environment | "
            f"ESCROW_LEDGER_MODE={config.ledger_mode} | "
            f"ESCROW_CHAIN={config.chain} | "
            f"ESCROW_DATABASE_URL={config.database_url.split('@')[-1]}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> dict:
        return {
            "ledger_mode": self.ledger_mode,
            "chain": self.chain,
            "rpc_url": self.rpc_url,
            "chain_id": self.chain_id,
            "contract_address": self.contract_address,
            "arbiter_address": self.arbiter_address,
            "token_decimals": self.token_decimals,
            "confirmation_timeout_seconds": self.confirmation_timeout_seconds,
            "poll_interval_seconds": self.poll_interval_seconds,
            "required_confirmations": self.required_confirmations,
            "log_from_block": self.log_from_block,
            "http_timeout_seconds": self.http_timeout_seconds,
            "log_level": self.log_level,
        }


def _read_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"[ESCROW-CONFIG] Invalid {name} value: {raw}, using default: {default}")
        return default


def _read_optional_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"[ESCROW-CONFIG] Invalid {name} value: {raw}, using chain preset")
        return None


def _read_float(name: str, default: float) -> float:
    raw = os.environ.get(name, str(default))
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning(f"[ESCROW-CONFIG] Invalid {name} value: {raw}, using default: {default}")
        return default


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

_config_instance: Optional[EscrowConfig] = None


def get_escrow_config(validate: bool = True) -> EscrowConfig:
    """Load the configuration from the environment on first access, then reuse it."""
    global _config_instance

    if _config_instance is None:
        _config_instance = EscrowConfig.from_environment(validate=validate)

    return _config_instance


def reset_escrow_config() -> None:
    """Drop the cached configuration (tests change the environment between cases)."""
    global _config_instance
    _config_instance = None
    logger.debug("[ESCROW-CONFIG] Configuration instance reset")


__all__ = [
    "EscrowConfig",
    "EscrowConfigurationError",
    "LEDGER_MODE_RPC",
    "LEDGER_MODE_SIMULATED",
    "get_escrow_config",
    "reset_escrow_config",
]
