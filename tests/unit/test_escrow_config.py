"""
Unit Tests for Escrow Configuration Parsing

Reliability Level: L6 Critical
Python 3.8 Compatible

Tests the escrow configuration module:
- Default values for optional configuration
- Custom values from environment variables
- Chain presets fill RPC URL and chain id
- Missing contract address in RPC mode fails with ESC-040
"""

import os

import pytest

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from commerce.errors import EscrowErrorCode
from escrow.config import (
    EscrowConfig,
    EscrowConfigurationError,
    LEDGER_MODE_RPC,
    LEDGER_MODE_SIMULATED,
    get_escrow_config,
    reset_escrow_config,
)


ENV_VARS = [
    "ESCROW_LEDGER_MODE",
    "ESCROW_CHAIN",
    "ESCROW_RPC_URL",
    "ESCROW_CHAIN_ID",
    "ESCROW_CONTRACT_ADDRESS",
    "ESCROW_ARBITER_ADDRESS",
    "ESCROW_TOKEN_DECIMALS",
    "ESCROW_CONFIRMATION_TIMEOUT_SECONDS",
    "ESCROW_POLL_INTERVAL_SECONDS",
    "ESCROW_REQUIRED_CONFIRMATIONS",
    "ESCROW_LOG_FROM_BLOCK",
    "ESCROW_HTTP_TIMEOUT_SECONDS",
    "ESCROW_DATABASE_URL",
    "ESCROW_LOG_LEVEL",
]

CONTRACT = "0x" + "c0" * 20


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Every test starts from an environment without ESCROW_* variables."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    reset_escrow_config()
    yield
    reset_escrow_config()


# =============================================================================
# Test Default Values
# =============================================================================

class TestDefaults:

    def test_defaults(self):
        config = EscrowConfig.from_environment()

        assert config.ledger_mode == LEDGER_MODE_SIMULATED
        assert config.chain == "baseSepolia"
        assert config.rpc_url == "https://sepolia.base.org"
        assert config.chain_id == 84532
        assert config.contract_address is None
        assert config.token_decimals == 18
        assert config.confirmation_timeout_seconds == 120.0
        assert config.poll_interval_seconds == 2.0
        assert config.required_confirmations == 1
        assert config.database_url == "sqlite:///./agent_commerce.db"
        assert config.log_level == "INFO"
        assert config.explorer_url == "https://sepolia.basescan.org"


# =============================================================================
# Test Custom Values
# =============================================================================

class TestCustomValues:

    def test_rpc_mode_from_environment(self, monkeypatch):
        monkeypatch.setenv("ESCROW_LEDGER_MODE", "rpc")
        monkeypatch.setenv("ESCROW_CHAIN", "polygon")
        monkeypatch.setenv("ESCROW_CONTRACT_ADDRESS", CONTRACT)
        monkeypatch.setenv("ESCROW_CONFIRMATION_TIMEOUT_SECONDS", "45.5")
        monkeypatch.setenv("ESCROW_REQUIRED_CONFIRMATIONS", "3")
        monkeypatch.setenv("ESCROW_LOG_LEVEL", "debug")

        config = EscrowConfig.from_environment()

        assert config.ledger_mode == LEDGER_MODE_RPC
        assert config.chain_id == 137
        assert config.rpc_url == "https://polygon-rpc.com"
        assert config.contract_address == CONTRACT
        assert config.confirmation_timeout_seconds == 45.5
        assert config.required_confirmations == 3
        assert config.log_level == "DEBUG"

    def test_explicit_rpc_url_wins_over_preset(self, monkeypatch):
        monkeypatch.setenv("ESCROW_RPC_URL", "http://localhost:8545")
        monkeypatch.setenv("ESCROW_CHAIN_ID", "31337")
        config = EscrowConfig.from_environment()
        assert config.rpc_url == "http://localhost:8545"
        assert config.chain_id == 31337

    def test_invalid_numbers_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv("ESCROW_TOKEN_DECIMALS", "eighteen")
        monkeypatch.setenv("ESCROW_POLL_INTERVAL_SECONDS", "fast")
        monkeypatch.setenv("ESCROW_CHAIN_ID", "x")

        config = EscrowConfig.from_environment()
        assert config.token_decimals == 18
        assert config.poll_interval_seconds == 2.0
        assert config.chain_id == 84532

    def test_to_dict_omits_database_credentials(self):
        config = EscrowConfig(database_url="postgresql://user:secret@db/escrow")
        assert "database_url" not in config.to_dict()


# =============================================================================
# Test Validation
# =============================================================================

class TestValidation:

    def test_rpc_mode_requires_contract(self, monkeypatch):
        monkeypatch.setenv("ESCROW_LEDGER_MODE", "RPC")

        with pytest.raises(EscrowConfigurationError) as exc_info:
            EscrowConfig.from_environment()

        assert exc_info.value.error_code == EscrowErrorCode.CONFIG_MISSING
        assert "ESCROW_CONTRACT_ADDRESS" in str(exc_info.value)

    def test_unknown_chain_needs_rpc_url(self):
        config = EscrowConfig(ledger_mode="RPC", chain="nowhere", contract_address=CONTRACT)
        with pytest.raises(EscrowConfigurationError):
            config.validate()

    @pytest.mark.parametrize("overrides", [
        {"ledger_mode": "PAPER"},
        {"contract_address": "not-hex", "ledger_mode": "RPC"},
        {"arbiter_address": "0xZZ"},
        {"token_decimals": 78},
        {"confirmation_timeout_seconds": 0},
        {"poll_interval_seconds": -1},
        {"required_confirmations": 0},
        {"http_timeout_seconds": 0},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(EscrowConfigurationError):
            EscrowConfig(**overrides).validate()

    def test_validation_can_be_deferred(self, monkeypatch):
        monkeypatch.setenv("ESCROW_LEDGER_MODE", "RPC")
        config = EscrowConfig.from_environment(validate=False)
        assert config.contract_address is None


# =============================================================================
# Test Module Instance
# =============================================================================

class TestModuleInstance:

    def test_cached_until_reset(self, monkeypatch):
        first = get_escrow_config()
        monkeypatch.setenv("ESCROW_LOG_LEVEL", "WARNING")
        assert get_escrow_config() is first

        reset_escrow_config()
        assert get_escrow_config().log_level == "WARNING"
