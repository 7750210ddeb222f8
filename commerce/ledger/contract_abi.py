# ============================================================================
# Agent Commerce Escrow v1.0.0
# Escrow Token Contract ABI - Selectors, Topics and Word Encoding
# ============================================================================
#
# Reliability Level: L6 Critical
# Purpose: The subset of the escrow token contract the engine calls, encoded
#          as fixed 4-byte selectors and 32-byte event topics
#
# Contract surface (ERC-20 + escrow extension):
#   function approve(address spender, uint256 amount) returns (bool)
#   function allowance(address owner, address spender) view returns (uint256)
#   function balanceOf(address owner) view returns (uint256)
#   function decimals() view returns (uint8)
#   function createEscrow(address seller, uint256 amount, bytes32 tradeId)
#   function releaseEscrow(bytes32 tradeId)
#   function refundEscrow(bytes32 tradeId)
#   function escrows(bytes32 tradeId) view returns (address buyer,
#       address seller, uint256 amount, uint256 createdAt,
#       uint256 expiresAt, uint8 state)
#   function escrowTimeout() view returns (uint256)
#
# ============================================================================

import re
from typing import Dict, List, Optional

from commerce.errors import InvalidArgumentError


# ============================================================================
# Function Selectors (first 4 bytes of keccak256(signature))
# ============================================================================

SELECTOR_APPROVE = "095ea7b3"             # approve(address,uint256)
SELECTOR_ALLOWANCE = "dd62ed3e"           # allowance(address,address)
SELECTOR_BALANCE_OF = "70a08231"          # balanceOf(address)
SELECTOR_DECIMALS = "313ce567"            # decimals()
SELECTOR_CREATE_ESCROW = "21c8956c"       # createEscrow(address,uint256,bytes32)
SELECTOR_RELEASE_ESCROW = "bf89fc61"      # releaseEscrow(bytes32)
SELECTOR_REFUND_ESCROW = "47aed508"       # refundEscrow(bytes32)
SELECTOR_ESCROWS = "2d83549c"             # escrows(bytes32)
SELECTOR_ESCROW_TIMEOUT = "605c6d63"      # escrowTimeout()


# ============================================================================
# Event Topics (keccak256(event signature))
# ============================================================================

# EscrowCreated(bytes32 indexed tradeId, address indexed buyer,
#               address indexed seller, uint256 amount, uint256 expiresAt)
TOPIC_ESCROW_CREATED = "0x8233ac661360194ba2d16fa02d354d092808769225032c46dc5787f33af21cbe"

# EscrowReleased(bytes32 indexed tradeId, address indexed seller, uint256 amount)
TOPIC_ESCROW_RELEASED = "0x3a9c1cd29cd3be251a72ce3c367c27dc1cb697ac4589965b76a83f9a25ca0710"

# EscrowRefunded(bytes32 indexed tradeId, address indexed buyer, uint256 amount)
TOPIC_ESCROW_REFUNDED = "0xfc31a7ddbe933aa6e67f3c98c183fbc87addd2b602fcfb10238d2f85cf026617"


# ============================================================================
# Chain Presets
# ============================================================================

CHAIN_CONFIGS: Dict[str, Dict[str, object]] = {
    "baseSepolia": {
        "chain_id": 84532,
        "name": "Base Sepolia",
        "rpc_url": "https://sepolia.base.org",
        "explorer": "https://sepolia.basescan.org",
    },
    "baseMainnet": {
        "chain_id": 8453,
        "name": "Base",
        "rpc_url": "https://mainnet.base.org",
        "explorer": "https://basescan.org",
    },
    "polygon": {
        "chain_id": 137,
        "name": "Polygon",
        "rpc_url": "https://polygon-rpc.com",
        "explorer": "https://polygonscan.com",
    },
}

DEFAULT_CHAIN = "baseSepolia"


def explorer_tx_url(chain: str, tx_ref: str) -> Optional[str]:
    """Block explorer link for a confirmation reference, None for unknown chains."""
    preset = CHAIN_CONFIGS.get(chain)
    if preset is None:
        return None
    return f"{preset['explorer']}/tx/{tx_ref}"


# ============================================================================
# Addresses and 32-byte words
# ============================================================================

ZERO_ADDRESS = "0x" + "0" * 40
UINT256_LIMIT = 2 ** 256

_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{1,40}$")
_BYTES32_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


def is_well_formed_address(address: Optional[str]) -> bool:
    """
    Ledger account identifier check.

    Accepts '0x' followed by 1-40 hex digits; short forms are left-padded to
    20 bytes when encoded.
    """
    return bool(address) and bool(_ADDRESS_PATTERN.match(address))


def is_zero_address(address: str) -> bool:
    return int(address, 16) == 0


def address_to_int(address: str) -> int:
    if not is_well_formed_address(address):
        raise InvalidArgumentError(f"Malformed ledger address: {address!r}")
    return int(address, 16)


def same_address(left: str, right: str) -> bool:
    """Compare two addresses by value, ignoring case and zero padding."""
    return address_to_int(left) == address_to_int(right)


def normalize_address(address: str) -> str:
    """Canonical lower-case, 20-byte form."""
    return "0x" + format(address_to_int(address), "040x")


def encode_address(address: str) -> str:
    return format(address_to_int(address), "064x")


def encode_uint256(value: int) -> str:
    if value < 0 or value >= UINT256_LIMIT:
        raise InvalidArgumentError(f"uint256 out of range: {value}")
    return format(value, "064x")


def encode_bytes32(value: str) -> str:
    if not _BYTES32_PATTERN.match(value or ""):
        raise InvalidArgumentError(f"Malformed bytes32 value: {value!r}")
    return value[2:].lower()


def encode_call(selector: str, *words: str) -> str:
    """Calldata for a call whose arguments are all static 32-byte words."""
    return "0x" + selector + "".join(words)


def decode_words(data: str) -> List[int]:
    """Split ABI return data into 32-byte unsigned words."""
    payload = data[2:] if data.startswith("0x") else data
    if len(payload) % 64:
        raise ValueError(f"ABI return data is not word aligned ({len(payload)} hex chars)")
    return [int(payload[i:i + 64], 16) for i in range(0, len(payload), 64)]


def word_to_address(word: int) -> str:
    return "0x" + format(word & ((1 << 160) - 1), "040x")
