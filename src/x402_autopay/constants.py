"""Shared constants and the EVM network registry."""

from __future__ import annotations

from typing import Dict, List, Optional, TypedDict

PAYMENT_REQUIRED_STATUS = 402
EXACT_SCHEME = "exact"
DEFAULT_PROTOCOL_VERSION = 1
DEFAULT_CONFIRMATION_TIMEOUT = 60.0
DEFAULT_CONFIRMATIONS = 1

# Headers attached to the retried request.
HEADER_PAYMENT_HASH = "x-payment-hash"
HEADER_PAYMENT_NETWORK = "x-payment-network"
HEADER_PAYMENT_AMOUNT = "x-payment-amount"
HEADER_PAYMENT_ASSET = "x-payment-asset"

# Keys in PaymentRequirement.extras understood by the engine.
EXTRA_FACILITATOR = "facilitator"
EXTRA_SERVICE_ID = "serviceId"
EXTRA_OPERATION = "operation"
EXTRA_PAYMENT_ID = "paymentId"
EXTRA_QUOTE_ID = "quoteId"
EXTRA_DESCRIPTION = "description"


class TokenInfo(TypedDict):
    address: str
    decimals: int


class NetworkInfo(TypedDict):
    name: str
    chain_id: int
    rpc_url: str
    native_symbol: str
    native_decimals: int
    testnet: bool
    tokens: Dict[str, TokenInfo]


NETWORKS: Dict[str, NetworkInfo] = {
    "somnia-testnet": {
        "name": "Somnia Testnet",
        "chain_id": 50312,
        "rpc_url": "https://dream-rpc.somnia.network",
        "native_symbol": "STT",
        "native_decimals": 18,
        "testnet": True,
        "tokens": {},
    },
    "ethereum": {
        "name": "Ethereum Mainnet",
        "chain_id": 1,
        "rpc_url": "https://eth.llamarpc.com",
        "native_symbol": "ETH",
        "native_decimals": 18,
        "testnet": False,
        "tokens": {
            "USDT": {"address": "0xdAC17F958D2ee523a2206206994597C13D831ec7", "decimals": 6},
        },
    },
    "sepolia": {
        "name": "Ethereum Sepolia",
        "chain_id": 11155111,
        "rpc_url": "https://ethereum-sepolia-rpc.publicnode.com",
        "native_symbol": "ETH",
        "native_decimals": 18,
        "testnet": True,
        "tokens": {
            "USDC": {"address": "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238", "decimals": 6},
        },
    },
    "base": {
        "name": "Base Mainnet",
        "chain_id": 8453,
        "rpc_url": "https://mainnet.base.org",
        "native_symbol": "ETH",
        "native_decimals": 18,
        "testnet": False,
        "tokens": {
            "USDC": {"address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "decimals": 6},
        },
    },
    "base-sepolia": {
        "name": "Base Sepolia",
        "chain_id": 84532,
        "rpc_url": "https://sepolia.base.org",
        "native_symbol": "ETH",
        "native_decimals": 18,
        "testnet": True,
        "tokens": {},
    },
    "polygon": {
        "name": "Polygon Mainnet",
        "chain_id": 137,
        "rpc_url": "https://polygon-rpc.com",
        "native_symbol": "MATIC",
        "native_decimals": 18,
        "testnet": False,
        "tokens": {},
    },
    "arbitrum": {
        "name": "Arbitrum One",
        "chain_id": 42161,
        "rpc_url": "https://arb1.arbitrum.io/rpc",
        "native_symbol": "ETH",
        "native_decimals": 18,
        "testnet": False,
        "tokens": {},
    },
}

SUPPORTED_NETWORKS: List[str] = list(NETWORKS)


class UnsupportedNetworkError(ValueError):
    """Raised when a network or token is missing from the registry."""


def get_network(network: str) -> NetworkInfo:
    try:
        return NETWORKS[network.strip().lower()]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"No configuration for network {network}") from exc


def get_token(network: str, asset: str) -> Optional[TokenInfo]:
    """Return the ERC-20 entry for ``asset`` or ``None`` for the native token."""
    info = get_network(network)
    if asset.upper() == info["native_symbol"]:
        return None
    for symbol, token in info["tokens"].items():
        if asset.upper() == symbol or asset.lower() == token["address"].lower():
            return token
    raise UnsupportedNetworkError(f"Token {asset} not supported on {network}")


def is_evm_network(network: str) -> bool:
    lowered = network.strip().lower()
    return lowered in NETWORKS or lowered.startswith("eip155:")
