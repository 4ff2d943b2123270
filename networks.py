#!/usr/bin/env python3
"""Network normalization, chain metadata and worker id helpers."""

from __future__ import annotations

import re
from typing import Dict, Optional

from env_utils import env_str

NETWORK_BSC = "bsc"
NETWORK_ETHEREUM = "ethereum"
NETWORK_SEPOLIA = "sepolia"
NETWORK_POLYGON = "polygon"
NETWORK_BASE = "base"
NETWORK_ARBITRUM = "arbitrum"
NETWORK_OPTIMISM = "optimism"
NETWORK_MONAD = "monad"

_ALIASES = {
    "bnb": NETWORK_BSC,
    "binance": NETWORK_BSC,
    "eth": NETWORK_ETHEREUM,
    "mainnet": NETWORK_ETHEREUM,
    "matic": NETWORK_POLYGON,
    "arb": NETWORK_ARBITRUM,
    "op": NETWORK_OPTIMISM,
}

EVM_CHAIN_IDS: Dict[str, int] = {
    NETWORK_BSC: 56,
    NETWORK_ETHEREUM: 1,
    NETWORK_SEPOLIA: 11155111,
    NETWORK_POLYGON: 137,
    NETWORK_BASE: 8453,
    NETWORK_ARBITRUM: 42161,
    NETWORK_OPTIMISM: 10,
    NETWORK_MONAD: 143,
}

EVM_RPC_ENDPOINTS: Dict[str, str] = {
    NETWORK_BSC: "https://bsc-dataseed.bnbchain.org",
    NETWORK_ETHEREUM: "https://ethereum.publicnode.com",
    NETWORK_SEPOLIA: "https://ethereum-sepolia.publicnode.com",
    NETWORK_POLYGON: "https://polygon-bor.publicnode.com",
    NETWORK_BASE: "https://base.publicnode.com",
    NETWORK_ARBITRUM: "https://arbitrum-one.publicnode.com",
    NETWORK_OPTIMISM: "https://optimism.publicnode.com",
    NETWORK_MONAD: "https://rpc.monad.xyz",
}

EVM_NETWORKS = frozenset(EVM_CHAIN_IDS)

_EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

WORKER_KIND_LENDING = "lending"
WORKER_KIND_YIELD = "yield"


def normalize_network(value: str) -> str:
    """Normalize network aliases to canonical strings."""
    raw = str(value or "").strip().lower()
    if not raw:
        return ""
    return _ALIASES.get(raw, raw)


def parse_evm_network(value: str) -> str:
    network = normalize_network(value)
    if network not in EVM_NETWORKS:
        raise ValueError(f"Unsupported EVM network: {value!r}")
    return network


def chain_id(network: str) -> int:
    return EVM_CHAIN_IDS[parse_evm_network(network)]


def rpc_endpoint(network: str, override_url: Optional[str] = None) -> str:
    """RPC URL for *network*: explicit override, then EVM_RPC_<NET>_URL, then public default."""
    if override_url and override_url.strip():
        return override_url.strip()
    network = parse_evm_network(network)
    env_override = env_str(f"EVM_RPC_{network.upper()}_URL")
    if env_override:
        return env_override
    return EVM_RPC_ENDPOINTS[network]


def is_evm_address(value: str) -> bool:
    return bool(_EVM_ADDRESS_RE.match(str(value or "").strip()))


def make_worker_id(kind: str, network: str, account: str) -> str:
    """Composite (network, account) key, string-encoded.

    Lending workers keep the historical ``network:account`` form; yield
    workers are namespaced so both kinds can watch the same account.
    """
    if kind == WORKER_KIND_YIELD:
        return f"{WORKER_KIND_YIELD}:{network}:{account}"
    return f"{network}:{account}"
