"""
Network configuration registry.

Each supported chain is described by a NetworkConfig and registered under
its name, so that clients can be configured with ``get_network("rsk-testnet")``
instead of repeating chain ids and RPC endpoints.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class NetworkType(str, Enum):
    """Kind of network a relay deployment lives on."""

    MAINNET = "mainnet"
    TESTNET = "testnet"
    DEVNET = "devnet"


@dataclass(frozen=True)
class NetworkConfig:
    """Static description of a chain the relay contracts can be deployed on."""

    name: str
    display_name: str
    network_type: NetworkType
    chain_id: int
    rpc_url: str
    block_gas_limit: int
    relay_hub_address: Optional[str] = None
    smart_wallet_factory_address: Optional[str] = None
    explorer_url: Optional[str] = None
    enabled: bool = True
    extra_config: dict[str, Any] = field(default_factory=dict)


_NETWORKS: dict[str, NetworkConfig] = {}


def register_network(network: NetworkConfig) -> None:
    """Register (or replace) a network under its lower-cased name."""
    _NETWORKS[network.name.lower()] = network


def get_network(name: str) -> Optional[NetworkConfig]:
    """
    Look up a registered network.

    Args:
        name: Network identifier (case insensitive)

    Returns:
        The NetworkConfig, or None if the name is unknown
    """
    return _NETWORKS.get(name.lower())


def get_network_by_chain_id(chain_id: int) -> Optional[NetworkConfig]:
    for network in _NETWORKS.values():
        if network.chain_id == chain_id:
            return network
    return None


def list_networks(enabled_only: bool = True) -> list[NetworkConfig]:
    """Return registered networks, optionally skipping disabled ones."""
    return [n for n in _NETWORKS.values() if n.enabled or not enabled_only]
