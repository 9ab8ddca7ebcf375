"""Network registry. Importing this package registers the built-in networks."""

from gasless_relay.networks.base import (
    NetworkConfig,
    NetworkType,
    get_network,
    get_network_by_chain_id,
    list_networks,
    register_network,
)
from gasless_relay.networks.evm import RSK_MAINNET, RSK_REGTEST, RSK_TESTNET

__all__ = [
    "NetworkConfig",
    "NetworkType",
    "get_network",
    "get_network_by_chain_id",
    "list_networks",
    "register_network",
    "RSK_MAINNET",
    "RSK_TESTNET",
    "RSK_REGTEST",
]
