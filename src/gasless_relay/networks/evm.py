"""
EVM network configurations.

This module defines the chains the relay contracts are deployed on.

Important considerations:
- RSK blocks are capped at 6.8M gas, so the RelayHub rejects external gas
  limits above that ("Impossible gas limit")
- RSK uses legacy (EIP-155) transactions only; relay servers return raw
  legacy transactions
- Hub addresses are deployment specific and must be supplied by the
  integrator unless a network entry carries one
"""

from gasless_relay.networks.base import (
    NetworkConfig,
    NetworkType,
    register_network,
)

# =============================================================================
# EVM Networks Configuration
# =============================================================================

# RSK Mainnet
RSK_MAINNET = NetworkConfig(
    name="rsk-mainnet",
    display_name="RSK Mainnet",
    network_type=NetworkType.MAINNET,
    chain_id=30,
    rpc_url="https://public-node.rsk.co",
    block_gas_limit=6_800_000,
    explorer_url="https://explorer.rsk.co",
    enabled=True,
)

# RSK Testnet
RSK_TESTNET = NetworkConfig(
    name="rsk-testnet",
    display_name="RSK Testnet",
    network_type=NetworkType.TESTNET,
    chain_id=31,
    rpc_url="https://public-node.testnet.rsk.co",
    block_gas_limit=6_800_000,
    explorer_url="https://explorer.testnet.rsk.co",
    enabled=True,
)

# RSK Regtest (local node)
# NOTE: regtest nodes are started with a fresh deployment, so the hub
# address always comes from the deployment output
RSK_REGTEST = NetworkConfig(
    name="rsk-regtest",
    display_name="RSK Regtest",
    network_type=NetworkType.DEVNET,
    chain_id=33,
    rpc_url="http://localhost:4444",
    block_gas_limit=6_800_000,
    enabled=True,
)

# =============================================================================
# Register all EVM networks
# =============================================================================

_EVM_NETWORKS = [
    RSK_MAINNET,
    RSK_TESTNET,
    RSK_REGTEST,
]

for network in _EVM_NETWORKS:
    register_network(network)


def get_block_gas_limit(network_name: str) -> int:
    """
    Get the block gas limit for a network.

    Args:
        network_name: Network identifier

    Returns:
        Block gas limit (6.8M for RSK networks)
    """
    from gasless_relay.networks.base import get_network

    network = get_network(network_name)
    if network is None:
        raise ValueError(f"Unknown network: {network_name}")
    return network.block_gas_limit
