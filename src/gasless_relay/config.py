"""
Configuration for the relay client and the settlement engine.

Example:
    >>> from gasless_relay.config import RelayClientConfig
    >>>
    >>> config = RelayClientConfig.for_network(
    ...     "rsk-testnet",
    ...     relay_hub_address="0xHub...",
    ...     preferred_relays=["https://relay.example.org"],
    ... )
    >>>
    >>> # Or from RELAY_CLIENT_* environment variables
    >>> config = RelayClientConfig.from_env()
"""

import os
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from gasless_relay.ledger import ETHER
from gasless_relay.models import Address
from gasless_relay.networks import get_network

# =============================================================================
# Client configuration
# =============================================================================

DEFAULT_PING_TIMEOUT = 3.0
DEFAULT_RELAY_TIMEOUT = 30.0


class RelayClientConfig(BaseModel):
    """Settings of a RelayClient."""

    relay_hub_address: Address = Field(..., alias="relayHubAddress")
    chain_id: Optional[int] = Field(None, alias="chainId")
    preferred_relays: list[str] = Field(default_factory=list, alias="preferredRelays")
    relay_lookup_window_blocks: int = Field(60_000, alias="relayLookupWindowBlocks")
    relay_timeout_grace_sec: int = Field(1800, alias="relayTimeoutGraceSec")
    gas_price_factor_percent: int = Field(0, alias="gasPriceFactorPercent")
    min_gas_price: int = Field(0, alias="minGasPrice")
    max_relay_nonce_gap: int = Field(3, alias="maxRelayNonceGap")
    max_view_gas_limit: int = Field(6_800_000, alias="maxViewGasLimit")
    ping_timeout: float = Field(DEFAULT_PING_TIMEOUT, alias="pingTimeout")
    relay_timeout: float = Field(DEFAULT_RELAY_TIMEOUT, alias="relayTimeout")
    default_token_gas: int = Field(50_000, alias="defaultTokenGas")
    default_deploy_gas: int = Field(1_000_000, alias="defaultDeployGas")
    pct_relay_fee: int = Field(0, alias="pctRelayFee")
    base_relay_fee: int = Field(0, alias="baseRelayFee")
    client_id: int = Field(1, alias="clientId")
    enable_qos: bool = Field(False, alias="enableQos")
    verify_server_hub: bool = Field(True, alias="verifyServerHub")

    class Config:
        populate_by_name = True

    @field_validator("preferred_relays", mode="before")
    @classmethod
    def _split_urls(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [url.strip() for url in value.split(",") if url.strip()]
        return value

    @field_validator("preferred_relays")
    @classmethod
    def _strip_trailing_slash(cls, value: list[str]) -> list[str]:
        return [url.rstrip("/") for url in value]

    @classmethod
    def from_env(cls, prefix: str = "RELAY_CLIENT_", **overrides: Any) -> "RelayClientConfig":
        """
        Build a config from environment variables.

        Every field can be set as ``{prefix}{FIELD_NAME}``, e.g.
        ``RELAY_CLIENT_RELAY_HUB_ADDRESS`` or ``RELAY_CLIENT_PREFERRED_RELAYS``
        (comma separated). Keyword overrides win over the environment.

        Raises:
            ValueError: If no relay hub address is configured
        """
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"{prefix}{name.upper()}")
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        if not values.get("relay_hub_address"):
            raise ValueError(
                f"Relay hub address is required; set {prefix}RELAY_HUB_ADDRESS"
            )
        return cls.model_validate(values)

    @classmethod
    def for_network(cls, network: str, **overrides: Any) -> "RelayClientConfig":
        """
        Build a config for a registered network.

        Args:
            network: Network name, e.g. ``"rsk-testnet"``
            **overrides: Field values to set explicitly

        Raises:
            ValueError: If the network is unknown or has no hub address
        """
        config = get_network(network)
        if config is None:
            raise ValueError(f"Unknown network: {network}")
        values: dict[str, Any] = {
            "chain_id": config.chain_id,
            "max_view_gas_limit": config.block_gas_limit,
        }
        if config.relay_hub_address:
            values["relay_hub_address"] = config.relay_hub_address
        values.update(overrides)
        if not values.get("relay_hub_address"):
            raise ValueError(
                f"Network {network} has no RelayHub deployment; pass relay_hub_address"
            )
        return cls.model_validate(values)


# =============================================================================
# Settlement engine configuration
# =============================================================================


@dataclass(frozen=True)
class RelayHubConfig:
    """Constants of a RelayHub deployment."""

    # Stake a relay manager must keep locked to be usable
    minimum_stake: int = ETHER
    # Seconds between unlocking and withdrawing a stake
    minimum_unstake_delay: int = 1000
    maximum_relay_workers: int = 10
    # Gas kept aside so the hub can finish settlement after the inner call
    gas_reserve: int = 100_000
    # Fixed cost of relayCall outside the paymaster and target calls
    gas_overhead: int = 150_000
    # Gas spent after the charge is computed, billed up front
    post_overhead: int = 10_000
    maximum_deposit: int = 2 * ETHER
