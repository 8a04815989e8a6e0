"""
Base network configuration and registry.

A network entry describes one EVM chain as seen by the CCIP lane this package
drives: its CCIP chain selector, the router and token addresses the escrow
contracts were deployed against, and (for destination chains) the OffRamp
whose ``getExecutionState`` reports delivery outcomes.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class NetworkConfig:
    """Configuration for a single CCIP-enabled chain."""

    name: str
    display_name: str
    chain_id: int
    chain_selector: int
    rpc_url: str
    usdc_address: str
    usdc_decimals: int = 6
    link_address: Optional[str] = None
    router_address: Optional[str] = None
    # OffRamp for messages arriving on this chain from the paired source chain
    offramp_address: Optional[str] = None
    explorer_url: Optional[str] = None
    is_testnet: bool = True
    enabled: bool = True
    extra_config: dict[str, Any] = field(default_factory=dict)

    def tx_url(self, tx_hash: str) -> Optional[str]:
        """Block explorer link for a transaction, if an explorer is known."""
        if not self.explorer_url:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


_NETWORKS: dict[str, NetworkConfig] = {}


def register_network(config: NetworkConfig) -> None:
    """
    Register a network configuration.

    Registering a name twice replaces the earlier entry, which lets
    applications override RPC endpoints or contract addresses at startup.
    """
    _NETWORKS[config.name.lower()] = config


def get_network(name: str) -> NetworkConfig:
    """
    Look up a network by name.

    Raises:
        ValueError: If the network is not registered
    """
    try:
        return _NETWORKS[name.lower()]
    except KeyError:
        supported = ", ".join(sorted(_NETWORKS))
        raise ValueError(f"Unknown network '{name}'. Supported networks: {supported}") from None


def get_network_by_chain_id(chain_id: int) -> NetworkConfig:
    """
    Look up a network by EVM chain ID.

    Raises:
        ValueError: If no registered network has the chain ID
    """
    for config in _NETWORKS.values():
        if config.chain_id == chain_id:
            return config
    supported = ", ".join(f"{c.chain_id} ({c.display_name})" for c in _NETWORKS.values())
    raise ValueError(f"No network registered for chain {chain_id}. Supported chains: {supported}")


def get_network_by_selector(chain_selector: int) -> NetworkConfig:
    """Look up a network by its CCIP chain selector."""
    for config in _NETWORKS.values():
        if config.chain_selector == chain_selector:
            return config
    raise ValueError(f"No network registered for CCIP chain selector {chain_selector}")


def list_networks(enabled_only: bool = True) -> list[NetworkConfig]:
    """Return registered networks, sorted by chain ID."""
    networks = [n for n in _NETWORKS.values() if n.enabled or not enabled_only]
    return sorted(networks, key=lambda n: n.chain_id)
