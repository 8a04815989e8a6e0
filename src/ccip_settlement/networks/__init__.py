"""CCIP-enabled network registry."""

from ccip_settlement.networks.base import (
    NetworkConfig,
    get_network,
    get_network_by_chain_id,
    get_network_by_selector,
    list_networks,
    register_network,
)
from ccip_settlement.networks.evm import AVALANCHE_FUJI, SEPOLIA, get_token_decimals

__all__ = [
    "NetworkConfig",
    "register_network",
    "get_network",
    "get_network_by_chain_id",
    "get_network_by_selector",
    "list_networks",
    "get_token_decimals",
    "SEPOLIA",
    "AVALANCHE_FUJI",
]
