"""
EVM network configurations for the escrow CCIP lane.

The escrow flow runs one lane: funds are locked by the Sender contract on
Ethereum Sepolia and delivered to the Escrow contract on Avalanche Fuji.

Important considerations:
- Chain selectors are CCIP identifiers, not EVM chain IDs
- The OffRamp address is lane-specific (Sepolia -> Fuji) and lives on the
  destination entry
- Both chains use Circle test USDC with 6 decimals
"""

from ccip_settlement.networks.base import NetworkConfig, get_network, register_network

# =============================================================================
# EVM Networks Configuration
# =============================================================================

# Ethereum Sepolia (source chain)
SEPOLIA = NetworkConfig(
    name="sepolia",
    display_name="Ethereum Sepolia",
    chain_id=11155111,
    chain_selector=16015286601757825753,
    rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
    usdc_address="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
    usdc_decimals=6,
    link_address="0x779877A7B0D9E8603169DdbD7836e478b4624789",
    router_address="0x0BF3dE8c5D3e8A2B34D2BEeB17ABfCeBaf363A59",
    explorer_url="https://sepolia.etherscan.io",
)

# Avalanche Fuji (destination chain)
AVALANCHE_FUJI = NetworkConfig(
    name="avalanche-fuji",
    display_name="Avalanche Fuji",
    chain_id=43113,
    chain_selector=14767482510784806043,
    rpc_url="https://api.avax-test.network/ext/bc/C/rpc",
    usdc_address="0x5425890298aed601595a70AB815c96711a31Bc65",
    usdc_decimals=6,
    link_address="0x0b9d5D9136855f6FEc3c0993feE6E9CE8a297846",
    router_address="0xF694E193200268f9a4868e4Aa017A0118C9a8177",
    offramp_address="0x0477cA0a35eE05D3f9f424d88bC0977ceCf339D4",
    explorer_url="https://testnet.snowtrace.io",
)

# =============================================================================
# Register all EVM networks
# =============================================================================

_EVM_NETWORKS = [
    SEPOLIA,
    AVALANCHE_FUJI,
]

for network in _EVM_NETWORKS:
    register_network(network)


def get_token_decimals(network_name: str) -> int:
    """
    Get USDC token decimals for a network.

    Args:
        network_name: Network identifier

    Returns:
        Number of decimals (6 for every registered lane chain)
    """
    return get_network(network_name).usdc_decimals
