import re
from decimal import Decimal
from enum import Enum
from typing import Dict


class Chain(str, Enum):
    ETHEREUM = "ethereum"
    POLYGON = "polygon"
    ARBITRUM = "arbitrum"
    BASE = "base"
    SOLANA = "solana"
    # testnets
    ETHEREUM_SEPOLIA = "ethereum-sepolia"
    POLYGON_AMOY = "polygon-amoy"
    BASE_SEPOLIA = "base-sepolia"


# USDC contract (or mint, for Solana) per network
USDC_ADDRESSES: Dict[Chain, str] = {
    Chain.ETHEREUM: "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    Chain.POLYGON: "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
    Chain.ARBITRUM: "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
    Chain.BASE: "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    Chain.SOLANA: "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    Chain.ETHEREUM_SEPOLIA: "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
    Chain.POLYGON_AMOY: "0x41e94eb019c0762f9bfcf9fb1e58725bfb0e7582",
    Chain.BASE_SEPOLIA: "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}

USDC_DECIMALS: Dict[Chain, int] = {chain: 6 for chain in Chain}

NATIVE_DECIMALS: Dict[Chain, int] = {chain: (9 if chain is Chain.SOLANA else 18) for chain in Chain}

# Fixed native-token reserve a wallet must hold to cover gas (ETH/MATIC/SOL)
GAS_RESERVES: Dict[Chain, Decimal] = {
    Chain.ETHEREUM: Decimal("0.002"),
    Chain.POLYGON: Decimal("0.05"),
    Chain.ARBITRUM: Decimal("0.001"),
    Chain.BASE: Decimal("0.001"),
    Chain.SOLANA: Decimal("0.001"),
    Chain.ETHEREUM_SEPOLIA: Decimal("0"),
    Chain.POLYGON_AMOY: Decimal("0.05"),
    Chain.BASE_SEPOLIA: Decimal("0.001"),
}

EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
SOLANA_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def is_evm(chain: Chain) -> bool:
    return chain is not Chain.SOLANA


def is_valid_address(address: str, chain: Chain) -> bool:
    """Format check only; EIP-55 checksums are not enforced."""
    pattern = SOLANA_ADDRESS_RE if chain is Chain.SOLANA else EVM_ADDRESS_RE
    return bool(pattern.match(address or ""))
