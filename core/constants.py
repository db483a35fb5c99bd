"""
Payment Constants - fixed economics of the /vibe payment rails

Everything here mirrors what the deployed contracts enforce, or bounds the
handlers apply before a request ever reaches the chain. Runtime configuration
(RPC URLs, contract addresses, timeouts) lives in core/config.py instead.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Final


# ============================================================
# TOKEN / FEE ECONOMICS
# ============================================================

@dataclass(frozen=True)
class PaymentRules:
    """Frozen dataclass, shared by the dispatcher and the HTTP layer."""

    # --- TOKEN ---
    TOKEN_DECIMALS: Final[int] = 6                       # USDC base units
    TOKEN_SYMBOL: Final[str] = "USDC"

    # --- FEES (display only; the contract is the source of truth) ---
    PLATFORM_FEE_RATE: Final[float] = 0.025              # 2.5% on tips and escrow release

    # --- TIP BOUNDS ---
    TIP_MIN_USD: Final[Decimal] = Decimal("0.01")
    TIP_MAX_USD: Final[Decimal] = Decimal("100")

    # --- ESCROW BOUNDS ---
    ESCROW_MIN_USD: Final[Decimal] = Decimal("5")
    ESCROW_MAX_USD: Final[Decimal] = Decimal("10000")
    ESCROW_DEFAULT_TIMEOUT_HOURS: Final[int] = 48
    ESCROW_SERVICE_TAG: Final[str] = "expert_help"
    TIP_SERVICE_TAG: Final[str] = "tip"

    # --- AGENT SESSIONS ---
    SESSION_KEY_PREFIX: Final[str] = "sk_"
    SESSION_KEY_BYTES: Final[int] = 32
    SESSION_DEFAULT_HOURS: Final[int] = 24
    DEFAULT_DAILY_BUDGET_USD: Final[Decimal] = Decimal("10")

    # --- HISTORY ---
    HISTORY_DEFAULT_LIMIT: Final[int] = 50
    HISTORY_MAX_LIMIT: Final[int] = 100
    TREASURY_RECENT_LIMIT: Final[int] = 20               # rows per list in the treasury view


PAYMENT_RULES = PaymentRules()


SPENDING_TYPES: Final[tuple[str, ...]] = ("tip", "service_payment", "data_purchase")
EARNING_TYPES: Final[tuple[str, ...]] = ("tip", "commission", "service_fee", "liquidity_reward")
SESSION_ACTIONS: Final[tuple[str, ...]] = ("generate", "revoke", "refresh")


# ============================================================
# NETWORK REGISTRY
# ============================================================

@dataclass(frozen=True)
class NetworkConfig:
    """Immutable per-network defaults."""
    network_id: str          # "base" or "base-sepolia"
    chain_id: int
    rpc: str
    explorer: str
    native_symbol: str = "ETH"


NETWORKS: Final[dict[str, NetworkConfig]] = {
    "base": NetworkConfig(
        network_id="base",
        chain_id=8453,
        rpc="https://mainnet.base.org",
        explorer="https://basescan.org",
    ),
    "base-sepolia": NetworkConfig(
        network_id="base-sepolia",
        chain_id=84532,
        rpc="https://sepolia.base.org",
        explorer="https://sepolia.basescan.org",
    ),
}

DEFAULT_NETWORK: Final[str] = "base-sepolia"
