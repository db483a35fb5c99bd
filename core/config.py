"""
Runtime configuration, read once from the environment at process start.

Environment variables:
  VIBE_NETWORK               base-sepolia (default) | base
  VIBE_RPC_URL               JSON-RPC endpoint (falls back to BASE_SEPOLIA_RPC_URL /
                             BASE_RPC_URL, then the network default)
  X402_CONTRACT_ADDRESS      Instant-payment (tip) contract
  ESCROW_CONTRACT_ADDRESS    Escrow contract
  USDC_ADDRESS               ERC-20 token contract
  VIBE_CONFIRMATION_TIMEOUT  Seconds to wait for a primary tx to be mined (default 120)
  VIBE_APPROVAL_TIMEOUT      Seconds to wait for an approval tx (default 60)
  VIBE_DATA_DIR              Directory for JSON stores (default: data)
  VIBE_WALLET_SECRET         Secret used to encrypt wallet key material at rest
  VIBE_NOTIFY_URL            Messaging endpoint for best-effort notifications
  VIBE_RECONCILE_INTERVAL    Seconds between pending-tx reconciliation runs (0 = off)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from eth_utils import is_address, to_checksum_address

from .constants import NETWORKS, DEFAULT_NETWORK, NetworkConfig
from .errors import ConfigurationError


CONTRACT_ENV_VARS = {
    "payments_address": "X402_CONTRACT_ADDRESS",
    "escrow_address": "ESCROW_CONTRACT_ADDRESS",
    "token_address": "USDC_ADDRESS",
}


@dataclass(frozen=True)
class Settings:
    network: NetworkConfig
    rpc_url: str
    payments_address: str = ""
    escrow_address: str = ""
    token_address: str = ""
    confirmation_timeout: float = 120.0
    approval_timeout: float = 60.0
    data_dir: Path = Path("data")
    wallet_secret: str = ""
    notify_url: str = ""
    reconcile_interval: float = 30.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        network_id = env.get("VIBE_NETWORK", DEFAULT_NETWORK).strip().lower()
        network = NETWORKS.get(network_id)
        if network is None:
            raise ConfigurationError(
                f"Unknown network '{network_id}'. Supported: {sorted(NETWORKS)}"
            )

        fallback_rpc_var = "BASE_RPC_URL" if network_id == "base" else "BASE_SEPOLIA_RPC_URL"
        rpc_url = env.get("VIBE_RPC_URL") or env.get(fallback_rpc_var) or network.rpc

        addresses = {}
        for field_name, env_var in CONTRACT_ENV_VARS.items():
            raw = env.get(env_var, "").strip()
            if raw and not is_address(raw):
                raise ConfigurationError(f"{env_var} is not a valid address: {raw!r}")
            addresses[field_name] = to_checksum_address(raw) if raw else ""

        notify_url = env.get("VIBE_NOTIFY_URL", "")
        if not notify_url:
            vercel_url = env.get("VERCEL_URL") or env.get("NEXT_PUBLIC_VERCEL_URL")
            if vercel_url:
                notify_url = f"https://{vercel_url}/api/messages/send"

        try:
            return cls(
                network=network,
                rpc_url=rpc_url,
                confirmation_timeout=float(env.get("VIBE_CONFIRMATION_TIMEOUT", "120")),
                approval_timeout=float(env.get("VIBE_APPROVAL_TIMEOUT", "60")),
                data_dir=Path(env.get("VIBE_DATA_DIR", "data")),
                wallet_secret=env.get("VIBE_WALLET_SECRET", ""),
                notify_url=notify_url,
                reconcile_interval=float(env.get("VIBE_RECONCILE_INTERVAL", "30")),
                **addresses,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    def require_contracts(self) -> None:
        """Fail fast if any contract address is missing."""
        missing = [
            env_var for field_name, env_var in CONTRACT_ENV_VARS.items()
            if not getattr(self, field_name)
        ]
        if missing:
            raise ConfigurationError(
                "Contract addresses not configured. Set " + ", ".join(missing)
                + " in environment variables."
            )

    def require_wallet_secret(self) -> None:
        """Mainnet wallets must not be encrypted under the built-in dev secret."""
        if self.network.network_id == "base" and not self.wallet_secret:
            raise ConfigurationError(
                "VIBE_WALLET_SECRET must be set when VIBE_NETWORK=base"
            )
