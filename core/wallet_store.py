"""
Wallet Key Store - encrypted storage for per-handle wallet key material.

Key material is encrypted at rest using Fernet symmetric encryption.
The encryption key is derived from VIBE_WALLET_SECRET via HMAC-SHA256.
The store only hands material out for a single dispatcher call; it never
logs or returns it in any listing.
"""

import base64
import hashlib
import hmac
import json
import logging
import threading
import time
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from eth_account import Account

from .errors import ValidationError, WalletNotFound
from .storage import atomic_write_json, normalize_handle, read_json

logger = logging.getLogger("vibe.wallet_store")

_DEV_SECRET = "vibe-wallet-secret-change-me"


class WalletKeyStore:
    """handle -> {address, encrypted key material}"""

    def __init__(self, data_dir: Path, secret: str = ""):
        self.path = Path(data_dir) / "wallets.json"
        if not secret:
            logger.warning("VIBE_WALLET_SECRET not set, using development secret")
        derived = hmac.new(
            (secret or _DEV_SECRET).encode(),
            b"wallet-key-encryption",
            hashlib.sha256,
        ).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(derived))
        self._lock = threading.Lock()
        self._wallets: dict[str, dict] = read_json(self.path, {})
        if self._wallets:
            logger.info(f"Loaded {len(self._wallets)} wallets from encrypted storage")

    def _save(self):
        atomic_write_json(self.path, self._wallets)

    def put(self, handle: str, address: str, key_material: str) -> None:
        key = normalize_handle(handle)
        if not key:
            raise ValidationError("handle is required")
        encrypted = self._fernet.encrypt(key_material.encode()).decode()
        with self._lock:
            self._wallets[key] = {
                "address": address,
                "key": encrypted,
                "created_at": time.time(),
            }
            self._save()
        logger.info(f"Wallet stored for {key}: {address[:10]}...")

    def create_wallet(self, handle: str) -> str:
        """Generate a fresh key for `handle`, store it, return the address."""
        if self.has_wallet(handle):
            raise ValidationError(f"Wallet already exists for {normalize_handle(handle)}")
        account = Account.create()
        material = json.dumps({"privateKey": "0x" + bytes(account.key).hex()})
        self.put(handle, account.address, material)
        return account.address

    def has_wallet(self, handle: str) -> bool:
        with self._lock:
            return normalize_handle(handle) in self._wallets

    def get_address(self, handle: str) -> Optional[str]:
        with self._lock:
            entry = self._wallets.get(normalize_handle(handle))
        return entry["address"] if entry else None

    def require_address(self, handle: str) -> str:
        address = self.get_address(handle)
        if not address:
            raise WalletNotFound(f"No wallet for @{normalize_handle(handle)}. Create a wallet first.")
        return address

    def get_key_material(self, handle: str) -> str:
        """Decrypted wallet export for one dispatcher call."""
        key = normalize_handle(handle)
        with self._lock:
            entry = self._wallets.get(key)
        if not entry:
            raise WalletNotFound(f"Wallet data not found for @{key}")
        try:
            return self._fernet.decrypt(entry["key"].encode()).decode()
        except InvalidToken as e:
            logger.error(f"Failed to decrypt wallet data for {key}")
            raise WalletNotFound(f"Wallet data unreadable for @{key}") from e

    def get_status(self) -> dict:
        with self._lock:
            count = len(self._wallets)
        return {"wallets": count, "storage_file": str(self.path)}
