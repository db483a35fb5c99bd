"""
vibe payments - main entry point

Reads configuration, builds the stores and the contract dispatcher,
wires them into the HTTP app, starts the server.

Usage:
    python main.py              # Start the payments API
    DEV=1 python main.py        # Auto-reload
"""

import os
import re
import logging

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact private keys (64 hex chars) and session keys (sk_...) from log output."""
    _PATTERNS = (
        re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])'),
        re.compile(r'\bsk_[0-9a-fA-F]{8,}'),
    )

    def _mask(self, text: str) -> str:
        for pattern in self._PATTERNS:
            text = pattern.sub('[REDACTED]', text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            masked = self._mask(formatted)
            if masked != formatted:
                record.msg = masked
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("vibe.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from core.config import Settings
from core.chain import ContractDispatcher
from core.ledger import Ledger
from core.notifier import Notifier
from core.session import SessionAuthorizer
from core.treasury import TreasuryStore
from core.wallet_store import WalletKeyStore
from api.server import create_app


# ============================================================
# APP FACTORY
# ============================================================

def create_vibe_app():
    """Build everything from the environment. Raises ConfigurationError early."""
    settings = Settings.from_env()
    settings.data_dir.mkdir(parents=True, exist_ok=True)

    settings.require_wallet_secret()
    dispatcher = ContractDispatcher(settings)
    treasuries = TreasuryStore(settings.data_dir)
    authorizer = SessionAuthorizer(treasuries)
    wallets = WalletKeyStore(settings.data_dir, settings.wallet_secret)
    ledger = Ledger(settings.data_dir)
    notifier = Notifier(settings.notify_url)

    if not notifier.enabled:
        logger.info("DM notifications disabled (no VIBE_NOTIFY_URL / VERCEL_URL)")

    logger.info(
        f"vibe payments ready: network={settings.network.network_id} | "
        f"data={settings.data_dir} | reconcile every {settings.reconcile_interval}s"
    )
    return create_app(
        dispatcher=dispatcher,
        authorizer=authorizer,
        wallets=wallets,
        ledger=ledger,
        notifier=notifier,
        reconcile_interval=settings.reconcile_interval,
    )


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:create_vibe_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
