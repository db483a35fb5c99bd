"""
Pending-state reconciliation: bring ledger rows in line with the chain.

Escrow creation returns before the tx is mined, so its ledger row starts as
`pending`. Each pass polls every pending tx hash; rows only move once the
chain gives a terminal answer. RPC errors leave rows pending for next pass.
"""

import asyncio
import logging

from .chain import ContractDispatcher
from .ledger import Ledger
from .types import TxState

logger = logging.getLogger("vibe.reconciler")


async def reconcile_pending(ledger: Ledger, dispatcher: ContractDispatcher) -> dict:
    counts = {"checked": 0, "confirmed": 0, "failed": 0, "pending": 0, "error": 0}

    tx_hashes = sorted({e.tx_hash for e in ledger.pending()})
    for tx_hash in tx_hashes:
        counts["checked"] += 1
        status = await dispatcher.get_transaction_status(tx_hash)
        counts[status.status.value] += 1
        if status.status in (TxState.CONFIRMED, TxState.FAILED):
            changed = ledger.set_tx_status(tx_hash, status.status)
            logger.info(f"Reconciled {tx_hash[:18]}... -> {status.status.value} ({changed} rows)")

    if counts["checked"]:
        logger.debug(f"Reconcile pass: {counts}")
    return counts


async def reconcile_loop(ledger: Ledger, dispatcher: ContractDispatcher, interval: float):
    """Run reconcile_pending every `interval` seconds until cancelled."""
    logger.info(f"Reconciler started (interval: {interval}s)")
    while True:
        try:
            await reconcile_pending(ledger, dispatcher)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Reconcile cycle error: {e}")
        await asyncio.sleep(interval)
