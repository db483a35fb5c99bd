"""
Ledger - off-chain record of economic events

Every tip, escrow and agent spend writes one or more WalletEvent rows. The
chain is the source of truth: an escrow_created row stays `pending` until a
status poll (or the reconciler) sees the tx mined.
"""

import logging
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from .constants import PAYMENT_RULES
from .errors import ValidationError
from .storage import atomic_write_json, normalize_handle, read_json
from .types import TxState

logger = logging.getLogger("vibe.ledger")


EVENT_TYPES = (
    "tip_sent",
    "tip_received",
    "escrow_created",
    "escrow_completed",
    "escrow_disputed",
    "agent_spend",
    "agent_earn",
)


@dataclass
class WalletEvent:
    id: int
    handle: str
    event_type: str
    amount: str                       # Decimal as string, exact
    tx_hash: Optional[str] = None
    tx_status: str = TxState.PENDING.value
    wallet_address: Optional[str] = None
    confirmed_at: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Ledger:
    """Append-mostly JSON-backed event log."""

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / "wallet_events.json"
        self._lock = threading.Lock()
        self._events: list[WalletEvent] = [
            WalletEvent(**row) for row in read_json(self.path, [])
        ]
        self._next_id = max((e.id for e in self._events), default=0) + 1
        if self._events:
            logger.info(f"Loaded {len(self._events)} ledger events")

    def _save(self):
        atomic_write_json(self.path, [e.to_dict() for e in self._events])

    def record(
        self,
        handle: str,
        event_type: str,
        amount: Any,
        tx_hash: Optional[str] = None,
        tx_status: TxState = TxState.PENDING,
        wallet_address: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> WalletEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        now = _now_iso()
        with self._lock:
            event = WalletEvent(
                id=self._next_id,
                handle=normalize_handle(handle),
                event_type=event_type,
                amount=str(Decimal(str(amount))),
                tx_hash=tx_hash,
                tx_status=TxState(tx_status).value,
                wallet_address=wallet_address,
                confirmed_at=now if tx_status == TxState.CONFIRMED else None,
                metadata=dict(metadata or {}),
                created_at=now,
            )
            self._events.append(event)
            self._next_id += 1
            self._save()
        logger.debug(f"Ledger +{event_type} {event.handle} ${event.amount} [{event.tx_status}]")
        return event

    def find_escrow(self, escrow_id: str, handle: Optional[str] = None) -> Optional[WalletEvent]:
        """The escrow_created row for `escrow_id`, optionally owned by `handle`."""
        key = escrow_id.lower()
        owner = normalize_handle(handle) if handle else None
        with self._lock:
            for event in self._events:
                if event.event_type != "escrow_created":
                    continue
                if str(event.metadata.get("escrowId", "")).lower() != key:
                    continue
                if owner and event.handle != owner:
                    continue
                return event
        return None

    def mark_escrow(self, escrow_id: str, tx_status: Optional[TxState] = None,
                    **metadata: Any) -> Optional[WalletEvent]:
        """Update the escrow_created row's status and merge `metadata` into it."""
        key = escrow_id.lower()
        with self._lock:
            for event in self._events:
                if event.event_type == "escrow_created" and \
                        str(event.metadata.get("escrowId", "")).lower() == key:
                    if tx_status is not None:
                        self._apply_status(event, tx_status)
                    event.metadata.update(metadata)
                    self._save()
                    return event
        return None

    def set_tx_status(self, tx_hash: str, tx_status: TxState) -> int:
        """Set status on every row for `tx_hash`. Returns rows changed."""
        changed = 0
        with self._lock:
            for event in self._events:
                if event.tx_hash and event.tx_hash.lower() == tx_hash.lower() \
                        and event.tx_status != TxState(tx_status).value:
                    self._apply_status(event, tx_status)
                    changed += 1
            if changed:
                self._save()
        return changed

    @staticmethod
    def _apply_status(event: WalletEvent, tx_status: TxState):
        event.tx_status = TxState(tx_status).value
        if tx_status == TxState.CONFIRMED and not event.confirmed_at:
            event.confirmed_at = _now_iso()

    def pending(self) -> list[WalletEvent]:
        with self._lock:
            return [e for e in self._events
                    if e.tx_status == TxState.PENDING.value and e.tx_hash]

    def events_of(self, handle: str, event_type: str) -> list[WalletEvent]:
        """All of `handle`'s events of one type, newest first."""
        owner = normalize_handle(handle)
        with self._lock:
            rows = [e for e in self._events
                    if e.handle == owner and e.event_type == event_type]
        rows.sort(key=lambda e: e.id, reverse=True)
        return rows

    def history(self, handle: str, limit: int = PAYMENT_RULES.HISTORY_DEFAULT_LIMIT,
                cursor: Optional[str] = None) -> tuple[list[WalletEvent], Optional[str]]:
        """
        Newest-first page of `handle`'s events older than `cursor`.
        The cursor is the id of the last event on the previous page, as a string.
        Returns (events, next_cursor); next_cursor is None on the last page.
        """
        owner = normalize_handle(handle)
        limit = max(1, min(int(limit), PAYMENT_RULES.HISTORY_MAX_LIMIT))
        try:
            before = int(cursor) if cursor else None
        except ValueError as e:
            raise ValidationError(f"Invalid cursor: {cursor!r}") from e
        with self._lock:
            rows = [e for e in self._events if e.handle == owner
                    and (before is None or e.id < before)]
        rows.sort(key=lambda e: e.id, reverse=True)
        page = rows[:limit]
        next_cursor = str(page[-1].id) if len(rows) > limit else None
        return page, next_cursor
