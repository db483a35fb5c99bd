"""
Agent Treasury - per-agent spending account

Holds what the session authorizer needs for an autonomous agent: the wallet
address, the single active session credential, and the rolling daily budget.
Persisted as one JSON file; every mutation goes through update() so a failed
mutation never leaves a half-written record behind.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Optional

from .errors import TreasuryNotFound, ValidationError
from .storage import atomic_write_json, normalize_handle, read_json

logger = logging.getLogger("vibe.treasury")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class AgentTreasury:
    handle: str
    wallet_address: str
    daily_budget: Decimal
    daily_spent: Decimal = Decimal(0)
    budget_reset_at: Optional[datetime] = None
    session_key: Optional[str] = None
    session_key_expires_at: Optional[datetime] = None
    current_balance: Decimal = Decimal(0)
    total_spent: Decimal = Decimal(0)
    total_earned: Decimal = Decimal(0)
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def remaining_budget(self) -> Decimal:
        return self.daily_budget - self.daily_spent

    def to_dict(self) -> dict:
        return {
            "handle": self.handle,
            "wallet_address": self.wallet_address,
            "daily_budget": str(self.daily_budget),
            "daily_spent": str(self.daily_spent),
            "budget_reset_at": _iso(self.budget_reset_at),
            "session_key": self.session_key,
            "session_key_expires_at": _iso(self.session_key_expires_at),
            "current_balance": str(self.current_balance),
            "total_spent": str(self.total_spent),
            "total_earned": str(self.total_earned),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgentTreasury":
        return cls(
            handle=data["handle"],
            wallet_address=data.get("wallet_address", ""),
            daily_budget=Decimal(data.get("daily_budget", "0")),
            daily_spent=Decimal(data.get("daily_spent", "0")),
            budget_reset_at=_dt(data.get("budget_reset_at")),
            session_key=data.get("session_key"),
            session_key_expires_at=_dt(data.get("session_key_expires_at")),
            current_balance=Decimal(data.get("current_balance", "0")),
            total_spent=Decimal(data.get("total_spent", "0")),
            total_earned=Decimal(data.get("total_earned", "0")),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
        )

    def public_view(self) -> dict:
        """Everything except the session credential."""
        view = self.to_dict()
        view.pop("session_key")
        view["has_session_key"] = bool(self.session_key)
        return view


class TreasuryStore:
    """Thread-safe JSON-backed store of AgentTreasury records."""

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / "treasuries.json"
        self._lock = threading.Lock()
        self._treasuries: dict[str, AgentTreasury] = {}

        # Per-agent async locks serializing check -> transfer -> commit.
        self._spend_locks: dict[str, asyncio.Lock] = {}
        self._spend_locks_guard = threading.Lock()
        self._load()

    def _load(self):
        raw = read_json(self.path, {})
        for handle, data in raw.items():
            self._treasuries[handle] = AgentTreasury.from_dict(data)
        if self._treasuries:
            logger.info(f"Loaded {len(self._treasuries)} agent treasuries")

    def _persist(self, treasuries: dict[str, AgentTreasury]):
        atomic_write_json(self.path, {h: t.to_dict() for h, t in treasuries.items()})

    def create(self, handle: str, wallet_address: str, daily_budget: Decimal,
               reset_at: Optional[datetime] = None,
               initial_balance: Decimal = Decimal(0)) -> AgentTreasury:
        key = normalize_handle(handle)
        if not key:
            raise ValidationError("agent handle is required")
        now = time.time()
        treasury = AgentTreasury(
            handle=key,
            wallet_address=wallet_address,
            daily_budget=Decimal(daily_budget),
            budget_reset_at=reset_at,
            current_balance=Decimal(initial_balance),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if key in self._treasuries:
                raise ValidationError(f"Agent treasury already exists: {key}")
            staged = {**self._treasuries, key: treasury}
            self._persist(staged)
            self._treasuries = staged
        logger.info(f"Treasury created for {key} (daily budget ${daily_budget})")
        return replace(treasury)

    def exists(self, handle: str) -> bool:
        with self._lock:
            return normalize_handle(handle) in self._treasuries

    def get(self, handle: str) -> AgentTreasury:
        """Return a copy; mutate through update()."""
        key = normalize_handle(handle)
        with self._lock:
            treasury = self._treasuries.get(key)
            if treasury is None:
                raise TreasuryNotFound(f"Agent treasury not found: {key}")
            return replace(treasury)

    def update(self, handle: str, mutate: Callable[[AgentTreasury], None]) -> AgentTreasury:
        """
        Apply `mutate` to a copy and persist it atomically. If `mutate` raises,
        nothing is written and the exception propagates.
        """
        key = normalize_handle(handle)
        with self._lock:
            current = self._treasuries.get(key)
            if current is None:
                raise TreasuryNotFound(f"Agent treasury not found: {key}")
            draft = replace(current)
            mutate(draft)
            draft.updated_at = time.time()
            staged = {**self._treasuries, key: draft}
            self._persist(staged)
            self._treasuries = staged
            return replace(draft)

    def credit(self, handle: str, amount: Decimal) -> AgentTreasury:
        """Add an earning to current_balance and total_earned."""
        value = Decimal(str(amount))
        if not value.is_finite() or value <= 0:
            raise ValidationError(f"Amount must be positive: {amount!r}")

        def _apply(t: AgentTreasury):
            t.current_balance += value
            t.total_earned += value

        updated = self.update(handle, _apply)
        logger.info(f"Treasury {updated.handle} credited ${value}, balance ${updated.current_balance}")
        return updated

    def list(self) -> list[AgentTreasury]:
        with self._lock:
            return [replace(t) for t in self._treasuries.values()]

    def lock_for(self, handle: str) -> asyncio.Lock:
        key = normalize_handle(handle)
        with self._spend_locks_guard:
            lock = self._spend_locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._spend_locks[key] = lock
            return lock
