"""
Wallet Session Authorizer - gate autonomous agent spending

An agent holds one time-boxed bearer credential ("session key") and a rolling
daily budget. Spending is two-phase:

  1. check_budget()  pure, never mutates; evaluated against a hypothetical
                     post-reset state when the reset boundary has passed
  2. commit_spend()  after the transfer succeeds; re-verifies the budget under
                     the store lock and fails closed if it no longer holds

The reset is lazy: nothing runs at midnight, the first spend at or after
budget_reset_at starts the new day.
"""

import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional, Union

from .constants import PAYMENT_RULES
from .errors import (
    BudgetExceeded, InsufficientBalance, NoActiveCredential,
    SessionFailure, SessionInvalid, ValidationError,
)
from .treasury import AgentTreasury, TreasuryStore
from .types import BudgetCheck, GeneratedSession, SessionCheck

logger = logging.getLogger("vibe.session")

Number = Union[int, float, str, Decimal]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _decimal(value: Number, label: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except Exception as e:
        raise ValidationError(f"Invalid {label}: {value!r}") from e
    if not result.is_finite() or result <= 0:
        raise ValidationError(f"{label} must be positive: {value!r}")
    return result


# ============================================================
# PURE CHECKS
# ============================================================

def validate_session(stored: Optional[str], presented: Optional[str],
                     expires_at: Optional[datetime],
                     now: Optional[datetime] = None) -> SessionCheck:
    """
    Valid only when both credentials are present, now < expires_at, and the
    two are byte-equal (compared in constant time).
    """
    if not stored or not presented:
        return SessionCheck(valid=False, reason=SessionFailure.MISSING_CREDENTIAL.value)

    now = now or utc_now()
    if expires_at is None or now >= expires_at:
        return SessionCheck(valid=False, reason=SessionFailure.EXPIRED.value)

    if not hmac.compare_digest(stored.encode("utf-8"), presented.encode("utf-8")):
        return SessionCheck(valid=False, reason=SessionFailure.MISMATCH.value)

    return SessionCheck(valid=True)


def next_reset_boundary(now: datetime) -> datetime:
    """Next UTC midnight strictly after `now`."""
    today = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return today + timedelta(days=1)


def check_budget(state: AgentTreasury, requested: Number,
                 now: Optional[datetime] = None) -> BudgetCheck:
    """
    Past the reset boundary the day starts over (spent = 0), but nothing is
    persisted here: available = limit - requested. Otherwise
    available = limit - spent - requested. Allowed iff available >= 0.
    """
    amount = Decimal(str(requested))
    now = now or utc_now()

    if state.budget_reset_at is None or now >= state.budget_reset_at:
        available = state.daily_budget - amount
        return BudgetCheck(allowed=amount <= state.daily_budget,
                           available=available, needs_reset=True)

    available = state.daily_budget - state.daily_spent - amount
    return BudgetCheck(allowed=available >= 0, available=available, needs_reset=False)


def generate_credential() -> str:
    return PAYMENT_RULES.SESSION_KEY_PREFIX + secrets.token_hex(PAYMENT_RULES.SESSION_KEY_BYTES)


# ============================================================
# AUTHORIZER
# ============================================================

class SessionAuthorizer:
    """
    Session credential lifecycle and budget enforcement over a TreasuryStore.

    `clock` returns an aware UTC datetime; tests pass a fake one.
    """

    def __init__(self, store: TreasuryStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    # ── credential lifecycle ──

    def generate(self, handle: str,
                 expires_in_hours: Number = PAYMENT_RULES.SESSION_DEFAULT_HOURS,
                 daily_budget: Optional[Number] = None) -> GeneratedSession:
        """
        Issue a fresh credential, unconditionally replacing any previous one.
        Optionally sets a new daily budget limit.
        """
        hours = _decimal(expires_in_hours, "expires_in_hours")
        budget = _decimal(daily_budget, "daily_budget") if daily_budget is not None else None
        credential = generate_credential()
        expires_at = self.now() + timedelta(hours=float(hours))

        def _apply(t: AgentTreasury):
            t.session_key = credential
            t.session_key_expires_at = expires_at
            if budget is not None:
                t.daily_budget = budget

        updated = self.store.update(handle, _apply)
        logger.info(f"Session key generated for {updated.handle}, expires in {hours}h")
        return GeneratedSession(
            credential=credential,
            expires_at=expires_at.isoformat(),
            daily_budget=updated.daily_budget,
        )

    def revoke(self, handle: str) -> None:
        """Clear the credential. Safe to call when none is set."""
        def _apply(t: AgentTreasury):
            t.session_key = None
            t.session_key_expires_at = None

        updated = self.store.update(handle, _apply)
        logger.info(f"Session key revoked for {updated.handle}")

    def refresh(self, handle: str,
                expires_in_hours: Number = PAYMENT_RULES.SESSION_DEFAULT_HOURS) -> str:
        """Extend expiry of the active credential without rotating it."""
        hours = _decimal(expires_in_hours, "expires_in_hours")
        expires_at = self.now() + timedelta(hours=float(hours))

        def _apply(t: AgentTreasury):
            if not t.session_key:
                raise NoActiveCredential(t.handle)
            t.session_key_expires_at = expires_at

        updated = self.store.update(handle, _apply)
        logger.info(f"Session key refreshed for {updated.handle}, new expiration: {expires_at.isoformat()}")
        return expires_at.isoformat()

    # ── authorization ──

    def authorize(self, handle: str, presented: Optional[str]) -> AgentTreasury:
        treasury = self.store.get(handle)
        check = validate_session(
            treasury.session_key, presented, treasury.session_key_expires_at, self.now()
        )
        if not check.valid:
            logger.info(f"Session rejected for {treasury.handle}: {check.reason}")
            raise SessionInvalid(SessionFailure(check.reason))
        return treasury

    def check_budget(self, handle: str, amount: Number) -> BudgetCheck:
        return check_budget(self.store.get(handle), amount, self.now())

    def require_budget(self, handle: str, amount: Number) -> BudgetCheck:
        """check_budget(), raising BudgetExceeded with full detail when denied."""
        treasury = self.store.get(handle)
        check = check_budget(treasury, amount, self.now())
        if not check.allowed:
            raise BudgetExceeded(
                daily_budget=treasury.daily_budget,
                daily_spent=treasury.daily_spent,
                requested=Decimal(str(amount)),
                available=check.available,
            )
        return check

    def commit_spend(self, handle: str, amount: Number) -> AgentTreasury:
        """
        Record a spend that already happened downstream. Re-evaluates the
        budget and balance against the latest stored state and refuses to
        write if either would be violated, so spent <= daily_budget holds
        after every successful commit.
        """
        value = _decimal(amount, "amount")
        now = self.now()

        def _apply(t: AgentTreasury):
            check = check_budget(t, value, now)
            if not check.allowed:
                raise BudgetExceeded(
                    daily_budget=t.daily_budget, daily_spent=t.daily_spent,
                    requested=value, available=check.available,
                )
            if t.current_balance < value:
                raise InsufficientBalance(balance=t.current_balance, requested=value)

            if check.needs_reset:
                t.daily_spent = value
                t.budget_reset_at = next_reset_boundary(now)
            else:
                t.daily_spent += value
            t.current_balance -= value
            t.total_spent += value

        updated = self.store.update(handle, _apply)
        logger.info(
            f"Spend committed for {updated.handle}: ${value} | "
            f"daily remaining ${updated.remaining_budget} | balance ${updated.current_balance}"
        )
        return updated

    def remaining_budget(self, handle: str) -> Decimal:
        treasury = self.store.get(handle)
        if treasury.budget_reset_at is None or self.now() >= treasury.budget_reset_at:
            return treasury.daily_budget
        return treasury.remaining_budget
