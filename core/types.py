"""
Shared result / event types passed between the dispatcher, the ledger
and the HTTP handlers.
"""

from dataclasses import dataclass, asdict
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class TxState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ERROR = "error"           # RPC unreachable; says nothing about the tx itself


class EscrowStatus(str, Enum):
    """On-chain escrow status, indexed by the contract's uint8 status code."""
    ACTIVE = "active"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    AUTO_COMPLETED = "auto_completed"


ESCROW_STATUS_CODES: tuple[EscrowStatus, ...] = (
    EscrowStatus.ACTIVE,
    EscrowStatus.COMPLETED,
    EscrowStatus.DISPUTED,
    EscrowStatus.AUTO_COMPLETED,
)


@dataclass(frozen=True)
class ContractCall:
    """A state-changing call on one of the bound contracts."""
    contract: str             # "token", "payments", "escrow"
    function: str
    args: tuple = ()


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class _Serializable:

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass
class PaymentEvent(_Serializable):
    """Authoritative PaymentMade values as emitted on-chain."""
    payer: str
    recipient: str
    amount: Decimal


@dataclass
class TipResult(_Serializable):
    tx_hash: str
    block_number: int
    fee: float                        # informational, 2.5% of the requested amount
    status: TxState = TxState.CONFIRMED
    request_id: str = ""
    approval_tx_hash: Optional[str] = None
    event: Optional[PaymentEvent] = None


@dataclass
class EscrowResult(_Serializable):
    tx_hash: str
    escrow_id: str
    status: TxState = TxState.PENDING
    approval_tx_hash: Optional[str] = None


@dataclass
class CompleteResult(_Serializable):
    tx_hash: str
    block_number: int
    amount_released: Decimal          # from the emitted event, never the request
    fee: float
    status: TxState = TxState.CONFIRMED


@dataclass
class EscrowActionResult(_Serializable):
    tx_hash: str
    block_number: int
    escrow_id: str
    action: str
    status: TxState = TxState.CONFIRMED


@dataclass
class TxStatus(_Serializable):
    status: TxState
    block_number: Optional[int] = None
    error: str = ""


@dataclass
class EscrowInfo(_Serializable):
    escrow_id: str
    asker: str
    expert: str
    amount: Decimal
    question: str
    service: str
    created_at: int
    timeout: int
    status: EscrowStatus


@dataclass
class PaymentInfo(_Serializable):
    request_id: str
    payer: str
    recipient: str
    amount: Decimal
    service: str
    timestamp: int


@dataclass
class BudgetCheck(_Serializable):
    allowed: bool
    available: Decimal
    needs_reset: bool


@dataclass
class SessionCheck(_Serializable):
    valid: bool
    reason: Optional[str] = None


@dataclass
class GeneratedSession(_Serializable):
    credential: str
    expires_at: str           # ISO 8601, UTC
    daily_budget: Decimal
