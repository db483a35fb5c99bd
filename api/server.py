"""
/vibe payments API - FastAPI Backend

Endpoints:
- GET  /health                              Dispatcher + store status
- POST /api/payments/tip                    Instant tip (waits for confirmation)
- POST /api/payments/escrow                 Create escrow (returns pending)
- POST /api/payments/complete               Release escrow to expert (waits)
- POST /api/payments/dispute                Dispute an active escrow (waits)
- GET  /api/payments/escrow/{escrow_id}     On-chain escrow view
- GET  /api/payments/status/{tx_hash}       Poll a transaction
- GET  /api/payments/history                Ledger history for a handle
- GET  /api/agents/wallet/{handle}          Treasury view (no credential)
- POST /api/agents/wallet/create            Wallet + treasury for an agent
- POST /api/agents/wallet/session-key       generate / revoke / refresh session key
- POST /api/agents/wallet/spend             Autonomous spend under a session key
- POST /api/agents/wallet/earn              Credit an earning to an agent treasury

Handlers validate, authorize, call the dispatcher, then write the ledger.
Domain errors are mapped to HTTP status codes by the exception handlers below.
"""

import asyncio
import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Optional

from eth_utils import is_address
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from core.chain import ContractDispatcher, normalize_request_id
from core.constants import EARNING_TYPES, PAYMENT_RULES, SESSION_ACTIONS, SPENDING_TYPES
from core.errors import (
    AuthorizationError, BudgetExceeded, ConfirmationTimeout, DispatcherError,
    InsufficientBalance, NoActiveCredential, NotFound, SessionInvalid,
    SignerDerivationError, ValidationError,
)
from core.ledger import Ledger
from core.notifier import Notifier
from core.reconciler import reconcile_loop
from core.session import SessionAuthorizer, next_reset_boundary
from core.storage import normalize_handle
from core.treasury import TreasuryStore
from core.types import TxState
from core.wallet_store import WalletKeyStore

logger = logging.getLogger("vibe.api")


# ============================================================
# MODELS
# ============================================================

class TipRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(..., alias="from", min_length=1, max_length=64)
    to: str = Field(..., min_length=1, max_length=64)
    amount: float = Field(..., gt=0, le=float(PAYMENT_RULES.TIP_MAX_USD))
    message: str = Field("", max_length=500)


class EscrowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(..., alias="from", min_length=1, max_length=64)
    to: str = Field(..., min_length=1, max_length=64)
    amount: float = Field(..., ge=float(PAYMENT_RULES.ESCROW_MIN_USD),
                          le=float(PAYMENT_RULES.ESCROW_MAX_USD))
    description: str = Field(..., min_length=1, max_length=2000)
    timeout_hours: int = Field(PAYMENT_RULES.ESCROW_DEFAULT_TIMEOUT_HOURS, gt=0, le=24 * 30)


class EscrowActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    escrow_id: str = Field(..., min_length=1, max_length=200)
    sender: str = Field(..., alias="from", min_length=1, max_length=64)


class CreateAgentWalletRequest(BaseModel):
    agent_handle: str = Field(..., min_length=1, max_length=64)
    daily_budget: float = Field(float(PAYMENT_RULES.DEFAULT_DAILY_BUDGET_USD), gt=0, le=100000)
    initial_balance: float = Field(0.0, ge=0)


class SessionKeyRequest(BaseModel):
    agent_handle: str = Field(..., min_length=1, max_length=64)
    action: str
    expires_in_hours: float = Field(PAYMENT_RULES.SESSION_DEFAULT_HOURS, gt=0, le=24 * 365)
    daily_budget: Optional[float] = Field(None, gt=0, le=100000)


class SpendRequest(BaseModel):
    agent_handle: str = Field(..., min_length=1, max_length=64)
    spending_type: str
    amount: float = Field(..., gt=0)
    recipient_handle: Optional[str] = Field(None, max_length=64)
    recipient_address: Optional[str] = Field(None, max_length=200)
    session_key: str = Field(..., min_length=1, max_length=200)
    metadata: dict[str, Any] = Field(default_factory=dict)


class EarnRequest(BaseModel):
    agent_handle: str = Field(..., min_length=1, max_length=64)
    earning_type: str
    amount: float = Field(..., gt=0)
    source_handle: Optional[str] = Field(None, max_length=64)
    source_tx_hash: Optional[str] = Field(None, max_length=200)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ============================================================
# HELPERS
# ============================================================

def _require_auth(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    return authorization[len("Bearer "):]


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


def _num(value: Decimal) -> float:
    return float(value)


def _event_row(event, kind_key: str) -> dict:
    return {
        "id": event.id,
        kind_key: event.metadata.get(kind_key),
        "amount": float(event.amount),
        "tx_hash": event.tx_hash,
        "status": event.tx_status,
        "created_at": event.created_at,
    }


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    dispatcher: ContractDispatcher,
    authorizer: SessionAuthorizer,
    wallets: WalletKeyStore,
    ledger: Ledger,
    notifier: Optional[Notifier] = None,
    reconcile_interval: float = 0,
) -> FastAPI:
    """
    Create the FastAPI app around an already-built dispatcher and stores.

    reconcile_interval: seconds between background reconcile passes (0 = off)
    """
    treasuries: TreasuryStore = authorizer.store
    notifier = notifier or Notifier()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if reconcile_interval > 0:
            task = asyncio.create_task(reconcile_loop(ledger, dispatcher, reconcile_interval))
        yield
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await notifier.close()

    app = FastAPI(
        title="vibe payments",
        description="Tips, escrow and autonomous agent spending on Base",
        version="0.1.0",
        lifespan=lifespan,
    )

    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # ── ERROR MAPPING ──

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(SessionInvalid)
    async def _session_invalid(request: Request, exc: SessionInvalid):
        return JSONResponse(status_code=401, content={
            "error": "Session key validation failed",
            "details": exc.reason.value,
        })

    @app.exception_handler(NoActiveCredential)
    async def _no_credential(request: Request, exc: NoActiveCredential):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(BudgetExceeded)
    async def _budget_exceeded(request: Request, exc: BudgetExceeded):
        return JSONResponse(status_code=403, content={
            "error": "Daily budget exceeded",
            "daily_budget": _num(exc.daily_budget),
            "daily_spent": _num(exc.daily_spent),
            "requested": _num(exc.requested),
            "available": _num(exc.available),
        })

    @app.exception_handler(InsufficientBalance)
    async def _insufficient_balance(request: Request, exc: InsufficientBalance):
        return JSONResponse(status_code=400, content={
            "error": "Insufficient balance",
            "current_balance": _num(exc.balance),
            "requested": _num(exc.requested),
        })

    @app.exception_handler(AuthorizationError)
    async def _authorization_error(request: Request, exc: AuthorizationError):
        return JSONResponse(status_code=403, content={"error": str(exc)})

    @app.exception_handler(ConfirmationTimeout)
    async def _confirmation_timeout(request: Request, exc: ConfirmationTimeout):
        # Outcome unknown: the tx may still be mined. Caller should poll.
        return JSONResponse(status_code=504, content={
            "error": "Transaction not confirmed in time",
            "details": str(exc),
            "tx_hash": exc.tx_hash,
            "status": TxState.PENDING.value,
        })

    @app.exception_handler(SignerDerivationError)
    async def _signer_error(request: Request, exc: SignerDerivationError):
        return JSONResponse(status_code=500, content={
            "error": "Wallet data is unusable",
            "details": str(exc),
        })

    @app.exception_handler(DispatcherError)
    async def _dispatcher_error(request: Request, exc: DispatcherError):
        return JSONResponse(status_code=502, content={
            "error": "Blockchain operation failed",
            "details": str(exc),
            "tx_hash": exc.tx_hash,
        })

    # ── HEALTH ──

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": time.time(),
            "chain": await dispatcher.get_status(),
            "wallets": wallets.get_status(),
            "pending_transactions": len(ledger.pending()),
        }

    # ── PAYMENTS ──

    @app.post("/api/payments/tip")
    async def tip(req: TipRequest, authorization: Optional[str] = Header(None)):
        """Instant peer-to-peer payment. Waits for on-chain confirmation."""
        _require_auth(authorization)
        sender, recipient = normalize_handle(req.sender), normalize_handle(req.to)
        if sender == recipient:
            raise ValidationError("Cannot tip yourself")
        amount = _dec(req.amount)
        if amount < PAYMENT_RULES.TIP_MIN_USD:
            raise ValidationError(
                f"Amount must be between ${PAYMENT_RULES.TIP_MIN_USD} and ${PAYMENT_RULES.TIP_MAX_USD}"
            )

        from_wallet = wallets.require_address(sender)
        to_wallet = wallets.require_address(recipient)

        balance = await dispatcher.balance_of(from_wallet)
        if balance < amount:
            raise InsufficientBalance(balance=balance, requested=amount)

        request_id = secrets.token_hex(16)
        material = wallets.get_key_material(sender)
        try:
            result = await dispatcher.tip(
                sender=f"@{sender}",
                recipient=f"@{recipient}",
                amount=amount,
                message=req.message,
                request_id=request_id,
                from_wallet_key_material=material,
                to_address=to_wallet,
            )
        finally:
            del material

        fee = _dec(result.fee)
        ledger.record(
            sender, "tip_sent", amount,
            tx_hash=result.tx_hash, tx_status=TxState.CONFIRMED, wallet_address=from_wallet,
            metadata={
                "to": recipient,
                "message": req.message,
                "requestId": result.request_id,
                "fee": result.fee,
                "block": result.block_number,
                "contract": "X402Micropayments",
            },
        )
        ledger.record(
            recipient, "tip_received", amount - fee,
            tx_hash=result.tx_hash, tx_status=TxState.CONFIRMED, wallet_address=to_wallet,
            metadata={"from": sender, "message": req.message, "requestId": result.request_id},
        )

        suffix = f' "{req.message}"' if req.message else ""
        notifier.notify(
            f"@{recipient}",
            f"💰 @{sender} tipped you ${amount}!{suffix}\n\nCheck your wallet: vibe wallet",
        )

        return {
            "success": True,
            "tx_hash": result.tx_hash,
            "status": result.status.value,
            "block_number": result.block_number,
            "amount": _num(amount),
            "fee": result.fee,
            "net_to_recipient": _num(amount - fee),
            "explorer_url": dispatcher.get_explorer_url(result.tx_hash),
            "message": f"Tipped @{recipient} ${amount}!",
        }

    @app.post("/api/payments/escrow")
    async def create_escrow(req: EscrowRequest, authorization: Optional[str] = Header(None)):
        """Lock funds for an expert. Returns pending; does not wait for mining."""
        _require_auth(authorization)
        sender, expert = normalize_handle(req.sender), normalize_handle(req.to)
        if sender == expert:
            raise ValidationError("Cannot create an escrow with yourself")
        amount = _dec(req.amount)

        from_wallet = wallets.require_address(sender)
        to_wallet = wallets.require_address(expert)

        balance = await dispatcher.balance_of(from_wallet)
        if balance < amount:
            raise InsufficientBalance(balance=balance, requested=amount)

        escrow_id = normalize_request_id(f"@{sender}@{expert}{int(time.time() * 1000)}")
        material = wallets.get_key_material(sender)
        try:
            result = await dispatcher.create_escrow(
                sender=f"@{sender}",
                recipient=f"@{expert}",
                amount=amount,
                description=req.description,
                escrow_id=escrow_id,
                timeout_hours=req.timeout_hours,
                from_wallet_key_material=material,
                to_address=to_wallet,
            )
        finally:
            del material

        expires_at = time.strftime(
            "%Y-%m-%dT%H:%M:%SZ", time.gmtime(time.time() + req.timeout_hours * 3600)
        )
        ledger.record(
            sender, "escrow_created", amount,
            tx_hash=result.tx_hash, tx_status=TxState.PENDING, wallet_address=from_wallet,
            metadata={
                "to": expert,
                "description": req.description,
                "escrowId": result.escrow_id,
                "timeoutHours": req.timeout_hours,
                "expiresAt": expires_at,
                "approvalTx": result.approval_tx_hash,
                "contract": "VibeEscrow",
            },
        )

        notifier.notify(
            f"@{expert}",
            f"💼 New Escrow from @{sender}\n\nAmount: ${amount}\nTask: {req.description}\n\n"
            f"You have {req.timeout_hours} hours to complete.\nApproval releases funds.",
        )

        return {
            "success": True,
            "escrow_id": result.escrow_id,
            "tx_hash": result.tx_hash,
            "status": result.status.value,
            "amount": _num(amount),
            "timeout": expires_at,
            "message": f"Escrow created. @{expert} has {req.timeout_hours} hours to deliver.",
        }

    @app.post("/api/payments/complete")
    async def complete_escrow(req: EscrowActionRequest, authorization: Optional[str] = Header(None)):
        """Asker releases escrowed funds. Waits for on-chain confirmation."""
        _require_auth(authorization)
        asker = normalize_handle(req.sender)

        record = ledger.find_escrow(req.escrow_id, asker)
        if record is None:
            raise HTTPException(status_code=404, detail="Escrow not found or you are not the creator")
        if record.metadata.get("completed"):
            raise ValidationError("Escrow already completed")
        if record.metadata.get("disputed"):
            raise ValidationError("Escrow is disputed")

        material = wallets.get_key_material(asker)
        try:
            result = await dispatcher.complete_escrow(
                escrow_id=req.escrow_id,
                asker_handle=f"@{asker}",
                asker_wallet_key_material=material,
            )
        finally:
            del material

        expert = record.metadata.get("to", "")
        ledger.mark_escrow(req.escrow_id, TxState.CONFIRMED, completed=True, completeTx=result.tx_hash)
        ledger.record(
            expert, "escrow_completed", result.amount_released,
            tx_hash=result.tx_hash, tx_status=TxState.CONFIRMED,
            wallet_address=wallets.get_address(expert),
            metadata={"from": asker, "escrowId": record.metadata.get("escrowId"), "fee": result.fee},
        )

        notifier.notify(
            f"@{expert}",
            f"✅ Escrow completed!\n\nYou received ${result.amount_released} from @{asker}\n\n"
            f"Check: vibe wallet",
        )

        return {
            "success": True,
            "tx_hash": result.tx_hash,
            "status": result.status.value,
            "block_number": result.block_number,
            "amount_released": _num(result.amount_released),
            "fee": result.fee,
            "message": f"Funds released to @{expert}",
        }

    @app.post("/api/payments/dispute")
    async def dispute_escrow(req: EscrowActionRequest, authorization: Optional[str] = Header(None)):
        """Either party flags an escrow as disputed. Waits for confirmation."""
        _require_auth(authorization)
        party = normalize_handle(req.sender)

        record = ledger.find_escrow(req.escrow_id)
        if record is None or party not in (record.handle, record.metadata.get("to")):
            raise HTTPException(status_code=404, detail="Escrow not found or you are not a party to it")
        if record.metadata.get("completed"):
            raise ValidationError("Escrow already completed")

        material = wallets.get_key_material(party)
        try:
            result = await dispatcher.dispute_escrow(req.escrow_id, material)
        finally:
            del material

        ledger.mark_escrow(req.escrow_id, disputed=True, disputeTx=result.tx_hash, disputedBy=party)
        ledger.record(
            party, "escrow_disputed", record.amount,
            tx_hash=result.tx_hash, tx_status=TxState.CONFIRMED,
            metadata={"escrowId": record.metadata.get("escrowId")},
        )

        return {"success": True, **result.to_dict()}

    @app.get("/api/payments/escrow/{escrow_id}")
    async def get_escrow(escrow_id: str):
        info = await dispatcher.get_escrow(escrow_id)
        return {"success": True, "escrow": info.to_dict()}

    @app.get("/api/payments/status/{tx_hash}")
    async def get_transaction_status(tx_hash: str):
        status = await dispatcher.get_transaction_status(tx_hash)
        if status.status == TxState.ERROR:
            return JSONResponse(status_code=502, content={"tx_hash": tx_hash, **status.to_dict()})
        return {"tx_hash": tx_hash, **status.to_dict()}

    @app.get("/api/payments/history")
    async def history(
        handle: str = Query(..., min_length=1),
        limit: int = Query(PAYMENT_RULES.HISTORY_DEFAULT_LIMIT, gt=0),
        cursor: Optional[str] = None,
    ):
        events, next_cursor = ledger.history(handle, limit, cursor)
        return {
            "success": True,
            "handle": f"@{normalize_handle(handle)}",
            "transactions": [
                {
                    "id": e.id,
                    "type": e.event_type,
                    "amount": float(e.amount),
                    "tx_hash": e.tx_hash,
                    "status": e.tx_status,
                    "metadata": e.metadata,
                    "created_at": e.created_at,
                }
                for e in events
            ],
            "has_more": next_cursor is not None,
            "next_cursor": next_cursor,
        }

    # ── AGENT WALLETS ──

    @app.post("/api/agents/wallet/create")
    async def create_agent_wallet(req: CreateAgentWalletRequest):
        handle = normalize_handle(req.agent_handle)
        if treasuries.exists(handle):
            raise HTTPException(status_code=409, detail="Agent treasury already exists")

        address = wallets.get_address(handle) or wallets.create_wallet(handle)
        treasury = treasuries.create(
            handle,
            wallet_address=address,
            daily_budget=_dec(req.daily_budget),
            reset_at=next_reset_boundary(authorizer.now()),
            initial_balance=_dec(req.initial_balance),
        )
        return {
            "success": True,
            "agent_handle": f"@{handle}",
            "wallet_address": address,
            "daily_budget": _num(treasury.daily_budget),
            "current_balance": _num(treasury.current_balance),
        }

    @app.get("/api/agents/wallet/{agent_handle}")
    async def get_agent_wallet(agent_handle: str, include_history: bool = True):
        treasury = treasuries.get(agent_handle)
        view = treasury.public_view()
        view["remaining_daily_budget"] = _num(authorizer.remaining_budget(treasury.handle))
        if not include_history:
            return {"success": True, "treasury": view}

        earnings = ledger.events_of(treasury.handle, "agent_earn")
        spending = ledger.events_of(treasury.handle, "agent_spend")
        breakdown: dict[str, dict[str, Any]] = {}
        for e in earnings:
            kind = e.metadata.get("earning_type", "unknown")
            bucket = breakdown.setdefault(kind, {"count": 0, "total": Decimal(0)})
            bucket["count"] += 1
            bucket["total"] += Decimal(e.amount)

        limit = PAYMENT_RULES.TREASURY_RECENT_LIMIT
        return {
            "success": True,
            "treasury": view,
            "recent_earnings": [_event_row(e, "earning_type") for e in earnings[:limit]],
            "recent_spending": [_event_row(e, "spending_type") for e in spending[:limit]],
            "earnings_breakdown": {
                kind: {"count": b["count"], "total": _num(b["total"])}
                for kind, b in breakdown.items()
            },
        }

    @app.post("/api/agents/wallet/session-key")
    async def session_key(req: SessionKeyRequest):
        if req.action not in SESSION_ACTIONS:
            raise ValidationError(f"Invalid action. Must be one of: {', '.join(SESSION_ACTIONS)}")
        handle = normalize_handle(req.agent_handle)

        if req.action == "generate":
            session = authorizer.generate(handle, req.expires_in_hours, req.daily_budget)
            return {
                "success": True,
                "action": "generate",
                "session_key": session.credential,
                "expires_at": session.expires_at,
                "expires_in_hours": req.expires_in_hours,
                "daily_budget": _num(session.daily_budget),
            }

        if req.action == "revoke":
            authorizer.revoke(handle)
            return {"success": True, "action": "revoke", "message": "Session key revoked"}

        expires_at = authorizer.refresh(handle, req.expires_in_hours)
        return {
            "success": True,
            "action": "refresh",
            "expires_at": expires_at,
            "expires_in_hours": req.expires_in_hours,
        }

    @app.post("/api/agents/wallet/spend")
    async def agent_spend(req: SpendRequest):
        """
        Autonomous spend. Session check first, then budget, balance, transfer
        and commit all inside the agent's lock so concurrent spends cannot
        both pass the check and overdraw the budget.
        """
        if req.spending_type not in SPENDING_TYPES:
            raise ValidationError(
                f"Invalid spending_type. Must be one of: {', '.join(SPENDING_TYPES)}"
            )
        if not req.recipient_handle and not req.recipient_address:
            raise ValidationError("Must provide either recipient_handle or recipient_address")
        if req.recipient_address and not is_address(req.recipient_address):
            raise ValidationError(f"Invalid recipient_address: {req.recipient_address}")

        handle = normalize_handle(req.agent_handle)
        amount = _dec(req.amount)
        authorizer.authorize(handle, req.session_key)

        async with treasuries.lock_for(handle):
            authorizer.require_budget(handle, amount)
            treasury = treasuries.get(handle)
            if treasury.current_balance < amount:
                raise InsufficientBalance(balance=treasury.current_balance, requested=amount)

            recipient_handle = normalize_handle(req.recipient_handle) if req.recipient_handle else None
            recipient_address = req.recipient_address or wallets.require_address(recipient_handle)

            tx_hash = None
            if req.spending_type == "tip":
                material = wallets.get_key_material(handle)
                try:
                    result = await dispatcher.tip(
                        sender=f"@{handle}",
                        recipient=f"@{recipient_handle}" if recipient_handle else recipient_address,
                        amount=amount,
                        message=str(req.metadata.get("message", "Autonomous agent tip")),
                        request_id=secrets.token_hex(16),
                        from_wallet_key_material=material,
                        to_address=recipient_address,
                    )
                finally:
                    del material
                tx_hash = result.tx_hash

            spending = ledger.record(
                handle, "agent_spend", amount,
                tx_hash=tx_hash,
                tx_status=TxState.CONFIRMED if tx_hash else TxState.PENDING,
                wallet_address=treasury.wallet_address,
                metadata={
                    **req.metadata,
                    "spending_type": req.spending_type,
                    "recipient_handle": recipient_handle,
                    "recipient_address": recipient_address,
                    "approved_by": req.session_key[:10],
                },
            )
            updated = authorizer.commit_spend(handle, amount)

        logger.info(f"[AgentSpending] @{handle} spent ${amount} ({req.spending_type})")
        return {
            "success": True,
            "spending_id": spending.id,
            "tx_hash": tx_hash,
            "amount": _num(amount),
            "new_balance": _num(updated.current_balance),
            "remaining_daily_budget": _num(updated.remaining_budget),
        }

    @app.post("/api/agents/wallet/earn")
    async def agent_earn(req: EarnRequest):
        """
        Credit an earning (tip received, commission, ...) to an agent treasury.
        Ledger-only: the funds already arrived through some other transfer.
        """
        if req.earning_type not in EARNING_TYPES:
            raise ValidationError(
                f"Invalid earning_type. Must be one of: {', '.join(EARNING_TYPES)}"
            )
        handle = normalize_handle(req.agent_handle)
        amount = _dec(req.amount)

        async with treasuries.lock_for(handle):
            treasury = treasuries.get(handle)
            earning = ledger.record(
                handle, "agent_earn", amount,
                tx_hash=None,
                tx_status=TxState.CONFIRMED,
                wallet_address=treasury.wallet_address,
                metadata={
                    **req.metadata,
                    "earning_type": req.earning_type,
                    "source_handle": normalize_handle(req.source_handle) if req.source_handle else None,
                    "source_tx_hash": req.source_tx_hash,
                },
            )
            updated = treasuries.credit(handle, amount)

        logger.info(f"[AgentEarning] @{handle} earned ${amount} ({req.earning_type})")
        return {
            "success": True,
            "earning_id": earning.id,
            "earning_type": req.earning_type,
            "amount": _num(amount),
            "new_balance": _num(updated.current_balance),
            "total_earned": _num(updated.total_earned),
        }

    return app
