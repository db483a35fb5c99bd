"""
Contract Dispatcher - single choke point for every chain-mutating call

Wraps the three deployed contracts the payment rails use:
- X402 micropayments (instant tips, 2.5% fee taken by the contract)
- Escrow (expert help, released by the asker or after the on-chain timeout)
- USDC (ERC-20 allowance / balance)

Design:
- One dispatcher per process, built at startup from validated Settings and
  handed to the HTTP layer by reference
- Signers are derived per call from caller-supplied key material and dropped
  when the call ends; the dispatcher holds no signing material
- Two explicit submission modes: submit_and_wait() blocks until mined,
  submit_and_return() returns once the node accepts the tx into its mempool
- Sync web3 calls run in the default executor (web3.py async is fragile)
- Embedded minimal ABI, only the functions and events we touch
- All on-chain amounts are integer base units (6 decimals); floats only for
  display math such as fee estimates
"""

import asyncio
import logging
import re
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Protocol, Union

from eth_account.signers.local import LocalAccount
from eth_utils import is_address, keccak, to_checksum_address
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.logs import DISCARD

from .config import Settings
from .constants import PAYMENT_RULES
from .errors import (
    AllowanceApprovalFailed, AllowanceApprovalTimeout,
    ChainUnavailable, ConfirmationTimeout, DispatcherError,
    EscrowActionFailed, EscrowActionTimeout,
    EscrowCompletionFailed, EscrowCompletionTimeout,
    EscrowCreationFailed, EscrowNotFound,
    InvalidAmount, TransferFailed, TransferTimeout, ValidationError,
)
from .signer import KeyMaterial, scoped_signer
from .types import (
    ESCROW_STATUS_CODES, CompleteResult, ContractCall, EscrowActionResult,
    EscrowInfo, EscrowResult, PaymentEvent, PaymentInfo, TipResult, TxState, TxStatus,
)

logger = logging.getLogger("vibe.chain")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEFAULT_GAS_LIMIT = 200_000
GAS_BUFFER = 1.2


# ============================================================
# MINIMAL ABI
# ============================================================

ERC20_ABI = [
    {
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

PAYMENTS_ABI = [
    # payForRequest(address recipient, uint256 amount, string service, bytes32 requestId)
    {
        "inputs": [
            {"name": "recipient", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "service", "type": "string"},
            {"name": "requestId", "type": "bytes32"},
        ],
        "name": "payForRequest",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "requestId", "type": "bytes32"}],
        "name": "getPayment",
        "outputs": [
            {"name": "payer", "type": "address"},
            {"name": "recipient", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "service", "type": "string"},
            {"name": "timestamp", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "payer", "type": "address"},
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "service", "type": "string"},
            {"indexed": False, "name": "requestId", "type": "bytes32"},
        ],
        "name": "PaymentMade",
        "type": "event",
    },
]

_ESCROW_ID_INPUT = [{"name": "escrowId", "type": "bytes32"}]

ESCROW_ABI = [
    # createEscrow(address expert, uint256 amount, string question, string service, bytes32 escrowId)
    {
        "inputs": [
            {"name": "expert", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "question", "type": "string"},
            {"name": "service", "type": "string"},
            {"name": "escrowId", "type": "bytes32"},
        ],
        "name": "createEscrow",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": _ESCROW_ID_INPUT,
        "name": "completeEscrow",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": _ESCROW_ID_INPUT,
        "name": "autoCompleteEscrow",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": _ESCROW_ID_INPUT,
        "name": "disputeEscrow",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # getEscrow(bytes32) -> (asker, expert, amount, question, service, createdAt, timeout, status)
    {
        "inputs": _ESCROW_ID_INPUT,
        "name": "getEscrow",
        "outputs": [
            {"name": "asker", "type": "address"},
            {"name": "expert", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "question", "type": "string"},
            {"name": "service", "type": "string"},
            {"name": "createdAt", "type": "uint256"},
            {"name": "timeout", "type": "uint256"},
            {"name": "status", "type": "uint8"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "escrowId", "type": "bytes32"},
            {"indexed": True, "name": "asker", "type": "address"},
            {"indexed": True, "name": "expert", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "question", "type": "string"},
        ],
        "name": "EscrowCreated",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "escrowId", "type": "bytes32"},
            {"indexed": True, "name": "expert", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "EscrowCompleted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "escrowId", "type": "bytes32"},
            {"indexed": True, "name": "expert", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "EscrowAutoCompleted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "escrowId", "type": "bytes32"},
            {"indexed": True, "name": "disputer", "type": "address"},
        ],
        "name": "EscrowDisputed",
        "type": "event",
    },
]


# ============================================================
# AMOUNTS & IDENTIFIERS
# ============================================================

_UNIT = Decimal(10) ** PAYMENT_RULES.TOKEN_DECIMALS
_BYTES32_HEX = re.compile(r"^0x[0-9a-fA-F]{64}$")

Amount = Union[int, float, str, Decimal]


def to_base_units(amount: Amount) -> int:
    """
    Human USDC amount -> integer base units (6 decimals), exactly.

    Floats go through str() so 5.1 means "5.1", not its binary expansion.
    More than 6 fractional digits is rejected rather than rounded.
    """
    try:
        value = Decimal(str(amount)).normalize()
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmount(f"Invalid amount: {amount!r}") from e
    if not value.is_finite() or value <= 0:
        raise InvalidAmount(f"Amount must be positive: {amount!r}")
    if value.as_tuple().exponent < -PAYMENT_RULES.TOKEN_DECIMALS:
        raise InvalidAmount(
            f"Amount has more than {PAYMENT_RULES.TOKEN_DECIMALS} decimal places: {amount!r}"
        )
    return int(value * _UNIT)


def from_base_units(raw: int) -> Decimal:
    return Decimal(int(raw)) / _UNIT


def normalize_request_id(request_id: str) -> str:
    """
    Fixed-width (bytes32, 0x-hex) correlation key. Hash-shaped ids pass
    through; anything else is keccak256 of its UTF-8 text, so a retried
    logical request always maps to the same key.
    """
    if not request_id:
        raise ValidationError("request id is required")
    if _BYTES32_HEX.match(request_id):
        return request_id.lower()
    return "0x" + keccak(text=request_id).hex()


def _id_bytes(request_id: str) -> bytes:
    return bytes.fromhex(normalize_request_id(request_id)[2:])


def estimate_fee(amount: Amount) -> float:
    """Display-only fee estimate. The contract decides what actually moves."""
    return round(float(amount) * PAYMENT_RULES.PLATFORM_FEE_RATE, 6)


def _tx_hex(value: Any) -> str:
    return value if isinstance(value, str) else Web3.to_hex(value)


def _checksum(address: str, label: str) -> str:
    if not address or not is_address(address):
        raise ValidationError(f"Invalid {label} address: {address!r}")
    return to_checksum_address(address)


# ============================================================
# CHAIN CLIENT
# ============================================================

class ChainClient(Protocol):
    """Blocking chain access. The dispatcher runs these in an executor."""

    def call(self, contract: str, function: str, *args: Any) -> Any: ...

    def send(self, account: LocalAccount, call: ContractCall) -> str: ...

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Mapping: ...

    def get_receipt(self, tx_hash: str) -> Optional[Mapping]: ...

    def decode_event(self, contract: str, event: str, receipt: Mapping) -> Optional[dict]: ...

    def block_number(self) -> int: ...


class Web3ChainClient:
    """ChainClient over a web3.py HTTP provider with read-only contract bindings."""

    def __init__(self, settings: Settings, w3: Optional[Web3] = None):
        self._w3 = w3 or Web3(Web3.HTTPProvider(settings.rpc_url, request_kwargs={"timeout": 30}))
        self._chain_id = settings.network.chain_id
        self._contracts = {
            "token": self._w3.eth.contract(address=settings.token_address, abi=ERC20_ABI),
            "payments": self._w3.eth.contract(address=settings.payments_address, abi=PAYMENTS_ABI),
            "escrow": self._w3.eth.contract(address=settings.escrow_address, abi=ESCROW_ABI),
        }

    def _function(self, contract: str, function: str, args: tuple):
        return getattr(self._contracts[contract].functions, function)(*args)

    def call(self, contract: str, function: str, *args: Any) -> Any:
        return self._function(contract, function, args).call()

    def send(self, account: LocalAccount, call: ContractCall) -> str:
        w3 = self._w3
        tx = self._function(call.contract, call.function, call.args).build_transaction({
            "from": account.address,
            # "pending" so an approval still in the mempool doesn't reuse its nonce
            "nonce": w3.eth.get_transaction_count(account.address, "pending"),
            "gasPrice": w3.eth.gas_price,
            "chainId": self._chain_id,
            "gas": DEFAULT_GAS_LIMIT,
        })

        # Gas estimation + 20% buffer
        try:
            estimate_tx = {k: v for k, v in tx.items() if k != "gas"}
            tx["gas"] = int(w3.eth.estimate_gas(estimate_tx) * GAS_BUFFER)
        except Exception as gas_err:
            logger.warning(
                f"Gas estimation failed for {call.contract}.{call.function}, "
                f"using default {DEFAULT_GAS_LIMIT}: {gas_err}"
            )

        signed = account.sign_transaction(tx)
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Mapping:
        try:
            return self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise TimeoutError(str(e)) from e

    def get_receipt(self, tx_hash: str) -> Optional[Mapping]:
        try:
            return self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    def decode_event(self, contract: str, event: str, receipt: Mapping) -> Optional[dict]:
        event_cls = getattr(self._contracts[contract].events, event)
        decoded = event_cls().process_receipt(receipt, errors=DISCARD)
        return dict(decoded[0]["args"]) if decoded else None

    def block_number(self) -> int:
        return self._w3.eth.block_number


# ============================================================
# DISPATCHER
# ============================================================

@contextmanager
def _failures_as(label: str, failure: type, timeout: Optional[type] = None):
    """Re-raise generic submission errors as the operation's own error kind."""
    try:
        yield
    except DispatcherError as e:
        if type(e) not in (DispatcherError, ConfirmationTimeout):
            raise
        kind = timeout if (timeout and isinstance(e, ConfirmationTimeout)) else failure
        raise kind(f"{label}: {e}", tx_hash=e.tx_hash) from e


class ContractDispatcher:
    """
    Executes tips and escrow operations on behalf of request handlers.

    Usage:
        dispatcher = ContractDispatcher(Settings.from_env())
        result = await dispatcher.tip(sender="@alice", recipient="@bob", amount=5, ...)
    """

    def __init__(self, settings: Settings, client: Optional[ChainClient] = None):
        settings.require_contracts()
        self._settings = settings
        self._client: ChainClient = client or Web3ChainClient(settings)
        self._tx_count = 0
        self._last_error: Optional[str] = None
        logger.info(
            f"Contract dispatcher ready: network={settings.network.network_id} | "
            f"payments={settings.payments_address[:10]}... | "
            f"escrow={settings.escrow_address[:10]}... | token={settings.token_address[:10]}..."
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    # ============================================================
    # SUBMISSION PRIMITIVES
    # ============================================================

    async def submit_and_return(self, account: LocalAccount, call: ContractCall) -> str:
        """Sign and submit; return the tx hash as soon as the node accepts it."""
        try:
            tx_hash = await self._run(self._client.send, account, call)
        except Exception as e:
            logger.warning(f"TX SUBMIT ERROR [{call.contract}.{call.function}]: {type(e).__name__}: {e}")
            self._last_error = f"{call.function}: {type(e).__name__}: {e}"
            raise DispatcherError(f"{type(e).__name__}: {e}") from e
        self._tx_count += 1
        logger.info(f"TX sent [{call.contract}.{call.function}]: {tx_hash}")
        return tx_hash

    async def submit_and_wait(self, account: LocalAccount, call: ContractCall,
                              timeout: float) -> Mapping:
        """
        Sign, submit, and block until mined or until the deadline.

        Raises:
            ConfirmationTimeout: not mined in time; the tx may still land.
            DispatcherError: submission rejected, or the tx reverted.
        """
        tx_hash = await self.submit_and_return(account, call)
        try:
            receipt = await self._run(self._client.wait_for_receipt, tx_hash, timeout)
        except TimeoutError as e:
            logger.warning(f"TX TIMEOUT [{call.function}]: {tx_hash} not mined within {timeout}s")
            self._last_error = f"{call.function}: not mined within {timeout}s ({tx_hash})"
            raise ConfirmationTimeout(
                f"{call.function} not mined within {timeout}s", tx_hash=tx_hash
            ) from e
        except Exception as e:
            logger.warning(f"TX WAIT ERROR [{call.function}]: {tx_hash}: {e}")
            self._last_error = f"{call.function}: {type(e).__name__}: {e}"
            raise DispatcherError(f"{type(e).__name__}: {e}", tx_hash=tx_hash) from e

        if receipt.get("status") != 1:
            logger.warning(f"TX FAILED [{call.function}]: reverted {tx_hash}")
            self._last_error = f"{call.function}: reverted ({tx_hash})"
            raise DispatcherError(f"TX reverted: {tx_hash}", tx_hash=tx_hash)
        if receipt.get("blockNumber") is None:
            logger.warning(f"TX FAILED [{call.function}]: receipt without block number {tx_hash}")
            self._last_error = f"{call.function}: receipt without block number ({tx_hash})"
            raise DispatcherError(f"Receipt without block number: {tx_hash}", tx_hash=tx_hash)

        logger.info(f"TX confirmed [{call.function}]: {tx_hash} in block {receipt['blockNumber']}")
        return receipt

    async def _ensure_allowance(self, account: LocalAccount, spender: str,
                                amount_raw: int) -> Optional[str]:
        """
        Top up the token allowance for `spender` only when it is short.
        Returns the approval tx hash, or None when no approval was needed.
        """
        try:
            current = await self._run(
                self._client.call, "token", "allowance", account.address, spender
            )
        except Exception as e:
            raise AllowanceApprovalFailed(f"Allowance check failed: {type(e).__name__}: {e}") from e

        if current >= amount_raw:
            logger.debug(f"Allowance sufficient: {current} >= {amount_raw}")
            return None

        logger.info(f"Approving {amount_raw} base units for {spender[:10]}...")
        call = ContractCall("token", "approve", (spender, amount_raw))
        with _failures_as("USDC approval failed", AllowanceApprovalFailed, AllowanceApprovalTimeout):
            receipt = await self.submit_and_wait(account, call, self._settings.approval_timeout)
        return _tx_hex(receipt["transactionHash"])

    # ============================================================
    # OPERATIONS
    # ============================================================

    async def tip(
        self,
        sender: str,
        recipient: str,
        amount: Amount,
        message: str,
        request_id: str,
        from_wallet_key_material: KeyMaterial,
        to_address: str,
    ) -> TipResult:
        """
        Instant payment through the micropayments contract. Blocks until mined.

        The returned fee is 2.5% of the requested amount for display; the
        PaymentMade event carries the authoritative payer/recipient/amount.
        """
        amount_raw = to_base_units(amount)
        request_key = normalize_request_id(request_id)
        recipient_address = _checksum(to_address, "recipient")
        payments = self._settings.payments_address

        logger.info(f"Tipping {amount} USDC from {sender} to {recipient}")
        if message:
            logger.debug(f"Tip message: {message[:80]}")

        with scoped_signer(from_wallet_key_material) as account:
            approval_hash = await self._ensure_allowance(account, payments, amount_raw)
            call = ContractCall(
                "payments", "payForRequest",
                (recipient_address, amount_raw, PAYMENT_RULES.TIP_SERVICE_TAG, _id_bytes(request_key)),
            )
            with _failures_as("Tip failed", TransferFailed, TransferTimeout):
                receipt = await self.submit_and_wait(account, call, self._settings.confirmation_timeout)

        tx_hash = _tx_hex(receipt["transactionHash"])
        event = self._decode("payments", "PaymentMade", receipt)

        return TipResult(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            fee=estimate_fee(amount),
            request_id=request_key,
            approval_tx_hash=approval_hash,
            event=PaymentEvent(
                payer=event["payer"],
                recipient=event["recipient"],
                amount=from_base_units(event["amount"]),
            ) if event else None,
        )

    async def create_escrow(
        self,
        sender: str,
        recipient: str,
        amount: Amount,
        description: str,
        escrow_id: str,
        timeout_hours: int,
        from_wallet_key_material: KeyMaterial,
        to_address: str,
    ) -> EscrowResult:
        """
        Lock funds in escrow. Returns `pending` as soon as the node accepts the
        tx; callers must not assume funds moved until a later status poll.
        The on-chain timeout is set by the contract; timeout_hours is
        informational for the caller's own records.
        """
        amount_raw = to_base_units(amount)
        escrow_key = normalize_request_id(escrow_id)
        expert_address = _checksum(to_address, "expert")

        logger.info(
            f"Creating escrow {amount} USDC from {sender} to {recipient} "
            f"(timeout {timeout_hours}h)"
        )

        with scoped_signer(from_wallet_key_material) as account:
            approval_hash = await self._ensure_allowance(
                account, self._settings.escrow_address, amount_raw
            )
            call = ContractCall(
                "escrow", "createEscrow",
                (expert_address, amount_raw, description, PAYMENT_RULES.ESCROW_SERVICE_TAG,
                 _id_bytes(escrow_key)),
            )
            with _failures_as("Escrow creation failed", EscrowCreationFailed):
                tx_hash = await self.submit_and_return(account, call)

        return EscrowResult(
            tx_hash=tx_hash,
            escrow_id=escrow_key,
            approval_tx_hash=approval_hash,
        )

    async def complete_escrow(
        self,
        escrow_id: str,
        asker_handle: str,
        asker_wallet_key_material: KeyMaterial,
    ) -> CompleteResult:
        """
        Release escrowed funds to the expert. Blocks until mined.
        amount_released comes from EscrowCompleted, never from the request.
        """
        escrow_key = normalize_request_id(escrow_id)
        logger.info(f"Completing escrow {escrow_key[:18]}... for {asker_handle}")

        with scoped_signer(asker_wallet_key_material) as account:
            call = ContractCall("escrow", "completeEscrow", (_id_bytes(escrow_key),))
            with _failures_as("Escrow completion failed", EscrowCompletionFailed, EscrowCompletionTimeout):
                receipt = await self.submit_and_wait(account, call, self._settings.confirmation_timeout)

        return self._completion_result(receipt, "EscrowCompleted")

    async def auto_complete_escrow(self, escrow_id: str,
                                   wallet_key_material: KeyMaterial) -> CompleteResult:
        """Release an escrow whose on-chain timeout has passed. Anyone may call."""
        escrow_key = normalize_request_id(escrow_id)
        logger.info(f"Auto-completing escrow {escrow_key[:18]}...")

        with scoped_signer(wallet_key_material) as account:
            call = ContractCall("escrow", "autoCompleteEscrow", (_id_bytes(escrow_key),))
            with _failures_as("Escrow auto-completion failed", EscrowActionFailed, EscrowActionTimeout):
                receipt = await self.submit_and_wait(account, call, self._settings.confirmation_timeout)

        return self._completion_result(receipt, "EscrowAutoCompleted")

    async def dispute_escrow(self, escrow_id: str,
                             wallet_key_material: KeyMaterial) -> EscrowActionResult:
        """Flag an active escrow as disputed. Blocks until mined."""
        escrow_key = normalize_request_id(escrow_id)
        logger.info(f"Disputing escrow {escrow_key[:18]}...")

        with scoped_signer(wallet_key_material) as account:
            call = ContractCall("escrow", "disputeEscrow", (_id_bytes(escrow_key),))
            with _failures_as("Escrow dispute failed", EscrowActionFailed, EscrowActionTimeout):
                receipt = await self.submit_and_wait(account, call, self._settings.confirmation_timeout)

        return EscrowActionResult(
            tx_hash=_tx_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            escrow_id=escrow_key,
            action="dispute",
        )

    def _completion_result(self, receipt: Mapping, event_name: str) -> CompleteResult:
        event = self._decode("escrow", event_name, receipt)
        if event is None:
            logger.warning(f"{event_name} event missing from receipt; reporting 0 released")
        released = from_base_units(event["amount"]) if event else Decimal(0)
        return CompleteResult(
            tx_hash=_tx_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            amount_released=released,
            fee=estimate_fee(released),
        )

    def _decode(self, contract: str, event: str, receipt: Mapping) -> Optional[dict]:
        try:
            return self._client.decode_event(contract, event, receipt)
        except Exception as e:
            # The tx is already mined; a decode problem must not turn it into a failure.
            logger.warning(f"Failed to decode {event}: {e}")
            return None

    # ============================================================
    # READS
    # ============================================================

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        """Poll a tx. Unmined is `pending`; RPC trouble is `error`, never an exception."""
        try:
            receipt = await self._run(self._client.get_receipt, tx_hash)
        except Exception as e:
            logger.warning(f"getTransactionStatus failed for {tx_hash}: {e}")
            return TxStatus(status=TxState.ERROR, error=f"{type(e).__name__}: {e}")

        if receipt is None:
            return TxStatus(status=TxState.PENDING)
        if receipt.get("status") == 1:
            return TxStatus(status=TxState.CONFIRMED, block_number=receipt.get("blockNumber"))
        return TxStatus(status=TxState.FAILED, block_number=receipt.get("blockNumber"))

    async def get_escrow(self, escrow_id: str) -> EscrowInfo:
        escrow_key = normalize_request_id(escrow_id)
        try:
            data = await self._run(self._client.call, "escrow", "getEscrow", _id_bytes(escrow_key))
        except Exception as e:
            raise ChainUnavailable(f"getEscrow failed: {type(e).__name__}: {e}") from e

        asker, expert, amount_raw, question, service, created_at, timeout, status = data
        if asker == ZERO_ADDRESS:
            raise EscrowNotFound(f"Escrow {escrow_key} not found on-chain")
        if not 0 <= status < len(ESCROW_STATUS_CODES):
            raise ChainUnavailable(f"Unknown escrow status code {status} for {escrow_key}")

        return EscrowInfo(
            escrow_id=escrow_key,
            asker=asker,
            expert=expert,
            amount=from_base_units(amount_raw),
            question=question,
            service=service,
            created_at=int(created_at),
            timeout=int(timeout),
            status=ESCROW_STATUS_CODES[status],
        )

    async def get_payment(self, request_id: str) -> Optional[PaymentInfo]:
        request_key = normalize_request_id(request_id)
        try:
            data = await self._run(self._client.call, "payments", "getPayment", _id_bytes(request_key))
        except Exception as e:
            raise ChainUnavailable(f"getPayment failed: {type(e).__name__}: {e}") from e

        payer, recipient, amount_raw, service, timestamp = data
        if payer == ZERO_ADDRESS:
            return None
        return PaymentInfo(
            request_id=request_key,
            payer=payer,
            recipient=recipient,
            amount=from_base_units(amount_raw),
            service=service,
            timestamp=int(timestamp),
        )

    async def balance_of(self, address: str) -> Decimal:
        holder = _checksum(address, "holder")
        try:
            raw = await self._run(self._client.call, "token", "balanceOf", holder)
        except Exception as e:
            raise ChainUnavailable(f"balanceOf failed: {type(e).__name__}: {e}") from e
        return from_base_units(raw)

    # ============================================================
    # STATUS
    # ============================================================

    def get_explorer_url(self, tx_hash: str) -> str:
        return f"{self._settings.network.explorer}/tx/{tx_hash}"

    async def get_status(self) -> dict:
        """Status for health checks / debugging."""
        status = {
            "network": self._settings.network.network_id,
            "chain_id": self._settings.network.chain_id,
            "contracts": {
                "payments": self._settings.payments_address,
                "escrow": self._settings.escrow_address,
                "token": self._settings.token_address,
            },
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
        try:
            status["block_number"] = await self._run(self._client.block_number)
            status["connected"] = True
        except Exception as e:
            status["connected"] = False
            status["error"] = f"{type(e).__name__}: {e}"
        return status
