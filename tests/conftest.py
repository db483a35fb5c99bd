"""Shared fixtures: an in-memory chain client and settings pointing at tmp dirs."""

import json
from datetime import datetime, timezone

import pytest
from eth_account import Account
from eth_utils import to_checksum_address

from core.chain import ZERO_ADDRESS, ContractDispatcher
from core.config import Settings
from core.constants import NETWORKS

PAYMENTS = to_checksum_address("0x" + "a1" * 20)
ESCROW = to_checksum_address("0x" + "b2" * 20)
TOKEN = to_checksum_address("0x" + "c3" * 20)

PRIVATE_KEY = "0x" + "12" * 32


class FakeChainClient:
    """
    Records every submitted ContractCall. Tx hashes are the 1-based send
    index, so `sent[int(h, 16) - 1]` is the call behind hash h.
    """

    def __init__(self, allowance=0, balance=1_000 * 10**6):
        self.allowance = allowance
        self.balance = balance
        self.block = 100
        self.sent = []
        self.waited = []
        self.receipts = {}
        self.events = {}
        self.escrows = {}
        self.timeout_on = set()
        self.revert_on = set()
        self.unmined_on = set()
        self.fail_send_on = set()
        self.rpc_down = False

    def call(self, contract, function, *args):
        if self.rpc_down:
            raise ConnectionError("rpc down")
        if function == "allowance":
            return self.allowance
        if function == "balanceOf":
            return self.balance
        if function == "getEscrow":
            return self.escrows.get(
                args[0], (ZERO_ADDRESS, ZERO_ADDRESS, 0, "", "", 0, 0, 0)
            )
        if function == "getPayment":
            return (ZERO_ADDRESS, ZERO_ADDRESS, 0, "", 0)
        raise AssertionError(f"unexpected call {contract}.{function}")

    def send(self, account, call):
        if call.function in self.fail_send_on:
            raise ValueError("nonce too low")
        self.sent.append(call)
        if call.function == "approve":
            self.allowance = call.args[1]
        return "0x" + f"{len(self.sent):064x}"

    def call_for(self, tx_hash):
        return self.sent[int(tx_hash, 16) - 1]

    def wait_for_receipt(self, tx_hash, timeout):
        self.waited.append(tx_hash)
        function = self.call_for(tx_hash).function
        if function in self.timeout_on:
            raise TimeoutError(f"{tx_hash} not mined")
        return {
            "transactionHash": tx_hash,
            "status": 0 if function in self.revert_on else 1,
            "blockNumber": None if function in self.unmined_on else self.block,
        }

    def get_receipt(self, tx_hash):
        if self.rpc_down:
            raise ConnectionError("rpc down")
        return self.receipts.get(tx_hash)

    def decode_event(self, contract, event, receipt):
        return self.events.get(event)

    def block_number(self):
        if self.rpc_down:
            raise ConnectionError("rpc down")
        return self.block


class FakeClock:

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def settings(tmp_path):
    return Settings(
        network=NETWORKS["base-sepolia"],
        rpc_url="http://localhost:8545",
        payments_address=PAYMENTS,
        escrow_address=ESCROW,
        token_address=TOKEN,
        confirmation_timeout=5,
        approval_timeout=5,
        data_dir=tmp_path,
        wallet_secret="test-secret",
        reconcile_interval=0,
    )


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def dispatcher(settings, chain):
    return ContractDispatcher(settings, client=chain)


@pytest.fixture
def key_material():
    return json.dumps({"privateKey": PRIVATE_KEY})


@pytest.fixture
def recipient():
    return Account.create().address


@pytest.fixture
def clock():
    return FakeClock()
