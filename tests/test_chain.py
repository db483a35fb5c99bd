"""Tests for the contract dispatcher against an in-memory chain client."""

import asyncio
import json
from decimal import Decimal

import pytest

from core.chain import (
    ContractDispatcher, estimate_fee, from_base_units, normalize_request_id, to_base_units,
)
from core.config import Settings
from core.constants import NETWORKS
from core.errors import (
    AllowanceApprovalTimeout, ChainUnavailable, ConfigurationError, ConfirmationTimeout,
    EscrowActionFailed, EscrowActionTimeout, EscrowCompletionFailed, EscrowCreationFailed,
    EscrowNotFound, InvalidAmount, SignerDerivationError, TransferFailed, TransferTimeout,
    ValidationError,
)
from core.types import EscrowStatus, TxState

from conftest import ESCROW, PAYMENTS


def run(coro):
    return asyncio.run(coro)


class TestAmounts:
    def test_decimal_string_is_exact(self):
        assert to_base_units("5.1") == 5_100_000
        assert to_base_units(Decimal("0.000001")) == 1

    def test_float_goes_through_str(self):
        assert to_base_units(5.1) == 5_100_000
        assert to_base_units(0.29) == 290_000

    def test_integer_amounts(self):
        assert to_base_units(100) == 100_000_000

    @pytest.mark.parametrize("bad", ["0.0000001", 0, -1, "abc", "nan"])
    def test_rejects_bad_amounts(self, bad):
        with pytest.raises(InvalidAmount):
            to_base_units(bad)

    def test_from_base_units(self):
        assert from_base_units(1_500_000) == Decimal("1.5")

    def test_fee_estimate(self):
        assert estimate_fee(10) == 0.25
        assert estimate_fee(Decimal("1")) == 0.025


class TestRequestIds:
    def test_deterministic(self):
        assert normalize_request_id("abc") == normalize_request_id("abc")
        assert normalize_request_id("abc") != normalize_request_id("abd")

    def test_shape(self):
        key = normalize_request_id("tip-123")
        assert key.startswith("0x")
        assert len(key) == 66

    def test_bytes32_passes_through_lowercased(self):
        raw = "0x" + "AB" * 32
        assert normalize_request_id(raw) == raw.lower()

    def test_empty_rejected(self):
        with pytest.raises(ValidationError):
            normalize_request_id("")


class TestConstruction:
    def test_missing_contracts_fail_fast(self, tmp_path):
        settings = Settings(network=NETWORKS["base-sepolia"], rpc_url="http://x", data_dir=tmp_path)
        with pytest.raises(ConfigurationError) as exc:
            ContractDispatcher(settings, client=object())
        assert "X402_CONTRACT_ADDRESS" in str(exc.value)
        assert "USDC_ADDRESS" in str(exc.value)


class TestTip:
    def _tip(self, dispatcher, key_material, recipient, amount=5):
        return run(dispatcher.tip(
            sender="@alice", recipient="@bob", amount=amount, message="thanks",
            request_id="req-1", from_wallet_key_material=key_material, to_address=recipient,
        ))

    def test_skips_approval_when_allowance_sufficient(self, dispatcher, chain, key_material, recipient):
        chain.allowance = 10**12
        result = self._tip(dispatcher, key_material, recipient)

        assert [c.function for c in chain.sent] == ["payForRequest"]
        assert result.approval_tx_hash is None
        assert result.status == TxState.CONFIRMED
        assert result.block_number == 100
        assert result.fee == 0.125
        assert result.request_id == normalize_request_id("req-1")

    def test_approves_exact_shortfall_amount(self, dispatcher, chain, key_material, recipient):
        chain.allowance = 1
        result = self._tip(dispatcher, key_material, recipient, amount="2.5")

        approve, pay = chain.sent
        assert approve.function == "approve"
        assert approve.args == (PAYMENTS, 2_500_000)
        assert pay.function == "payForRequest"
        assert pay.args[1] == 2_500_000
        assert pay.args[2] == "tip"
        assert len(pay.args[3]) == 32
        assert result.approval_tx_hash is not None

    def test_decodes_payment_event(self, dispatcher, chain, key_material, recipient):
        chain.events["PaymentMade"] = {"payer": "0xpayer", "recipient": recipient, "amount": 4_875_000}
        result = self._tip(dispatcher, key_material, recipient)
        assert result.event.amount == Decimal("4.875")

    def test_revert_is_transfer_failure(self, dispatcher, chain, key_material, recipient):
        chain.revert_on.add("payForRequest")
        with pytest.raises(TransferFailed) as exc:
            self._tip(dispatcher, key_material, recipient)
        assert not isinstance(exc.value, ConfirmationTimeout)
        assert exc.value.tx_hash is not None

    def test_timeout_is_distinct_and_carries_hash(self, dispatcher, chain, key_material, recipient):
        chain.timeout_on.add("payForRequest")
        with pytest.raises(TransferTimeout) as exc:
            self._tip(dispatcher, key_material, recipient)
        assert isinstance(exc.value, ConfirmationTimeout)
        assert isinstance(exc.value, TransferFailed)
        assert chain.call_for(exc.value.tx_hash).function == "payForRequest"

    def test_approval_timeout(self, dispatcher, chain, key_material, recipient):
        chain.timeout_on.add("approve")
        with pytest.raises(AllowanceApprovalTimeout):
            self._tip(dispatcher, key_material, recipient)
        assert [c.function for c in chain.sent] == ["approve"]

    def test_rejected_submission(self, dispatcher, chain, key_material, recipient):
        chain.allowance = 10**12
        chain.fail_send_on.add("payForRequest")
        with pytest.raises(TransferFailed):
            self._tip(dispatcher, key_material, recipient)

    def test_bad_key_material_sends_nothing(self, dispatcher, chain, recipient):
        with pytest.raises(SignerDerivationError):
            self._tip(dispatcher, json.dumps({"address": "0x1"}), recipient)
        with pytest.raises(SignerDerivationError):
            self._tip(dispatcher, "not json", recipient)
        assert chain.sent == []

    def test_invalid_recipient(self, dispatcher, key_material):
        with pytest.raises(ValidationError):
            self._tip(dispatcher, key_material, "0xnope")

    def test_receipt_without_block_number_is_failure(self, dispatcher, chain, key_material, recipient):
        chain.allowance = 10**12
        chain.unmined_on.add("payForRequest")
        with pytest.raises(TransferFailed) as exc:
            self._tip(dispatcher, key_material, recipient)
        assert not isinstance(exc.value, ConfirmationTimeout)
        assert exc.value.tx_hash is not None


class TestEscrow:
    def _create(self, dispatcher, key_material, recipient):
        return run(dispatcher.create_escrow(
            sender="@alice", recipient="@bob", amount=10, description="review my contract",
            escrow_id="esc-1", timeout_hours=48,
            from_wallet_key_material=key_material, to_address=recipient,
        ))

    def test_create_returns_pending_without_waiting(self, dispatcher, chain, key_material, recipient):
        result = self._create(dispatcher, key_material, recipient)

        assert result.status == TxState.PENDING
        assert result.escrow_id == normalize_request_id("esc-1")
        approve, create = chain.sent
        assert approve.args == (ESCROW, 10_000_000)
        assert create.function == "createEscrow"
        assert create.args[3] == "expert_help"
        # only the approval was waited on
        assert chain.waited == [result.approval_tx_hash]
        assert result.tx_hash not in chain.waited

    def test_create_submission_failure(self, dispatcher, chain, key_material, recipient):
        chain.fail_send_on.add("createEscrow")
        with pytest.raises(EscrowCreationFailed):
            self._create(dispatcher, key_material, recipient)

    def test_complete_reads_released_amount_from_event(self, dispatcher, chain, key_material):
        chain.events["EscrowCompleted"] = {"amount": 9_750_000}
        result = run(dispatcher.complete_escrow("esc-1", "@alice", key_material))
        assert result.amount_released == Decimal("9.75")
        assert result.block_number == 100
        assert chain.waited == [result.tx_hash]

    def test_complete_without_event_reports_zero(self, dispatcher, key_material):
        result = run(dispatcher.complete_escrow("esc-1", "@alice", key_material))
        assert result.amount_released == 0

    def test_complete_revert(self, dispatcher, chain, key_material):
        chain.revert_on.add("completeEscrow")
        with pytest.raises(EscrowCompletionFailed):
            run(dispatcher.complete_escrow("esc-1", "@alice", key_material))

    def test_complete_receipt_without_block_number(self, dispatcher, chain, key_material):
        chain.unmined_on.add("completeEscrow")
        with pytest.raises(EscrowCompletionFailed) as exc:
            run(dispatcher.complete_escrow("esc-1", "@alice", key_material))
        assert not isinstance(exc.value, ConfirmationTimeout)

    def test_dispute(self, dispatcher, chain, key_material):
        result = run(dispatcher.dispute_escrow("esc-1", key_material))
        assert result.action == "dispute"
        assert chain.sent[0].function == "disputeEscrow"

    def test_get_escrow_missing(self, dispatcher):
        with pytest.raises(EscrowNotFound):
            run(dispatcher.get_escrow("esc-404"))

    def test_get_escrow(self, dispatcher, chain, recipient):
        key = bytes.fromhex(normalize_request_id("esc-1")[2:])
        chain.escrows[key] = (recipient, recipient, 10_000_000, "q", "expert_help", 1, 2, 2)
        info = run(dispatcher.get_escrow("esc-1"))
        assert info.amount == Decimal(10)
        assert info.status == EscrowStatus.DISPUTED

    def test_get_escrow_unknown_status_code(self, dispatcher, chain, recipient):
        key = bytes.fromhex(normalize_request_id("esc-1")[2:])
        chain.escrows[key] = (recipient, recipient, 10_000_000, "q", "expert_help", 1, 2, 9)
        with pytest.raises(ChainUnavailable) as exc:
            run(dispatcher.get_escrow("esc-1"))
        assert "9" in str(exc.value)


class TestReads:
    def test_status_pending_when_unmined(self, dispatcher):
        assert run(dispatcher.get_transaction_status("0xabc")).status == TxState.PENDING

    def test_status_confirmed_and_failed(self, dispatcher, chain):
        chain.receipts["0x1"] = {"status": 1, "blockNumber": 7}
        chain.receipts["0x2"] = {"status": 0, "blockNumber": 8}
        ok = run(dispatcher.get_transaction_status("0x1"))
        assert ok.status == TxState.CONFIRMED
        assert ok.block_number == 7
        assert run(dispatcher.get_transaction_status("0x2")).status == TxState.FAILED

    def test_status_rpc_error_is_not_raised(self, dispatcher, chain):
        chain.rpc_down = True
        status = run(dispatcher.get_transaction_status("0x1"))
        assert status.status == TxState.ERROR
        assert "rpc down" in status.error

    def test_balance(self, dispatcher, chain, recipient):
        chain.balance = 12_340_000
        assert run(dispatcher.balance_of(recipient)) == Decimal("12.34")

    def test_status_report(self, dispatcher, chain):
        status = run(dispatcher.get_status())
        assert status["connected"] is True
        assert status["chain_id"] == 84532
        chain.rpc_down = True
        assert run(dispatcher.get_status())["connected"] is False

    def test_status_counts_transactions_and_keeps_last_error(
            self, dispatcher, chain, key_material, recipient):
        status = run(dispatcher.get_status())
        assert status["tx_count"] == 0
        assert status["last_error"] is None

        chain.allowance = 10**12
        run(dispatcher.tip(
            sender="@alice", recipient="@bob", amount=1, message="",
            request_id="req-1", from_wallet_key_material=key_material, to_address=recipient,
        ))
        assert run(dispatcher.get_status())["tx_count"] == 1

        chain.revert_on.add("completeEscrow")
        with pytest.raises(EscrowCompletionFailed):
            run(dispatcher.complete_escrow("esc-1", "@alice", key_material))
        status = run(dispatcher.get_status())
        assert status["tx_count"] == 2
        assert "completeEscrow" in status["last_error"]
        assert "reverted" in status["last_error"]

    def test_status_records_rejected_submission(self, dispatcher, chain, key_material):
        chain.fail_send_on.add("disputeEscrow")
        with pytest.raises(EscrowActionFailed):
            run(dispatcher.dispute_escrow("esc-1", key_material))
        status = run(dispatcher.get_status())
        assert status["tx_count"] == 0
        assert status["last_error"].startswith("disputeEscrow")


class TestAutoCompleteAndPayments:
    def test_auto_complete(self, dispatcher, chain, key_material):
        chain.events["EscrowAutoCompleted"] = {"amount": 4_875_000}
        result = run(dispatcher.auto_complete_escrow("esc-1", key_material))
        assert chain.sent[0].function == "autoCompleteEscrow"
        assert result.amount_released == Decimal("4.875")

    def test_auto_complete_timeout(self, dispatcher, chain, key_material):
        chain.timeout_on.add("autoCompleteEscrow")
        with pytest.raises(EscrowActionTimeout):
            run(dispatcher.auto_complete_escrow("esc-1", key_material))

    def test_unknown_payment(self, dispatcher):
        assert run(dispatcher.get_payment("req-404")) is None
