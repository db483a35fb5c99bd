"""Tests for the JSON-backed treasury, wallet and ledger stores."""

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from eth_account import Account

from core.errors import TreasuryNotFound, ValidationError, WalletNotFound
from core.ledger import Ledger
from core.storage import atomic_write_json, normalize_handle, read_json
from core.treasury import TreasuryStore
from core.types import TxState
from core.wallet_store import WalletKeyStore


def test_normalize_handle():
    assert normalize_handle("@alice") == "alice"
    assert normalize_handle("  bob ") == "bob"
    assert normalize_handle(None) == ""
    assert normalize_handle("@Alice") == "alice"
    assert normalize_handle("ALICE") == normalize_handle("@alice")


def test_atomic_write_roundtrip(tmp_path):
    path = tmp_path / "nested" / "data.json"
    atomic_write_json(path, {"a": 1})
    assert read_json(path, None) == {"a": 1}
    assert read_json(tmp_path / "missing.json", []) == []
    assert [p.name for p in path.parent.iterdir()] == ["data.json"]


class TestTreasuryStore:
    RESET = datetime(2026, 1, 2, tzinfo=timezone.utc)

    def test_create_persists_and_reloads(self, tmp_path):
        store = TreasuryStore(tmp_path)
        store.create("@agent", "0xabc", Decimal("12.5"), reset_at=self.RESET,
                     initial_balance=Decimal(40))

        reloaded = TreasuryStore(tmp_path).get("agent")
        assert reloaded.daily_budget == Decimal("12.5")
        assert reloaded.current_balance == Decimal(40)
        assert reloaded.budget_reset_at == self.RESET

    def test_duplicate_rejected(self, tmp_path):
        store = TreasuryStore(tmp_path)
        store.create("agent", "0xabc", Decimal(10))
        with pytest.raises(ValidationError):
            store.create("@agent", "0xdef", Decimal(10))

    def test_missing(self, tmp_path):
        with pytest.raises(TreasuryNotFound):
            TreasuryStore(tmp_path).get("ghost")

    def test_get_returns_copy(self, tmp_path):
        store = TreasuryStore(tmp_path)
        store.create("agent", "0xabc", Decimal(10))
        store.get("agent").daily_spent = Decimal(9)
        assert store.get("agent").daily_spent == Decimal(0)

    def test_failed_update_writes_nothing(self, tmp_path):
        store = TreasuryStore(tmp_path)
        store.create("agent", "0xabc", Decimal(10))

        def _boom(t):
            t.daily_spent = Decimal(5)
            raise RuntimeError("downstream failed")

        with pytest.raises(RuntimeError):
            store.update("agent", _boom)
        assert store.get("agent").daily_spent == Decimal(0)
        assert TreasuryStore(tmp_path).get("agent").daily_spent == Decimal(0)

    def test_public_view_hides_credential(self, tmp_path):
        store = TreasuryStore(tmp_path)
        store.create("agent", "0xabc", Decimal(10))
        store.update("agent", lambda t: setattr(t, "session_key", "sk_secret"))
        view = store.get("agent").public_view()
        assert "session_key" not in view
        assert view["has_session_key"] is True

    def test_lock_per_handle(self, tmp_path):
        store = TreasuryStore(tmp_path)
        assert store.lock_for("@agent") is store.lock_for("agent")
        assert store.lock_for("agent") is not store.lock_for("other")

    def test_credit_adds_to_balance_and_earnings(self, tmp_path):
        store = TreasuryStore(tmp_path)
        store.create("agent", "0xabc", Decimal(10), initial_balance=Decimal(5))
        updated = store.credit("@Agent", Decimal("2.5"))
        assert updated.current_balance == Decimal("7.5")
        assert updated.total_earned == Decimal("2.5")
        assert TreasuryStore(tmp_path).get("agent").total_earned == Decimal("2.5")

    def test_credit_rejects_non_positive(self, tmp_path):
        store = TreasuryStore(tmp_path)
        store.create("agent", "0xabc", Decimal(10))
        with pytest.raises(ValidationError):
            store.credit("agent", Decimal(0))
        with pytest.raises(TreasuryNotFound):
            store.credit("ghost", Decimal(1))

    def test_mixed_case_handles_share_a_record(self, tmp_path):
        store = TreasuryStore(tmp_path)
        store.create("@Agent", "0xabc", Decimal(10))
        assert store.get("agent").handle == "agent"
        with pytest.raises(ValidationError):
            store.create("AGENT", "0xdef", Decimal(10))


class TestWalletKeyStore:
    def test_create_wallet_roundtrip(self, tmp_path):
        store = WalletKeyStore(tmp_path, secret="s3cret")
        address = store.create_wallet("@alice")

        material = json.loads(store.get_key_material("alice"))
        assert Account.from_key(material["privateKey"]).address == address
        assert store.require_address("alice") == address

    def test_material_encrypted_at_rest(self, tmp_path):
        store = WalletKeyStore(tmp_path, secret="s3cret")
        store.create_wallet("alice")
        key = json.loads(store.get_key_material("alice"))["privateKey"]
        on_disk = (tmp_path / "wallets.json").read_text()
        assert key[2:] not in on_disk

    def test_wrong_secret_cannot_decrypt(self, tmp_path):
        WalletKeyStore(tmp_path, secret="one").create_wallet("alice")
        with pytest.raises(WalletNotFound):
            WalletKeyStore(tmp_path, secret="two").get_key_material("alice")

    def test_duplicate_wallet(self, tmp_path):
        store = WalletKeyStore(tmp_path, secret="s3cret")
        store.create_wallet("alice")
        with pytest.raises(ValidationError):
            store.create_wallet("alice")

    def test_missing_wallet(self, tmp_path):
        store = WalletKeyStore(tmp_path, secret="s3cret")
        assert store.get_address("bob") is None
        with pytest.raises(WalletNotFound):
            store.require_address("bob")
        with pytest.raises(WalletNotFound):
            store.get_key_material("bob")


class TestLedger:
    def test_record_and_reload(self, tmp_path):
        ledger = Ledger(tmp_path)
        event = ledger.record("@alice", "tip_sent", Decimal("1.50"), tx_hash="0xaa",
                              tx_status=TxState.CONFIRMED, metadata={"to": "bob"})
        assert event.handle == "alice"
        assert event.amount == "1.50"
        assert event.confirmed_at is not None

        reloaded = Ledger(tmp_path)
        page, _ = reloaded.history("alice")
        assert page[0].metadata == {"to": "bob"}
        assert reloaded.record("alice", "tip_sent", 1).id == event.id + 1

    def test_unknown_event_type(self, tmp_path):
        with pytest.raises(ValueError):
            Ledger(tmp_path).record("alice", "refund", 1)

    def test_history_pages_newest_first(self, tmp_path):
        ledger = Ledger(tmp_path)
        for i in range(5):
            ledger.record("alice", "tip_sent", i + 1)
        ledger.record("bob", "tip_received", 9)

        first, cursor = ledger.history("alice", limit=2)
        assert [e.amount for e in first] == ["5", "4"]
        second, cursor = ledger.history("alice", limit=2, cursor=cursor)
        assert [e.amount for e in second] == ["3", "2"]
        last, cursor = ledger.history("alice", limit=2, cursor=cursor)
        assert [e.amount for e in last] == ["1"]
        assert cursor is None

    def test_bad_cursor(self, tmp_path):
        with pytest.raises(ValidationError):
            Ledger(tmp_path).history("alice", cursor="yesterday")

    def test_find_and_mark_escrow(self, tmp_path):
        ledger = Ledger(tmp_path)
        ledger.record("alice", "escrow_created", 10, tx_hash="0xcc",
                      metadata={"escrowId": "0xABC", "to": "bob"})

        assert ledger.find_escrow("0xabc").handle == "alice"
        assert ledger.find_escrow("0xabc", "@alice") is not None
        assert ledger.find_escrow("0xabc", "bob") is None

        ledger.mark_escrow("0xAbC", TxState.CONFIRMED, completed=True)
        row = ledger.find_escrow("0xabc")
        assert row.tx_status == "confirmed"
        assert row.metadata["completed"] is True
        assert row.metadata["to"] == "bob"

    def test_pending_and_set_status(self, tmp_path):
        ledger = Ledger(tmp_path)
        ledger.record("alice", "escrow_created", 10, tx_hash="0xdd")
        ledger.record("alice", "agent_spend", 1)          # no tx: never polled
        assert [e.tx_hash for e in ledger.pending()] == ["0xdd"]

        assert ledger.set_tx_status("0xDD", TxState.FAILED) == 1
        assert ledger.set_tx_status("0xdd", TxState.FAILED) == 0
        assert ledger.pending() == []

    def test_events_of_filters_by_type_newest_first(self, tmp_path):
        ledger = Ledger(tmp_path)
        ledger.record("agent", "agent_earn", 1, metadata={"earning_type": "tip"})
        ledger.record("agent", "agent_spend", 2)
        ledger.record("@Agent", "agent_earn", 3, metadata={"earning_type": "commission"})
        ledger.record("other", "agent_earn", 4)

        earns = ledger.events_of("agent", "agent_earn")
        assert [e.amount for e in earns] == ["3", "1"]
        assert [e.amount for e in ledger.events_of("AGENT", "agent_spend")] == ["2"]
