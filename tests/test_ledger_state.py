"""
Tests for the in-process ledger state machine: admission rules, block
production and the append-only batch record.
"""

from dataclasses import replace
from datetime import date, timedelta

import pytest

from pharmatrace.ledger import LedgerNodeError, LedgerStateMachine, Signer, TransactionRequest
from pharmatrace.ledger.types import INTRINSIC_GAS, OP_CREATE, OP_DISTRIBUTE, OP_RECALL, SignedTransaction


def batch_args(expiry=None, **overrides):
    args = {
        "name": "Paracetamol 500mg",
        "active_ingredient": "Paracetamol",
        "manufacturer_id": "MFR-002",
        "batch_number": "LOT-77",
        "production_date": "2024-01-01",
        "expiry_date": (expiry or date.today() + timedelta(days=365)).isoformat(),
        "quality_test_result": "passed",
    }
    args.update(overrides)
    return args


@pytest.fixture
def state():
    return LedgerStateMachine(chain_id="pharmatrace-dev")


@pytest.fixture
def signer():
    return Signer.generate()


@pytest.fixture
def make_tx(signer, state):
    def factory(op, batch_id, args, nonce, gas_price=None, gas_limit=None, chain_id=None):
        return signer.sign(TransactionRequest(
            op=op,
            batch_id=batch_id,
            args=args,
            sender=signer.address,
            nonce=nonce,
            gas_limit=gas_limit or INTRINSIC_GAS[op],
            gas_price=gas_price or state.base_fee,
            chain_id=chain_id or state.chain_id,
        ))
    return factory


def send_and_mine(state, tx):
    tx_hash = state.submit(tx)
    state.mine()
    return state.get_receipt(tx_hash)


class TestAdmission:
    """Node-level refusals come back as raw messages."""

    def test_nonce_too_low(self, state, make_tx):
        send_and_mine(state, make_tx(OP_CREATE, "B1", batch_args(), nonce=0))
        with pytest.raises(LedgerNodeError, match="nonce too low"):
            state.submit(make_tx(OP_CREATE, "B2", batch_args(), nonce=0))

    def test_fee_below_base_fee(self, state, make_tx):
        with pytest.raises(LedgerNodeError, match="less than block base fee"):
            state.submit(make_tx(OP_CREATE, "B1", batch_args(), nonce=0, gas_price=state.base_fee - 1))

    def test_intrinsic_gas_too_low(self, state, make_tx):
        with pytest.raises(LedgerNodeError, match="intrinsic gas too low"):
            state.submit(make_tx(OP_CREATE, "B1", batch_args(), nonce=0, gas_limit=21_000))

    def test_wrong_chain(self, state, make_tx):
        with pytest.raises(LedgerNodeError, match="invalid chain id"):
            state.submit(make_tx(OP_CREATE, "B1", batch_args(), nonce=0, chain_id="other-chain"))

    def test_tampered_transaction_rejected(self, state, make_tx):
        tx = make_tx(OP_CREATE, "B1", batch_args(), nonce=0)
        forged = SignedTransaction(
            request=replace(tx.request, batch_id="B2"),
            public_key=tx.public_key,
            signature=tx.signature,
        )
        with pytest.raises(LedgerNodeError, match="invalid sender signature"):
            state.submit(forged)

    def test_replacement_needs_ten_percent_more(self, state, make_tx):
        original = make_tx(OP_CREATE, "B1", batch_args(), nonce=0, gas_price=1000)
        state.submit(original)

        with pytest.raises(LedgerNodeError, match="replacement transaction underpriced"):
            state.submit(make_tx(OP_CREATE, "B1", batch_args(), nonce=0, gas_price=1050))

        replacement = make_tx(OP_CREATE, "B1", batch_args(), nonce=0, gas_price=1100)
        state.submit(replacement)
        assert state.get_transaction(original.tx_hash) is None
        assert state.is_pending(replacement.tx_hash)

        state.mine()
        assert state.get_receipt(replacement.tx_hash).status is True
        assert state.get_receipt(original.tx_hash) is None


class TestBlockProduction:

    def test_nonce_gap_waits(self, state, make_tx):
        """Test a later nonce is held until the gap is filled."""
        second = make_tx(OP_CREATE, "B2", batch_args(), nonce=1)
        state.submit(second)
        state.mine()
        assert state.get_receipt(second.tx_hash) is None
        assert state.transaction_count(second.sender) == 0

        first = make_tx(OP_CREATE, "B1", batch_args(), nonce=0)
        state.submit(first)
        state.mine()
        assert state.get_receipt(first.tx_hash).nonce == 0
        assert state.get_receipt(second.tx_hash).nonce == 1
        assert state.transaction_count(second.sender) == 2

    def test_pending_count_includes_contiguous_pool(self, state, make_tx, signer):
        state.submit(make_tx(OP_CREATE, "B1", batch_args(), nonce=0))
        state.submit(make_tx(OP_CREATE, "B2", batch_args(), nonce=1))
        assert state.transaction_count(signer.address, pending=False) == 0
        assert state.transaction_count(signer.address, pending=True) == 2

    def test_base_fee_rise_holds_underpriced(self, state, make_tx):
        tx = make_tx(OP_CREATE, "B1", batch_args(), nonce=0, gas_price=1000)
        state.submit(tx)
        state.set_base_fee(2000)
        state.mine()
        assert state.is_pending(tx.tx_hash)

    def test_dropped_transaction_is_forgotten(self, state, make_tx):
        tx = make_tx(OP_CREATE, "B1", batch_args(), nonce=0)
        state.submit(tx)
        assert state.drop(tx.tx_hash) is True
        assert state.get_transaction(tx.tx_hash) is None
        state.mine()
        assert state.get("B1") is None


class TestBatchRecords:

    def test_create_and_get(self, state, make_tx, signer):
        receipt = send_and_mine(state, make_tx(OP_CREATE, "B1", batch_args(), nonce=0))
        assert receipt.status is True

        record = state.get("B1")
        assert record.owner == signer.address
        assert record.production_date == date(2024, 1, 1)
        assert record.event_count == 1
        assert record.events[0].tx_hash == receipt.tx_hash
        assert len(record.data_hash) == 64

    def test_duplicate_create_reverts_and_consumes_nonce(self, state, make_tx, signer):
        send_and_mine(state, make_tx(OP_CREATE, "B1", batch_args(), nonce=0))
        receipt = send_and_mine(state, make_tx(OP_CREATE, "B1", batch_args(name="Other"), nonce=1))

        assert receipt.status is False
        assert receipt.revert_reason.startswith("DuplicateBatch")
        assert state.transaction_count(signer.address) == 2
        assert state.get("B1").name == "Paracetamol 500mg"

    def test_create_with_missing_field_reverts(self, state, make_tx):
        receipt = send_and_mine(state, make_tx(OP_CREATE, "B1", batch_args(name=""), nonce=0))
        assert receipt.status is False
        assert "InvalidBatch" in receipt.revert_reason

    def test_recall_unknown_batch(self, state, make_tx):
        receipt = send_and_mine(state, make_tx(OP_RECALL, "nope", {"reason": "x"}, nonce=0))
        assert receipt.status is False
        assert receipt.revert_reason.startswith("NotFound")

    def test_recall_appends_new_version(self, state, make_tx):
        send_and_mine(state, make_tx(OP_CREATE, "B1", batch_args(), nonce=0))
        send_and_mine(state, make_tx(OP_RECALL, "B1", {"reason": "contamination"}, nonce=1))

        versions = state.versions("B1")
        assert [v.version for v in versions] == [1, 2]
        assert versions[0].is_recalled is False
        assert versions[1].is_recalled is True
        assert versions[1].recall_reason == "contamination"
        assert [e.action for e in state.events("B1")] == [OP_CREATE, OP_RECALL]

    def test_recall_is_idempotent(self, state, make_tx):
        send_and_mine(state, make_tx(OP_CREATE, "B1", batch_args(), nonce=0))
        send_and_mine(state, make_tx(OP_RECALL, "B1", {"reason": "contamination"}, nonce=1))
        receipt = send_and_mine(state, make_tx(OP_RECALL, "B1", {"reason": "contamination"}, nonce=2))

        assert receipt.status is True
        assert state.get("B1").version == 2
        assert state.get("B1").event_count == 2

    def test_recall_with_new_reason_updates_reason_only(self, state, make_tx):
        send_and_mine(state, make_tx(OP_CREATE, "B1", batch_args(), nonce=0))
        send_and_mine(state, make_tx(OP_RECALL, "B1", {"reason": "contamination"}, nonce=1))
        send_and_mine(state, make_tx(OP_RECALL, "B1", {"reason": "mislabelled"}, nonce=2))

        record = state.get("B1")
        assert record.recall_reason == "mislabelled"
        assert record.version == 3
        assert record.event_count == 2

    def test_distribution_appends_event(self, state, make_tx):
        send_and_mine(state, make_tx(OP_CREATE, "B1", batch_args(), nonce=0))
        details = {"to": "Nairobi Central Pharmacy", "location": "Nairobi", "status": "shipped", "notes": ""}
        send_and_mine(state, make_tx(OP_DISTRIBUTE, "B1", details, nonce=1))

        record = state.get("B1")
        assert record.event_count == 2
        assert record.events[-1].details == details
        assert record.is_recalled is False

    def test_events_have_global_sequence(self, state, make_tx):
        send_and_mine(state, make_tx(OP_CREATE, "B1", batch_args(), nonce=0))
        send_and_mine(state, make_tx(OP_CREATE, "B2", batch_args(), nonce=1))
        send_and_mine(state, make_tx(OP_RECALL, "B1", {"reason": "x"}, nonce=2))
        assert [e.sequence for e in state.events()] == [1, 2, 3]


class TestStats:

    def test_stats_counts(self, state, make_tx):
        today = date.today()
        send_and_mine(state, make_tx(OP_CREATE, "ACTIVE", batch_args(), nonce=0))
        send_and_mine(state, make_tx(OP_CREATE, "OLD", batch_args(expiry=today - timedelta(days=1)), nonce=1))
        send_and_mine(state, make_tx(OP_CREATE, "BAD", batch_args(expiry=today - timedelta(days=1)), nonce=2))
        send_and_mine(state, make_tx(OP_RECALL, "BAD", {"reason": "x"}, nonce=3))

        stats = state.stats(today=today)
        assert stats.as_dict() == {"total": 3, "active": 1, "recalled": 1, "expired": 1}
