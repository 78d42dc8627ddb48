"""
Tests for the SQLAlchemy mirror: optimistic versioning, outcome application
and transaction history.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from pharmatrace.errors import DuplicateBatchError, LedgerFailure, MirrorConflictError
from pharmatrace.mirror import MirrorRecord
from pharmatrace.submitter import Confirmed, Deferred, HistoryEntry, Rejected

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def confirmed(batch_id, tx_hash, block_height, nonce=0):
    entry = HistoryEntry(
        tx_ref=tx_hash,
        action="create",
        nonce=nonce,
        submitted_at=NOW,
        confirmed_at=NOW,
        block_height=block_height,
    )
    return Confirmed(ledger_id=batch_id, tx_hash=tx_hash, nonce=nonce, block_height=block_height, history=(entry,))


class TestCreatePending:

    @pytest.mark.asyncio
    async def test_row_starts_pending(self, repository, make_fields):
        record = await repository.create_pending("D1", make_fields("D1"))

        assert record.state == "pending"
        assert record.pending_action == "create"
        assert record.ledger_id is None
        assert record.version == 1

    @pytest.mark.asyncio
    async def test_duplicate_batch_id_rejected(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        with pytest.raises(DuplicateBatchError):
            await repository.create_pending("D1", make_fields("D1"))


class TestOptimisticVersioning:

    @pytest.mark.asyncio
    async def test_stale_write_raises(self, repository, session_maker, make_fields):
        await repository.create_pending("D1", make_fields("D1"))

        async with session_maker() as first, session_maker() as second:
            a = await first.scalar(select(MirrorRecord).where(MirrorRecord.batch_id == "D1"))
            b = await second.scalar(select(MirrorRecord).where(MirrorRecord.batch_id == "D1"))

            a.error_detail = "first"
            await first.commit()

            b.error_detail = "second"
            with pytest.raises(StaleDataError):
                await second.commit()

    @pytest.mark.asyncio
    async def test_write_retries_after_concurrent_update(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        attempts = []

        async def mutate(record, session):
            attempts.append(record.version)
            if len(attempts) == 1:
                # Another writer gets in between our read and our commit.
                await repository.mark_pending("D1", "recall", {"reason": "x"})
            record.error_detail = "ours"

        record = await repository._write("D1", mutate)

        assert attempts == [1, 2]
        assert record.error_detail == "ours"
        assert record.pending_action == "recall"
        assert record.version == 3

    @pytest.mark.asyncio
    async def test_write_gives_up_when_always_stale(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))

        async def mutate(record, session):
            await repository.mark_pending("D1", "recall", {"reason": "x"})
            record.error_detail = "never lands"

        with pytest.raises(MirrorConflictError):
            await repository._write("D1", mutate)

    @pytest.mark.asyncio
    async def test_version_only_advances(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        versions = []
        for detail in ("a", "b", "c"):
            record = await repository.mark_failed("D1", detail)
            versions.append(record.version)
        assert versions == sorted(versions)
        assert len(set(versions)) == 3


class TestApplyOutcome:

    @pytest.mark.asyncio
    async def test_confirmed_create(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        await repository.record_broadcast("D1", "create", "0xaaa", nonce=0, gas_price=1000)
        record = await repository.apply_outcome("D1", "create", confirmed("D1", "0xaaa", 4))

        assert record.state == "confirmed"
        assert record.ledger_id == "D1"
        assert record.block_height == 4
        assert record.pending_action is None
        assert [(tx.tx_ref, tx.status, tx.block_height) for tx in record.transactions] == [("0xaaa", "confirmed", 4)]

    @pytest.mark.asyncio
    async def test_confirmed_recall_sets_safety_fields(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        await repository.apply_outcome("D1", "create", confirmed("D1", "0xaaa", 1))
        await repository.mark_pending("D1", "recall", {"reason": "contamination"})
        record = await repository.apply_outcome(
            "D1", "recall", confirmed("D1", "0xbbb", 2, nonce=1), {"reason": "contamination"},
        )

        assert record.is_recalled is True
        assert record.recall_reason == "contamination"
        assert record.state == "confirmed"
        assert len(record.transactions) == 2

    @pytest.mark.asyncio
    async def test_lower_block_height_is_superseded(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        await repository.apply_outcome("D1", "recall", confirmed("D1", "0xnew", 9), {"reason": "late"})
        record = await repository.apply_outcome("D1", "create", confirmed("D1", "0xold", 3))

        assert record.block_height == 9
        assert record.is_recalled is True
        assert {tx.tx_ref for tx in record.transactions} == {"0xnew", "0xold"}

    @pytest.mark.asyncio
    async def test_rejected_create_fails_row(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        record = await repository.apply_outcome(
            "D1", "create", Rejected(LedgerFailure.DUPLICATE_BATCH, "DuplicateBatch: exists", "0xccc"),
        )

        assert record.state == "failed"
        assert record.error_detail.startswith("DuplicateBatch")

    @pytest.mark.asyncio
    async def test_rejected_recall_keeps_confirmed_batch(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        await repository.apply_outcome("D1", "create", confirmed("D1", "0xaaa", 1))
        await repository.mark_pending("D1", "recall", {"reason": "x"})
        record = await repository.apply_outcome("D1", "recall", Rejected(None, "out of gas"))

        assert record.state == "confirmed"
        assert record.is_recalled is False
        assert record.error_detail == "Reverted: out of gas"

    @pytest.mark.asyncio
    async def test_deferred_stays_pending(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        record = await repository.apply_outcome("D1", "create", Deferred("awaiting confirmation", "0xddd", 0))

        assert record.state == "pending"
        assert record.error_detail == "awaiting confirmation"


class TestTransactionHistory:

    @pytest.mark.asyncio
    async def test_broadcast_merged_by_tx_ref(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        await repository.record_broadcast("D1", "create", "0xaaa", nonce=0)
        record = await repository.record_broadcast("D1", "create", "0xaaa", nonce=0)
        assert len(record.transactions) == 1

    @pytest.mark.asyncio
    async def test_replacement_marks_old_transaction(self, repository, make_fields):
        await repository.create_pending("D1", make_fields("D1"))
        await repository.record_broadcast("D1", "create", "0xaaa", nonce=0, gas_price=1000)
        record = await repository.record_broadcast("D1", "create", "0xbbb", nonce=0, gas_price=1125, replaces="0xaaa")

        statuses = {tx.tx_ref: tx.status for tx in record.transactions}
        assert statuses == {"0xaaa": "replaced", "0xbbb": "pending"}
        assert record.pending_transaction().tx_ref == "0xbbb"

    @pytest.mark.asyncio
    async def test_list_transactions_paginates(self, repository, make_fields):
        for i in range(3):
            await repository.create_pending(f"D{i}", make_fields(f"D{i}"))
            await repository.record_broadcast(f"D{i}", "create", f"0x{i}", nonce=i)
        await repository.apply_outcome("D0", "create", confirmed("D0", "0x0", 1))

        items, total = await repository.list_transactions(page=1, limit=2)
        assert total == 3
        assert len(items) == 2

        pending, pending_total = await repository.list_transactions(status="pending")
        assert pending_total == 2
        assert {item["batch_id"] for item in pending} == {"D1", "D2"}
