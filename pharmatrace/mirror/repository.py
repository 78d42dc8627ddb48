"""
Mirror persistence.

Every update goes through ``MirrorRepository._write``: load the row, apply a
mutation, commit. A concurrent writer bumps ``version`` first and our UPDATE
fails with ``StaleDataError``; the row is then reloaded and the mutation
re-applied, a bounded number of times.
"""

import inspect
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from pharmatrace.errors import DuplicateBatchError, MirrorConflictError
from pharmatrace.ledger.types import DISPLAY_FIELDS, OP_CREATE, OP_RECALL, utcnow
from pharmatrace.mirror.models import (
    STATE_CONFIRMED,
    STATE_FAILED,
    STATE_PENDING,
    TX_CONFIRMED,
    TX_DROPPED,
    TX_FAILED,
    TX_PENDING,
    TX_REPLACED,
    MirrorRecord,
    MirrorTransaction,
)
from pharmatrace.submitter import Confirmed, Deferred, Rejected

logger = logging.getLogger(__name__)

# Returned by a mutation to leave the row untouched.
SKIP = object()


def ledger_block_height(ledger_record) -> int | None:
    """Height of the newest event applied to a ledger record."""
    heights = [event.block_number for event in ledger_record.events]
    return max(heights) if heights else None


class MirrorRepository:

    def __init__(self, session_maker, max_attempts=5):
        self.session_maker = session_maker
        self.max_attempts = max_attempts

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, identifier) -> MirrorRecord | None:
        """Look a row up by ledger id, falling back to the requested batch id."""
        async with self.session_maker() as session:
            return await session.scalar(
                select(MirrorRecord).where(
                    or_(MirrorRecord.ledger_id == identifier, MirrorRecord.batch_id == identifier)
                ).order_by(MirrorRecord.ledger_id.is_(None))
            )

    async def get_by_ledger_id(self, ledger_id) -> MirrorRecord | None:
        async with self.session_maker() as session:
            return await session.scalar(select(MirrorRecord).where(MirrorRecord.ledger_id == ledger_id))

    async def stale_pending(self, cutoff) -> list[MirrorRecord]:
        """Pending rows untouched since ``cutoff``."""
        async with self.session_maker() as session:
            result = await session.scalars(
                select(MirrorRecord)
                .where(MirrorRecord.state == STATE_PENDING, MirrorRecord.updated_at < cutoff)
                .order_by(MirrorRecord.updated_at)
            )
            return list(result)

    async def failed_creates(self) -> list[MirrorRecord]:
        async with self.session_maker() as session:
            result = await session.scalars(
                select(MirrorRecord).where(
                    MirrorRecord.state == STATE_FAILED,
                    MirrorRecord.ledger_id.is_(None),
                    MirrorRecord.pending_action == OP_CREATE,
                )
            )
            return list(result)

    async def list_transactions(self, page=1, limit=20, status=None) -> tuple[list[dict], int]:
        """Transaction history across all rows, newest first."""
        query = select(MirrorTransaction, MirrorRecord.batch_id).join(MirrorRecord)
        count_query = select(func.count(MirrorTransaction.id))
        if status:
            query = query.where(MirrorTransaction.status == status)
            count_query = count_query.where(MirrorTransaction.status == status)

        async with self.session_maker() as session:
            total = await session.scalar(count_query)
            rows = await session.execute(
                query.order_by(MirrorTransaction.submitted_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            items = [{"batch_id": batch_id, **tx.to_dict()} for tx, batch_id in rows]
        return items, total

    # =========================================================================
    # WRITES
    # =========================================================================

    async def create_pending(self, batch_id, fields) -> MirrorRecord:
        record = MirrorRecord(
            batch_id=batch_id,
            state=STATE_PENDING,
            pending_action=OP_CREATE,
            **{name: fields[name] for name in DISPLAY_FIELDS},
        )
        async with self.session_maker() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateBatchError(batch_id)
            await session.refresh(record, ["transactions"])
        logger.info(f"Mirror row {batch_id} created pending", extra={'batch_id': batch_id})
        return record

    async def _write(self, batch_id, mutate) -> MirrorRecord | None:
        """Apply ``mutate(record, session)`` with optimistic retries.

        ``mutate`` may be a coroutine function and returns ``SKIP`` to leave
        the row alone. Returns the row, or None when it does not exist.
        """
        for attempt in range(1, self.max_attempts + 1):
            async with self.session_maker() as session:
                record = await session.scalar(select(MirrorRecord).where(MirrorRecord.batch_id == batch_id))
                if record is None:
                    return None

                result = mutate(record, session)
                if inspect.isawaitable(result):
                    result = await result
                if result is SKIP:
                    return record

                record.updated_at = utcnow()
                try:
                    await session.commit()
                    return record
                except StaleDataError:
                    await session.rollback()
                    logger.info(
                        f"Mirror row {batch_id} changed concurrently, retrying (attempt {attempt})",
                        extra={'batch_id': batch_id, 'attempt': attempt}
                    )

        logger.error(
            f"Mirror write for {batch_id} lost {self.max_attempts} optimistic retries",
            extra={'batch_id': batch_id}
        )
        raise MirrorConflictError(f"Concurrent updates to {batch_id} exhausted {self.max_attempts} retries")

    async def mark_pending(self, batch_id, action, args=None) -> MirrorRecord | None:
        """A new write was accepted for an existing row."""
        def mutate(record, session):
            record.state = STATE_PENDING
            record.pending_action = action
            record.pending_args = args
            record.error_detail = None
            record.resubmit_count = 0
            record.needs_attention = False

        return await self._write(batch_id, mutate)

    async def record_broadcast(self, batch_id, action, tx_ref, nonce=None, gas_price=None, replaces=None):
        def mutate(record, session):
            known = {tx.tx_ref: tx for tx in record.transactions}
            if replaces in known and known[replaces].status == TX_PENDING:
                known[replaces].status = TX_REPLACED
            if tx_ref in known:
                return None
            record.transactions.append(MirrorTransaction(
                tx_ref=tx_ref,
                action=action,
                nonce=nonce,
                gas_price=gas_price,
                status=TX_PENDING,
                submitted_at=utcnow(),
            ))

        return await self._write(batch_id, mutate)

    async def mark_transaction(self, batch_id, tx_ref, status) -> MirrorRecord | None:
        def mutate(record, session):
            for tx in record.transactions:
                if tx.tx_ref == tx_ref and tx.status != status:
                    tx.status = status
                    return None
            return SKIP

        return await self._write(batch_id, mutate)

    async def apply_outcome(self, batch_id, action, outcome, args=None) -> MirrorRecord | None:
        """Resolve a row from a submitter outcome."""
        args = args or {}

        def mutate(record, session):
            if isinstance(outcome, Confirmed):
                _merge_history(record, outcome.history, action)
                if record.block_height is not None and outcome.block_height < record.block_height:
                    logger.info(
                        f"Dropping superseded outcome for {batch_id} at block {outcome.block_height}",
                        extra={'batch_id': batch_id, 'block_height': outcome.block_height, 'held': record.block_height}
                    )
                    return None
                record.state = STATE_CONFIRMED
                record.ledger_id = outcome.ledger_id
                record.block_height = outcome.block_height
                record.pending_action = None
                record.pending_args = None
                record.error_detail = None
                record.needs_attention = False
                if action == OP_RECALL:
                    record.is_recalled = True
                    record.recall_reason = args.get("reason")

            elif isinstance(outcome, Rejected):
                _set_tx_status(record, outcome.tx_hash, TX_FAILED)
                reason = outcome.reason.value if outcome.reason is not None else "Reverted"
                record.error_detail = f"{reason}: {outcome.detail}"
                if record.ledger_id is not None:
                    # The batch itself still exists on the ledger.
                    record.state = STATE_CONFIRMED
                    record.pending_action = None
                    record.pending_args = None
                else:
                    record.state = STATE_FAILED

            elif isinstance(outcome, Deferred):
                record.state = STATE_PENDING
                record.error_detail = outcome.detail

        record = await self._write(batch_id, mutate)
        if record is not None:
            logger.info(
                f"Mirror row {batch_id} is {record.state} after {action}",
                extra={'batch_id': batch_id, 'state': record.state, 'outcome': type(outcome).__name__}
            )
        return record

    async def apply_ledger_truth(self, batch_id, ledger_record, owner=None) -> MirrorRecord | None:
        """Promote a row to ``confirmed`` from the ledger's own record.

        Ledger truth wins for safety fields. A row already holding a higher
        block height is left alone.
        """
        height = ledger_block_height(ledger_record)

        def mutate(record, session):
            if record.block_height is not None and height is not None and height < record.block_height:
                return SKIP
            record.state = STATE_CONFIRMED
            record.ledger_id = ledger_record.batch_id
            record.block_height = height
            record.is_recalled = ledger_record.is_recalled
            record.recall_reason = ledger_record.recall_reason
            record.pending_action = None
            record.pending_args = None
            record.error_detail = None
            record.needs_attention = False

            by_ref = {tx.tx_ref: tx for tx in record.transactions}
            for event in ledger_record.events:
                tx = by_ref.get(event.tx_hash)
                if tx is None:
                    record.transactions.append(MirrorTransaction(
                        tx_ref=event.tx_hash,
                        action=event.action,
                        status=TX_CONFIRMED,
                        submitted_at=event.timestamp,
                        confirmed_at=event.timestamp,
                        block_height=event.block_number,
                    ))
                elif tx.status != TX_CONFIRMED:
                    tx.status = TX_CONFIRMED
                    tx.confirmed_at = event.timestamp
                    tx.block_height = event.block_number
            for tx in record.transactions:
                if tx.status == TX_PENDING:
                    tx.status = TX_DROPPED

        return await self._write(batch_id, mutate)

    async def note_resubmit(self, batch_id) -> MirrorRecord | None:
        def mutate(record, session):
            record.resubmit_count += 1

        return await self._write(batch_id, mutate)

    async def mark_failed(self, batch_id, detail, needs_attention=False) -> MirrorRecord | None:
        def mutate(record, session):
            record.state = STATE_FAILED if record.ledger_id is None else STATE_CONFIRMED
            record.error_detail = detail
            record.needs_attention = needs_attention
            if record.ledger_id is not None:
                record.pending_action = None
                record.pending_args = None

        return await self._write(batch_id, mutate)


def _set_tx_status(record, tx_ref, status):
    for tx in record.transactions:
        if tx.tx_ref == tx_ref:
            tx.status = status


def _merge_history(record, history, action):
    by_ref = {tx.tx_ref: tx for tx in record.transactions}
    for entry in history:
        tx = by_ref.get(entry.tx_ref)
        if tx is None:
            tx = MirrorTransaction(tx_ref=entry.tx_ref, action=action, submitted_at=entry.submitted_at)
            record.transactions.append(tx)
        tx.nonce = entry.nonce
        tx.status = TX_CONFIRMED
        tx.confirmed_at = entry.confirmed_at
        tx.block_height = entry.block_height
