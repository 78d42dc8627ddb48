"""
Background reconciliation of the mirror against ledger truth.

Each cycle looks at rows left ``pending`` past the timeout and at ``failed``
creates, and either resolves them from the ledger or puts the write back
into the submitter queue. The ledger is never written to directly from here.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from pharmatrace.errors import (
    BatchNotFoundError,
    DuplicateBatchError,
    LedgerFailure,
    MirrorConflictError,
    TransientLedgerError,
    map_revert_reason,
)
from pharmatrace.ledger.types import (
    OP_CREATE,
    OP_DISTRIBUTE,
    OP_RECALL,
    display_hash,
    utcnow,
)
from pharmatrace.mirror.models import TX_DROPPED
from pharmatrace.submitter import Confirmed, HistoryEntry, Rejected

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    promoted: list[str] = field(default_factory=list)
    resubmitted: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "promoted": list(self.promoted),
            "resubmitted": list(self.resubmitted),
            "replaced": list(self.replaced),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
        }


class Reconciler:

    def __init__(self, repository, client, submitter, *, interval=60.0, pending_timeout=300.0,
                 max_resubmits=3, confirmations_required=1, clock=utcnow):
        self.repository = repository
        self.client = client
        self.submitter = submitter
        self.interval = interval
        self.pending_timeout = pending_timeout
        self.max_resubmits = max_resubmits
        self.confirmations_required = confirmations_required
        self._clock = clock
        self._task = None

    @classmethod
    def from_settings(cls, repository, client, submitter, settings) -> "Reconciler":
        return cls(
            repository,
            client,
            submitter,
            interval=settings.RECONCILE_INTERVAL_SECONDS,
            pending_timeout=settings.RECONCILE_PENDING_TIMEOUT_SECONDS,
            max_resubmits=settings.RECONCILE_MAX_RESUBMITS,
            confirmations_required=settings.CONFIRMATIONS_REQUIRED,
        )

    # -- lifecycle -------------------------------------------------------------

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="mirror-reconciler")
            logger.info(f"Reconciler started, every {self.interval}s", extra={'interval': self.interval})

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                report = await self.run_once()
                if any(report.as_dict().values()):
                    logger.info("Reconciliation cycle finished", extra=report.as_dict())
            except Exception:
                logger.exception("Reconciliation cycle failed")

    # -- one cycle -------------------------------------------------------------

    async def run_once(self) -> ReconcileReport:
        report = ReconcileReport()
        cutoff = self._clock() - timedelta(seconds=self.pending_timeout)

        for record in await self.repository.stale_pending(cutoff):
            if self.submitter.is_inflight(record.batch_id):
                continue
            try:
                await self._reconcile_pending(record, report)
            except (TransientLedgerError, MirrorConflictError) as e:
                logger.info(
                    f"Skipping {record.batch_id} this cycle: {e}",
                    extra={'batch_id': record.batch_id, 'error': str(e)}
                )
                report.skipped.append(record.batch_id)

        for record in await self.repository.failed_creates():
            try:
                await self._reconcile_failed(record, report)
            except (TransientLedgerError, MirrorConflictError) as e:
                logger.info(
                    f"Skipping failed row {record.batch_id} this cycle: {e}",
                    extra={'batch_id': record.batch_id, 'error': str(e)}
                )
                report.skipped.append(record.batch_id)

        return report

    async def _reconcile_pending(self, record, report):
        batch_id = record.batch_id
        action = record.pending_action or OP_CREATE
        tx = record.pending_transaction()
        refill_nonce = None

        if tx is not None:
            receipt = await self.client.get_receipt(tx.tx_ref)
            if receipt is not None:
                if receipt.status and await self.client.confirmations(receipt) < self.confirmations_required:
                    return
                outcome = self._outcome_from_receipt(receipt, tx)
                await self.repository.apply_outcome(batch_id, action, outcome, record.pending_args)
                (report.promoted if isinstance(outcome, Confirmed) else report.failed).append(batch_id)
                return

            pooled = await self.client.get_transaction(tx.tx_ref)
            if pooled is not None:
                if await self._give_up_if_exhausted(record, report):
                    return
                await self.repository.note_resubmit(batch_id)
                self.submitter.replace(pooled)
                logger.info(
                    f"Replacing stuck transaction {tx.tx_ref} for {batch_id}",
                    extra={'batch_id': batch_id, 'tx_hash': tx.tx_ref, 'nonce': pooled.nonce}
                )
                report.replaced.append(batch_id)
                return

            await self.repository.mark_transaction(batch_id, tx.tx_ref, TX_DROPPED)
            refill_nonce = tx.nonce
            logger.warning(
                f"Transaction {tx.tx_ref} for {batch_id} was dropped by the ledger",
                extra={'batch_id': batch_id, 'tx_hash': tx.tx_ref}
            )

        try:
            ledger_record = await self.client.get_batch(batch_id)
        except BatchNotFoundError:
            ledger_record = None

        if ledger_record is not None:
            if self._satisfies(action, ledger_record, record):
                await self.repository.apply_ledger_truth(batch_id, ledger_record)
                logger.info(
                    f"Promoted {batch_id} from ledger truth",
                    extra={'batch_id': batch_id, 'action': action}
                )
                report.promoted.append(batch_id)
                return
            if action == OP_CREATE:
                # Identifier taken on the ledger by a different record.
                await self.repository.apply_outcome(
                    batch_id, action,
                    Rejected(LedgerFailure.DUPLICATE_BATCH, "ledger holds a different record for this batch"),
                )
                report.failed.append(batch_id)
                return

        if await self._give_up_if_exhausted(record, report):
            return
        await self.repository.note_resubmit(batch_id)
        try:
            self._resubmit(action, record, nonce=refill_nonce)
        except DuplicateBatchError:
            report.skipped.append(batch_id)
            return
        logger.info(
            f"Resubmitted {action} for {batch_id} (attempt {record.resubmit_count + 1})",
            extra={'batch_id': batch_id, 'action': action, 'resubmit_count': record.resubmit_count + 1}
        )
        report.resubmitted.append(batch_id)

    async def _reconcile_failed(self, record, report):
        # Failed rows are only promoted, never resubmitted.
        try:
            ledger_record = await self.client.get_batch(record.batch_id)
        except BatchNotFoundError:
            return
        if self._satisfies(OP_CREATE, ledger_record, record):
            await self.repository.apply_ledger_truth(record.batch_id, ledger_record)
            logger.info(
                f"Promoted failed row {record.batch_id}: ledger holds our record",
                extra={'batch_id': record.batch_id}
            )
            report.promoted.append(record.batch_id)

    async def _give_up_if_exhausted(self, record, report) -> bool:
        if record.resubmit_count < self.max_resubmits:
            return False
        await self.repository.mark_failed(
            record.batch_id,
            f"{record.pending_action or OP_CREATE} still unresolved after {record.resubmit_count} resubmits",
            needs_attention=True,
        )
        logger.error(
            f"Giving up on {record.batch_id} after {record.resubmit_count} resubmits; operator attention needed",
            extra={'batch_id': record.batch_id, 'action': record.pending_action, 'resubmit_count': record.resubmit_count}
        )
        report.failed.append(record.batch_id)
        return True

    def _satisfies(self, action, ledger_record, record) -> bool:
        """Does the ledger already reflect the row's pending write?"""
        if action == OP_CREATE:
            if ledger_record.data_hash != display_hash(record):
                return False
            if ledger_record.owner in self.submitter.addresses:
                return True
            # Written by an earlier signer (e.g. an ephemeral dev key) whose tx we recorded.
            sent = {tx.tx_ref for tx in record.transactions}
            return any(
                event.action == OP_CREATE and event.tx_hash in sent
                for event in ledger_record.events
            )
        if action == OP_RECALL:
            return ledger_record.is_recalled
        if action == OP_DISTRIBUTE:
            expected = record.pending_args or {}
            return any(
                event.action == OP_DISTRIBUTE and event.details == expected
                for event in ledger_record.events
            )
        return False

    def _resubmit(self, action, record, nonce=None):
        # A dropped transaction is resubmitted into its own nonce so no gap is left.
        kwargs = {"nonce": nonce} if nonce is not None else {}
        if action == OP_CREATE:
            return self.submitter.enqueue_create(record.batch_id, record.display_fields(), **kwargs)
        args = record.pending_args or {}
        if action == OP_RECALL:
            return self.submitter.enqueue_recall(record.batch_id, args.get("reason"), **kwargs)
        return self.submitter.enqueue_distribution(record.batch_id, args, **kwargs)

    @staticmethod
    def _outcome_from_receipt(receipt, tx):
        if not receipt.status:
            return Rejected(map_revert_reason(receipt.revert_reason), receipt.revert_reason or "reverted", receipt.tx_hash)
        entry = HistoryEntry(
            tx_ref=receipt.tx_hash,
            action=receipt.op,
            nonce=receipt.nonce,
            submitted_at=tx.submitted_at,
            confirmed_at=receipt.timestamp,
            block_height=receipt.block_number,
        )
        return Confirmed(
            ledger_id=receipt.batch_id,
            tx_hash=receipt.tx_hash,
            nonce=receipt.nonce,
            block_height=receipt.block_number,
            history=(entry,),
        )
