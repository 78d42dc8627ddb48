"""
Service facade: wires ledger client, submitter, mirror, reconciler,
verification and QR codec, and exposes the operations the HTTP layer calls.
"""

import logging

from pydantic import ValidationError as PydanticValidationError

from pharmatrace.db import build_engine, build_session_maker, close_db, init_db
from pharmatrace.errors import BatchNotFoundError, DuplicateBatchError, ValidationError
from pharmatrace.ledger.client import LedgerClient
from pharmatrace.ledger.provider import load_provider
from pharmatrace.ledger.signing import Signer
from pharmatrace.ledger.types import OP_CREATE, OP_DISTRIBUTE, OP_RECALL
from pharmatrace.mirror.models import STATE_PENDING
from pharmatrace.mirror.reconciler import Reconciler
from pharmatrace.mirror.repository import MirrorRepository
from pharmatrace.qr import QRCodec
from pharmatrace.schemas import BatchCreate, DistributionRequest
from pharmatrace.submitter import SubmitterConfig, TransactionSubmitter
from pharmatrace.verification import VerificationEngine

logger = logging.getLogger(__name__)


def _validated(model, data):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(first.get("msg", "invalid input"), field=field) from e


class PendingHandle:
    """Returned as soon as a write is queued; the mirror row is already pending."""

    def __init__(self, batch_id, action, request):
        self.batch_id = batch_id
        self.action = action
        self.request = request

    @property
    def done(self) -> bool:
        return self.request.done

    async def wait(self, timeout=None):
        """Await ``Confirmed``, ``Rejected`` or ``Deferred``."""
        return await self.request.wait(timeout)


class ProvenanceService:

    def __init__(self, settings, *, provider=None, signer=None, session_maker=None, rng=None):
        self.settings = settings
        self.provider = provider or load_provider(settings)
        self.client = LedgerClient.from_settings(self.provider, settings)
        self.signer = signer or Signer.from_settings(settings)

        self._db_engine = None
        if session_maker is None:
            self._db_engine = build_engine(settings.DATABASE_URL, settings.SQLALCHEMY_ECHO)
            session_maker = build_session_maker(self._db_engine)
        self.repository = MirrorRepository(session_maker, settings.MIRROR_WRITE_MAX_ATTEMPTS)

        self.submitter = TransactionSubmitter(
            self.client,
            [self.signer],
            SubmitterConfig.from_settings(settings),
            on_broadcast=self._on_broadcast,
            on_outcome=self._on_outcome,
            rng=rng,
        )
        self.verifier = VerificationEngine(self.client, self.repository)
        self.qr = QRCodec(settings.QR_VERIFY_BASE_URL, self.verifier)
        self.reconciler = Reconciler.from_settings(self.repository, self.client, self.submitter, settings)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self):
        await self.provider.start()
        if self._db_engine is not None:
            logger.info("Initializing mirror database...")
            await init_db(self._db_engine)
        self.submitter.start()
        if self.settings.RECONCILE_ENABLED:
            self.reconciler.start()
        logger.info(
            f"Service started for signer {self.signer.address}",
            extra={'address': self.signer.address, 'network': self.settings.LEDGER_NETWORK}
        )

    async def stop(self):
        await self.reconciler.stop()
        await self.submitter.stop()
        await self.provider.close()
        if self._db_engine is not None:
            await close_db(self._db_engine)
        logger.info("Service stopped")

    # =========================================================================
    # SUBMITTER HOOKS
    # =========================================================================

    async def _on_broadcast(self, request, tx_hash, nonce, gas_price):
        await self.repository.record_broadcast(
            request.batch_id, request.op, tx_hash, nonce, gas_price, replaces=request.replaces,
        )

    async def _on_outcome(self, request, outcome):
        await self.repository.apply_outcome(request.batch_id, request.op, outcome, request.args)

    # =========================================================================
    # WRITES
    # =========================================================================

    async def enqueue_create(self, fields) -> PendingHandle:
        batch = _validated(BatchCreate, fields)
        self.submitter.reserve(OP_CREATE, batch.batch_id)
        try:
            await self.repository.create_pending(batch.batch_id, batch.model_dump())
        except Exception:
            self.submitter.release(batch.batch_id)
            raise
        request = self.submitter.enqueue_create(batch.batch_id, batch.ledger_fields(), reserved=True)
        return PendingHandle(batch.batch_id, OP_CREATE, request)

    async def _enqueue_update(self, op, identifier, args, enqueue) -> PendingHandle:
        record = await self.repository.get(identifier)
        # Updates need the create on the ledger; a pending create keeps its row.
        if record is None or record.ledger_id is None:
            raise BatchNotFoundError(identifier)
        batch_id = record.batch_id
        if record.state == STATE_PENDING:
            raise DuplicateBatchError(batch_id)
        self.submitter.reserve(op, batch_id)
        try:
            await self.repository.mark_pending(batch_id, op, args)
        except Exception:
            self.submitter.release(batch_id)
            raise
        return PendingHandle(batch_id, op, enqueue(batch_id, args))

    async def enqueue_recall(self, identifier, reason) -> PendingHandle:
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("A recall reason is required", field="reason")
        return await self._enqueue_update(
            OP_RECALL, identifier, {"reason": reason.strip()},
            lambda batch_id, args: self.submitter.enqueue_recall(batch_id, args["reason"], reserved=True),
        )

    async def enqueue_distribution(self, identifier, details) -> PendingHandle:
        details = _validated(DistributionRequest, details)
        return await self._enqueue_update(
            OP_DISTRIBUTE, identifier, details.model_dump(),
            lambda batch_id, args: self.submitter.enqueue_distribution(batch_id, args, reserved=True),
        )

    async def cancel(self, handle: PendingHandle) -> bool:
        """Cancel a write that has not been given a nonce yet."""
        if not self.submitter.cancel(handle.request):
            return False
        await self.repository.mark_failed(handle.batch_id, f"{handle.action} cancelled before submission")
        return True

    # =========================================================================
    # READS
    # =========================================================================

    async def get_batch(self, identifier):
        record = await self.repository.get(identifier)
        if record is None:
            raise BatchNotFoundError(identifier)
        return record

    async def verify(self, identifier):
        return await self.verifier.verify(identifier)

    async def verify_scan(self, text):
        return await self.qr.verify_scan(text)

    async def qr_code(self, identifier) -> dict:
        record = await self.get_batch(identifier)
        if record.ledger_id is None:
            return self.qr.render(record.batch_id, record, issued_at=record.created_at)
        ledger_record = await self.client.get_batch(record.ledger_id)
        return self.qr.render(ledger_record.batch_id, ledger_record, issued_at=ledger_record.created_at)

    async def stats(self):
        return await self.client.stats()

    async def list_transactions(self, page=1, limit=20, status=None):
        return await self.repository.list_transactions(page=page, limit=limit, status=status)

    async def transaction_status(self, tx_hash) -> dict:
        return await self.client.transaction_status(tx_hash)

    async def health(self) -> dict:
        queue = self.submitter.queue_for()
        return {
            "signer": self.signer.address,
            "network": self.settings.LEDGER_NETWORK,
            "chain_id": self.client.chain_id,
            "queue_depth": queue.depth,
        }


