"""
Transaction submitter.

Every write for a signer goes through that signer's ``SignerQueue``: one
``asyncio.Queue`` drained by one worker task, which is the only code that
reads or advances the signer's nonce. Callers get a ``WriteRequest`` back
immediately and may await its outcome.

Outcomes are closed: ``Confirmed``, ``Rejected`` (fatal, never retried) or
``Deferred`` (network-transient; the reconciler picks it up later).
"""

import asyncio
import json
import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime

from pharmatrace.errors import (
    DuplicateBatchError,
    FeeTooLowError,
    GasLimitTooLowError,
    LedgerFailure,
    NonceConflictError,
    TransientLedgerError,
    map_revert_reason,
)
from pharmatrace.ledger.types import (
    OP_CREATE,
    OP_DISTRIBUTE,
    OP_RECALL,
    TransactionRequest,
    canonical_json,
    utcnow,
)
from pharmatrace.retry import RetryPolicy

logger = logging.getLogger(__name__)


# ============================================================================
# OUTCOMES
# ============================================================================


@dataclass(frozen=True)
class HistoryEntry:
    tx_ref: str
    action: str
    nonce: int | None
    submitted_at: datetime
    confirmed_at: datetime | None = None
    block_height: int | None = None


@dataclass(frozen=True)
class Confirmed:
    ledger_id: str
    tx_hash: str
    nonce: int
    block_height: int
    history: tuple = ()
    state = "confirmed"


@dataclass(frozen=True)
class Rejected:
    reason: LedgerFailure | None
    detail: str
    tx_hash: str | None = None
    state = "failed"


@dataclass(frozen=True)
class Deferred:
    detail: str
    tx_hash: str | None = None
    nonce: int | None = None
    state = "pending"


# ============================================================================
# REQUESTS
# ============================================================================


@dataclass
class WriteRequest:
    op: str
    batch_id: str
    args: dict
    # Preset for replacements (outbid ``min_gas_price``) and for resubmitting
    # a dropped transaction into its own nonce.
    nonce: int | None = None
    replaces: str | None = None
    min_gas_price: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    future: asyncio.Future = field(default=None, repr=False)
    cancelled: bool = False
    allocated: bool = False

    def __post_init__(self):
        if self.future is None:
            self.future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self.future.done()

    async def wait(self, timeout=None):
        """Await the outcome without cancelling the request on timeout."""
        return await asyncio.wait_for(asyncio.shield(self.future), timeout)


@dataclass(frozen=True)
class SubmitterConfig:
    confirmations_required: int = 1
    confirmation_timeout: float = 60.0
    poll_interval: float = 0.5
    fee_bump_percent: float = 12.5
    gas_limit_margin: float = 1.2
    retry_policy: RetryPolicy = RetryPolicy()

    @classmethod
    def from_settings(cls, settings) -> "SubmitterConfig":
        return cls(
            confirmations_required=settings.CONFIRMATIONS_REQUIRED,
            confirmation_timeout=settings.CONFIRMATION_TIMEOUT_SECONDS,
            poll_interval=settings.CONFIRMATION_POLL_SECONDS,
            fee_bump_percent=settings.FEE_BUMP_PERCENT,
            gas_limit_margin=settings.GAS_LIMIT_MARGIN,
            retry_policy=RetryPolicy.from_settings(settings),
        )


# ============================================================================
# SINGLE-WRITER QUEUE
# ============================================================================


class SignerQueue:
    """Serializes nonce allocation, broadcast and confirmation for one signer."""

    def __init__(self, client, signer, config: SubmitterConfig, *, on_broadcast=None, on_done=None, rng=None):
        self.client = client
        self.signer = signer
        self.config = config
        self._on_broadcast = on_broadcast
        self._on_done = on_done
        self._rng = rng or random.Random()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._next_nonce: int | None = None
        self._worker: asyncio.Task | None = None

    @property
    def address(self) -> str:
        return self.signer.address

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def start(self):
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name=f"signer-queue-{self.address}")

    async def stop(self):
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        # Whatever is still queued stays pending for the reconciler.
        while not self._queue.empty():
            request = self._queue.get_nowait()
            if not request.done:
                await self._finish(request, Deferred("submitter stopped before broadcast"))
            self._queue.task_done()

    def put(self, request: WriteRequest):
        self._queue.put_nowait(request)

    async def drain(self):
        """Wait until every queued request is resolved and its hooks have run."""
        await self._queue.join()

    async def _run(self):
        while True:
            request = await self._queue.get()
            try:
                if request.cancelled:
                    continue
                try:
                    outcome = await self._process(request)
                except asyncio.CancelledError:
                    await self._finish(request, Deferred("submitter stopped during submission"))
                    raise
                except Exception as e:
                    logger.exception(
                        f"Unexpected submission error for {request.op} {request.batch_id}",
                        extra={'batch_id': request.batch_id, 'op': request.op}
                    )
                    outcome = Deferred(f"unexpected error: {e}")
                await self._finish(request, outcome)
            finally:
                self._queue.task_done()

    async def _finish(self, request, outcome):
        if not request.future.done():
            request.future.set_result(outcome)
        if self._on_done is not None:
            await self._on_done(request, outcome)

    async def _allocate_nonce(self) -> int:
        if self._next_nonce is None:
            self._next_nonce = await self.client.transaction_count(self.address, pending=True)
            logger.debug(
                f"Nonce for {self.address} synced at {self._next_nonce}",
                extra={'address': self.address, 'nonce': self._next_nonce}
            )
        return self._next_nonce

    def _bump(self, gas_price: int) -> int:
        return math.ceil(gas_price * (1 + self.config.fee_bump_percent / 100))

    async def _process(self, request: WriteRequest):
        request.allocated = True
        backoff = self.config.retry_policy.backoff(rng=self._rng)
        nonce = request.nonce
        # Only nonces taken from the local cursor advance it.
        from_cursor = nonce is None
        gas_limit = None
        bid = request.min_gas_price or 0
        signed = None
        last_error = None

        while True:
            backoff.begin()
            try:
                # A send that timed out may still have landed.
                if signed is not None and await self.client.get_transaction(signed.tx_hash) is not None:
                    tx_hash = signed.tx_hash
                    break

                if nonce is None:
                    nonce = await self._allocate_nonce()
                    from_cursor = True
                if gas_limit is None:
                    estimate = await self.client.estimate_gas(request.op, request.batch_id, request.args)
                    gas_limit = math.ceil(estimate * self.config.gas_limit_margin)
                gas_price = max(await self.client.gas_price(), bid)

                signed = self.signer.sign(TransactionRequest(
                    op=request.op,
                    batch_id=request.batch_id,
                    args=request.args,
                    sender=self.address,
                    nonce=nonce,
                    gas_limit=gas_limit,
                    gas_price=gas_price,
                    chain_id=self.client.chain_id,
                ))
                tx_hash = await self.client.send_transaction(signed)
                break
            except GasLimitTooLowError as e:
                last_error = e
                gas_limit = self._bump(gas_limit)
                signed = None
                logger.info(
                    f"Gas limit too low for {request.op} {request.batch_id}, raising to {gas_limit}",
                    extra={'batch_id': request.batch_id, 'nonce': nonce, 'gas_limit': gas_limit, 'attempt': backoff.attempt}
                )
            except FeeTooLowError as e:
                last_error = e
                bid = self._bump(signed.request.gas_price if signed is not None else max(bid, 1))
                logger.info(
                    f"Fee too low for {request.op} {request.batch_id}, bidding {bid}",
                    extra={'batch_id': request.batch_id, 'nonce': nonce, 'gas_price': bid, 'attempt': backoff.attempt}
                )
            except NonceConflictError as e:
                last_error = e
                if request.replaces is not None:
                    # The transaction being replaced was mined first.
                    return await self._await_confirmation(request, request.replaces, nonce, request.created_at)
                logger.warning(
                    f"Nonce {nonce} rejected for {self.address}, resyncing",
                    extra={'address': self.address, 'nonce': nonce, 'error': str(e)}
                )
                self._next_nonce = None
                nonce = None
                signed = None
            except TransientLedgerError as e:
                last_error = e
                logger.info(
                    f"Transient error submitting {request.op} {request.batch_id}: {e}",
                    extra={'batch_id': request.batch_id, 'attempt': backoff.attempt, 'error': str(e)}
                )

            if backoff.exhausted:
                logger.warning(
                    f"Giving up broadcast of {request.op} {request.batch_id} after {backoff.attempt} attempts",
                    extra={'batch_id': request.batch_id, 'error': str(last_error)}
                )
                if signed is not None and from_cursor and signed.nonce == self._next_nonce:
                    # Unknown whether it landed; the next allocation re-reads the ledger.
                    self._next_nonce = None
                return Deferred(f"broadcast failed after {backoff.attempt} attempts: {last_error}")
            await backoff.sleep()

        submitted_at = utcnow()
        if from_cursor:
            self._next_nonce = nonce + 1
        logger.info(
            f"Broadcast {request.op} {request.batch_id} as {tx_hash}",
            extra={'batch_id': request.batch_id, 'tx_hash': tx_hash, 'nonce': nonce, 'gas_price': signed.request.gas_price}
        )
        if self._on_broadcast is not None:
            try:
                await self._on_broadcast(request, tx_hash, nonce, signed.request.gas_price)
            except Exception:
                logger.exception(
                    f"Broadcast hook failed for {tx_hash}",
                    extra={'batch_id': request.batch_id, 'tx_hash': tx_hash}
                )
        return await self._await_confirmation(request, tx_hash, nonce, submitted_at)

    async def _await_confirmation(self, request, tx_hash, nonce, submitted_at):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.confirmation_timeout
        while True:
            try:
                receipt = await self.client.get_receipt(tx_hash)
                if receipt is not None:
                    if not receipt.status:
                        failure = map_revert_reason(receipt.revert_reason)
                        logger.warning(
                            f"Ledger rejected {request.op} {request.batch_id}: {receipt.revert_reason}",
                            extra={'batch_id': request.batch_id, 'tx_hash': tx_hash, 'reason': receipt.revert_reason}
                        )
                        return Rejected(failure, receipt.revert_reason or "reverted", tx_hash)
                    if await self.client.confirmations(receipt) >= self.config.confirmations_required:
                        entry = HistoryEntry(
                            tx_ref=tx_hash,
                            action=request.op,
                            nonce=receipt.nonce,
                            submitted_at=submitted_at,
                            confirmed_at=receipt.timestamp,
                            block_height=receipt.block_number,
                        )
                        return Confirmed(
                            ledger_id=request.batch_id,
                            tx_hash=tx_hash,
                            nonce=receipt.nonce,
                            block_height=receipt.block_number,
                            history=(entry,),
                        )
            except TransientLedgerError as e:
                logger.debug(
                    f"Receipt poll for {tx_hash} failed: {e}",
                    extra={'tx_hash': tx_hash, 'error': str(e)}
                )

            if loop.time() >= deadline:
                logger.info(
                    f"{tx_hash} not confirmed within {self.config.confirmation_timeout}s, deferring",
                    extra={'batch_id': request.batch_id, 'tx_hash': tx_hash, 'nonce': nonce}
                )
                return Deferred("awaiting confirmation", tx_hash=tx_hash, nonce=nonce)
            await asyncio.sleep(self.config.poll_interval)


# ============================================================================
# SUBMITTER
# ============================================================================


class TransactionSubmitter:
    """Idempotency guard in front of one ``SignerQueue`` per signer.

    ``on_broadcast(request, tx_hash, nonce, gas_price)`` and
    ``on_outcome(request, outcome)`` are awaited from the worker; the service
    uses them to keep the mirror in step.
    """

    def __init__(self, client, signers, config: SubmitterConfig | None = None, *, on_broadcast=None, on_outcome=None, rng=None):
        if not isinstance(signers, (list, tuple)):
            signers = [signers]
        self.client = client
        self.config = config or SubmitterConfig()
        self.default_address = signers[0].address
        self._on_outcome = on_outcome
        self._queues = {
            signer.address: SignerQueue(
                client, signer, self.config,
                on_broadcast=on_broadcast, on_done=self._done, rng=rng,
            )
            for signer in signers
        }
        self._inflight: dict[str, WriteRequest] = {}
        self._created: set[str] = set()

    @property
    def addresses(self) -> list[str]:
        return list(self._queues)

    def queue_for(self, address=None) -> SignerQueue:
        return self._queues[address or self.default_address]

    def start(self):
        for queue in self._queues.values():
            queue.start()

    async def stop(self):
        for queue in self._queues.values():
            await queue.stop()

    async def drain(self):
        for queue in self._queues.values():
            await queue.drain()

    # -- idempotency guard -----------------------------------------------------

    def is_inflight(self, batch_id) -> bool:
        return batch_id in self._inflight

    def reserve(self, op, batch_id):
        """Claim ``batch_id`` for one write, or raise ``DuplicateBatchError``."""
        if batch_id in self._inflight or (op == OP_CREATE and batch_id in self._created):
            raise DuplicateBatchError(batch_id)
        self._inflight[batch_id] = None

    def release(self, batch_id):
        self._inflight.pop(batch_id, None)

    # -- enqueue ---------------------------------------------------------------

    def submit(self, op, batch_id, args, *, reserved=False, signer=None, **replacement) -> WriteRequest:
        if not reserved:
            self.reserve(op, batch_id)
        request = WriteRequest(op=op, batch_id=batch_id, args=args, **replacement)
        self._inflight[batch_id] = request
        self.queue_for(signer).put(request)
        logger.debug(
            f"Queued {op} {batch_id}",
            extra={'batch_id': batch_id, 'op': op, 'queue_depth': self.queue_for(signer).depth}
        )
        return request

    def enqueue_create(self, batch_id, fields, **kwargs) -> WriteRequest:
        args = {name: value for name, value in fields.items() if name != "batch_id"}
        return self.submit(OP_CREATE, batch_id, _jsonable(args), **kwargs)

    def enqueue_recall(self, batch_id, reason, **kwargs) -> WriteRequest:
        return self.submit(OP_RECALL, batch_id, {"reason": reason}, **kwargs)

    def enqueue_distribution(self, batch_id, details, **kwargs) -> WriteRequest:
        return self.submit(OP_DISTRIBUTE, batch_id, _jsonable(details), **kwargs)

    def replace(self, tx, **kwargs) -> WriteRequest:
        """Supersede a pooled transaction: same nonce, higher fee, same queue."""
        request = tx.request
        return self.submit(
            request.op,
            request.batch_id,
            request.args,
            nonce=request.nonce,
            replaces=tx.tx_hash,
            min_gas_price=math.ceil(request.gas_price * (1 + self.config.fee_bump_percent / 100)),
            signer=request.sender,
            **kwargs,
        )

    def cancel(self, request: WriteRequest) -> bool:
        """Cancel a queued request. Impossible once its nonce is allocated."""
        if request.allocated or request.done:
            return False
        request.cancelled = True
        request.future.set_result(Rejected(None, "cancelled before submission"))
        if self._inflight.get(request.batch_id) is request:
            self._inflight.pop(request.batch_id)
        logger.info(f"Cancelled queued {request.op} {request.batch_id}", extra={'batch_id': request.batch_id})
        return True

    async def _done(self, request, outcome):
        if self._inflight.get(request.batch_id) is request:
            self._inflight.pop(request.batch_id)
        if request.op == OP_CREATE:
            if isinstance(outcome, Confirmed):
                self._created.add(request.batch_id)
            elif isinstance(outcome, Rejected) and outcome.reason == LedgerFailure.DUPLICATE_BATCH:
                self._created.add(request.batch_id)

        if self._on_outcome is not None:
            try:
                await self._on_outcome(request, outcome)
            except Exception:
                logger.exception(
                    f"Outcome hook failed for {request.op} {request.batch_id}",
                    extra={'batch_id': request.batch_id, 'state': outcome.state}
                )


def _jsonable(data: dict) -> dict:
    """Args are signed as canonical JSON; keep dates as ISO strings."""
    return json.loads(canonical_json(data))
