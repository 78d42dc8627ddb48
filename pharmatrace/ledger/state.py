"""
In-process ledger state machine.

Models a single-writer, globally ordered ledger: transactions are admitted
into a mempool, ordered per sender by nonce, and executed in blocks. Batch
records are never edited in place: every change appends a new record version
to an arena and moves the batch's index entry, and every operation appends to
a global event log.

Errors are raised the way a node reports them, as raw messages
(``LedgerNodeError``) or contract reverts recorded on the receipt. Callers
translate them at the boundary, see ``pharmatrace.errors``.
"""

import logging
from datetime import date

from pharmatrace.ledger.signing import verify_transaction
from pharmatrace.ledger.types import (
    DISPLAY_FIELDS,
    INTRINSIC_GAS,
    OP_CREATE,
    OP_DISTRIBUTE,
    OP_RECALL,
    LedgerEvent,
    LedgerRecord,
    LedgerStats,
    Receipt,
    SignedTransaction,
    display_hash,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_FEE = 1_000
# A pooled transaction is only replaced by one paying at least this much more.
REPLACEMENT_MIN_BUMP_PERCENT = 10


class LedgerNodeError(Exception):
    """Raw node-level refusal, e.g. 'nonce too low'."""


class ContractRevert(Exception):
    """Raw contract-level refusal; ends up as a failed receipt."""


class LedgerStateMachine:

    def __init__(self, chain_id="pharmatrace-dev", base_fee=DEFAULT_BASE_FEE, clock=utcnow):
        self.chain_id = chain_id
        self.base_fee = base_fee
        self._clock = clock

        # Record versions (arena) and batch_id -> latest arena slot (index).
        self._arena: list[LedgerRecord] = []
        self._index: dict[str, int] = {}
        self._events: list[LedgerEvent] = []

        self._mempool: dict[tuple[str, int], SignedTransaction] = {}
        self._transactions: dict[str, SignedTransaction] = {}
        self._receipts: dict[str, Receipt] = {}
        self._nonces: dict[str, int] = {}
        self._block_number = 0

    # =========================================================================
    # READS
    # =========================================================================

    @property
    def block_number(self) -> int:
        return self._block_number

    def get(self, batch_id) -> LedgerRecord | None:
        slot = self._index.get(batch_id)
        return self._arena[slot] if slot is not None else None

    def versions(self, batch_id) -> list[LedgerRecord]:
        return [record for record in self._arena if record.batch_id == batch_id]

    def events(self, batch_id=None) -> list[LedgerEvent]:
        if batch_id is None:
            return list(self._events)
        return [event for event in self._events if event.batch_id == batch_id]

    def stats(self, today: date | None = None) -> LedgerStats:
        today = today or self._clock().date()
        total = recalled = expired = 0
        for slot in self._index.values():
            record = self._arena[slot]
            total += 1
            if record.is_recalled:
                recalled += 1
            elif record.expiry_date < today:
                expired += 1
        return LedgerStats(total=total, active=total - recalled - expired, recalled=recalled, expired=expired)

    def transaction_count(self, address, pending=False) -> int:
        """Next nonce for ``address``; with ``pending`` the contiguous mempool run counts too."""
        nonce = self._nonces.get(address, 0)
        if pending:
            while (address, nonce) in self._mempool:
                nonce += 1
        return nonce

    def get_receipt(self, tx_hash) -> Receipt | None:
        return self._receipts.get(tx_hash)

    def get_transaction(self, tx_hash) -> SignedTransaction | None:
        """A transaction that is pooled or mined; None once replaced or dropped."""
        return self._transactions.get(tx_hash)

    def is_pending(self, tx_hash) -> bool:
        tx = self._transactions.get(tx_hash)
        return tx is not None and self._mempool.get((tx.sender, tx.nonce)) is tx

    # =========================================================================
    # ADMISSION
    # =========================================================================

    def submit(self, tx: SignedTransaction) -> str:
        request = tx.request
        if request.chain_id != self.chain_id:
            raise LedgerNodeError(f"invalid chain id {request.chain_id}")
        if not verify_transaction(tx):
            raise LedgerNodeError("invalid sender signature")
        if request.op not in INTRINSIC_GAS:
            raise LedgerNodeError(f"unknown operation {request.op}")
        if request.nonce < self._nonces.get(request.sender, 0):
            raise LedgerNodeError(f"nonce too low: next nonce {self._nonces.get(request.sender, 0)}, got {request.nonce}")
        if request.gas_limit < INTRINSIC_GAS[request.op]:
            raise LedgerNodeError(f"intrinsic gas too low: need {INTRINSIC_GAS[request.op]}")
        if request.gas_price < self.base_fee:
            raise LedgerNodeError(
                f"max fee per gas less than block base fee: {request.gas_price} < {self.base_fee}"
            )

        key = (request.sender, request.nonce)
        pooled = self._mempool.get(key)
        if pooled is not None:
            if pooled.tx_hash == tx.tx_hash:
                raise LedgerNodeError("already known")
            if request.gas_price * 100 < pooled.request.gas_price * (100 + REPLACEMENT_MIN_BUMP_PERCENT):
                raise LedgerNodeError("replacement transaction underpriced")
            del self._transactions[pooled.tx_hash]
            logger.debug(
                f"Replaced {pooled.tx_hash} with {tx.tx_hash}",
                extra={'sender': request.sender, 'nonce': request.nonce}
            )

        self._mempool[key] = tx
        self._transactions[tx.tx_hash] = tx
        return tx.tx_hash

    def drop(self, tx_hash) -> bool:
        """Evict a pooled transaction, as a node does under mempool pressure."""
        tx = self._transactions.get(tx_hash)
        if tx is None or self._mempool.get((tx.sender, tx.nonce)) is not tx:
            return False
        del self._mempool[(tx.sender, tx.nonce)]
        del self._transactions[tx_hash]
        return True

    def set_base_fee(self, fee: int):
        self.base_fee = fee

    # =========================================================================
    # BLOCK PRODUCTION
    # =========================================================================

    def mine(self) -> int:
        """Produce one block with every executable pooled transaction."""
        self._block_number += 1
        block_number = self._block_number
        timestamp = self._clock()

        executable = []
        for sender in sorted({sender for sender, _ in self._mempool}):
            nonce = self._nonces.get(sender, 0)
            while (sender, nonce) in self._mempool:
                tx = self._mempool[(sender, nonce)]
                if tx.request.gas_price < self.base_fee:
                    break
                executable.append(tx)
                nonce += 1

        for tx in executable:
            del self._mempool[(tx.sender, tx.nonce)]
            self._nonces[tx.sender] = tx.nonce + 1
            self._receipts[tx.tx_hash] = self._execute(tx, block_number, timestamp)

        return block_number

    def _execute(self, tx: SignedTransaction, block_number, timestamp) -> Receipt:
        request = tx.request
        revert_reason = None
        try:
            if request.op == OP_CREATE:
                self.create(request.batch_id, request.args, request.sender, tx.tx_hash, block_number, timestamp)
            elif request.op == OP_RECALL:
                self.recall(request.batch_id, request.args.get("reason"), request.sender, tx.tx_hash, block_number, timestamp)
            elif request.op == OP_DISTRIBUTE:
                self.record_distribution(request.batch_id, request.args, request.sender, tx.tx_hash, block_number, timestamp)
        except ContractRevert as e:
            revert_reason = str(e)

        return Receipt(
            tx_hash=tx.tx_hash,
            block_number=block_number,
            status=revert_reason is None,
            sender=request.sender,
            nonce=request.nonce,
            op=request.op,
            batch_id=request.batch_id,
            gas_used=INTRINSIC_GAS[request.op],
            gas_price=request.gas_price,
            timestamp=timestamp,
            revert_reason=revert_reason,
        )

    # =========================================================================
    # CONTRACT OPERATIONS
    # =========================================================================

    def _append_event(self, batch_id, action, tx_hash, block_number, timestamp, sender, details) -> LedgerEvent:
        event = LedgerEvent(
            sequence=len(self._events) + 1,
            batch_id=batch_id,
            action=action,
            tx_hash=tx_hash,
            block_number=block_number,
            timestamp=timestamp,
            sender=sender,
            details=details,
        )
        self._events.append(event)
        return event

    def _store(self, record: LedgerRecord) -> LedgerRecord:
        self._arena.append(record)
        self._index[record.batch_id] = len(self._arena) - 1
        return record

    def create(self, batch_id, fields, owner, tx_hash, block_number, timestamp) -> LedgerRecord:
        if batch_id in self._index:
            raise ContractRevert(f"DuplicateBatch: batch {batch_id} already exists")
        missing = [name for name in DISPLAY_FIELDS if fields.get(name) in (None, "")]
        if missing:
            raise ContractRevert(f"InvalidBatch: missing {', '.join(missing)}")

        values = {name: fields[name] for name in DISPLAY_FIELDS}
        for name in ("production_date", "expiry_date"):
            if isinstance(values[name], str):
                values[name] = date.fromisoformat(values[name])

        event = self._append_event(batch_id, OP_CREATE, tx_hash, block_number, timestamp, owner, {})
        record = LedgerRecord(
            batch_id=batch_id,
            owner=owner,
            created_at=timestamp,
            data_hash=display_hash(values),
            event_count=1,
            events=(event,),
            **values,
        )
        return self._store(record)

    def recall(self, batch_id, reason, sender, tx_hash, block_number, timestamp) -> LedgerRecord:
        current = self.get(batch_id)
        if current is None:
            raise ContractRevert(f"NotFound: batch {batch_id} does not exist")
        if current.is_recalled:
            if reason and reason != current.recall_reason:
                return self._store(current.evolve(recall_reason=reason))
            return current

        event = self._append_event(batch_id, OP_RECALL, tx_hash, block_number, timestamp, sender, {"reason": reason})
        return self._store(current.evolve(
            is_recalled=True,
            recall_reason=reason,
            event_count=current.event_count + 1,
            events=current.events + (event,),
        ))

    def record_distribution(self, batch_id, details, sender, tx_hash, block_number, timestamp) -> LedgerRecord:
        current = self.get(batch_id)
        if current is None:
            raise ContractRevert(f"NotFound: batch {batch_id} does not exist")
        event = self._append_event(batch_id, OP_DISTRIBUTE, tx_hash, block_number, timestamp, sender, dict(details))
        return self._store(current.evolve(
            event_count=current.event_count + 1,
            events=current.events + (event,),
        ))
