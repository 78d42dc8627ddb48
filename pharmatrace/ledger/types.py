"""Value types shared by the ledger, the submitter and the mirror."""

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any

# Fields copied into the mirror and hashed for integrity checks, in hash order.
DISPLAY_FIELDS = (
    "name",
    "active_ingredient",
    "manufacturer_id",
    "batch_number",
    "production_date",
    "expiry_date",
    "quality_test_result",
)

# Operations the ledger accepts and the gas each one needs at minimum.
OP_CREATE = "create"
OP_RECALL = "recall"
OP_DISTRIBUTE = "distribute"

INTRINSIC_GAS = {
    OP_CREATE: 250_000,
    OP_RECALL: 80_000,
    OP_DISTRIBUTE: 120_000,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _canonical(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def canonical_json(data) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_canonical)


def display_fields_of(source) -> dict:
    """Pick the display fields out of a mapping or an object with attributes."""
    if isinstance(source, dict):
        return {name: source.get(name) for name in DISPLAY_FIELDS}
    return {name: getattr(source, name, None) for name in DISPLAY_FIELDS}


def display_hash(source) -> str:
    """SHA-256 of the canonical display fields."""
    fields = {name: _canonical(value) for name, value in display_fields_of(source).items()}
    return hashlib.sha256(canonical_json(fields).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class LedgerEvent:
    sequence: int
    batch_id: str
    action: str
    tx_hash: str
    block_number: int
    timestamp: datetime
    sender: str
    details: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "action": self.action,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "timestamp": self.timestamp,
            "sender": self.sender,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class LedgerRecord:
    """One immutable version of a batch record.

    New versions are produced with ``evolve``; the ledger keeps every version.
    """

    batch_id: str
    name: str
    active_ingredient: str
    manufacturer_id: str
    batch_number: str
    production_date: date
    expiry_date: date
    quality_test_result: str
    owner: str
    created_at: datetime
    data_hash: str
    is_recalled: bool = False
    recall_reason: str | None = None
    event_count: int = 0
    version: int = 1
    events: tuple = ()

    def evolve(self, **changes) -> "LedgerRecord":
        return replace(self, version=self.version + 1, **changes)

    def display_fields(self) -> dict:
        return display_fields_of(self)

    def snapshot(self) -> dict:
        return {
            "batch_id": self.batch_id,
            **self.display_fields(),
            "owner": self.owner,
            "created_at": self.created_at,
            "is_recalled": self.is_recalled,
            "recall_reason": self.recall_reason,
            "event_count": self.event_count,
            "version": self.version,
            "data_hash": self.data_hash,
        }


@dataclass(frozen=True)
class TransactionRequest:
    """An unsigned ledger write."""

    op: str
    batch_id: str
    args: dict
    sender: str
    nonce: int
    gas_limit: int
    gas_price: int
    chain_id: str

    def signing_payload(self) -> bytes:
        return canonical_json({
            "op": self.op,
            "batch_id": self.batch_id,
            "args": self.args,
            "sender": self.sender,
            "nonce": self.nonce,
            "gas_limit": self.gas_limit,
            "gas_price": self.gas_price,
            "chain_id": self.chain_id,
        }).encode("utf-8")


@dataclass(frozen=True)
class SignedTransaction:
    request: TransactionRequest
    public_key: str
    signature: str

    @property
    def tx_hash(self) -> str:
        digest = hashlib.sha256(self.request.signing_payload() + bytes.fromhex(self.signature))
        return "0x" + digest.hexdigest()

    @property
    def sender(self) -> str:
        return self.request.sender

    @property
    def nonce(self) -> int:
        return self.request.nonce


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_number: int
    status: bool
    sender: str
    nonce: int
    op: str
    batch_id: str
    gas_used: int
    gas_price: int
    timestamp: datetime
    revert_reason: str | None = None


@dataclass(frozen=True)
class LedgerStats:
    total: int
    active: int
    recalled: int
    expired: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "active": self.active,
            "recalled": self.recalled,
            "expired": self.expired,
        }
