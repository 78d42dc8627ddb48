"""
Mirror tables: the off-chain, queryable replica of ledger batch records.

Rows are never the source of truth. ``version`` is SQLAlchemy's optimistic
concurrency counter: an UPDATE carrying a stale version matches zero rows and
raises ``StaleDataError``.
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from pharmatrace.db import Base
from pharmatrace.ledger.types import DISPLAY_FIELDS, utcnow

# ============================================================================
# CHOICES
# ============================================================================

STATE_PENDING = "pending"
STATE_CONFIRMED = "confirmed"
STATE_FAILED = "failed"
STATE_CHOICES = (STATE_PENDING, STATE_CONFIRMED, STATE_FAILED)

TX_PENDING = "pending"
TX_CONFIRMED = "confirmed"
TX_FAILED = "failed"
TX_REPLACED = "replaced"
TX_DROPPED = "dropped"


def _uuid() -> str:
    return str(uuid.uuid4())


class MirrorRecord(Base):
    __tablename__ = "mirror_records"

    id = Column(String(36), primary_key=True, default=_uuid)
    batch_id = Column(String(64), nullable=False, unique=True, index=True)
    ledger_id = Column(String(64), nullable=True, unique=True)

    # Copy of the ledger display fields
    name = Column(String(200), nullable=False)
    active_ingredient = Column(String(200), nullable=False)
    manufacturer_id = Column(String(100), nullable=False)
    batch_number = Column(String(100), nullable=False)
    production_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=False, index=True)
    quality_test_result = Column(String(50), nullable=False)

    state = Column(String(20), nullable=False, default=STATE_PENDING, index=True)
    pending_action = Column(String(20), nullable=True)
    pending_args = Column(JSON, nullable=True)
    is_recalled = Column(Boolean, nullable=False, default=False)
    recall_reason = Column(Text, nullable=True)

    block_height = Column(Integer, nullable=True)
    error_detail = Column(Text, nullable=True)
    needs_attention = Column(Boolean, nullable=False, default=False)
    resubmit_count = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    transactions = relationship(
        "MirrorTransaction",
        back_populates="record",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="MirrorTransaction.submitted_at",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<MirrorRecord {self.batch_id} {self.state} v{self.version}>"

    def display_fields(self) -> dict:
        return {name: getattr(self, name) for name in DISPLAY_FIELDS}

    def pending_transaction(self):
        """Most recent transaction still waiting on the ledger, if any."""
        pending = [tx for tx in self.transactions if tx.status == TX_PENDING]
        return pending[-1] if pending else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "ledger_id": self.ledger_id,
            **self.display_fields(),
            "state": self.state,
            "pending_action": self.pending_action,
            "is_recalled": self.is_recalled,
            "recall_reason": self.recall_reason,
            "block_height": self.block_height,
            "error_detail": self.error_detail,
            "needs_attention": self.needs_attention,
            "resubmit_count": self.resubmit_count,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "transactions": [tx.to_dict() for tx in self.transactions],
        }


class MirrorTransaction(Base):
    __tablename__ = "mirror_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    record_id = Column(String(36), ForeignKey("mirror_records.id", ondelete="CASCADE"), nullable=False, index=True)
    tx_ref = Column(String(80), nullable=False, unique=True)
    action = Column(String(20), nullable=False)
    nonce = Column(Integer, nullable=True)
    gas_price = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default=TX_PENDING, index=True)
    submitted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    block_height = Column(Integer, nullable=True)

    record = relationship("MirrorRecord", back_populates="transactions")

    def __repr__(self):
        return f"<MirrorTransaction {self.tx_ref} {self.action} {self.status}>"

    def to_dict(self) -> dict:
        return {
            "tx_ref": self.tx_ref,
            "action": self.action,
            "nonce": self.nonce,
            "gas_price": self.gas_price,
            "status": self.status,
            "submitted_at": self.submitted_at,
            "confirmed_at": self.confirmed_at,
            "block_height": self.block_height,
        }
