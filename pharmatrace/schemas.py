"""
Request / response models for the service and HTTP layers.
"""

import re
import secrets
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Public identifiers: letters, digits and a few separators, nothing that
# could be mistaken for a URL, path or scheme.
IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,63}$")

VerificationStatus = Literal["valid", "recalled", "expired", "tampered-warning", "not_found"]


def generate_batch_id() -> str:
    return f"DRUG_{secrets.token_hex(4).upper()}"


def is_valid_identifier(value) -> bool:
    return isinstance(value, str) and bool(IDENTIFIER_RE.match(value))


# ============================================================================
# WRITE REQUESTS
# ============================================================================


class BatchCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    batch_id: str = Field(default_factory=generate_batch_id, max_length=64)
    name: str = Field(..., min_length=1, max_length=200)
    active_ingredient: str = Field(..., min_length=1, max_length=200)
    manufacturer_id: str = Field(..., min_length=1, max_length=100)
    batch_number: str = Field(..., min_length=1, max_length=100)
    production_date: date
    expiry_date: date
    quality_test_result: str = Field(default="passed", min_length=1, max_length=50)

    @field_validator("batch_id")
    @classmethod
    def validate_batch_id(cls, v: str) -> str:
        """✓ VALIDATION: identifiers are inert, URL-safe tokens"""
        if not IDENTIFIER_RE.match(v):
            raise ValueError("batch_id may only contain letters, digits, '_', '-' and '.'")
        return v

    @model_validator(mode="after")
    def validate_dates(self) -> "BatchCreate":
        """✓ VALIDATION: a batch cannot expire before it is produced"""
        if self.expiry_date <= self.production_date:
            raise ValueError("expiry_date must be after production_date")
        return self

    def ledger_fields(self) -> dict:
        return self.model_dump(exclude={"batch_id"})


class RecallRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class DistributionRequest(BaseModel):
    to: str = Field(..., min_length=1, max_length=200)
    location: str = Field(default="", max_length=200)
    status: Literal["shipped", "in_transit", "delivered"] = "shipped"
    notes: str = Field(default="", max_length=1000)


class ScanRequest(BaseModel):
    payload: str = Field(..., min_length=1, max_length=4096)


# ============================================================================
# RESPONSES
# ============================================================================


class PendingResponse(BaseModel):
    batch_id: str
    action: str
    state: str = "pending"
    detail: str = "accepted; awaiting ledger confirmation"


class TransactionOut(BaseModel):
    tx_ref: str
    action: str
    nonce: int | None = None
    gas_price: int | None = None
    status: str
    submitted_at: datetime
    confirmed_at: datetime | None = None
    block_height: int | None = None
    batch_id: str | None = None


class MirrorRecordOut(BaseModel):
    id: str
    batch_id: str
    ledger_id: str | None
    name: str
    active_ingredient: str
    manufacturer_id: str
    batch_number: str
    production_date: date
    expiry_date: date
    quality_test_result: str
    state: str
    pending_action: str | None
    is_recalled: bool
    recall_reason: str | None
    block_height: int | None
    error_detail: str | None
    needs_attention: bool
    resubmit_count: int
    version: int
    created_at: datetime
    updated_at: datetime
    transactions: list[TransactionOut] = []


class VerificationResult(BaseModel):
    """Derived verdict. Never stored, never a source of truth."""

    identifier: str
    status: VerificationStatus
    snapshot: dict[str, Any] | None = None
    data_integrity_warning: bool = False
    mismatched_fields: list[str] = []
    payload_mismatched_fields: list[str] = []
    history: list[dict[str, Any]] = []
    mirror_state: str | None = None
    verified_at: datetime


class QRCodeOut(BaseModel):
    payload: dict[str, Any]
    data: str
    token: str
    url: str


class LedgerStatsOut(BaseModel):
    total: int
    active: int
    recalled: int
    expired: int


class TransactionPage(BaseModel):
    items: list[TransactionOut]
    page: int
    limit: int
    total: int
    pages: int


class TransactionStatusOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tx_hash: str
    status: Literal["pending", "not_found", "success", "failed"]
    block_number: int | None = None
    confirmations: int = 0
    nonce: int | None = None
    sender: str | None = Field(default=None, alias="from")
    op: str | None = None
    batch_id: str | None = None
    gas_used: int | None = None
    gas_price: int | None = None
    timestamp: datetime | None = None
    revert_reason: str | None = None
    chain_id: str | None = None
    explorer_url: str | None = None
