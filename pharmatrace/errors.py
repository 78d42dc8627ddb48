"""
Error taxonomy for the ledger write / sync / verification path.

Provider-specific error strings never leave the ledger boundary: they are
mapped into the closed ``LedgerFailure`` set by ``map_provider_error`` and
``map_revert_reason``.
"""

import enum


class LedgerFailure(str, enum.Enum):
    DUPLICATE_BATCH = "DuplicateBatch"
    NOT_FOUND = "NotFound"
    TRANSIENT_NETWORK = "TransientNetwork"
    FEE_TOO_LOW = "FeeTooLow"
    NONCE_CONFLICT = "NonceConflict"


class PharmatraceError(Exception):
    """Base class for all errors raised by pharmatrace."""


# ============================================================================
# VALIDATION (synchronous, before any ledger interaction)
# ============================================================================


class ValidationError(PharmatraceError):
    """Malformed input. Fatal, raised before anything reaches the ledger."""

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field


class DuplicateBatchError(ValidationError):
    """The batch identifier is already in flight, confirmed or mirrored."""

    def __init__(self, batch_id):
        super().__init__(f"Batch {batch_id} already exists or is being submitted", field="batch_id")
        self.batch_id = batch_id


class QRDecodeError(ValidationError):
    """The scanned payload is not a pharmatrace QR payload."""


# ============================================================================
# LEDGER
# ============================================================================


class LedgerError(PharmatraceError):
    reason = LedgerFailure.TRANSIENT_NETWORK

    def __init__(self, detail="", reason=None):
        if reason is not None:
            self.reason = reason
        self.detail = detail
        super().__init__(f"{self.reason.value}: {detail}" if detail else self.reason.value)


class TransientLedgerError(LedgerError):
    """Timeouts, rate limiting, unreachable node. Safe to retry."""

    reason = LedgerFailure.TRANSIENT_NETWORK


class FeeTooLowError(TransientLedgerError):
    reason = LedgerFailure.FEE_TOO_LOW


class GasLimitTooLowError(TransientLedgerError):
    """The gas limit is below what the operation needs. Retried with a higher limit."""

    reason = LedgerFailure.FEE_TOO_LOW


class NonceConflictError(TransientLedgerError):
    reason = LedgerFailure.NONCE_CONFLICT


class LedgerRejection(LedgerError):
    """The ledger's own business-rule refusal. Never retried automatically."""

    reason = LedgerFailure.DUPLICATE_BATCH


class BatchNotFoundError(LedgerError):
    reason = LedgerFailure.NOT_FOUND

    def __init__(self, batch_id):
        super().__init__(f"no ledger record for {batch_id}")
        self.batch_id = batch_id


class LedgerUnavailableError(TransientLedgerError):
    """Reads kept failing after the bounded retry budget was spent."""


class LedgerConfigurationError(PharmatraceError):
    pass


# ============================================================================
# MIRROR / VERIFICATION
# ============================================================================


class MirrorConflictError(PharmatraceError):
    """Optimistic mirror write lost every retry to concurrent writers."""


class IntegrityMismatchWarning(Warning):
    """The mirror's copy of a batch diverges from the ledger record."""

    def __init__(self, batch_id, fields):
        self.batch_id = batch_id
        self.fields = list(fields)
        super().__init__(
            f"Mirror copy of {batch_id} diverges from ledger on: {', '.join(self.fields)}"
        )


# ============================================================================
# BOUNDARY MAPPING
# ============================================================================

# Substrings seen in node / contract error messages, checked in order.
_PROVIDER_ERROR_PATTERNS = (
    ("intrinsic gas too low", GasLimitTooLowError),
    ("replacement transaction underpriced", FeeTooLowError),
    ("less than block base fee", FeeTooLowError),
    ("underpriced", FeeTooLowError),
    ("fee too low", FeeTooLowError),
    ("nonce too low", NonceConflictError),
    ("rate limit", TransientLedgerError),
    ("too many requests", TransientLedgerError),
    ("timeout", TransientLedgerError),
    ("timed out", TransientLedgerError),
    ("connection", TransientLedgerError),
    ("unavailable", TransientLedgerError),
)

_REVERT_PATTERNS = (
    ("duplicatebatch", LedgerFailure.DUPLICATE_BATCH),
    ("already exists", LedgerFailure.DUPLICATE_BATCH),
    ("notfound", LedgerFailure.NOT_FOUND),
    ("not found", LedgerFailure.NOT_FOUND),
    ("does not exist", LedgerFailure.NOT_FOUND),
)


def map_provider_error(message) -> LedgerError:
    """Translate a raw provider error message into the closed error set.

    Unknown messages are treated as transient: the reconciler will look at
    ledger truth later, which is safer than failing a write that may have
    landed.
    """
    text = str(message or "").lower()
    for needle, error_class in _PROVIDER_ERROR_PATTERNS:
        if needle in text:
            return error_class(str(message))
    return TransientLedgerError(str(message))


def map_revert_reason(reason) -> LedgerFailure | None:
    """Translate a contract revert reason into a ``LedgerFailure``.

    Returns None for reverts outside the known business rules; callers keep
    the raw text only as detail.
    """
    text = str(reason or "").lower()
    for needle, failure in _REVERT_PATTERNS:
        if needle in text:
            return failure
    return None
