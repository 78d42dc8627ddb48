"""
Verification engine.

Verdict precedence, first match wins:

    1. no ledger record (or malformed identifier)  -> not_found
    2. ledger record recalled                      -> recalled
    3. ledger expiry_date before today             -> expired
    4. otherwise                                   -> valid

The mirror is only consulted for the integrity check, which is reported next
to the verdict and never changes it.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from pharmatrace.errors import BatchNotFoundError, IntegrityMismatchWarning
from pharmatrace.ledger.types import DISPLAY_FIELDS, display_fields_of, display_hash, utcnow
from pharmatrace.schemas import VerificationResult, is_valid_identifier

logger = logging.getLogger(__name__)


def comparable(value):
    return value.isoformat() if hasattr(value, "isoformat") else value


def mismatched_fields(left, right) -> list[str]:
    """Display fields whose values differ between two records."""
    a, b = display_fields_of(left), display_fields_of(right)
    return [name for name in DISPLAY_FIELDS if comparable(a[name]) != comparable(b[name])]


class VerificationEngine:
    """Stateless; safe to share between concurrent requests."""

    def __init__(self, client, repository=None, clock=utcnow):
        self.client = client
        self.repository = repository
        self._clock = clock

    async def verify(self, identifier) -> VerificationResult:
        now = self._clock()
        if not is_valid_identifier(identifier):
            logger.info("Malformed identifier submitted for verification", extra={'identifier': str(identifier)[:80]})
            return VerificationResult(identifier=str(identifier), status="not_found", verified_at=now)

        try:
            ledger_record = await self.client.get_batch(identifier)
        except BatchNotFoundError:
            return VerificationResult(identifier=identifier, status="not_found", verified_at=now)

        mirror = await self._load_mirror(identifier)
        warning, mismatched = False, []
        if mirror is not None and display_hash(mirror) != ledger_record.data_hash:
            warning = True
            mismatched = mismatched_fields(mirror, ledger_record)
            logger.warning(
                str(IntegrityMismatchWarning(identifier, mismatched)),
                extra={'batch_id': identifier, 'mismatched_fields': mismatched}
            )

        if ledger_record.is_recalled:
            status = "recalled"
        elif ledger_record.expiry_date < now.date():
            status = "expired"
        else:
            status = "valid"

        history = sorted(ledger_record.events, key=lambda event: (event.block_number, event.sequence))
        return VerificationResult(
            identifier=identifier,
            status=status,
            snapshot=ledger_record.snapshot(),
            data_integrity_warning=warning,
            mismatched_fields=mismatched,
            history=[event.as_dict() for event in history],
            mirror_state=mirror.state if mirror is not None else None,
            verified_at=now,
        )

    async def _load_mirror(self, identifier):
        if self.repository is None:
            return None
        try:
            return await self.repository.get(identifier)
        except (SQLAlchemyError, OSError) as e:
            logger.warning(
                f"Mirror unavailable while verifying {identifier}: {e}",
                extra={'batch_id': identifier, 'error': str(e)}
            )
            return None
