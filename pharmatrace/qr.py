"""
QR pointer codec.

A QR payload only points at a batch: ``{"v": 1, "identifier", "display_fields",
"issued_at"}``. It carries no secret and is never trusted; scanning always
re-runs verification against the ledger. The display fields only let a
scanner notice a relabelled package.
"""

import base64
import binascii
import json
import logging
from urllib.parse import parse_qs, quote, urlparse

from pharmatrace.errors import QRDecodeError
from pharmatrace.ledger.types import DISPLAY_FIELDS, canonical_json, display_fields_of, utcnow
from pharmatrace.schemas import is_valid_identifier
from pharmatrace.verification import comparable

logger = logging.getLogger(__name__)

QR_FORMAT_VERSION = 1
REJECTED_SCHEMES = ("tel:", "mailto:", "sms:")


def build_payload(identifier, display_fields, issued_at=None) -> dict:
    fields = display_fields_of(display_fields)
    return {
        "v": QR_FORMAT_VERSION,
        "identifier": identifier,
        "display_fields": {name: comparable(value) for name, value in fields.items()},
        "issued_at": comparable(issued_at or utcnow()),
    }


def encode(payload: dict) -> str:
    """Compact JSON suitable for a QR symbol."""
    return canonical_json(payload)


def to_token(data: str) -> str:
    return base64.urlsafe_b64encode(data.encode("utf-8")).rstrip(b"=").decode("ascii")


def from_token(token: str) -> str:
    padded = token + "=" * (-len(token) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


def verification_url(base_url, identifier, token) -> str:
    return f"{base_url.rstrip('/')}/verify/{quote(identifier, safe='')}?token={token}"


def _check_payload(data) -> dict:
    if not isinstance(data, dict):
        raise QRDecodeError("QR payload must be a JSON object")
    if data.get("v") != QR_FORMAT_VERSION:
        raise QRDecodeError(f"Unsupported QR payload version {data.get('v')!r}")
    identifier = data.get("identifier")
    if not is_valid_identifier(identifier):
        raise QRDecodeError("QR payload carries no valid identifier", field="identifier")
    fields = data.get("display_fields") or {}
    if not isinstance(fields, dict):
        raise QRDecodeError("display_fields must be an object", field="display_fields")
    return {
        "v": QR_FORMAT_VERSION,
        "identifier": identifier,
        "display_fields": {name: fields[name] for name in DISPLAY_FIELDS if name in fields},
        "issued_at": data.get("issued_at"),
    }


def _pointer(identifier) -> dict:
    return {"v": QR_FORMAT_VERSION, "identifier": identifier, "display_fields": {}, "issued_at": None}


def _decode_token(token):
    try:
        data = json.loads(from_token(token))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) and "v" in data else None


def decode(text) -> dict:
    """Parse scanned text into a payload.

    Accepts the JSON payload, its base64url token, a verification URL, or a
    bare identifier.
    """
    if not isinstance(text, str) or not text.strip():
        raise QRDecodeError("Empty QR payload")
    text = text.strip()
    lowered = text.lower()

    if lowered.startswith(REJECTED_SCHEMES):
        raise QRDecodeError("QR code is not a product code")

    if text.startswith("{"):
        try:
            return _check_payload(json.loads(text))
        except json.JSONDecodeError:
            raise QRDecodeError("QR payload is not valid JSON")

    if lowered.startswith(("http://", "https://")):
        url = urlparse(text)
        token = parse_qs(url.query).get("token", [None])[0]
        if token:
            data = _decode_token(token)
            if data is None:
                raise QRDecodeError("Verification URL carries an unreadable token")
            return _check_payload(data)
        parts = [part for part in url.path.split("/") if part]
        if len(parts) >= 2 and parts[-2] == "verify" and is_valid_identifier(parts[-1]):
            return _pointer(parts[-1])
        raise QRDecodeError("URL is not a verification link")

    data = _decode_token(text)
    if data is not None:
        return _check_payload(data)

    if is_valid_identifier(text):
        return _pointer(text)
    raise QRDecodeError("Unrecognized QR payload")


class QRCodec:

    def __init__(self, base_url, engine=None):
        self.base_url = base_url
        self.engine = engine

    def render(self, identifier, display_fields, issued_at=None) -> dict:
        payload = build_payload(identifier, display_fields, issued_at)
        data = encode(payload)
        token = to_token(data)
        return {
            "payload": payload,
            "data": data,
            "token": token,
            "url": verification_url(self.base_url, identifier, token),
        }

    async def verify_scan(self, text):
        """Decode, then verify the identifier. The payload can only lower a verdict."""
        payload = decode(text)
        result = await self.engine.verify(payload["identifier"])
        if result.status != "valid" or not payload["display_fields"]:
            return result

        contradicted = [
            name for name, value in payload["display_fields"].items()
            if str(value) != str(comparable(result.snapshot.get(name)))
        ]
        if not contradicted:
            return result

        logger.warning(
            f"Scanned label for {result.identifier} contradicts the ledger",
            extra={'batch_id': result.identifier, 'fields': contradicted}
        )
        return result.model_copy(update={
            "status": "tampered-warning",
            "payload_mismatched_fields": contradicted,
        })
