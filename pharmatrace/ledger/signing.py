"""Ed25519 signing of ledger transactions."""

import hashlib
import logging

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from pharmatrace.ledger.types import SignedTransaction, TransactionRequest

logger = logging.getLogger(__name__)


def address_from_public_key(public_key_hex: str) -> str:
    """Account address: last 20 bytes of SHA-256 over the raw public key."""
    digest = hashlib.sha256(bytes.fromhex(public_key_hex)).hexdigest()
    return "0x" + digest[-40:]


class Signer:
    """Holds the signing account's key. Never logs or exposes the private half."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        raw = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.public_key = raw.hex()
        self.address = address_from_public_key(self.public_key)

    @classmethod
    def from_hex(cls, private_key_hex: str) -> "Signer":
        seed = bytes.fromhex(private_key_hex.removeprefix("0x"))
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def generate(cls) -> "Signer":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_settings(cls, settings) -> "Signer":
        if settings.SIGNER_PRIVATE_KEY is None:
            signer = cls.generate()
            logger.warning(
                f"No SIGNER_PRIVATE_KEY configured, using ephemeral signer {signer.address}",
                extra={'address': signer.address, 'network': settings.LEDGER_NETWORK}
            )
            return signer
        return cls.from_hex(settings.SIGNER_PRIVATE_KEY.get_secret_value())

    def sign(self, request: TransactionRequest) -> SignedTransaction:
        if request.sender != self.address:
            raise ValueError(f"Request sender {request.sender} is not signer {self.address}")
        signature = self._private_key.sign(request.signing_payload())
        return SignedTransaction(request=request, public_key=self.public_key, signature=signature.hex())

    def __repr__(self):
        return f"Signer(address={self.address!r})"


def verify_transaction(tx: SignedTransaction) -> bool:
    """Check the signature and that the sender address matches the public key."""
    if address_from_public_key(tx.public_key) != tx.request.sender:
        return False
    try:
        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(tx.public_key))
        public_key.verify(bytes.fromhex(tx.signature), tx.request.signing_payload())
    except (InvalidSignature, ValueError):
        return False
    return True
