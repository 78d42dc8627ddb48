"""Off-chain mirror of ledger records and its reconciler."""
from .models import MirrorRecord, MirrorTransaction
from .reconciler import ReconcileReport, Reconciler
from .repository import MirrorRepository

__all__ = [
    "MirrorRecord",
    "MirrorTransaction",
    "MirrorRepository",
    "ReconcileReport",
    "Reconciler",
]
