"""Ledger boundary: state machine, providers, signing and the client wrapper."""
from .client import LedgerClient
from .provider import FaultInjector, LedgerProvider, LocalLedgerProvider, load_provider
from .signing import Signer
from .state import ContractRevert, LedgerNodeError, LedgerStateMachine
from .types import (
    DISPLAY_FIELDS,
    OP_CREATE,
    OP_DISTRIBUTE,
    OP_RECALL,
    LedgerEvent,
    LedgerRecord,
    LedgerStats,
    Receipt,
    SignedTransaction,
    TransactionRequest,
    display_hash,
)

__all__ = [
    "LedgerClient",
    "FaultInjector",
    "LedgerProvider",
    "LocalLedgerProvider",
    "load_provider",
    "Signer",
    "ContractRevert",
    "LedgerNodeError",
    "LedgerStateMachine",
    "DISPLAY_FIELDS",
    "OP_CREATE",
    "OP_DISTRIBUTE",
    "OP_RECALL",
    "LedgerEvent",
    "LedgerRecord",
    "LedgerStats",
    "Receipt",
    "SignedTransaction",
    "TransactionRequest",
    "display_hash",
]
