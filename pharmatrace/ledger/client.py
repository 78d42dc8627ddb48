"""Ledger boundary: timeouts, bounded read retries and error mapping."""

import asyncio
import logging

from pharmatrace.errors import (
    BatchNotFoundError,
    LedgerError,
    LedgerUnavailableError,
    TransientLedgerError,
    map_provider_error,
)
from pharmatrace.ledger.state import LedgerNodeError
from pharmatrace.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_READ_POLICY = RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=1.0)


class LedgerClient:
    """Every ledger call goes through here.

    Calls are bounded by ``timeout``; raw node errors come out as members of
    the closed ``LedgerError`` family and nothing else.
    """

    def __init__(self, provider, timeout=10.0, read_policy=DEFAULT_READ_POLICY, explorer_url=""):
        self.provider = provider
        self.timeout = timeout
        self.read_policy = read_policy
        self.explorer_url = explorer_url.rstrip("/")

    @classmethod
    def from_settings(cls, provider, settings) -> "LedgerClient":
        return cls(
            provider,
            timeout=settings.LEDGER_CALL_TIMEOUT_SECONDS,
            read_policy=RetryPolicy(
                max_attempts=3,
                base_delay=settings.RETRY_BASE_DELAY_SECONDS,
                max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            ),
            explorer_url=settings.LEDGER_EXPLORER_URL,
        )

    @property
    def chain_id(self) -> str:
        return self.provider.chain_id

    async def _call(self, method, *args):
        try:
            return await asyncio.wait_for(getattr(self.provider, method)(*args), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TransientLedgerError(f"{method} timed out after {self.timeout}s")
        except LedgerError:
            raise
        except LedgerNodeError as e:
            raise map_provider_error(str(e)) from e
        except (ConnectionError, OSError) as e:
            raise TransientLedgerError(f"{method}: {e}") from e

    async def _read(self, method, *args):
        try:
            return await call_with_retry(
                lambda: self._call(method, *args),
                self.read_policy,
                label=f"ledger {method}",
            )
        except TransientLedgerError as e:
            raise LedgerUnavailableError(str(e)) from e

    # -- writes and write-path reads (retried by the submitter) ---------------

    async def block_number(self) -> int:
        return await self._call("block_number")

    async def transaction_count(self, address, pending=True) -> int:
        return await self._call("transaction_count", address, pending)

    async def gas_price(self) -> int:
        return await self._call("gas_price")

    async def estimate_gas(self, op, batch_id, args) -> int:
        return await self._call("estimate_gas", op, batch_id, args)

    async def send_transaction(self, tx) -> str:
        return await self._call("send_transaction", tx)

    async def get_receipt(self, tx_hash):
        return await self._call("get_receipt", tx_hash)

    async def get_transaction(self, tx_hash):
        return await self._call("get_transaction", tx_hash)

    # -- public reads ----------------------------------------------------------

    async def get_batch(self, batch_id):
        record = await self._read("get_batch", batch_id)
        if record is None:
            raise BatchNotFoundError(batch_id)
        return record

    async def stats(self):
        return await self._read("stats")

    async def confirmations(self, receipt) -> int:
        head = await self.block_number()
        return max(0, head - receipt.block_number + 1)

    def explorer_link(self, tx_hash) -> str | None:
        return f"{self.explorer_url}/tx/{tx_hash}" if self.explorer_url else None

    async def transaction_status(self, tx_hash) -> dict:
        """Receipt, confirmations and pool status for one transaction."""
        receipt = await self._read("get_receipt", tx_hash)
        if receipt is None:
            tx = await self._read("get_transaction", tx_hash)
            return {
                "tx_hash": tx_hash,
                "status": "pending" if tx is not None else "not_found",
                "block_number": None,
                "confirmations": 0,
                "nonce": tx.nonce if tx is not None else None,
                "from": tx.sender if tx is not None else None,
                "explorer_url": self.explorer_link(tx_hash),
            }

        head = await self._read("block_number")
        return {
            "tx_hash": tx_hash,
            "status": "success" if receipt.status else "failed",
            "block_number": receipt.block_number,
            "confirmations": max(0, head - receipt.block_number + 1),
            "nonce": receipt.nonce,
            "from": receipt.sender,
            "op": receipt.op,
            "batch_id": receipt.batch_id,
            "gas_used": receipt.gas_used,
            "gas_price": receipt.gas_price,
            "timestamp": receipt.timestamp,
            "revert_reason": receipt.revert_reason,
            "chain_id": self.chain_id,
            "explorer_url": self.explorer_link(tx_hash),
        }
