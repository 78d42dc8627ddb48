"""
Ledger providers.

A provider is the raw connection to a ledger node. It speaks in node terms and
raises node-style errors; ``LedgerClient`` wraps it with timeouts and error
mapping. ``LocalLedgerProvider`` runs the in-process development ledger and
is refused on anything but development/test networks.
"""

import abc
import asyncio
import importlib
import logging
from collections import defaultdict, deque

from pharmatrace.errors import LedgerConfigurationError
from pharmatrace.ledger.state import LedgerNodeError, LedgerStateMachine
from pharmatrace.ledger.types import INTRINSIC_GAS

logger = logging.getLogger(__name__)


class LedgerProvider(abc.ABC):
    """Raw ledger node surface."""

    chain_id: str

    async def start(self):
        pass

    async def close(self):
        pass

    @abc.abstractmethod
    async def block_number(self) -> int: ...

    @abc.abstractmethod
    async def transaction_count(self, address, pending=True) -> int: ...

    @abc.abstractmethod
    async def gas_price(self) -> int: ...

    @abc.abstractmethod
    async def estimate_gas(self, op, batch_id, args) -> int: ...

    @abc.abstractmethod
    async def send_transaction(self, tx) -> str: ...

    @abc.abstractmethod
    async def get_receipt(self, tx_hash): ...

    @abc.abstractmethod
    async def get_transaction(self, tx_hash): ...

    @abc.abstractmethod
    async def get_batch(self, batch_id): ...

    @abc.abstractmethod
    async def stats(self): ...


class FaultInjector:
    """Scripted failures for a provider method, consumed in order.

    Usage:
        faults.fail("send_transaction", LedgerNodeError("rate limit exceeded"), times=2)
    """

    def __init__(self):
        self._planned = defaultdict(deque)
        self._delays = {}
        self.calls = defaultdict(int)

    def fail(self, method, error, times=1):
        for _ in range(times):
            self._planned[method].append(error)

    def delay(self, method, seconds):
        self._delays[method] = seconds

    def clear(self):
        self._planned.clear()
        self._delays.clear()

    async def check(self, method):
        self.calls[method] += 1
        delay = self._delays.get(method)
        if delay:
            await asyncio.sleep(delay)
        if self._planned[method]:
            raise self._planned[method].popleft()


class LocalLedgerProvider(LedgerProvider):
    """In-process development ledger.

    With ``block_time`` unset every accepted transaction is mined immediately;
    otherwise a background task produces a block every ``block_time`` seconds.
    """

    def __init__(self, state: LedgerStateMachine | None = None, *, block_time=None, automine=None, faults=None):
        self.state = state or LedgerStateMachine()
        self.chain_id = self.state.chain_id
        self.block_time = block_time
        self.automine = block_time is None if automine is None else automine
        self.faults = faults or FaultInjector()
        self._miner_task = None

    async def start(self):
        if self.block_time and self._miner_task is None:
            self._miner_task = asyncio.create_task(self._mine_forever(), name="local-ledger-miner")

    async def close(self):
        if self._miner_task is not None:
            self._miner_task.cancel()
            try:
                await self._miner_task
            except asyncio.CancelledError:
                pass
            self._miner_task = None

    async def _mine_forever(self):
        while True:
            await asyncio.sleep(self.block_time)
            self.state.mine()

    async def block_number(self) -> int:
        await self.faults.check("block_number")
        return self.state.block_number

    async def transaction_count(self, address, pending=True) -> int:
        await self.faults.check("transaction_count")
        return self.state.transaction_count(address, pending=pending)

    async def gas_price(self) -> int:
        await self.faults.check("gas_price")
        return self.state.base_fee

    async def estimate_gas(self, op, batch_id, args) -> int:
        await self.faults.check("estimate_gas")
        if op not in INTRINSIC_GAS:
            raise LedgerNodeError(f"unknown operation {op}")
        return INTRINSIC_GAS[op]

    async def send_transaction(self, tx) -> str:
        await self.faults.check("send_transaction")
        tx_hash = self.state.submit(tx)
        if self.automine:
            self.state.mine()
        return tx_hash

    async def get_receipt(self, tx_hash):
        await self.faults.check("get_receipt")
        return self.state.get_receipt(tx_hash)

    async def get_transaction(self, tx_hash):
        await self.faults.check("get_transaction")
        return self.state.get_transaction(tx_hash)

    async def get_batch(self, batch_id):
        await self.faults.check("get_batch")
        return self.state.get(batch_id)

    async def stats(self):
        await self.faults.check("stats")
        return self.state.stats()


def load_provider(settings) -> LedgerProvider:
    """Build the provider named by ``LEDGER_PROVIDER``.

    ``local`` is only honored on development/test networks, so the
    development ledger can never back a real deployment.
    """
    if settings.LEDGER_PROVIDER == "local":
        if not settings.is_development_network:
            raise LedgerConfigurationError(
                f"Local ledger refused on network '{settings.LEDGER_NETWORK}'"
            )
        logger.warning(
            f"Using in-process development ledger on '{settings.LEDGER_NETWORK}'",
            extra={'network': settings.LEDGER_NETWORK, 'chain_id': settings.LEDGER_CHAIN_ID}
        )
        return LocalLedgerProvider(
            LedgerStateMachine(chain_id=settings.LEDGER_CHAIN_ID),
            block_time=settings.LEDGER_BLOCK_TIME_SECONDS,
        )

    module_path, _, attr = settings.LEDGER_PROVIDER.rpartition(".")
    if not module_path:
        raise LedgerConfigurationError(f"Invalid LEDGER_PROVIDER '{settings.LEDGER_PROVIDER}'")
    try:
        factory = getattr(importlib.import_module(module_path), attr)
    except (ImportError, AttributeError) as e:
        raise LedgerConfigurationError(f"Cannot load LEDGER_PROVIDER '{settings.LEDGER_PROVIDER}': {e}")

    provider = factory(settings)
    if isinstance(provider, LocalLedgerProvider) and not settings.is_development_network:
        raise LedgerConfigurationError(
            f"Local ledger refused on network '{settings.LEDGER_NETWORK}'"
        )
    return provider
