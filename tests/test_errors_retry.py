"""
Tests for error mapping at the ledger boundary and the retry helpers.
"""

import random

import pytest

from pharmatrace.errors import (
    BatchNotFoundError,
    FeeTooLowError,
    GasLimitTooLowError,
    LedgerFailure,
    LedgerUnavailableError,
    NonceConflictError,
    TransientLedgerError,
    map_provider_error,
    map_revert_reason,
)
from pharmatrace.ledger import LedgerClient, LedgerNodeError
from pharmatrace.retry import RetryPolicy, call_with_retry


class TestProviderErrorMapping:

    @pytest.mark.parametrize("message, expected", [
        ("replacement transaction underpriced", FeeTooLowError),
        ("max fee per gas less than block base fee", FeeTooLowError),
        ("intrinsic gas too low: need 60000", GasLimitTooLowError),
        ("nonce too low: next nonce 4, tx nonce 2", NonceConflictError),
        ("429 Too Many Requests", TransientLedgerError),
        ("rate limit exceeded", TransientLedgerError),
        ("request timed out", TransientLedgerError),
        ("connection refused", TransientLedgerError),
    ])
    def test_known_messages(self, message, expected):
        error = map_provider_error(message)
        assert type(error) is expected
        assert error.detail == message

    def test_unknown_message_is_transient(self):
        error = map_provider_error("something odd happened")
        assert type(error) is TransientLedgerError
        assert error.reason == LedgerFailure.TRANSIENT_NETWORK

    def test_fee_and_nonce_errors_are_retryable(self):
        assert issubclass(FeeTooLowError, TransientLedgerError)
        assert issubclass(NonceConflictError, TransientLedgerError)
        assert not issubclass(GasLimitTooLowError, FeeTooLowError)
        assert issubclass(LedgerUnavailableError, TransientLedgerError)


class TestRevertMapping:

    @pytest.mark.parametrize("reason, expected", [
        ("DuplicateBatch: batch D1 already exists", LedgerFailure.DUPLICATE_BATCH),
        ("NotFound: batch D1 does not exist", LedgerFailure.NOT_FOUND),
        ("out of gas", None),
        (None, None),
    ])
    def test_mapping(self, reason, expected):
        assert map_revert_reason(reason) == expected

    def test_batch_not_found_message(self):
        error = BatchNotFoundError("D9")
        assert error.reason == LedgerFailure.NOT_FOUND
        assert str(error) == "NotFound: no ledger record for D9"


class TestBackoff:

    def test_delays_stay_within_bounds(self):
        policy = RetryPolicy(max_attempts=10, base_delay=0.5, max_delay=4.0)
        backoff = policy.backoff(rng=random.Random(7))
        for attempt in range(1, 11):
            backoff.begin()
            ceiling = min(4.0, 0.5 * 2 ** (attempt - 1))
            assert 0 <= backoff.next_delay() <= ceiling

    def test_exhaustion(self):
        backoff = RetryPolicy(max_attempts=2).backoff()
        backoff.begin()
        assert not backoff.exhausted
        assert backoff.remaining == 1
        backoff.begin()
        assert backoff.exhausted
        assert backoff.remaining == 0

    def test_zero_delay_policy_never_sleeps(self):
        backoff = RetryPolicy(base_delay=0.0, max_delay=0.0).backoff()
        backoff.begin()
        assert backoff.next_delay() == 0


class TestCallWithRetry:

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientLedgerError("connection reset")
            return "ok"

        policy = RetryPolicy(max_attempts=5, base_delay=0.0, max_delay=0.0)
        assert await call_with_retry(flaky, policy) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_reraises_when_budget_spent(self):
        calls = []

        async def down():
            calls.append(1)
            raise TransientLedgerError("unavailable")

        policy = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)
        with pytest.raises(TransientLedgerError):
            await call_with_retry(down, policy)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("bug")

        with pytest.raises(ValueError):
            await call_with_retry(broken, RetryPolicy(base_delay=0.0))
        assert len(calls) == 1


class TestLedgerClient:

    @pytest.mark.asyncio
    async def test_node_errors_leave_as_typed_errors(self, client, provider):
        provider.faults.fail("gas_price", LedgerNodeError("nonce too low"))
        with pytest.raises(NonceConflictError):
            await client.gas_price()

    @pytest.mark.asyncio
    async def test_os_errors_are_transient(self, client, provider):
        provider.faults.fail("block_number", ConnectionResetError("reset by peer"))
        with pytest.raises(TransientLedgerError):
            await client.block_number()

    @pytest.mark.asyncio
    async def test_slow_call_times_out_as_transient(self, provider):
        client = LedgerClient(provider, timeout=0.01)
        provider.faults.delay("gas_price", 0.5)
        with pytest.raises(TransientLedgerError, match="timed out"):
            await client.gas_price()

    @pytest.mark.asyncio
    async def test_missing_batch_raises_not_found(self, client):
        with pytest.raises(BatchNotFoundError):
            await client.get_batch("NOPE")

    @pytest.mark.asyncio
    async def test_reads_retry_then_report_unavailable(self, client, provider):
        provider.faults.fail("stats", LedgerNodeError("rate limit exceeded"), times=2)
        assert (await client.stats()).total == 0

        provider.faults.fail("stats", LedgerNodeError("rate limit exceeded"), times=3)
        with pytest.raises(LedgerUnavailableError):
            await client.stats()

    @pytest.mark.asyncio
    async def test_confirmations_and_explorer_link(self, submitter, client, make_fields):
        outcome = await submitter.enqueue_create("D1", make_fields("D1")).wait(5)
        receipt = await client.get_receipt(outcome.tx_hash)

        assert await client.confirmations(receipt) == 1
        linked = LedgerClient(client.provider, explorer_url="https://explorer.example.org/")
        assert linked.explorer_link("0xabc") == "https://explorer.example.org/tx/0xabc"
        assert client.explorer_link("0xabc") is None
