"""
Pytest configuration and fixtures for the pharmatrace test suite.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from pharmatrace.config import Settings
from pharmatrace.db import build_engine, build_session_maker, close_db, init_db
from pharmatrace.ledger import LedgerClient, LedgerStateMachine, LocalLedgerProvider, Signer
from pharmatrace.ledger.types import utcnow
from pharmatrace.mirror import MirrorRepository
from pharmatrace.retry import RetryPolicy
from pharmatrace.service import ProvenanceService
from pharmatrace.submitter import SubmitterConfig, TransactionSubmitter

# No sleeping between retries in tests.
FAST_RETRY = RetryPolicy(max_attempts=5, base_delay=0.0, max_delay=0.0)


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings for the test network with a per-test SQLite mirror."""
    return Settings(
        _env_file=None,
        LEDGER_NETWORK="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}",
        CONFIRMATION_TIMEOUT_SECONDS=2.0,
        CONFIRMATION_POLL_SECONDS=0.01,
        RETRY_BASE_DELAY_SECONDS=0.0,
        RETRY_MAX_DELAY_SECONDS=0.0,
        RECONCILE_ENABLED=False,
        RECONCILE_PENDING_TIMEOUT_SECONDS=0,
        LOG_JSON=False,
    )


@pytest.fixture
def make_fields():
    """Factory for valid batch fields; ``expires_in`` is in days from today."""
    def factory(batch_id, expires_in=730, **overrides):
        today = utcnow().date()
        fields = {
            "batch_id": batch_id,
            "name": "Amoxicillin 500mg",
            "active_ingredient": "Amoxicillin trihydrate",
            "manufacturer_id": "MFR-001",
            "batch_number": f"LOT-{batch_id}",
            "production_date": today - timedelta(days=800),
            "expiry_date": today + timedelta(days=expires_in),
            "quality_test_result": "passed",
        }
        fields.update(overrides)
        return fields
    return factory


# ============================================================================
# Ledger
# ============================================================================

@pytest.fixture
def ledger_state(settings):
    return LedgerStateMachine(chain_id=settings.LEDGER_CHAIN_ID)


@pytest.fixture
def provider(ledger_state):
    return LocalLedgerProvider(ledger_state)


@pytest.fixture
def client(provider, settings):
    return LedgerClient.from_settings(provider, settings)


@pytest.fixture
def signer():
    return Signer.generate()


@pytest.fixture
def submitter_config():
    return SubmitterConfig(confirmation_timeout=1.0, poll_interval=0.01, retry_policy=FAST_RETRY)


@pytest_asyncio.fixture
async def submitter(client, signer, submitter_config):
    """A started submitter with no mirror hooks."""
    submitter = TransactionSubmitter(client, [signer], submitter_config)
    submitter.start()
    yield submitter
    await submitter.stop()


# ============================================================================
# Mirror
# ============================================================================

@pytest_asyncio.fixture
async def session_maker(settings):
    engine = build_engine(settings.DATABASE_URL)
    await init_db(engine)
    yield build_session_maker(engine)
    await close_db(engine)


@pytest.fixture
def repository(session_maker):
    return MirrorRepository(session_maker, max_attempts=3)


# ============================================================================
# Service
# ============================================================================

@pytest_asyncio.fixture
async def make_service(provider, signer, session_maker, settings):
    """Factory for started services sharing the test ledger and mirror."""
    services = []

    async def factory(**overrides):
        service = ProvenanceService(
            settings.model_copy(update=overrides),
            provider=provider,
            signer=signer,
            session_maker=session_maker,
        )
        await service.start()
        services.append(service)
        return service

    yield factory
    for service in services:
        await service.stop()


@pytest_asyncio.fixture
async def service(make_service):
    return await make_service()
