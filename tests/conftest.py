"""Shared test fixtures and configuration."""

import os
from datetime import datetime
from decimal import Decimal

import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("RECON_BATCH_PAUSE", "0")

from payments_recon.database import (  # noqa: E402
    Base,
    create_async_engine,
    get_async_session_factory,
)
from payments_recon.reconciliation import (  # noqa: E402
    PaymentMethod,
    TransactionRecord,
    TransactionStatus,
)


def make_record(
    transaction_id: str,
    status: TransactionStatus = TransactionStatus.COMPLETED,
    settlement_batch_id=None,
    amount: str = "100.00",
    transaction_date: datetime = datetime(2026, 3, 4, 12, 0),
    payment_method: PaymentMethod = PaymentMethod.DEBIT_CARD,
) -> TransactionRecord:
    """Build a record with sensible defaults."""
    return TransactionRecord(
        transaction_id=transaction_id,
        amount=Decimal(amount),
        status=status,
        payment_method=payment_method,
        transaction_date=transaction_date,
        settlement_batch_id=settlement_batch_id,
    )


@pytest.fixture
def record_factory():
    """Expose ``make_record`` to tests."""
    return make_record


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test engine."""
    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def api_key() -> str:
    return os.environ["API_KEY"]


@pytest.fixture
def auth_headers(api_key):
    """Authorization headers for API requests."""
    return {"Authorization": f"Bearer {api_key}"}
