"""
Pytest configuration and global fixtures.

This module provides shared fixtures used across all tests.
"""

import itertools
from collections.abc import Callable, Generator
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest
from hypothesis import HealthCheck, settings
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from hotspotrecon.reconciliation.domain import models  # noqa: F401
from hotspotrecon.reconciliation.domain.enums import MatchState, OrderType, TransactionSource
from hotspotrecon.reconciliation.domain.models import Transaction
from hotspotrecon.storage.database.base import Base
from hotspotrecon.utils.config import Settings, get_settings

MERCHANT_ID = "merchant-1"
PHONE = "254712345678"
PAID_AT = datetime(2024, 1, 15, 14, 30, 0)
ORDERED_AT = datetime(2024, 1, 15, 14, 29, 50)

# The autouse settings fixture is function-scoped but idempotent across examples.
settings.register_profile("hotspotrecon", suppress_health_check=[HealthCheck.function_scoped_fixture])
settings.load_profile("hotspotrecon")


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch) -> Generator[None, None, None]:
    """Keep every test on default settings with a throwaway data directory."""
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Explicit settings with an in-memory database."""
    return Settings(database_url="sqlite:///:memory:", data_dir=tmp_path / "data")


@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create a database session for testing.

    Configured like the application factory: no autoflush, no expiry on commit.
    """
    SessionLocal = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()

    yield session

    session.rollback()
    session.close()


@pytest.fixture
def make_transaction(db_session: Session) -> Callable[..., Transaction]:
    """Factory persisting canonical (already normalized) transactions."""
    counter = itertools.count(1)

    def _make(
        source: TransactionSource,
        *,
        amount: str | None = "500.00",
        phone: str | None = PHONE,
        reference: str = "VOUCHER",
        occurred_at: datetime | None = None,
        merchant_id: str = MERCHANT_ID,
        external_id: str | None = None,
    ) -> Transaction:
        is_provider = source == TransactionSource.PROVIDER
        tx = Transaction(
            merchant_id=merchant_id,
            source=source,
            external_id=external_id or f"{source.value}-{next(counter)}",
            amount=Decimal(amount) if amount is not None else None,
            phone=phone,
            reference=reference,
            occurred_at=occurred_at or (PAID_AT if is_provider else ORDERED_AT),
            order_type=None if is_provider else OrderType.VOUCHER,
            match_state=MatchState.UNMATCHED,
            counterpart_id=None,
            version=0,
            issues=[],
        )
        db_session.add(tx)
        db_session.commit()
        return tx

    return _make


@pytest.fixture
def provider_tx(make_transaction) -> Transaction:
    """KES 500 voucher payment confirmed at 14:30:00."""
    return make_transaction(TransactionSource.PROVIDER)


@pytest.fixture
def system_tx(make_transaction) -> Transaction:
    """KES 500 voucher order created ten seconds before the payment."""
    return make_transaction(TransactionSource.SYSTEM)
