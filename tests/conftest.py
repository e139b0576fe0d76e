"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A controllable clock shared by every in-memory backend
- In-memory escrow, payment, license, catalog and purchase backends
- Purchase orchestrator wired to those backends
- API test client with the service container overridden
"""

import os
from collections.abc import Iterator
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

# Set environment variables BEFORE importing app modules
os.environ.setdefault("BACKEND", "memory")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")

from licensecore.api.dependencies import Services, get_services
from licensecore.models.domain import Asset, ReleaseConditions
from licensecore.services.catalog import DEMO_ASSETS, InMemoryAssetCatalog
from licensecore.services.escrow import InMemoryEscrowBackend
from licensecore.services.licensing import InMemoryLicenseRegistry
from licensecore.services.orchestrator import PurchaseOrchestrator
from licensecore.services.payment import InMemoryPaymentBackend
from licensecore.services.purchases import InMemoryPurchaseStore
from tests.helpers import CONTRACT, ISSUER, SELLER, FakeClock

# ============================================================================
# Clock and Catalog Fixtures
# ============================================================================


@pytest.fixture
def fixed_datetime() -> datetime:
    """Fixed datetime for deterministic testing."""
    return datetime(2024, 1, 15, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def clock(fixed_datetime: datetime) -> FakeClock:
    """Clock shared by all in-memory backends of a test."""
    return FakeClock(fixed_datetime)


@pytest.fixture
def asset() -> Asset:
    """Standard test asset priced at 25.00 USD."""
    return Asset(
        asset_id="asset_test_photo",
        title="Test Photo",
        price=Decimal("25.00"),
        currency="USD",
        seller_id=SELLER,
    )


@pytest.fixture
def catalog(asset: Asset) -> InMemoryAssetCatalog:
    """Catalog with the test asset plus 40.00 and 100.00 USD assets."""
    return InMemoryAssetCatalog(
        [
            asset,
            Asset("asset_test_print", "Test Print", Decimal("40.00"), "USD", SELLER),
            Asset("asset_test_course", "Test Course", Decimal("100.00"), "USD", SELLER),
        ]
    )


# ============================================================================
# Backend Fixtures
# ============================================================================


@pytest.fixture
def escrow_backend(clock: FakeClock) -> InMemoryEscrowBackend:
    """In-memory escrow manager with default release conditions."""
    return InMemoryEscrowBackend(default_conditions=ReleaseConditions(), clock=clock)


@pytest.fixture
def payment_backend(clock: FakeClock) -> InMemoryPaymentBackend:
    """In-memory settlement ledger."""
    return InMemoryPaymentBackend(gas_price=50, confirmations_per_block=1, clock=clock)


@pytest.fixture
def license_registry(clock: FakeClock) -> InMemoryLicenseRegistry:
    """In-memory license registry with the default templates."""
    return InMemoryLicenseRegistry(contract_address=CONTRACT, issuer_address=ISSUER, clock=clock)


@pytest.fixture
def purchase_store() -> InMemoryPurchaseStore:
    """In-memory receipt store."""
    return InMemoryPurchaseStore()


@pytest.fixture
def orchestrator(
    escrow_backend: InMemoryEscrowBackend,
    payment_backend: InMemoryPaymentBackend,
    license_registry: InMemoryLicenseRegistry,
    catalog: InMemoryAssetCatalog,
    purchase_store: InMemoryPurchaseStore,
    clock: FakeClock,
) -> PurchaseOrchestrator:
    """Orchestrator over the in-memory backends with a short timeout."""
    return PurchaseOrchestrator(
        escrow=escrow_backend,
        payments=payment_backend,
        licenses=license_registry,
        catalog=catalog,
        purchases=purchase_store,
        timeout_seconds=0.2,
        clock=clock,
    )


@pytest.fixture
def services(
    escrow_backend: InMemoryEscrowBackend,
    payment_backend: InMemoryPaymentBackend,
    license_registry: InMemoryLicenseRegistry,
    catalog: InMemoryAssetCatalog,
    purchase_store: InMemoryPurchaseStore,
    orchestrator: PurchaseOrchestrator,
) -> Services:
    """Service container over the in-memory backends."""
    for demo in DEMO_ASSETS:
        catalog.add(demo)
    return Services(
        backend="memory",
        escrow=escrow_backend,
        payments=payment_backend,
        licenses=license_registry,
        catalog=catalog,
        purchases=purchase_store,
        orchestrator=orchestrator,
    )


# ============================================================================
# Database Session Fixtures
# ============================================================================


@pytest.fixture
def db_session() -> AsyncMock:
    """Create a mock database session with sensible defaults."""
    session = AsyncMock(spec=AsyncSession)

    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    session.merge = AsyncMock()
    session.get = AsyncMock(return_value=None)

    # Default execute returns empty result
    mock_result = MagicMock()
    mock_result.scalar_one_or_none = MagicMock(return_value=None)
    mock_result.scalars = MagicMock(return_value=MagicMock(all=MagicMock(return_value=[])))
    session.execute = AsyncMock(return_value=mock_result)

    # Usable as "async with factory() as session"
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)

    return session


@pytest.fixture
def session_factory(db_session: AsyncMock) -> MagicMock:
    """Session factory returning the mock session."""
    return MagicMock(return_value=db_session)


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app() -> FastAPI:
    """FastAPI app for testing."""
    from licensecore.main import app as main_app

    return main_app


@pytest.fixture
def client(app: FastAPI, services: Services) -> Iterator[TestClient]:
    """Test client whose routes use the in-memory services."""
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()
