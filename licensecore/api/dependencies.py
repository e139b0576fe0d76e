"""
FastAPI Dependencies - service container wiring.

NO DICTIONARIES - All dependencies return typed objects.
Backends are built once per process in the application lifespan and stored
on app.state; tests swap them via app.dependency_overrides[get_services].
"""

from dataclasses import dataclass

from fastapi import Request
from structlog import get_logger

from licensecore.config import Settings
from licensecore.models.domain import ReleaseConditions
from licensecore.services.catalog import DEMO_ASSETS, AssetCatalog, InMemoryAssetCatalog
from licensecore.services.escrow import EscrowBackend, InMemoryEscrowBackend
from licensecore.services.licensing import InMemoryLicenseRegistry, LicenseBackend
from licensecore.services.orchestrator import PurchaseOrchestrator
from licensecore.services.payment import InMemoryPaymentBackend, PaymentBackend
from licensecore.services.purchases import InMemoryPurchaseStore, PurchaseStore

logger = get_logger(__name__)


@dataclass
class Services:
    """Process-wide backend container."""

    backend: str
    escrow: EscrowBackend
    payments: PaymentBackend
    licenses: LicenseBackend
    catalog: AssetCatalog
    purchases: PurchaseStore
    orchestrator: PurchaseOrchestrator


def build_services(settings: Settings) -> Services:
    """
    Construct every backend for the configured BACKEND.

    The asset catalog is an external collaborator and always in-memory here.
    """
    conditions = ReleaseConditions(
        min_rating=settings.escrow_min_rating,
        time_lock_seconds=settings.escrow_time_lock_seconds,
        verification_required=settings.escrow_verification_required,
    )
    catalog = InMemoryAssetCatalog(DEMO_ASSETS if settings.seed_demo_assets else ())

    escrow: EscrowBackend
    payments: PaymentBackend
    licenses: LicenseBackend
    purchases: PurchaseStore

    if settings.backend == "database":
        from licensecore.db.session import get_session_factory
        from licensecore.db.stores import (
            SQLEscrowBackend,
            SQLLicenseRegistry,
            SQLPaymentBackend,
            SQLPurchaseStore,
        )

        factory = get_session_factory()
        escrow = SQLEscrowBackend(factory, default_conditions=conditions)
        payments = SQLPaymentBackend(
            factory,
            gas_price=settings.gas_price,
            confirmations_per_block=settings.confirmations_per_block,
        )
        licenses = SQLLicenseRegistry(
            factory,
            contract_address=settings.contract_address,
            issuer_address=settings.issuer_address,
        )
        purchases = SQLPurchaseStore(factory)
    else:
        escrow = InMemoryEscrowBackend(default_conditions=conditions)
        payments = InMemoryPaymentBackend(
            gas_price=settings.gas_price,
            confirmations_per_block=settings.confirmations_per_block,
        )
        licenses = InMemoryLicenseRegistry(
            contract_address=settings.contract_address,
            issuer_address=settings.issuer_address,
        )
        purchases = InMemoryPurchaseStore()

    orchestrator = PurchaseOrchestrator(
        escrow=escrow,
        payments=payments,
        licenses=licenses,
        catalog=catalog,
        purchases=purchases,
        timeout_seconds=settings.backend_call_timeout_seconds,
        release_conditions=conditions,
    )

    logger.info(
        "services_built",
        backend=settings.backend,
        seeded_assets=len(catalog),
        timeout_seconds=settings.backend_call_timeout_seconds,
    )
    return Services(
        backend=settings.backend,
        escrow=escrow,
        payments=payments,
        licenses=licenses,
        catalog=catalog,
        purchases=purchases,
        orchestrator=orchestrator,
    )


def get_services(request: Request) -> Services:
    """
    FastAPI dependency returning the process-wide services.

    Usage:
        @router.post("/escrow")
        async def escrow_action(services: Services = Depends(get_services)):
            ...
    """
    return request.app.state.services
