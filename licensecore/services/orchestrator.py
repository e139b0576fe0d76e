"""
Purchase Orchestrator - escrow, payment and license issuance as one saga.

Sequence:
    1. validate asset, seller and template
    2. create + fund escrow at base price x template multiplier
    3. pay the seller                -> on failure refund escrow
    4. mint the license to the buyer -> on failure refund escrow
    5. release escrow                -> on failure flag for reconciliation
    6. persist the receipt (failed attempts too)

Every backend call carries a timeout. A timeout is an ambiguous outcome: the
orchestrator re-queries the backend before deciding to continue or to
compensate, and never blindly retries a payment. From escrow creation on
the steps run shielded from caller cancellation.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TypeVar

from structlog import get_logger

from licensecore.exceptions import (
    BackendTimeoutError,
    IdempotencyConflictError,
    LicensingError,
    PurchaseFailedError,
    SellerMismatchError,
    TransactionNotFoundError,
)
from licensecore.models.api import (
    EscrowStatus,
    PaymentMetadata,
    PaymentStatus,
    PurchaseStage,
    PurchaseStatus,
    TokenMetadata,
)
from licensecore.models.domain import (
    Asset,
    Escrow,
    LicenseTemplate,
    LicenseToken,
    PaymentResult,
    Purchase,
    PurchaseReceipt,
    ReleaseConditions,
)
from licensecore.models.money import quantize, to_minor
from licensecore.observability.logging import log_context
from licensecore.observability.metrics import metrics
from licensecore.observability.tracing import trace_operation
from licensecore.services.catalog import AssetCatalog
from licensecore.services.escrow import EscrowBackend
from licensecore.services.licensing import LicenseBackend
from licensecore.services.locks import KeyedLocks
from licensecore.services.payment import PaymentBackend
from licensecore.services.purchases import PurchaseStore, generate_purchase_id

logger = get_logger(__name__)

T = TypeVar("T")

RELEASE_REASON = "license issued"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class _Attempt:
    """Facts fixed once validation passes."""

    purchase: Purchase
    asset: Asset
    template: LicenseTemplate
    started: float

    @property
    def base_key(self) -> str:
        return self.purchase.idempotency_key or self.purchase.purchase_id

    @property
    def pay_key(self) -> str:
        return f"{self.base_key}:pay"

    @property
    def mint_key(self) -> str:
        return f"{self.base_key}:mint"


class PurchaseOrchestrator:
    """
    Drives one purchase across the escrow, payment and license backends.

    Depends only on the backend protocols, so any combination of in-memory
    and SQL backends can be wired in.
    """

    def __init__(
        self,
        escrow: EscrowBackend,
        payments: PaymentBackend,
        licenses: LicenseBackend,
        catalog: AssetCatalog,
        purchases: PurchaseStore,
        timeout_seconds: float = 30.0,
        release_conditions: ReleaseConditions | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._escrow = escrow
        self._payments = payments
        self._licenses = licenses
        self._catalog = catalog
        self._purchases = purchases
        self._timeout = timeout_seconds
        self._release_conditions = release_conditions
        self._clock = clock
        self._locks = KeyedLocks()
        self._inflight: dict[str, asyncio.Task[PurchaseReceipt]] = {}

    async def purchase(
        self,
        buyer: str,
        asset_id: str,
        seller_id: str,
        template_id: str,
        idempotency_key: str | None = None,
    ) -> PurchaseReceipt:
        """
        Buy a license for an asset.

        Args:
            buyer: Buyer address, becomes escrow buyer and license owner
            asset_id: Catalog asset id (price and currency come from the catalog)
            seller_id: Must match the asset's seller
            template_id: License template id
            idempotency_key: Same key + same request returns the original outcome

        Returns:
            PurchaseReceipt with the released escrow, the payment and the token

        Raises:
            AssetNotFoundError: Asset doesn't exist
            SellerMismatchError: seller_id is not the asset's seller
            TemplateNotFoundError: Template doesn't exist
            IdempotencyConflictError: key reused for a different purchase
            PurchaseFailedError: a step failed after validation
        """
        if idempotency_key is None:
            return await self._run(buyer, asset_id, seller_id, template_id, None)

        async with self._locks.hold(idempotency_key):
            inflight = self._inflight.get(idempotency_key)
            if inflight is not None:
                return await asyncio.shield(inflight)

            existing = await self._purchases.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                return await self._replay(existing, buyer, asset_id, seller_id, template_id)

            return await self._run(buyer, asset_id, seller_id, template_id, idempotency_key)

    # ========================================================================
    # Stages
    # ========================================================================

    async def _run(
        self,
        buyer: str,
        asset_id: str,
        seller_id: str,
        template_id: str,
        idempotency_key: str | None,
    ) -> PurchaseReceipt:
        purchase_id = generate_purchase_id()
        with (
            log_context(purchase_id=purchase_id),
            trace_operation(
                "purchase", purchase_id=purchase_id, asset_id=asset_id, template_id=template_id
            ),
        ):
            started = time.perf_counter()
            logger.info(
                "purchase_started",
                buyer=buyer,
                asset_id=asset_id,
                seller_id=seller_id,
                template_id=template_id,
            )

            try:
                attempt = await self._validate(
                    purchase_id, buyer, asset_id, seller_id, template_id, idempotency_key, started
                )
            except LicensingError as exc:
                logger.info("purchase_rejected", reason=str(exc))
                metrics.record_purchase(
                    "rejected", PurchaseStage.VALIDATION.value, time.perf_counter() - started
                )
                raise

            # From escrow creation on, finish or compensate even if the caller goes away
            task = asyncio.ensure_future(self._execute(attempt))
            inflight_key = attempt.base_key
            self._inflight[inflight_key] = task
            task.add_done_callback(lambda t: self._forget(inflight_key, t))
            return await asyncio.shield(task)

    async def _validate(
        self,
        purchase_id: str,
        buyer: str,
        asset_id: str,
        seller_id: str,
        template_id: str,
        idempotency_key: str | None,
        started: float,
    ) -> _Attempt:
        asset = await self._call("catalog.get_asset", self._catalog.get_asset(asset_id))
        if asset.seller_id != seller_id:
            raise SellerMismatchError(asset_id, asset.seller_id, seller_id)

        template = await self._call(
            "license.get_template", self._licenses.get_template(template_id)
        )
        final_price = quantize(asset.price * template.price_multiplier, asset.currency)

        purchase = Purchase(
            purchase_id=purchase_id,
            buyer=buyer,
            asset_id=asset_id,
            seller_id=seller_id,
            template_id=template_id,
            amount=final_price,
            currency=asset.currency,
            status=PurchaseStatus.FAILED,
            created_at=self._clock(),
            idempotency_key=idempotency_key,
        )
        return _Attempt(purchase=purchase, asset=asset, template=template, started=started)

    async def _execute(self, attempt: _Attempt) -> PurchaseReceipt:
        """Open the escrow, then settle. Runs shielded from cancellation."""
        escrow = await self._open_escrow(attempt)
        return await self._settle(attempt, escrow)

    async def _open_escrow(self, attempt: _Attempt) -> Escrow:
        """Create and fund the escrow. Nothing to compensate on failure."""
        purchase = attempt.purchase
        escrow: Escrow | None = None
        try:
            escrow = await self._call(
                "escrow.create",
                self._escrow.create(
                    purchase.amount,
                    purchase.currency,
                    purchase.buyer,
                    purchase.seller_id,
                    purchase.asset_id,
                    self._release_conditions,
                ),
            )
            metrics.record_escrow_transition(EscrowStatus.PENDING.value)
            funded = await self._fund(escrow)
            metrics.record_escrow_transition(EscrowStatus.FUNDED.value)
            return funded
        except Exception as exc:
            raise await self._fail(
                attempt,
                PurchaseStage.ESCROW,
                exc,
                escrow_id=escrow.escrow_id if escrow else None,
                compensated=False,
            ) from exc

    async def _settle(self, attempt: _Attempt, escrow: Escrow) -> PurchaseReceipt:
        """Pay, mint, release and persist. Runs shielded from cancellation."""
        with log_context(purchase_id=attempt.purchase.purchase_id, escrow_id=escrow.escrow_id):
            try:
                payment = await self._pay(attempt, escrow)
            except Exception as exc:
                compensated = await self._compensate(escrow.escrow_id, "payment failed")
                raise await self._fail(
                    attempt,
                    PurchaseStage.PAYMENT,
                    exc,
                    escrow_id=escrow.escrow_id,
                    compensated=compensated,
                    needs_reconciliation=not compensated or isinstance(exc, BackendTimeoutError),
                ) from exc

            try:
                token = await self._mint(attempt, escrow, payment)
            except Exception as exc:
                compensated = await self._compensate(escrow.escrow_id, "license issuance failed")
                # The seller keeps the payment; the receipt marks it for manual reversal
                raise await self._fail(
                    attempt,
                    PurchaseStage.LICENSE,
                    exc,
                    escrow_id=escrow.escrow_id,
                    compensated=compensated,
                    transaction_hash=payment.transaction_hash,
                    needs_reconciliation=True,
                ) from exc

            escrow, released = await self._release(escrow)

            purchase = replace(
                attempt.purchase,
                status=PurchaseStatus.COMPLETED,
                escrow_id=escrow.escrow_id,
                transaction_hash=payment.transaction_hash,
                token_id=token.token_id,
                needs_reconciliation=not released,
            )
            await self._persist(purchase)

            metrics.record_purchase(
                PurchaseStatus.COMPLETED.value, None, time.perf_counter() - attempt.started
            )
            logger.info(
                "purchase_completed",
                amount=str(purchase.amount),
                currency=purchase.currency,
                transaction_hash=payment.transaction_hash,
                token_id=token.token_id,
                needs_reconciliation=purchase.needs_reconciliation,
            )
            return PurchaseReceipt(purchase=purchase, escrow=escrow, payment=payment, license=token)

    # ========================================================================
    # Steps with ambiguous-outcome resolution
    # ========================================================================

    async def _fund(self, escrow: Escrow) -> Escrow:
        try:
            return await self._call(
                "escrow.fund", self._escrow.fund(escrow.escrow_id, escrow.amount)
            )
        except BackendTimeoutError:
            current = await self._requery("escrow.get", self._escrow.get(escrow.escrow_id))
            if current is not None and current.status == EscrowStatus.FUNDED:
                logger.info("ambiguous_outcome_resolved", operation="escrow.fund", applied=True)
                return current
            raise

    async def _pay(self, attempt: _Attempt, escrow: Escrow) -> PaymentResult:
        purchase = attempt.purchase
        try:
            payment = await self._call(
                "payment.pay",
                self._payments.pay(
                    purchase.amount,
                    purchase.currency,
                    recipient=purchase.seller_id,
                    asset_id=purchase.asset_id,
                    buyer=purchase.buyer,
                    metadata=PaymentMetadata(
                        escrow_id=escrow.escrow_id,
                        template_id=attempt.template.template_id,
                        license_type=attempt.template.type.value,
                        asset_title=attempt.asset.title,
                        purchase_id=purchase.purchase_id,
                    ),
                    idempotency_key=attempt.pay_key,
                ),
            )
        except BackendTimeoutError:
            payment = await self._requery("payment.lookup", self._payments.lookup(attempt.pay_key))
            if payment is None:
                metrics.record_payment("direct", False)
                raise
            verification = await self._requery(
                "payment.verify", self._payments.verify(payment.transaction_hash)
            )
            if verification is None or not verification.is_valid:
                metrics.record_payment("direct", False)
                raise
            logger.info(
                "ambiguous_outcome_resolved",
                operation="payment.pay",
                applied=True,
                transaction_hash=payment.transaction_hash,
            )
        except Exception:
            metrics.record_payment("direct", False)
            raise

        metrics.record_payment("direct", True, to_minor(payment.amount, payment.currency))
        return payment

    async def _mint(
        self, attempt: _Attempt, escrow: Escrow, payment: PaymentResult
    ) -> LicenseToken:
        purchase = attempt.purchase
        try:
            token = await self._call(
                "license.mint",
                self._licenses.mint(
                    purchase.asset_id,
                    attempt.template.template_id,
                    purchase.buyer,
                    metadata=TokenMetadata(
                        asset_title=attempt.asset.title,
                        purchase_price=purchase.amount,
                        transaction_hash=payment.transaction_hash,
                        escrow_id=escrow.escrow_id,
                        purchase_id=purchase.purchase_id,
                    ),
                    idempotency_key=attempt.mint_key,
                ),
            )
        except BackendTimeoutError:
            token = await self._requery("license.lookup", self._licenses.lookup(attempt.mint_key))
            if token is None:
                metrics.record_license_operation("mint", "failed")
                raise
            logger.info(
                "ambiguous_outcome_resolved",
                operation="license.mint",
                applied=True,
                token_id=token.token_id,
            )
        except Exception:
            metrics.record_license_operation("mint", "failed")
            raise

        metrics.record_license_operation("mint", "minted")
        return token

    async def _release(self, escrow: Escrow) -> tuple[Escrow, bool]:
        """Release escrow. A failure here never fails the purchase."""
        try:
            released = await self._call(
                "escrow.release", self._escrow.release(escrow.escrow_id, RELEASE_REASON)
            )
            metrics.record_escrow_transition(EscrowStatus.RELEASED.value)
            return released, True
        except Exception as exc:
            current = await self._requery("escrow.get", self._escrow.get(escrow.escrow_id))
            if current is not None and current.status == EscrowStatus.RELEASED:
                logger.info("ambiguous_outcome_resolved", operation="escrow.release", applied=True)
                metrics.record_escrow_transition(EscrowStatus.RELEASED.value)
                return current, True

            logger.error(
                "escrow_release_inconsistency",
                escrow_id=escrow.escrow_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            metrics.record_error(type(exc).__name__, "escrow.release")
            return current or escrow, False

    async def _compensate(self, escrow_id: str, reason: str) -> bool:
        """Refund the escrow. Returns whether the refund is known to have happened."""
        try:
            await self._call("escrow.refund", self._escrow.refund(escrow_id, reason))
            compensated = True
        except Exception as exc:
            current = await self._requery("escrow.get", self._escrow.get(escrow_id))
            compensated = current is not None and current.status == EscrowStatus.REFUNDED
            if not compensated:
                logger.error(
                    "escrow_refund_failed",
                    escrow_id=escrow_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        if compensated:
            metrics.record_escrow_transition(EscrowStatus.REFUNDED.value)
            logger.warning("purchase_compensated", escrow_id=escrow_id, reason=reason)
        metrics.record_compensation(compensated)
        return compensated

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _call(self, operation: str, call: Awaitable[T]) -> T:
        """Await a backend call under the configured timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except TimeoutError:
            metrics.record_backend_timeout(operation)
            logger.warning("backend_call_timeout", operation=operation, timeout_seconds=self._timeout)
            raise BackendTimeoutError(operation, self._timeout) from None

    async def _requery(self, operation: str, call: Awaitable[T]) -> T | None:
        """Read-only re-query after an ambiguous outcome. None when it fails too."""
        try:
            return await self._call(operation, call)
        except Exception as exc:
            logger.error(
                "requery_failed", operation=operation, error=str(exc), error_type=type(exc).__name__
            )
            return None

    async def _fail(
        self,
        attempt: _Attempt,
        stage: PurchaseStage,
        exc: Exception,
        escrow_id: str | None,
        compensated: bool,
        transaction_hash: str | None = None,
        needs_reconciliation: bool = False,
    ) -> PurchaseFailedError:
        """Persist the failed receipt and build the error to raise."""
        purchase = replace(
            attempt.purchase,
            status=PurchaseStatus.FAILED,
            escrow_id=escrow_id,
            transaction_hash=transaction_hash,
            failure_stage=stage,
            failure_reason=str(exc),
            compensated=compensated,
            needs_reconciliation=needs_reconciliation,
        )
        await self._persist(purchase)

        metrics.record_purchase(
            PurchaseStatus.FAILED.value, stage.value, time.perf_counter() - attempt.started
        )
        metrics.record_error(type(exc).__name__, f"purchase.{stage.value}")
        logger.error(
            "purchase_failed",
            stage=stage.value,
            error=str(exc),
            error_type=type(exc).__name__,
            escrow_id=escrow_id,
            compensated=compensated,
            needs_reconciliation=needs_reconciliation,
        )
        return PurchaseFailedError(
            stage, exc, escrow_id, compensated, purchase_id=purchase.purchase_id
        )

    async def _persist(self, purchase: Purchase) -> None:
        try:
            await self._call("purchases.save", self._purchases.save(purchase))
        except Exception:
            # The saga outcome stands; a lost receipt is recovered from the logs
            logger.exception(
                "purchase_receipt_persist_failed",
                purchase_id=purchase.purchase_id,
                status=purchase.status.value,
            )

    async def _replay(
        self,
        existing: Purchase,
        buyer: str,
        asset_id: str,
        seller_id: str,
        template_id: str,
    ) -> PurchaseReceipt:
        """Return the original outcome of a purchase made under the same key."""
        request = (buyer, asset_id, seller_id, template_id)
        recorded = (existing.buyer, existing.asset_id, existing.seller_id, existing.template_id)
        if request != recorded:
            raise IdempotencyConflictError(existing.idempotency_key or "", existing.purchase_id)

        logger.info(
            "purchase_idempotent_replay",
            purchase_id=existing.purchase_id,
            status=existing.status.value,
        )
        if existing.status == PurchaseStatus.FAILED:
            raise PurchaseFailedError(
                existing.failure_stage or PurchaseStage.ESCROW,
                LicensingError(existing.failure_reason or "unknown"),
                existing.escrow_id,
                existing.compensated,
                purchase_id=existing.purchase_id,
            )

        escrow = await self._escrow.get(existing.escrow_id)
        payment = await self._payments.lookup(f"{existing.idempotency_key}:pay")
        if payment is None or payment.status != PaymentStatus.COMPLETED:
            raise TransactionNotFoundError(existing.transaction_hash or existing.purchase_id)
        token = await self._licenses.get(existing.token_id)
        return PurchaseReceipt(purchase=existing, escrow=escrow, payment=payment, license=token)

    def _forget(self, key: str, task: asyncio.Task[PurchaseReceipt]) -> None:
        self._inflight.pop(key, None)
        # Retrieve the outcome so an abandoned task does not warn on collection
        if not task.cancelled():
            task.exception()
