"""
API Routes - FastAPI endpoints for escrow, payment, license and purchase operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
Domain exceptions propagate to the handlers registered in main, which map
them to the {"error": ...} envelope.
"""

from typing import assert_never

from fastapi import APIRouter, Depends, Query, Request
from structlog import get_logger

from licensecore.api.dependencies import Services, get_services
from licensecore.config import settings
from licensecore.exceptions import SellerMismatchError
from licensecore.models.api import (
    AssetLicensesQuery,
    BurnLicenseRequest,
    CostEstimateModel,
    CreateEscrowRequest,
    CreatePaymentRequest,
    EscrowActionRequest,
    EscrowActionResponse,
    EscrowModel,
    EscrowQuery,
    EscrowResponse,
    EstimateQuery,
    EstimateResponse,
    FundEscrowRequest,
    HealthResponse,
    HistoryQuery,
    HistoryResponse,
    LicenseActionRequest,
    LicenseActionResponse,
    LicenseListResponse,
    LicenseMetadataModel,
    LicenseMetadataQuery,
    LicenseMetadataResponse,
    LicenseQuery,
    LicenseTemplateModel,
    LicenseTokenModel,
    LicenseVerificationModel,
    LicenseVerificationResponse,
    MintLicenseRequest,
    MintLicenseResponse,
    PaymentMetadata,
    PaymentQuery,
    PaymentRequest,
    PaymentResponse,
    PaymentResultModel,
    PaymentVerificationModel,
    PaymentVerificationResponse,
    PurchaseLookupResponse,
    PurchaseModel,
    PurchaseRequest,
    PurchaseResponse,
    RefundEscrowRequest,
    ReleaseEscrowRequest,
    SplitPaymentRequest,
    TemplatesQuery,
    TemplatesResponse,
    TransferLicenseRequest,
    UseLicenseRequest,
    UserLicensesQuery,
    VerifyLicenseQuery,
    VerifyPaymentRequest,
)
from licensecore.models.domain import Asset, SplitRecipient
from licensecore.models.money import quantize, to_minor
from licensecore.observability.metrics import metrics

logger = get_logger(__name__)

router = APIRouter()

EscrowBody = EscrowActionResponse | EscrowResponse
PaymentBody = PaymentResponse | EscrowResponse | PaymentVerificationResponse
PaymentQueryBody = HistoryResponse | EscrowResponse | EstimateResponse
LicenseQueryBody = (
    TemplatesResponse | LicenseListResponse | LicenseVerificationResponse | LicenseMetadataResponse
)


async def _asset_for_seller(services: Services, asset_id: str, seller_id: str) -> Asset:
    """Look up an asset and check the seller owns it."""
    asset = await services.catalog.get_asset(asset_id)
    if asset.seller_id != seller_id:
        raise SellerMismatchError(asset_id, asset.seller_id, seller_id)
    return asset


# ============================================================================
# Escrow
# ============================================================================


@router.post("/escrow", response_model=EscrowActionResponse)
async def escrow_action(
    body: EscrowActionRequest,
    services: Services = Depends(get_services),
) -> EscrowActionResponse:
    """
    Fund, release or refund an escrow.

    Errors:
    - 400: invalid body, amount mismatch, escrow in wrong status
    - 404: unknown escrow
    """
    request = body.root
    match request:
        case FundEscrowRequest():
            escrow = await services.escrow.fund(request.escrow_id, request.amount)
            message = "Escrow funded successfully"
        case ReleaseEscrowRequest():
            escrow = await services.escrow.release(request.escrow_id, request.reason)
            message = "Escrow released successfully"
        case RefundEscrowRequest():
            escrow = await services.escrow.refund(request.escrow_id, request.reason)
            message = "Escrow refunded successfully"
        case _:
            assert_never(request)

    metrics.record_escrow_transition(escrow.status.value)
    return EscrowActionResponse(message=message, escrow=EscrowModel.model_validate(escrow))


@router.get("/escrow", response_model=EscrowResponse)
async def get_escrow(
    escrow_id: str = Query(..., min_length=1, max_length=255),
    services: Services = Depends(get_services),
) -> EscrowResponse:
    """Get escrow by id."""
    escrow = await services.escrow.get(escrow_id)
    return EscrowResponse(escrow=EscrowModel.model_validate(escrow))


# ============================================================================
# Payments
# ============================================================================


@router.post("/payment", response_model=PaymentBody)
async def payment_action(
    body: PaymentRequest,
    services: Services = Depends(get_services),
) -> PaymentBody:
    """
    Pay, open an escrow, split-pay or verify a settlement.

    Errors:
    - 400: invalid body, seller does not own asset, invalid split
    - 404: unknown asset or transaction
    """
    request = body.root
    match request:
        case CreatePaymentRequest():
            asset = await _asset_for_seller(services, request.asset_id, request.seller_id)
            payment = await services.payments.pay(
                request.amount,
                request.currency,
                recipient=request.seller_id,
                asset_id=request.asset_id,
                buyer=request.buyer_id,
                metadata=PaymentMetadata(template_id=request.license_id, asset_title=asset.title),
                idempotency_key=request.idempotency_key,
            )
            metrics.record_payment("direct", True, to_minor(payment.amount, payment.currency))
            return PaymentResponse(payment=PaymentResultModel.model_validate(payment))

        case CreateEscrowRequest():
            await _asset_for_seller(services, request.asset_id, request.seller_id)
            escrow = await services.escrow.create(
                request.amount,
                request.currency,
                buyer=request.buyer_id,
                seller=request.seller_id,
                asset_id=request.asset_id,
            )
            metrics.record_escrow_transition(escrow.status.value)
            return EscrowResponse(escrow=EscrowModel.model_validate(escrow))

        case SplitPaymentRequest():
            payment = await services.payments.pay_split(
                [SplitRecipient(r.address, r.percentage) for r in request.split_recipients],
                request.amount,
                request.currency,
                sender=request.buyer_id,
                idempotency_key=request.idempotency_key,
            )
            metrics.record_payment("split", True, to_minor(payment.amount, payment.currency))
            return PaymentResponse(payment=PaymentResultModel.model_validate(payment))

        case VerifyPaymentRequest():
            verification = await services.payments.verify(request.transaction_hash)
            return PaymentVerificationResponse(
                verification=PaymentVerificationModel.model_validate(verification)
            )

        case _:
            assert_never(request)


@router.get("/payment", response_model=PaymentQueryBody)
async def payment_query(
    request: Request,
    services: Services = Depends(get_services),
) -> PaymentQueryBody:
    """
    Settlement history, escrow lookup or cost estimate, selected by ?type=.

    Errors:
    - 400: missing or invalid query parameters
    - 404: unknown escrow
    """
    query = PaymentQuery.model_validate(dict(request.query_params)).root
    match query:
        case HistoryQuery():
            transactions = await services.payments.history(
                query.address, limit=query.limit, offset=query.offset, direction=query.direction
            )
            return HistoryResponse(
                transactions=[PaymentResultModel.model_validate(tx) for tx in transactions],
                limit=query.limit,
                offset=query.offset,
            )
        case EscrowQuery():
            escrow = await services.escrow.get(query.escrow_id)
            return EscrowResponse(escrow=EscrowModel.model_validate(escrow))
        case EstimateQuery():
            estimate = await services.payments.estimate_cost(query.amount, query.currency)
            return EstimateResponse(estimate=CostEstimateModel.model_validate(estimate))
        case _:
            assert_never(query)


# ============================================================================
# Licenses
# ============================================================================


@router.get("/licenses", response_model=LicenseQueryBody)
async def license_query(
    request: Request,
    services: Services = Depends(get_services),
) -> LicenseQueryBody:
    """
    Templates, licenses by owner or asset, verification or metadata, selected by ?type=.

    Errors:
    - 400: missing id or invalid type
    - 404: unknown token (metadata)
    """
    query = LicenseQuery.model_validate(dict(request.query_params)).root
    match query:
        case TemplatesQuery():
            templates = await services.licenses.list_templates()
            return TemplatesResponse(
                templates=[LicenseTemplateModel.model_validate(t) for t in templates]
            )
        case UserLicensesQuery():
            tokens = await services.licenses.list_for_owner(query.user)
            return LicenseListResponse(
                licenses=[LicenseTokenModel.model_validate(t) for t in tokens]
            )
        case AssetLicensesQuery():
            tokens = await services.licenses.list_for_asset(query.asset_id)
            return LicenseListResponse(
                licenses=[LicenseTokenModel.model_validate(t) for t in tokens]
            )
        case VerifyLicenseQuery():
            verification = await services.licenses.verify(query.token_id, query.owner)
            return LicenseVerificationResponse(
                verification=LicenseVerificationModel.model_validate(verification)
            )
        case LicenseMetadataQuery():
            metadata = await services.licenses.metadata(query.token_id)
            return LicenseMetadataResponse(
                metadata=LicenseMetadataModel.model_validate(metadata)
            )
        case _:
            assert_never(query)


@router.post("/licenses", response_model=MintLicenseResponse | LicenseActionResponse)
async def license_action(
    body: LicenseActionRequest,
    services: Services = Depends(get_services),
) -> MintLicenseResponse | LicenseActionResponse:
    """
    Mint, transfer, use or burn a license.

    A rejected use is reported with success=false, not as an error.

    Errors:
    - 400: invalid body, not owner, not transferable
    - 404: unknown asset, template or token
    """
    request = body.root
    match request:
        case MintLicenseRequest():
            asset = await services.catalog.get_asset(request.asset_id)
            template = await services.licenses.get_template(request.license_template_id)
            token = await services.licenses.mint(
                request.asset_id,
                request.license_template_id,
                request.purchaser,
                duration_override=request.duration,
                max_uses_override=request.max_uses,
                metadata=request.metadata,
                idempotency_key=request.idempotency_key,
            )
            metrics.record_license_operation("mint", "minted")
            return MintLicenseResponse(
                license=LicenseTokenModel.model_validate(token),
                price=quantize(asset.price * template.price_multiplier, asset.currency),
                currency=asset.currency,
            )

        case TransferLicenseRequest():
            await services.licenses.transfer(
                request.token_id, request.from_address, request.to_address
            )
            metrics.record_license_operation("transfer", "transferred")
            return LicenseActionResponse(
                success=True,
                message="License transferred successfully",
                token_id=request.token_id,
            )

        case UseLicenseRequest():
            result = await services.licenses.use(request.token_id, request.user)
            metrics.record_license_operation("use", result.outcome.value)
            return LicenseActionResponse(
                success=result.success,
                message=result.message,
                token_id=request.token_id,
                remaining_uses=result.remaining_uses,
            )

        case BurnLicenseRequest():
            await services.licenses.burn(request.token_id, request.user)
            metrics.record_license_operation("burn", "burned")
            return LicenseActionResponse(
                success=True,
                message="License burned successfully",
                token_id=request.token_id,
            )

        case _:
            assert_never(request)


# ============================================================================
# Purchases
# ============================================================================


@router.post("/purchase", response_model=PurchaseResponse)
async def create_purchase(
    request: PurchaseRequest,
    services: Services = Depends(get_services),
) -> PurchaseResponse:
    """
    Buy a license: escrow, pay the seller, mint, release escrow.

    Errors:
    - 400: seller does not own asset, idempotency conflict
    - 404: unknown asset or template
    - 500: a step failed after validation (escrow refunded when possible)
    """
    receipt = await services.orchestrator.purchase(
        buyer=request.buyer_id,
        asset_id=request.asset_id,
        seller_id=request.seller_id,
        template_id=request.license_template_id,
        idempotency_key=request.idempotency_key,
    )
    return PurchaseResponse(
        purchase=PurchaseModel.model_validate(receipt.purchase),
        escrow=EscrowModel.model_validate(receipt.escrow),
        payment=PaymentResultModel.model_validate(receipt.payment),
        license=LicenseTokenModel.model_validate(receipt.license),
    )


@router.get("/purchase/{purchase_id}", response_model=PurchaseLookupResponse)
async def get_purchase(
    purchase_id: str,
    services: Services = Depends(get_services),
) -> PurchaseLookupResponse:
    """Get a purchase receipt, completed or failed."""
    purchase = await services.purchases.get(purchase_id)
    return PurchaseLookupResponse(purchase=PurchaseModel.model_validate(purchase))


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(services: Services = Depends(get_services)) -> HealthResponse:
    """Liveness check."""
    return HealthResponse(status="healthy", backend=services.backend, version=settings.api_version)
