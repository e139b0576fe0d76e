"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Request bodies that select behaviour by an "action" or "type" field are
discriminated unions: each variant is its own model.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator


class EscrowStatus(str, Enum):
    """Escrow lifecycle status."""

    PENDING = "pending"
    FUNDED = "funded"
    COMPLETED = "completed"
    RELEASED = "released"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Settlement attempt status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentDirection(str, Enum):
    """History filter relative to an address."""

    SENT = "sent"
    RECEIVED = "received"
    ALL = "all"


class LicenseType(str, Enum):
    """License template type."""

    STANDARD = "standard"
    EXTENDED = "extended"
    EXCLUSIVE = "exclusive"
    CUSTOM = "custom"


class Unbounded(str, Enum):
    """Explicit markers for limits that are absent."""

    PERPETUAL = "perpetual"
    UNLIMITED = "unlimited"


class UsageOutcome(str, Enum):
    """Result classification of a license use attempt."""

    USED = "used"
    INVALID = "invalid"
    NOT_OWNER = "not-owner"
    EXPIRED = "expired"
    MAX_USES = "max-uses"


class PurchaseStatus(str, Enum):
    """Purchase receipt status."""

    COMPLETED = "completed"
    FAILED = "failed"


class PurchaseStage(str, Enum):
    """Orchestration stage a purchase failed in."""

    VALIDATION = "validation"
    ESCROW = "escrow"
    PAYMENT = "payment"
    LICENSE = "license"


Currency = Annotated[str, Field(min_length=3, max_length=3)]
Identifier = Annotated[str, Field(min_length=1, max_length=255)]
PositiveAmount = Annotated[Decimal, Field(gt=0, max_digits=38)]


# ============================================================================
# Metadata Models
# ============================================================================


class PaymentMetadata(BaseModel):
    """Metadata attached to a settlement - explicit fields, no dict."""

    escrow_id: str | None = None
    template_id: str | None = None
    license_type: str | None = None
    asset_title: str | None = None
    purchase_id: str | None = None


class TokenMetadata(BaseModel):
    """Metadata embedded in a minted license token - explicit fields, no dict."""

    asset_title: str | None = None
    purchase_price: Decimal | None = None
    transaction_hash: str | None = None
    escrow_id: str | None = None
    purchase_id: str | None = None
    note: str | None = Field(None, max_length=1000)


# ============================================================================
# Escrow Models
# ============================================================================


class FundEscrowRequest(BaseModel):
    """POST /escrow with action=fund."""

    action: Literal["fund"]
    escrow_id: Identifier
    amount: PositiveAmount


class ReleaseEscrowRequest(BaseModel):
    """POST /escrow with action=release."""

    action: Literal["release"]
    escrow_id: Identifier
    reason: str | None = Field(None, max_length=500)


class RefundEscrowRequest(BaseModel):
    """POST /escrow with action=refund."""

    action: Literal["refund"]
    escrow_id: Identifier
    reason: str | None = Field(None, max_length=500)


class EscrowActionRequest(
    RootModel[
        Annotated[
            FundEscrowRequest | ReleaseEscrowRequest | RefundEscrowRequest,
            Field(discriminator="action"),
        ]
    ]
):
    """POST /escrow request body."""


class ReleaseConditionsModel(BaseModel):
    """Escrow release conditions."""

    model_config = ConfigDict(from_attributes=True)

    min_rating: int
    time_lock_seconds: int
    verification_required: bool


class EscrowModel(BaseModel):
    """Escrow representation."""

    model_config = ConfigDict(from_attributes=True)

    escrow_id: str
    amount: Decimal
    currency: str
    buyer: str
    seller: str
    asset_id: str
    status: EscrowStatus
    created_at: datetime
    release_conditions: ReleaseConditionsModel
    funded_at: datetime | None = None
    closed_at: datetime | None = None
    close_reason: str | None = None


class EscrowResponse(BaseModel):
    """GET /escrow and POST /payment type=escrow response."""

    success: bool = True
    escrow: EscrowModel


class EscrowActionResponse(BaseModel):
    """POST /escrow response."""

    success: bool = True
    message: str
    escrow: EscrowModel


# ============================================================================
# Payment Models
# ============================================================================


class CreatePaymentRequest(BaseModel):
    """POST /payment with type=payment."""

    type: Literal["payment"]
    buyer_id: Identifier
    amount: PositiveAmount
    currency: Currency
    asset_id: Identifier
    seller_id: Identifier
    license_id: str | None = Field(None, max_length=255)
    idempotency_key: str | None = Field(None, max_length=255)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Ensure currency is uppercase ISO 4217 style code."""
        return v.upper()


class CreateEscrowRequest(BaseModel):
    """POST /payment with type=escrow."""

    type: Literal["escrow"]
    buyer_id: Identifier
    amount: PositiveAmount
    currency: Currency
    asset_id: Identifier
    seller_id: Identifier

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Ensure currency is uppercase ISO 4217 style code."""
        return v.upper()


class SplitRecipientRequest(BaseModel):
    """One recipient of a split payment."""

    address: Identifier
    percentage: Annotated[Decimal, Field(gt=0, le=100)]


class SplitPaymentRequest(BaseModel):
    """POST /payment with type=split."""

    type: Literal["split"]
    buyer_id: Identifier
    amount: PositiveAmount
    currency: Currency
    split_recipients: list[SplitRecipientRequest] = Field(..., min_length=1)
    idempotency_key: str | None = Field(None, max_length=255)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Ensure currency is uppercase ISO 4217 style code."""
        return v.upper()


class VerifyPaymentRequest(BaseModel):
    """POST /payment with type=verify."""

    type: Literal["verify"]
    buyer_id: Identifier
    transaction_hash: Identifier


class PaymentRequest(
    RootModel[
        Annotated[
            CreatePaymentRequest | CreateEscrowRequest | SplitPaymentRequest | VerifyPaymentRequest,
            Field(discriminator="type"),
        ]
    ]
):
    """POST /payment request body."""


class HistoryQuery(BaseModel):
    """GET /payment?type=history."""

    type: Literal["history"]
    address: Identifier
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)
    direction: PaymentDirection = PaymentDirection.ALL


class EscrowQuery(BaseModel):
    """GET /payment?type=escrow."""

    type: Literal["escrow"]
    escrow_id: Identifier


class EstimateQuery(BaseModel):
    """GET /payment?type=estimate."""

    type: Literal["estimate"]
    amount: PositiveAmount
    currency: Currency

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Ensure currency is uppercase ISO 4217 style code."""
        return v.upper()


class PaymentQuery(
    RootModel[
        Annotated[HistoryQuery | EscrowQuery | EstimateQuery, Field(discriminator="type")]
    ]
):
    """GET /payment query parameters."""


class SplitShareModel(BaseModel):
    """Computed share of a split payment."""

    model_config = ConfigDict(from_attributes=True)

    address: str
    percentage: Decimal
    amount: Decimal


class PaymentResultModel(BaseModel):
    """Settlement attempt record."""

    model_config = ConfigDict(from_attributes=True)

    transaction_hash: str
    status: PaymentStatus
    timestamp: datetime
    amount: Decimal
    currency: str
    sender: str | None
    recipients: list[str]
    asset_id: str | None
    block_number: int | None
    gas_used: int | None
    gas_price: int | None
    metadata: PaymentMetadata
    shares: list[SplitShareModel] = Field(default_factory=list)


class PaymentResponse(BaseModel):
    """POST /payment type=payment|split response."""

    success: bool = True
    payment: PaymentResultModel


class PaymentVerificationModel(BaseModel):
    """Verification of a settlement reference."""

    model_config = ConfigDict(from_attributes=True)

    is_valid: bool
    status: PaymentStatus
    confirmations: int
    amount: Decimal
    recipient: str | None


class PaymentVerificationResponse(BaseModel):
    """POST /payment type=verify response."""

    success: bool = True
    verification: PaymentVerificationModel


class HistoryResponse(BaseModel):
    """GET /payment type=history response."""

    success: bool = True
    transactions: list[PaymentResultModel]
    limit: int
    offset: int


class CostEstimateModel(BaseModel):
    """Settlement cost estimate."""

    model_config = ConfigDict(from_attributes=True)

    gas_limit: int
    gas_price: int
    total_cost: Decimal
    currency: str


class EstimateResponse(BaseModel):
    """GET /payment type=estimate response."""

    success: bool = True
    estimate: CostEstimateModel


# ============================================================================
# License Models
# ============================================================================


class TemplatesQuery(BaseModel):
    """GET /licenses?type=templates."""

    type: Literal["templates"]


class UserLicensesQuery(BaseModel):
    """GET /licenses?type=user."""

    type: Literal["user"]
    user: Identifier


class AssetLicensesQuery(BaseModel):
    """GET /licenses?type=asset."""

    type: Literal["asset"]
    asset_id: Identifier


class VerifyLicenseQuery(BaseModel):
    """GET /licenses?type=verify."""

    type: Literal["verify"]
    token_id: Identifier
    owner: str | None = None


class LicenseMetadataQuery(BaseModel):
    """GET /licenses?type=metadata."""

    type: Literal["metadata"]
    token_id: Identifier


class LicenseQuery(
    RootModel[
        Annotated[
            TemplatesQuery
            | UserLicensesQuery
            | AssetLicensesQuery
            | VerifyLicenseQuery
            | LicenseMetadataQuery,
            Field(discriminator="type"),
        ]
    ]
):
    """GET /licenses query parameters."""


class MintLicenseRequest(BaseModel):
    """POST /licenses with action=mint."""

    action: Literal["mint"]
    asset_id: Identifier
    license_template_id: Identifier
    purchaser: Identifier
    duration: int | None = Field(None, gt=0, description="Override duration in days")
    max_uses: int | None = Field(None, gt=0, description="Override maximum uses")
    metadata: TokenMetadata = Field(default_factory=TokenMetadata)
    idempotency_key: str | None = Field(None, max_length=255)


class TransferLicenseRequest(BaseModel):
    """POST /licenses with action=transfer."""

    model_config = ConfigDict(populate_by_name=True)

    action: Literal["transfer"]
    token_id: Identifier
    from_address: Identifier = Field(..., alias="from")
    to_address: Identifier = Field(..., alias="to")


class UseLicenseRequest(BaseModel):
    """POST /licenses with action=use."""

    action: Literal["use"]
    token_id: Identifier
    user: Identifier


class BurnLicenseRequest(BaseModel):
    """POST /licenses with action=burn."""

    action: Literal["burn"]
    token_id: Identifier
    user: Identifier


class LicenseActionRequest(
    RootModel[
        Annotated[
            MintLicenseRequest | TransferLicenseRequest | UseLicenseRequest | BurnLicenseRequest,
            Field(discriminator="action"),
        ]
    ]
):
    """POST /licenses request body."""


class LicenseTemplateModel(BaseModel):
    """License template catalog entry."""

    model_config = ConfigDict(from_attributes=True)

    template_id: str
    name: str
    description: str
    type: LicenseType
    permissions: list[str]
    restrictions: list[str]
    duration_days: int | Unbounded
    max_uses: int | Unbounded
    is_transferable: bool
    is_resellable: bool
    price_multiplier: Decimal


class LicenseTokenModel(BaseModel):
    """Minted license token."""

    model_config = ConfigDict(from_attributes=True)

    token_id: str
    contract_address: str
    asset_id: str
    template_id: str
    owner: str
    creator: str
    minted_at: datetime
    expires_at: datetime | Unbounded
    max_uses: int | Unbounded
    used_count: int
    permissions: list[str]
    restrictions: list[str]
    is_transferable: bool
    is_resellable: bool
    metadata: TokenMetadata
    uri: str


class LicenseVerificationModel(BaseModel):
    """License verification result."""

    model_config = ConfigDict(from_attributes=True)

    is_valid: bool
    token_id: str
    owner: str | None
    asset_id: str | None
    license_type: str | None
    expires_at: datetime | Unbounded | None
    remaining_uses: int | Unbounded | None
    permissions: list[str]


class LicenseAttributeModel(BaseModel):
    """Single trait of license metadata."""

    model_config = ConfigDict(from_attributes=True)

    trait_type: str
    value: str


class LicenseMetadataModel(BaseModel):
    """Display metadata of a license token."""

    model_config = ConfigDict(from_attributes=True)

    name: str
    description: str
    image: str | None
    attributes: list[LicenseAttributeModel]


class TemplatesResponse(BaseModel):
    """GET /licenses type=templates response."""

    success: bool = True
    templates: list[LicenseTemplateModel]


class LicenseListResponse(BaseModel):
    """GET /licenses type=user|asset response."""

    success: bool = True
    licenses: list[LicenseTokenModel]


class LicenseVerificationResponse(BaseModel):
    """GET /licenses type=verify response."""

    success: bool = True
    verification: LicenseVerificationModel


class LicenseMetadataResponse(BaseModel):
    """GET /licenses type=metadata response."""

    success: bool = True
    metadata: LicenseMetadataModel


class MintLicenseResponse(BaseModel):
    """POST /licenses action=mint response."""

    success: bool = True
    license: LicenseTokenModel
    price: Decimal
    currency: str


class LicenseActionResponse(BaseModel):
    """POST /licenses action=transfer|use|burn response."""

    success: bool
    message: str
    token_id: str
    remaining_uses: int | Unbounded | None = None


# ============================================================================
# Purchase Models
# ============================================================================


class PurchaseRequest(BaseModel):
    """POST /purchase request body."""

    buyer_id: Identifier
    asset_id: Identifier
    seller_id: Identifier
    license_template_id: Identifier
    idempotency_key: str | None = Field(None, max_length=255)


class PurchaseModel(BaseModel):
    """Durable receipt of a purchase attempt."""

    model_config = ConfigDict(from_attributes=True)

    purchase_id: str
    buyer: str
    asset_id: str
    seller_id: str
    template_id: str
    amount: Decimal
    currency: str
    status: PurchaseStatus
    escrow_id: str | None
    transaction_hash: str | None
    token_id: str | None
    failure_stage: PurchaseStage | None
    failure_reason: str | None
    compensated: bool
    needs_reconciliation: bool
    created_at: datetime


class PurchaseResponse(BaseModel):
    """POST /purchase response."""

    success: bool = True
    purchase: PurchaseModel
    escrow: EscrowModel
    payment: PaymentResultModel
    license: LicenseTokenModel


class PurchaseLookupResponse(BaseModel):
    """GET /purchase/{purchase_id} response."""

    success: bool = True
    purchase: PurchaseModel


# ============================================================================
# Misc
# ============================================================================


class ErrorResponse(BaseModel):
    """Error envelope for every non-2xx response."""

    error: str


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    backend: str
    version: str
