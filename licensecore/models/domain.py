"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Limits that may be absent use the explicit PERPETUAL / UNLIMITED markers
instead of None.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Literal

from licensecore.models.api import (
    EscrowStatus,
    LicenseType,
    PaymentMetadata,
    PaymentStatus,
    PurchaseStage,
    PurchaseStatus,
    TokenMetadata,
    Unbounded,
    UsageOutcome,
)

PERPETUAL = Unbounded.PERPETUAL
UNLIMITED = Unbounded.UNLIMITED

DurationDays = int | Literal[Unbounded.PERPETUAL]
Expiry = datetime | Literal[Unbounded.PERPETUAL]
UseLimit = int | Literal[Unbounded.UNLIMITED]


# ============================================================================
# Escrow
# ============================================================================


@dataclass(frozen=True)
class ReleaseConditions:
    """Conditions under which escrowed funds may be released."""

    min_rating: int = 3
    time_lock_seconds: int = 86400
    verification_required: bool = False

    def __post_init__(self) -> None:
        """Validate release conditions."""
        if self.time_lock_seconds < 0:
            raise ValueError(f"Time lock cannot be negative: {self.time_lock_seconds}")


@dataclass(frozen=True)
class Escrow:
    """Immutable escrow snapshot."""

    escrow_id: str
    amount: Decimal
    currency: str
    buyer: str
    seller: str
    asset_id: str
    status: EscrowStatus
    created_at: datetime
    release_conditions: ReleaseConditions
    funded_at: datetime | None = None
    closed_at: datetime | None = None
    close_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Released and refunded escrows never change again."""
        return self.status in (EscrowStatus.RELEASED, EscrowStatus.REFUNDED)


# ============================================================================
# Payments
# ============================================================================


@dataclass(frozen=True)
class SplitRecipient:
    """Requested share of a split payment, before amounts are computed."""

    address: str
    percentage: Decimal


@dataclass(frozen=True)
class SplitShare:
    """One recipient's share of a split payment."""

    address: str
    percentage: Decimal
    amount: Decimal


@dataclass(frozen=True)
class SplitPayment:
    """A single settlement divided among recipients by percentage."""

    recipients: tuple[SplitShare, ...]
    total_amount: Decimal
    currency: str

    @property
    def settled_total(self) -> Decimal:
        """Sum of the computed share amounts."""
        return sum((share.amount for share in self.recipients), Decimal(0))


@dataclass(frozen=True)
class PaymentResult:
    """
    Immutable record of a settlement attempt.

    recipients holds one address for a direct payment and every share
    address for a split payment (shares then carries the amounts).
    """

    transaction_hash: str
    status: PaymentStatus
    timestamp: datetime
    amount: Decimal
    currency: str
    sender: str | None
    recipients: tuple[str, ...]
    asset_id: str | None
    block_number: int | None
    gas_used: int | None
    gas_price: int | None
    metadata: PaymentMetadata = field(default_factory=PaymentMetadata)
    shares: tuple[SplitShare, ...] = ()
    idempotency_key: str | None = None


@dataclass(frozen=True)
class PaymentVerification:
    """Outcome of verifying a transaction reference."""

    is_valid: bool
    status: PaymentStatus
    confirmations: int
    amount: Decimal
    recipient: str | None


@dataclass(frozen=True)
class CostEstimate:
    """Settlement cost estimate - no side effects."""

    gas_limit: int
    gas_price: int
    total_cost: Decimal
    currency: str


# ============================================================================
# Licenses
# ============================================================================


@dataclass(frozen=True)
class LicenseTemplate:
    """Catalog entry describing a bundle of usage rights."""

    template_id: str
    name: str
    description: str
    type: LicenseType
    permissions: tuple[str, ...]
    restrictions: tuple[str, ...]
    duration_days: DurationDays
    max_uses: UseLimit
    is_transferable: bool
    is_resellable: bool
    price_multiplier: Decimal

    def __post_init__(self) -> None:
        """Validate template constraints."""
        if self.price_multiplier <= 0:
            raise ValueError(f"Price multiplier must be positive: {self.price_multiplier}")
        if isinstance(self.duration_days, int) and self.duration_days <= 0:
            raise ValueError(f"Duration must be positive: {self.duration_days}")
        if isinstance(self.max_uses, int) and self.max_uses <= 0:
            raise ValueError(f"Max uses must be positive: {self.max_uses}")


@dataclass(frozen=True)
class LicenseToken:
    """Minted, ownable license record."""

    token_id: str
    contract_address: str
    asset_id: str
    template_id: str
    owner: str
    creator: str
    minted_at: datetime
    expires_at: Expiry
    max_uses: UseLimit
    used_count: int
    permissions: tuple[str, ...]
    restrictions: tuple[str, ...]
    is_transferable: bool
    is_resellable: bool
    metadata: TokenMetadata
    uri: str
    burned: bool = False
    idempotency_key: str | None = None

    def __post_init__(self) -> None:
        """Validate usage counter invariant."""
        if self.used_count < 0:
            raise ValueError(f"Used count cannot be negative: {self.used_count}")
        if isinstance(self.max_uses, int) and self.used_count > self.max_uses:
            raise ValueError(f"Used count {self.used_count} exceeds max uses {self.max_uses}")

    def is_expired(self, now: datetime) -> bool:
        """True once the expiry timestamp lies in the past."""
        return self.expires_at is not PERPETUAL and self.expires_at < now

    @property
    def remaining_uses(self) -> UseLimit:
        """Uses left, or UNLIMITED."""
        if self.max_uses is UNLIMITED:
            return UNLIMITED
        return self.max_uses - self.used_count

    @property
    def is_exhausted(self) -> bool:
        """True when a bounded token has no uses left."""
        return self.max_uses is not UNLIMITED and self.used_count >= self.max_uses


@dataclass(frozen=True)
class LicenseVerification:
    """Read-only check of a token against an optional expected owner."""

    is_valid: bool
    token_id: str
    owner: str | None = None
    asset_id: str | None = None
    license_type: str | None = None
    expires_at: Expiry | None = None
    remaining_uses: UseLimit | None = None
    permissions: tuple[str, ...] = ()


@dataclass(frozen=True)
class UsageResult:
    """Outcome of a use attempt. Failures are reported, not raised."""

    success: bool
    outcome: UsageOutcome
    message: str
    remaining_uses: UseLimit | None = None


@dataclass(frozen=True)
class LicenseAttribute:
    """Display trait of a license."""

    trait_type: str
    value: str


@dataclass(frozen=True)
class LicenseMetadata:
    """Display metadata of a license token."""

    name: str
    description: str
    image: str | None
    attributes: tuple[LicenseAttribute, ...]


# ============================================================================
# Catalog & Purchases
# ============================================================================


@dataclass(frozen=True)
class Asset:
    """Asset facts supplied by the catalog collaborator."""

    asset_id: str
    title: str
    price: Decimal
    currency: str
    seller_id: str

    def __post_init__(self) -> None:
        """Validate asset constraints."""
        if self.price <= 0:
            raise ValueError(f"Asset price must be positive: {self.price}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


@dataclass(frozen=True)
class Purchase:
    """Durable receipt of one purchase attempt."""

    purchase_id: str
    buyer: str
    asset_id: str
    seller_id: str
    template_id: str
    amount: Decimal
    currency: str
    status: PurchaseStatus
    created_at: datetime
    escrow_id: str | None = None
    transaction_hash: str | None = None
    token_id: str | None = None
    failure_stage: PurchaseStage | None = None
    failure_reason: str | None = None
    compensated: bool = False
    needs_reconciliation: bool = False
    idempotency_key: str | None = None


@dataclass(frozen=True)
class PurchaseReceipt:
    """Everything a successful purchase produced."""

    purchase: Purchase
    escrow: Escrow
    payment: PaymentResult
    license: LicenseToken
