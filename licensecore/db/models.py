"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Amounts are stored as integer minor units (amount_minor). NULL expires_at
means perpetual and NULL max_uses means unlimited; the adapters translate
those to the PERPETUAL / UNLIMITED markers.
"""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Minor-unit amounts of 18-decimal currencies overflow BIGINT
MinorAmount = Numeric(38, 0)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class EscrowRecord(Base):
    """
    ORM model for escrows table.

    One row per escrow; status only moves forward.
    """

    __tablename__ = "escrows"

    escrow_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    amount_minor: Mapped[Decimal] = mapped_column(MinorAmount, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    buyer: Mapped[str] = mapped_column(String(255), nullable=False)
    seller: Mapped[str] = mapped_column(String(255), nullable=False)
    asset_id: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    # Release conditions
    min_rating: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    time_lock_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=86400)
    verification_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Audit
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    close_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_escrow_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'funded', 'completed', 'released', 'refunded')",
            name="ck_escrow_status",
        ),
        Index("idx_escrows_buyer", "buyer"),
        Index("idx_escrows_seller", "seller"),
    )


class PaymentRecord(Base):
    """
    ORM model for payments table.

    The surrogate id doubles as the ledger position: block_number is
    derived from it, so block numbers increase with every settlement.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    amount_minor: Mapped[Decimal] = mapped_column(MinorAmount, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    sender: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipients: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    asset_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    gas_used: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    gas_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    payment_metadata: Mapped[dict[str, str | None]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )

    # Idempotency
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    request_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)

    shares: Mapped[list["SplitShareRecord"]] = relationship(
        back_populates="payment",
        order_by="SplitShareRecord.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_payment_amount_positive"),
        Index("idx_payments_sender", "sender"),
    )


class SplitShareRecord(Base):
    """ORM model for split_shares table - one row per split recipient."""

    __tablename__ = "split_shares"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    address: Mapped[str] = mapped_column(String(255), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    amount_minor: Mapped[Decimal] = mapped_column(MinorAmount, nullable=False)

    payment: Mapped[PaymentRecord] = relationship(back_populates="shares")

    __table_args__ = (
        CheckConstraint("percentage > 0", name="ck_share_percentage_positive"),
        Index("idx_split_shares_payment", "payment_id"),
    )


class LicenseTokenRecord(Base):
    """ORM model for license_tokens table."""

    __tablename__ = "license_tokens"

    token_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    contract_address: Mapped[str] = mapped_column(String(255), nullable=False)
    asset_id: Mapped[str] = mapped_column(String(255), nullable=False)
    template_id: Mapped[str] = mapped_column(String(100), nullable=False)

    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    creator: Mapped[str] = mapped_column(String(255), nullable=False)

    minted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Rights snapshotted from the template at mint time
    permissions: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    restrictions: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    is_transferable: Mapped[bool] = mapped_column(Boolean, nullable=False)
    is_resellable: Mapped[bool] = mapped_column(Boolean, nullable=False)

    token_metadata: Mapped[dict[str, str | None]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    uri: Mapped[str] = mapped_column(String(255), nullable=False)
    burned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Idempotency
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    request_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_used_count_non_negative"),
        CheckConstraint(
            "max_uses IS NULL OR used_count <= max_uses", name="ck_used_count_within_max"
        ),
        Index("idx_license_tokens_owner", "owner", "burned"),
        Index("idx_license_tokens_asset", "asset_id", "burned"),
    )


class PurchaseRecord(Base):
    """ORM model for purchases table - one receipt per orchestration attempt."""

    __tablename__ = "purchases"

    purchase_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    buyer: Mapped[str] = mapped_column(String(255), nullable=False)
    asset_id: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(255), nullable=False)
    template_id: Mapped[str] = mapped_column(String(100), nullable=False)

    amount_minor: Mapped[Decimal] = mapped_column(MinorAmount, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    escrow_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    token_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    failure_stage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    compensated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    __table_args__ = (
        CheckConstraint("status IN ('completed', 'failed')", name="ck_purchase_status"),
        Index("idx_purchases_buyer", "buyer", "created_at"),
        Index(
            "idx_purchases_reconciliation",
            "needs_reconciliation",
            postgresql_where=text("needs_reconciliation"),
        ),
    )
