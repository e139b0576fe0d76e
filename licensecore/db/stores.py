"""
SQL ledger adapters - the backend protocols over SQLAlchemy.

Every mutation follows the pattern:
1. SELECT ... FOR UPDATE the row
2. Validate the transition on the domain snapshot
3. Write and commit

Idempotent inserts rely on the unique idempotency_key column: a concurrent
insert with the same key loses on IntegrityError and re-reads the winner.
"""

import hashlib
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from licensecore.db.models import (
    EscrowRecord,
    LicenseTokenRecord,
    PaymentRecord,
    PurchaseRecord,
    SplitShareRecord,
)
from licensecore.exceptions import (
    EscrowNotFoundError,
    IdempotencyConflictError,
    InvalidAmountError,
    LicenseNotFoundError,
    NotOwnedError,
    NotTransferableError,
    PurchaseNotFoundError,
    TemplateNotFoundError,
    TransactionNotFoundError,
)
from licensecore.models.api import (
    EscrowStatus,
    PaymentDirection,
    PaymentMetadata,
    PaymentStatus,
    PurchaseStage,
    PurchaseStatus,
    TokenMetadata,
    UsageOutcome,
)
from licensecore.models.domain import (
    PERPETUAL,
    UNLIMITED,
    CostEstimate,
    Escrow,
    LicenseMetadata,
    LicenseTemplate,
    LicenseToken,
    LicenseVerification,
    PaymentResult,
    PaymentVerification,
    Purchase,
    ReleaseConditions,
    SplitPayment,
    SplitRecipient,
    SplitShare,
    UsageResult,
)
from licensecore.models.money import from_minor, quantize, to_minor
from licensecore.services.escrow import (
    ensure_fund_amount,
    ensure_transition,
    generate_escrow_id,
)
from licensecore.services.licensing import (
    DEFAULT_TEMPLATES,
    MESSAGE_USED,
    build_metadata,
    compute_expiry,
    evaluate_use,
    generate_token_id,
    token_uri,
    verification_for,
)
from licensecore.services.payment import (
    BASE_TRANSFER_GAS,
    GENESIS_BLOCK,
    SPLIT_GAS_PER_RECIPIENT,
    build_split,
    estimate_cost,
    generate_transaction_hash,
    transfer_gas,
)

logger = get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def request_fingerprint(*parts: object) -> str:
    """Stable digest of an idempotent request's parameters."""
    return hashlib.sha256(repr(parts).encode()).hexdigest()


# ============================================================================
# Escrow
# ============================================================================


def escrow_from_record(row: EscrowRecord) -> Escrow:
    """Convert ORM row to domain snapshot."""
    return Escrow(
        escrow_id=row.escrow_id,
        amount=from_minor(int(row.amount_minor), row.currency),
        currency=row.currency,
        buyer=row.buyer,
        seller=row.seller,
        asset_id=row.asset_id,
        status=EscrowStatus(row.status),
        created_at=row.created_at,
        release_conditions=ReleaseConditions(
            min_rating=row.min_rating,
            time_lock_seconds=row.time_lock_seconds,
            verification_required=row.verification_required,
        ),
        funded_at=row.funded_at,
        closed_at=row.closed_at,
        close_reason=row.close_reason,
    )


class SQLEscrowBackend:
    """Escrow manager backed by the escrows table."""

    def __init__(
        self,
        session_factory: SessionFactory,
        default_conditions: ReleaseConditions | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._default_conditions = default_conditions or ReleaseConditions()
        self._clock = clock

    async def create(
        self,
        amount: Decimal,
        currency: str,
        buyer: str,
        seller: str,
        asset_id: str,
        release_conditions: ReleaseConditions | None = None,
    ) -> Escrow:
        """Create an escrow in status pending."""
        if amount <= 0:
            raise InvalidAmountError(amount)

        currency = currency.upper()
        conditions = release_conditions or self._default_conditions
        row = EscrowRecord(
            escrow_id=generate_escrow_id(),
            amount_minor=to_minor(amount, currency),
            currency=currency,
            buyer=buyer,
            seller=seller,
            asset_id=asset_id,
            status=EscrowStatus.PENDING.value,
            min_rating=conditions.min_rating,
            time_lock_seconds=conditions.time_lock_seconds,
            verification_required=conditions.verification_required,
            created_at=self._clock(),
        )

        async with self._session_factory() as session:
            session.add(row)
            await session.commit()

        logger.info(
            "escrow_created",
            escrow_id=row.escrow_id,
            amount=str(quantize(amount, currency)),
            currency=currency,
            buyer=buyer,
            seller=seller,
            asset_id=asset_id,
        )
        return escrow_from_record(row)

    async def fund(self, escrow_id: str, amount: Decimal) -> Escrow:
        """Fund a pending escrow."""
        async with self._session_factory() as session:
            row = await self._lock(session, escrow_id)
            escrow = escrow_from_record(row)
            ensure_transition(escrow, EscrowStatus.FUNDED, "fund")
            ensure_fund_amount(escrow, amount)

            row.status = EscrowStatus.FUNDED.value
            row.funded_at = self._clock()
            await session.commit()

        logger.info("escrow_funded", escrow_id=escrow_id, amount=str(escrow.amount))
        return escrow_from_record(row)

    async def release(self, escrow_id: str, reason: str | None = None) -> Escrow:
        """Release a funded escrow."""
        return await self._close(escrow_id, EscrowStatus.RELEASED, "release", reason)

    async def refund(self, escrow_id: str, reason: str | None = None) -> Escrow:
        """Refund a funded escrow."""
        return await self._close(escrow_id, EscrowStatus.REFUNDED, "refund", reason)

    async def get(self, escrow_id: str) -> Escrow:
        """Get escrow by id."""
        async with self._session_factory() as session:
            row = await session.get(EscrowRecord, escrow_id)
        if row is None:
            raise EscrowNotFoundError(escrow_id)
        return escrow_from_record(row)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _lock(self, session: AsyncSession, escrow_id: str) -> EscrowRecord:
        stmt = select(EscrowRecord).where(EscrowRecord.escrow_id == escrow_id).with_for_update()
        result = await session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            raise EscrowNotFoundError(escrow_id)
        return row

    async def _close(
        self, escrow_id: str, target: EscrowStatus, action: str, reason: str | None
    ) -> Escrow:
        async with self._session_factory() as session:
            row = await self._lock(session, escrow_id)
            ensure_transition(escrow_from_record(row), target, action)

            row.status = target.value
            row.closed_at = self._clock()
            row.close_reason = reason
            await session.commit()

        logger.info(f"escrow_{target.value}", escrow_id=escrow_id, reason=reason)
        return escrow_from_record(row)


# ============================================================================
# Payments
# ============================================================================


def payment_from_record(row: PaymentRecord) -> PaymentResult:
    """Convert ORM row to domain result."""
    return PaymentResult(
        transaction_hash=row.transaction_hash,
        status=PaymentStatus(row.status),
        timestamp=row.timestamp,
        amount=from_minor(int(row.amount_minor), row.currency),
        currency=row.currency,
        sender=row.sender,
        recipients=tuple(row.recipients),
        asset_id=row.asset_id,
        block_number=row.block_number,
        gas_used=row.gas_used,
        gas_price=row.gas_price,
        metadata=PaymentMetadata.model_validate(row.payment_metadata),
        shares=tuple(
            SplitShare(
                address=share.address,
                percentage=share.percentage,
                amount=from_minor(int(share.amount_minor), row.currency),
            )
            for share in row.shares
        ),
        idempotency_key=row.idempotency_key,
    )


class SQLPaymentBackend:
    """Settlement ledger backed by the payments and split_shares tables."""

    def __init__(
        self,
        session_factory: SessionFactory,
        gas_price: int = 50,
        confirmations_per_block: int = 1,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._gas_price = gas_price
        self._confirmations_per_block = confirmations_per_block
        self._clock = clock

    async def pay(
        self,
        amount: Decimal,
        currency: str,
        recipient: str,
        asset_id: str | None,
        buyer: str,
        metadata: PaymentMetadata | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        """Settle amount from buyer to recipient."""
        if amount <= 0:
            raise InvalidAmountError(amount)

        currency = currency.upper()
        amount = quantize(amount, currency)
        fingerprint = request_fingerprint("pay", amount, currency, recipient, asset_id, buyer)

        row = PaymentRecord(
            transaction_hash=generate_transaction_hash(),
            status=PaymentStatus.COMPLETED.value,
            timestamp=self._clock(),
            amount_minor=to_minor(amount, currency),
            currency=currency,
            sender=buyer,
            recipients=[recipient],
            asset_id=asset_id,
            gas_used=transfer_gas(amount, currency),
            gas_price=self._gas_price,
            payment_metadata=(metadata or PaymentMetadata()).model_dump(mode="json"),
            idempotency_key=idempotency_key,
            request_fingerprint=fingerprint if idempotency_key else None,
            shares=[],
        )
        result = await self._insert(row, idempotency_key, fingerprint)

        logger.info(
            "payment_completed",
            transaction_hash=result.transaction_hash,
            amount=str(result.amount),
            currency=currency,
            recipient=recipient,
            buyer=buyer,
            asset_id=asset_id,
        )
        return result

    async def pay_split(
        self,
        recipients: Sequence[SplitRecipient],
        total_amount: Decimal,
        currency: str,
        sender: str | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        """Settle total_amount divided among recipients."""
        split = build_split(recipients, total_amount, currency)
        fingerprint = request_fingerprint(
            "split", split.total_amount, split.currency, sender, split.recipients
        )

        row = PaymentRecord(
            transaction_hash=generate_transaction_hash(),
            status=PaymentStatus.COMPLETED.value,
            timestamp=self._clock(),
            amount_minor=to_minor(split.total_amount, split.currency),
            currency=split.currency,
            sender=sender,
            recipients=[share.address for share in split.recipients],
            asset_id=None,
            gas_used=BASE_TRANSFER_GAS + SPLIT_GAS_PER_RECIPIENT * len(split.recipients),
            gas_price=self._gas_price,
            payment_metadata=PaymentMetadata().model_dump(mode="json"),
            idempotency_key=idempotency_key,
            request_fingerprint=fingerprint if idempotency_key else None,
            shares=[
                SplitShareRecord(
                    position=position,
                    address=share.address,
                    percentage=share.percentage,
                    amount_minor=to_minor(share.amount, split.currency),
                )
                for position, share in enumerate(split.recipients)
            ],
        )
        result = await self._insert(row, idempotency_key, fingerprint)

        logger.info(
            "split_payment_completed",
            transaction_hash=result.transaction_hash,
            total_amount=str(split.total_amount),
            currency=split.currency,
            recipient_count=len(split.recipients),
        )
        return result

    async def verify(self, transaction_hash: str) -> PaymentVerification:
        """Verify a settlement by reference."""
        async with self._session_factory() as session:
            row = await self._find(session, transaction_hash)
            latest = (await session.execute(select(func.max(PaymentRecord.id)))).scalar_one()

        result = payment_from_record(row)
        confirmations = (latest - row.id + 1) * self._confirmations_per_block
        return PaymentVerification(
            is_valid=result.status == PaymentStatus.COMPLETED,
            status=result.status,
            confirmations=confirmations,
            amount=result.amount,
            recipient=result.recipients[0] if len(result.recipients) == 1 else None,
        )

    async def estimate_cost(self, amount: Decimal, currency: str) -> CostEstimate:
        """Estimate settlement cost without side effects."""
        return estimate_cost(amount, currency, self._gas_price)

    async def lookup(self, idempotency_key: str) -> PaymentResult | None:
        """Find the settlement made under an idempotency key."""
        async with self._session_factory() as session:
            row = await self._find_by_key(session, idempotency_key)
        return payment_from_record(row) if row else None

    async def get_split(self, transaction_hash: str) -> SplitPayment:
        """Get the computed shares of a split settlement."""
        async with self._session_factory() as session:
            row = await self._find(session, transaction_hash)
        result = payment_from_record(row)
        if not result.shares:
            raise TransactionNotFoundError(transaction_hash)
        return SplitPayment(
            recipients=result.shares, total_amount=result.amount, currency=result.currency
        )

    async def history(
        self,
        address: str,
        limit: int = 50,
        offset: int = 0,
        direction: PaymentDirection = PaymentDirection.ALL,
    ) -> list[PaymentResult]:
        """Settlements involving address, newest first."""
        sent = PaymentRecord.sender == address
        received = PaymentRecord.recipients.contains([address])
        match direction:
            case PaymentDirection.SENT:
                condition = sent
            case PaymentDirection.RECEIVED:
                condition = received
            case PaymentDirection.ALL:
                condition = or_(sent, received)

        stmt = (
            select(PaymentRecord)
            .where(condition)
            .order_by(PaymentRecord.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [payment_from_record(row) for row in rows]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _insert(
        self, row: PaymentRecord, idempotency_key: str | None, fingerprint: str
    ) -> PaymentResult:
        async with self._session_factory() as session:
            if idempotency_key:
                existing = await self._find_by_key(session, idempotency_key)
                if existing is not None:
                    return self._replay(existing, idempotency_key, fingerprint)

            session.add(row)
            try:
                await session.flush()
                row.block_number = GENESIS_BLOCK + row.id
                await session.commit()
            except IntegrityError:
                # Race condition - same key settled by a concurrent request
                await session.rollback()
                if not idempotency_key:
                    raise
                existing = await self._find_by_key(session, idempotency_key)
                if existing is None:
                    raise
                return self._replay(existing, idempotency_key, fingerprint)

        return payment_from_record(row)

    def _replay(self, row: PaymentRecord, idempotency_key: str, fingerprint: str) -> PaymentResult:
        if row.request_fingerprint != fingerprint:
            raise IdempotencyConflictError(idempotency_key, row.transaction_hash)
        logger.info(
            "payment_idempotent_replay",
            idempotency_key=idempotency_key,
            transaction_hash=row.transaction_hash,
        )
        return payment_from_record(row)

    async def _find(self, session: AsyncSession, transaction_hash: str) -> PaymentRecord:
        stmt = select(PaymentRecord).where(PaymentRecord.transaction_hash == transaction_hash)
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise TransactionNotFoundError(transaction_hash)
        return row

    async def _find_by_key(self, session: AsyncSession, idempotency_key: str) -> PaymentRecord | None:
        stmt = select(PaymentRecord).where(PaymentRecord.idempotency_key == idempotency_key)
        return (await session.execute(stmt)).scalar_one_or_none()


# ============================================================================
# Licenses
# ============================================================================


def token_from_record(row: LicenseTokenRecord) -> LicenseToken:
    """Convert ORM row to domain token, mapping NULL limits to the markers."""
    return LicenseToken(
        token_id=row.token_id,
        contract_address=row.contract_address,
        asset_id=row.asset_id,
        template_id=row.template_id,
        owner=row.owner,
        creator=row.creator,
        minted_at=row.minted_at,
        expires_at=row.expires_at if row.expires_at is not None else PERPETUAL,
        max_uses=row.max_uses if row.max_uses is not None else UNLIMITED,
        used_count=row.used_count,
        permissions=tuple(row.permissions),
        restrictions=tuple(row.restrictions),
        is_transferable=row.is_transferable,
        is_resellable=row.is_resellable,
        metadata=TokenMetadata.model_validate(row.token_metadata),
        uri=row.uri,
        burned=row.burned,
        idempotency_key=row.idempotency_key,
    )


class SQLLicenseRegistry:
    """License registry backed by the license_tokens table. Templates stay in code."""

    def __init__(
        self,
        session_factory: SessionFactory,
        contract_address: str,
        issuer_address: str,
        templates: Iterable[LicenseTemplate] = DEFAULT_TEMPLATES,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._contract_address = contract_address
        self._issuer_address = issuer_address
        self._templates = {template.template_id: template for template in templates}
        self._clock = clock

    async def list_templates(self) -> list[LicenseTemplate]:
        """All templates ordered by ascending price multiplier."""
        return sorted(self._templates.values(), key=lambda t: t.price_multiplier)

    async def get_template(self, template_id: str) -> LicenseTemplate:
        """Get template by id."""
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def mint(
        self,
        asset_id: str,
        template_id: str,
        purchaser: str,
        duration_override: int | None = None,
        max_uses_override: int | None = None,
        metadata: TokenMetadata | None = None,
        idempotency_key: str | None = None,
    ) -> LicenseToken:
        """Mint a token owned by purchaser."""
        template = await self.get_template(template_id)
        metadata = metadata or TokenMetadata()
        fingerprint = request_fingerprint(
            asset_id,
            template_id,
            purchaser,
            duration_override,
            max_uses_override,
            metadata.model_dump_json(),
        )

        minted_at = self._clock()
        expires_at = compute_expiry(minted_at, duration_override or template.duration_days)
        max_uses = max_uses_override or template.max_uses
        token_id = generate_token_id()

        row = LicenseTokenRecord(
            token_id=token_id,
            contract_address=self._contract_address,
            asset_id=asset_id,
            template_id=template_id,
            owner=purchaser,
            creator=self._issuer_address,
            minted_at=minted_at,
            expires_at=None if expires_at is PERPETUAL else expires_at,
            max_uses=None if max_uses is UNLIMITED else max_uses,
            used_count=0,
            permissions=list(template.permissions),
            restrictions=list(template.restrictions),
            is_transferable=template.is_transferable,
            is_resellable=template.is_resellable,
            token_metadata=metadata.model_dump(mode="json"),
            uri=token_uri(token_id),
            burned=False,
            idempotency_key=idempotency_key,
            request_fingerprint=fingerprint if idempotency_key else None,
        )

        async with self._session_factory() as session:
            if idempotency_key:
                existing = await self._find_by_key(session, idempotency_key)
                if existing is not None:
                    return self._replay(existing, idempotency_key, fingerprint)

            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Race condition - same key minted by a concurrent request
                await session.rollback()
                if not idempotency_key:
                    raise
                existing = await self._find_by_key(session, idempotency_key)
                if existing is None:
                    raise
                return self._replay(existing, idempotency_key, fingerprint)

        logger.info(
            "license_minted",
            token_id=token_id,
            asset_id=asset_id,
            template_id=template_id,
            owner=purchaser,
        )
        return token_from_record(row)

    async def verify(self, token_id: str, expected_owner: str | None = None) -> LicenseVerification:
        """Verify a token without mutating it."""
        async with self._session_factory() as session:
            row = await session.get(LicenseTokenRecord, token_id)
        token = token_from_record(row) if row else None
        return verification_for(token, token_id, expected_owner)

    async def use(self, token_id: str, user: str) -> UsageResult:
        """Consume one use."""
        async with self._session_factory() as session:
            row = await self._lock(session, token_id)
            token = token_from_record(row) if row else None
            failure = evaluate_use(token, user, self._clock())
            if failure is not None:
                logger.info(
                    "license_use_rejected",
                    token_id=token_id,
                    user=user,
                    outcome=failure.outcome.value,
                )
                return failure

            row.used_count += 1
            await session.commit()

        used = token_from_record(row)
        logger.info("license_used", token_id=token_id, user=user, used_count=used.used_count)
        return UsageResult(
            success=True,
            outcome=UsageOutcome.USED,
            message=MESSAGE_USED,
            remaining_uses=used.remaining_uses,
        )

    async def transfer(self, token_id: str, from_owner: str, to_owner: str) -> LicenseToken:
        """Move ownership of a token."""
        async with self._session_factory() as session:
            row = await self._lock_active(session, token_id)
            if row.owner != from_owner:
                raise NotOwnedError(token_id, from_owner)
            if not row.is_transferable:
                raise NotTransferableError(token_id, row.template_id)

            row.owner = to_owner
            await session.commit()

        logger.info("license_transferred", token_id=token_id, from_owner=from_owner, to_owner=to_owner)
        return token_from_record(row)

    async def burn(self, token_id: str, owner: str) -> LicenseToken:
        """Remove a token from active ownership."""
        async with self._session_factory() as session:
            row = await self._lock_active(session, token_id)
            if row.owner != owner:
                raise NotOwnedError(token_id, owner)

            row.burned = True
            await session.commit()

        logger.info("license_burned", token_id=token_id, owner=owner)
        return token_from_record(row)

    async def get(self, token_id: str) -> LicenseToken:
        """Get token by id."""
        async with self._session_factory() as session:
            row = await session.get(LicenseTokenRecord, token_id)
        if row is None:
            raise LicenseNotFoundError(token_id)
        return token_from_record(row)

    async def list_for_owner(self, owner: str) -> list[LicenseToken]:
        """Active tokens owned by owner, newest first."""
        return await self._active(LicenseTokenRecord.owner == owner)

    async def list_for_asset(self, asset_id: str) -> list[LicenseToken]:
        """Active tokens bound to asset_id, newest first."""
        return await self._active(LicenseTokenRecord.asset_id == asset_id)

    async def metadata(self, token_id: str) -> LicenseMetadata:
        """Display metadata of a token."""
        token = await self.get(token_id)
        return build_metadata(token, self._templates.get(token.template_id))

    async def lookup(self, idempotency_key: str) -> LicenseToken | None:
        """Find the token minted under an idempotency key."""
        async with self._session_factory() as session:
            row = await self._find_by_key(session, idempotency_key)
        return token_from_record(row) if row else None

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _lock(self, session: AsyncSession, token_id: str) -> LicenseTokenRecord | None:
        stmt = (
            select(LicenseTokenRecord)
            .where(LicenseTokenRecord.token_id == token_id)
            .with_for_update()
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _lock_active(self, session: AsyncSession, token_id: str) -> LicenseTokenRecord:
        row = await self._lock(session, token_id)
        if row is None or row.burned:
            raise LicenseNotFoundError(token_id)
        return row

    async def _active(self, condition) -> list[LicenseToken]:
        stmt = (
            select(LicenseTokenRecord)
            .where(condition, LicenseTokenRecord.burned.is_(False))
            .order_by(LicenseTokenRecord.minted_at.desc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [token_from_record(row) for row in rows]

    async def _find_by_key(
        self, session: AsyncSession, idempotency_key: str
    ) -> LicenseTokenRecord | None:
        stmt = select(LicenseTokenRecord).where(
            LicenseTokenRecord.idempotency_key == idempotency_key
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    def _replay(
        self, row: LicenseTokenRecord, idempotency_key: str, fingerprint: str
    ) -> LicenseToken:
        if row.request_fingerprint != fingerprint:
            raise IdempotencyConflictError(idempotency_key, row.token_id)
        return token_from_record(row)


# ============================================================================
# Purchases
# ============================================================================


def purchase_to_record(purchase: Purchase) -> PurchaseRecord:
    """Convert domain receipt to ORM row."""
    return PurchaseRecord(
        purchase_id=purchase.purchase_id,
        buyer=purchase.buyer,
        asset_id=purchase.asset_id,
        seller_id=purchase.seller_id,
        template_id=purchase.template_id,
        amount_minor=to_minor(purchase.amount, purchase.currency),
        currency=purchase.currency,
        status=purchase.status.value,
        created_at=purchase.created_at,
        escrow_id=purchase.escrow_id,
        transaction_hash=purchase.transaction_hash,
        token_id=purchase.token_id,
        failure_stage=purchase.failure_stage.value if purchase.failure_stage else None,
        failure_reason=purchase.failure_reason,
        compensated=purchase.compensated,
        needs_reconciliation=purchase.needs_reconciliation,
        idempotency_key=purchase.idempotency_key,
    )


def purchase_from_record(row: PurchaseRecord) -> Purchase:
    """Convert ORM row to domain receipt."""
    return Purchase(
        purchase_id=row.purchase_id,
        buyer=row.buyer,
        asset_id=row.asset_id,
        seller_id=row.seller_id,
        template_id=row.template_id,
        amount=from_minor(int(row.amount_minor), row.currency),
        currency=row.currency,
        status=PurchaseStatus(row.status),
        created_at=row.created_at,
        escrow_id=row.escrow_id,
        transaction_hash=row.transaction_hash,
        token_id=row.token_id,
        failure_stage=PurchaseStage(row.failure_stage) if row.failure_stage else None,
        failure_reason=row.failure_reason,
        compensated=row.compensated,
        needs_reconciliation=row.needs_reconciliation,
        idempotency_key=row.idempotency_key,
    )


class SQLPurchaseStore:
    """Receipt store backed by the purchases table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def save(self, purchase: Purchase) -> Purchase:
        async with self._session_factory() as session:
            await session.merge(purchase_to_record(purchase))
            await session.commit()
        return purchase

    async def get(self, purchase_id: str) -> Purchase:
        async with self._session_factory() as session:
            row = await session.get(PurchaseRecord, purchase_id)
        if row is None:
            raise PurchaseNotFoundError(purchase_id)
        return purchase_from_record(row)

    async def find_by_idempotency_key(self, idempotency_key: str) -> Purchase | None:
        stmt = select(PurchaseRecord).where(PurchaseRecord.idempotency_key == idempotency_key)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return purchase_from_record(row) if row else None

    async def list_for_buyer(self, buyer: str) -> list[Purchase]:
        stmt = (
            select(PurchaseRecord)
            .where(PurchaseRecord.buyer == buyer)
            .order_by(PurchaseRecord.created_at.desc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [purchase_from_record(row) for row in rows]

    async def needing_reconciliation(self) -> list[Purchase]:
        stmt = select(PurchaseRecord).where(PurchaseRecord.needs_reconciliation.is_(True))
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [purchase_from_record(row) for row in rows]
