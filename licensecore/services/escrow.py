"""
Escrow Manager - custodial hold of funds pending release or refund.

State machine:
    pending --fund--> funded --release--> released
                             --refund---> refunded

released and refunded are terminal. A repeated or conflicting terminal
transition fails with InvalidStateError instead of silently succeeding.
"""

import secrets
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Protocol

from structlog import get_logger

from licensecore.exceptions import (
    AmountMismatchError,
    EscrowNotFoundError,
    InvalidAmountError,
    InvalidStateError,
)
from licensecore.models.api import EscrowStatus
from licensecore.models.domain import Escrow, ReleaseConditions
from licensecore.models.money import quantize
from licensecore.services.locks import KeyedLocks

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[EscrowStatus, frozenset[EscrowStatus]] = {
    EscrowStatus.PENDING: frozenset({EscrowStatus.FUNDED}),
    EscrowStatus.FUNDED: frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED}),
    EscrowStatus.COMPLETED: frozenset(),
    EscrowStatus.RELEASED: frozenset(),
    EscrowStatus.REFUNDED: frozenset(),
}


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_escrow_id() -> str:
    """Opaque escrow identifier."""
    return f"escrow_{secrets.token_hex(8)}"


def ensure_transition(escrow: Escrow, target: EscrowStatus, action: str) -> None:
    """Raise InvalidStateError unless escrow may move to target."""
    if target not in ALLOWED_TRANSITIONS[escrow.status]:
        raise InvalidStateError(escrow.escrow_id, escrow.status, action)


def ensure_fund_amount(escrow: Escrow, amount: Decimal) -> None:
    """Raise AmountMismatchError unless amount equals the escrow's declared amount."""
    if quantize(amount, escrow.currency) != escrow.amount:
        raise AmountMismatchError(escrow.escrow_id, escrow.amount, amount)


class EscrowBackend(Protocol):
    """
    Escrow capability.

    Any escrow backend (in-memory, SQL ledger, on-chain contract) must
    implement this interface. The orchestrator depends only on it.
    """

    async def create(
        self,
        amount: Decimal,
        currency: str,
        buyer: str,
        seller: str,
        asset_id: str,
        release_conditions: ReleaseConditions | None = None,
    ) -> Escrow:
        """
        Create an escrow in status pending.

        Raises:
            InvalidAmountError: amount <= 0
        """
        ...

    async def fund(self, escrow_id: str, amount: Decimal) -> Escrow:
        """
        Fund a pending escrow with exactly its declared amount.

        Raises:
            EscrowNotFoundError: Escrow doesn't exist
            AmountMismatchError: amount differs from escrow.amount
            InvalidStateError: escrow is not pending
        """
        ...

    async def release(self, escrow_id: str, reason: str | None = None) -> Escrow:
        """
        Release funds of a funded escrow to the seller.

        Raises:
            EscrowNotFoundError: Escrow doesn't exist
            InvalidStateError: escrow is not funded
        """
        ...

    async def refund(self, escrow_id: str, reason: str | None = None) -> Escrow:
        """
        Return funds of a funded escrow to the buyer.

        Raises:
            EscrowNotFoundError: Escrow doesn't exist
            InvalidStateError: escrow is not funded
        """
        ...

    async def get(self, escrow_id: str) -> Escrow:
        """
        Get escrow by id.

        Raises:
            EscrowNotFoundError: Escrow doesn't exist
        """
        ...


class InMemoryEscrowBackend:
    """
    Deterministic in-memory escrow manager.

    Every mutation follows the pattern:
    1. Lock the escrow id
    2. Read current snapshot
    3. Validate the transition
    4. Store the replaced snapshot
    """

    def __init__(
        self,
        default_conditions: ReleaseConditions | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._escrows: dict[str, Escrow] = {}
        self._locks = KeyedLocks()
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
        escrow = Escrow(
            escrow_id=generate_escrow_id(),
            amount=quantize(amount, currency),
            currency=currency,
            buyer=buyer,
            seller=seller,
            asset_id=asset_id,
            status=EscrowStatus.PENDING,
            created_at=self._clock(),
            release_conditions=release_conditions or self._default_conditions,
        )
        self._escrows[escrow.escrow_id] = escrow

        logger.info(
            "escrow_created",
            escrow_id=escrow.escrow_id,
            amount=str(escrow.amount),
            currency=currency,
            buyer=buyer,
            seller=seller,
            asset_id=asset_id,
        )
        return escrow

    async def fund(self, escrow_id: str, amount: Decimal) -> Escrow:
        """Fund a pending escrow."""
        async with self._locks.hold(escrow_id):
            escrow = self._require(escrow_id)
            ensure_transition(escrow, EscrowStatus.FUNDED, "fund")
            ensure_fund_amount(escrow, amount)

            funded = replace(escrow, status=EscrowStatus.FUNDED, funded_at=self._clock())
            self._escrows[escrow_id] = funded

        logger.info("escrow_funded", escrow_id=escrow_id, amount=str(funded.amount))
        return funded

    async def release(self, escrow_id: str, reason: str | None = None) -> Escrow:
        """Release a funded escrow."""
        return await self._close(escrow_id, EscrowStatus.RELEASED, "release", reason)

    async def refund(self, escrow_id: str, reason: str | None = None) -> Escrow:
        """Refund a funded escrow."""
        return await self._close(escrow_id, EscrowStatus.REFUNDED, "refund", reason)

    async def get(self, escrow_id: str) -> Escrow:
        """Get escrow by id."""
        return self._require(escrow_id)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _require(self, escrow_id: str) -> Escrow:
        escrow = self._escrows.get(escrow_id)
        if escrow is None:
            raise EscrowNotFoundError(escrow_id)
        return escrow

    async def _close(
        self, escrow_id: str, target: EscrowStatus, action: str, reason: str | None
    ) -> Escrow:
        """Apply one of the mutually exclusive terminal transitions."""
        async with self._locks.hold(escrow_id):
            escrow = self._require(escrow_id)
            ensure_transition(escrow, target, action)

            closed = replace(escrow, status=target, closed_at=self._clock(), close_reason=reason)
            self._escrows[escrow_id] = closed

        logger.info(f"escrow_{target.value}", escrow_id=escrow_id, reason=reason)
        return closed
