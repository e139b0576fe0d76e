"""
Payment Processor - value transfers, split settlements and verification.

Each pay / pay_split call performs exactly one settlement attempt. Callers
that retry must present the same idempotency key, which returns the original
result instead of settling twice.
"""

import secrets
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from decimal import Decimal
from typing import Protocol

from structlog import get_logger

from licensecore.exceptions import (
    IdempotencyConflictError,
    InvalidAmountError,
    InvalidSplitError,
    TransactionNotFoundError,
)
from licensecore.models.api import PaymentDirection, PaymentMetadata, PaymentStatus
from licensecore.models.domain import (
    CostEstimate,
    PaymentResult,
    PaymentVerification,
    SplitPayment,
    SplitRecipient,
    SplitShare,
)
from licensecore.models.money import percentages_balanced, quantize, split_amounts, to_minor
from licensecore.services.locks import KeyedLocks

logger = get_logger(__name__)

# Gas model of the simulated settlement network
BASE_TRANSFER_GAS = 21000
CALLDATA_GAS_PER_DIGIT = 68
SPLIT_GAS_PER_RECIPIENT = 9000
GWEI = Decimal(10) ** 9
COST_CURRENCY = "FIL"
GENESIS_BLOCK = 10_000_000


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_transaction_hash() -> str:
    """Opaque 32-byte hex transaction reference."""
    return "0x" + secrets.token_hex(32)


def transfer_gas(amount: Decimal, currency: str) -> int:
    """Gas needed to transfer amount: base cost plus calldata for its minor-unit digits."""
    digits = len(str(abs(to_minor(amount, currency))))
    return BASE_TRANSFER_GAS + CALLDATA_GAS_PER_DIGIT * digits


def estimate_cost(amount: Decimal, currency: str, gas_price: int) -> CostEstimate:
    """
    Estimate the network cost of settling amount.

    Pure function: no side effects, same inputs give the same estimate.
    """
    if amount <= 0:
        raise InvalidAmountError(amount)
    gas_limit = transfer_gas(amount, currency)
    return CostEstimate(
        gas_limit=gas_limit,
        gas_price=gas_price,
        total_cost=Decimal(gas_limit * gas_price) / GWEI,
        currency=COST_CURRENCY,
    )


def build_split(
    recipients: Sequence[SplitRecipient], total_amount: Decimal, currency: str
) -> SplitPayment:
    """
    Validate split recipients and compute each share.

    Raises:
        InvalidAmountError: total_amount <= 0
        InvalidSplitError: no recipients, a non-positive percentage, or
            percentages not summing to 100 within 0.01
    """
    if total_amount <= 0:
        raise InvalidAmountError(total_amount)
    if not recipients:
        raise InvalidSplitError("at least one recipient is required")

    for recipient in recipients:
        if recipient.percentage <= 0:
            raise InvalidSplitError(
                f"percentage for {recipient.address} must be positive, got {recipient.percentage}"
            )

    percentages = [recipient.percentage for recipient in recipients]
    if not percentages_balanced(percentages):
        raise InvalidSplitError(
            f"percentages must sum to 100, got {sum(percentages, Decimal(0))}"
        )

    currency = currency.upper()
    amounts = split_amounts(total_amount, percentages, currency)
    return SplitPayment(
        recipients=tuple(
            SplitShare(address=r.address, percentage=r.percentage, amount=amount)
            for r, amount in zip(recipients, amounts, strict=True)
        ),
        total_amount=quantize(total_amount, currency),
        currency=currency,
    )


class PaymentBackend(Protocol):
    """
    Settlement capability.

    Any settlement backend (in-memory, SQL ledger, payment rail, chain)
    must implement this interface.
    """

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
        """
        Settle amount from buyer to recipient.

        Raises:
            InvalidAmountError: amount <= 0
            IdempotencyConflictError: key reused for a different payment
            PaymentProviderError: settlement attempt failed
        """
        ...

    async def pay_split(
        self,
        recipients: Sequence[SplitRecipient],
        total_amount: Decimal,
        currency: str,
        sender: str | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        """
        Settle total_amount divided among recipients by percentage.

        Raises:
            InvalidSplitError: percentages invalid
            InvalidAmountError: total_amount <= 0
        """
        ...

    async def verify(self, transaction_hash: str) -> PaymentVerification:
        """
        Verify a settlement by reference.

        Raises:
            TransactionNotFoundError: reference unknown
        """
        ...

    async def estimate_cost(self, amount: Decimal, currency: str) -> CostEstimate:
        """Estimate settlement cost without side effects."""
        ...

    async def lookup(self, idempotency_key: str) -> PaymentResult | None:
        """Find the settlement made under an idempotency key, if any."""
        ...

    async def get_split(self, transaction_hash: str) -> SplitPayment:
        """
        Get the computed shares of a split settlement.

        Raises:
            TransactionNotFoundError: reference unknown or not a split
        """
        ...

    async def history(
        self,
        address: str,
        limit: int = 50,
        offset: int = 0,
        direction: PaymentDirection = PaymentDirection.ALL,
    ) -> list[PaymentResult]:
        """Settlements involving address, newest first."""
        ...


class InMemoryPaymentBackend:
    """
    Deterministic in-memory settlement ledger.

    Every settlement is appended to a simulated chain: block numbers increase
    by one per transaction, so confirmations grow as later settlements land.
    """

    def __init__(
        self,
        gas_price: int = 50,
        confirmations_per_block: int = 1,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._gas_price = gas_price
        self._confirmations_per_block = confirmations_per_block
        self._clock = clock
        self._transactions: dict[str, PaymentResult] = {}
        self._by_idempotency_key: dict[str, str] = {}
        self._fingerprints: dict[str, tuple] = {}
        self._ledger: list[str] = []
        self._block_number = GENESIS_BLOCK
        self._locks = KeyedLocks()

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
        fingerprint = ("pay", amount, currency, recipient, asset_id, buyer)

        async with self._idempotent(idempotency_key, fingerprint) as existing:
            if existing is not None:
                return existing

            result = self._record(
                PaymentResult(
                    transaction_hash=self._new_hash(),
                    status=PaymentStatus.COMPLETED,
                    timestamp=self._clock(),
                    amount=amount,
                    currency=currency,
                    sender=buyer,
                    recipients=(recipient,),
                    asset_id=asset_id,
                    block_number=self._next_block(),
                    gas_used=transfer_gas(amount, currency),
                    gas_price=self._gas_price,
                    metadata=metadata or PaymentMetadata(),
                    idempotency_key=idempotency_key,
                ),
                fingerprint,
            )

        logger.info(
            "payment_completed",
            transaction_hash=result.transaction_hash,
            amount=str(amount),
            currency=currency,
            recipient=recipient,
            buyer=buyer,
            asset_id=asset_id,
            escrow_id=result.metadata.escrow_id,
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
        fingerprint = ("split", split.total_amount, split.currency, sender, split.recipients)

        async with self._idempotent(idempotency_key, fingerprint) as existing:
            if existing is not None:
                return existing

            result = self._record(
                PaymentResult(
                    transaction_hash=self._new_hash(),
                    status=PaymentStatus.COMPLETED,
                    timestamp=self._clock(),
                    amount=split.total_amount,
                    currency=split.currency,
                    sender=sender,
                    recipients=tuple(share.address for share in split.recipients),
                    asset_id=None,
                    block_number=self._next_block(),
                    gas_used=BASE_TRANSFER_GAS + SPLIT_GAS_PER_RECIPIENT * len(split.recipients),
                    gas_price=self._gas_price,
                    shares=split.recipients,
                    idempotency_key=idempotency_key,
                ),
                fingerprint,
            )

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
        result = self._transactions.get(transaction_hash)
        if result is None:
            raise TransactionNotFoundError(transaction_hash)

        confirmations = 0
        if result.block_number is not None:
            confirmations = (
                self._block_number - result.block_number + 1
            ) * self._confirmations_per_block

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
        transaction_hash = self._by_idempotency_key.get(idempotency_key)
        if transaction_hash is None:
            return None
        return self._transactions[transaction_hash]

    async def get_split(self, transaction_hash: str) -> SplitPayment:
        """
        Get the computed shares of a split settlement.

        Raises:
            TransactionNotFoundError: reference unknown or not a split
        """
        result = self._transactions.get(transaction_hash)
        if result is None or not result.shares:
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
        matches = [
            self._transactions[tx_hash]
            for tx_hash in reversed(self._ledger)
            if _involves(self._transactions[tx_hash], address, direction)
        ]
        return matches[offset : offset + limit]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _new_hash(self) -> str:
        transaction_hash = generate_transaction_hash()
        while transaction_hash in self._transactions:
            transaction_hash = generate_transaction_hash()
        return transaction_hash

    def _next_block(self) -> int:
        self._block_number += 1
        return self._block_number

    def _record(self, result: PaymentResult, fingerprint: tuple) -> PaymentResult:
        self._transactions[result.transaction_hash] = result
        self._ledger.append(result.transaction_hash)
        if result.idempotency_key:
            self._by_idempotency_key[result.idempotency_key] = result.transaction_hash
            self._fingerprints[result.idempotency_key] = fingerprint
        return result

    @asynccontextmanager
    async def _idempotent(
        self, idempotency_key: str | None, fingerprint: tuple
    ) -> AsyncIterator[PaymentResult | None]:
        """
        Yield the prior result for a key, or None.

        Holds the key's lock for the whole block so two concurrent attempts
        with the same key cannot both settle.
        """
        if idempotency_key is None:
            yield None
            return

        async with self._locks.hold(idempotency_key):
            existing = await self.lookup(idempotency_key)
            if existing is not None:
                if self._fingerprints.get(idempotency_key) != fingerprint:
                    raise IdempotencyConflictError(idempotency_key, existing.transaction_hash)
                logger.info(
                    "payment_idempotent_replay",
                    idempotency_key=idempotency_key,
                    transaction_hash=existing.transaction_hash,
                )
            yield existing


def _involves(result: PaymentResult, address: str, direction: PaymentDirection) -> bool:
    """True when the settlement matches address in the requested direction."""
    sent = result.sender == address
    received = address in result.recipients
    match direction:
        case PaymentDirection.SENT:
            return sent
        case PaymentDirection.RECEIVED:
            return received
        case PaymentDirection.ALL:
            return sent or received
