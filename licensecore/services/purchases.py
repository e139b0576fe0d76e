"""
Purchase Store - durable receipts of purchase orchestrations.

One receipt per attempt, completed or failed, so a failed purchase whose
refund did not go through can be found and reconciled.
"""

import secrets
from typing import Protocol

from licensecore.exceptions import PurchaseNotFoundError
from licensecore.models.domain import Purchase


def generate_purchase_id() -> str:
    """Opaque purchase identifier."""
    return f"purchase_{secrets.token_hex(8)}"


class PurchaseStore(Protocol):
    """Receipt persistence."""

    async def save(self, purchase: Purchase) -> Purchase:
        """Insert or replace a receipt."""
        ...

    async def get(self, purchase_id: str) -> Purchase:
        """
        Get receipt by id.

        Raises:
            PurchaseNotFoundError: Receipt doesn't exist
        """
        ...

    async def find_by_idempotency_key(self, idempotency_key: str) -> Purchase | None:
        """Most recent receipt recorded under an idempotency key."""
        ...

    async def list_for_buyer(self, buyer: str) -> list[Purchase]:
        """Receipts of a buyer, newest first."""
        ...

    async def needing_reconciliation(self) -> list[Purchase]:
        """Receipts flagged for manual reconciliation."""
        ...


class InMemoryPurchaseStore:
    """Receipt store held in memory."""

    def __init__(self) -> None:
        self._purchases: dict[str, Purchase] = {}

    async def save(self, purchase: Purchase) -> Purchase:
        self._purchases[purchase.purchase_id] = purchase
        return purchase

    async def get(self, purchase_id: str) -> Purchase:
        purchase = self._purchases.get(purchase_id)
        if purchase is None:
            raise PurchaseNotFoundError(purchase_id)
        return purchase

    async def find_by_idempotency_key(self, idempotency_key: str) -> Purchase | None:
        for purchase in reversed(self._purchases.values()):
            if purchase.idempotency_key == idempotency_key:
                return purchase
        return None

    async def list_for_buyer(self, buyer: str) -> list[Purchase]:
        return [p for p in reversed(self._purchases.values()) if p.buyer == buyer]

    async def needing_reconciliation(self) -> list[Purchase]:
        return [p for p in self._purchases.values() if p.needs_reconciliation]
