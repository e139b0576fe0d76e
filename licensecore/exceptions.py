"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Families:
- validation errors: rejected before any side effect
- NotFoundError: unknown escrow / transaction / template / token / asset
- StateConflictError: the entity exists but is in the wrong state
- external failures: a backend attempt itself failed (payment, mint, timeout)
"""

from decimal import Decimal

from licensecore.models.api import EscrowStatus, PurchaseStage


class LicensingError(Exception):
    """Base exception for all licensing core errors."""

    pass


# ============================================================================
# Validation Errors
# ============================================================================


class InvalidAmountError(LicensingError):
    """Raised when an amount is zero or negative."""

    def __init__(self, amount: Decimal) -> None:
        self.amount = amount
        super().__init__(f"Amount must be positive, got {amount}")


class AmountMismatchError(LicensingError):
    """Raised when an escrow is funded with an amount other than its declared amount."""

    def __init__(self, escrow_id: str, expected: Decimal, received: Decimal) -> None:
        self.escrow_id = escrow_id
        self.expected = expected
        self.received = received
        super().__init__(
            f"Amount must match escrow amount for {escrow_id}: "
            f"expected {expected}, received {received}"
        )


class InvalidSplitError(LicensingError):
    """Raised when split payment recipients are malformed or percentages do not sum to 100."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid split: {message}")


class SellerMismatchError(LicensingError):
    """Raised when the seller given for a purchase does not own the asset."""

    def __init__(self, asset_id: str, expected_seller: str, given_seller: str) -> None:
        self.asset_id = asset_id
        self.expected_seller = expected_seller
        self.given_seller = given_seller
        super().__init__(f"Invalid seller ID {given_seller} for asset {asset_id}")


class IdempotencyConflictError(LicensingError):
    """Raised when idempotency key reused with different data."""

    def __init__(self, idempotency_key: str, existing_id: str) -> None:
        self.idempotency_key = idempotency_key
        self.existing_id = existing_id
        super().__init__(
            f"Idempotency conflict: key {idempotency_key} already used for {existing_id}"
        )


# ============================================================================
# Not Found Errors
# ============================================================================


class NotFoundError(LicensingError):
    """Base class for unknown-entity errors."""

    entity = "Resource"

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"{self.entity} not found: {identifier}")


class EscrowNotFoundError(NotFoundError):
    """Raised when escrow doesn't exist."""

    entity = "Escrow"


class TransactionNotFoundError(NotFoundError):
    """Raised when a transaction reference is unknown."""

    entity = "Transaction"


class TemplateNotFoundError(NotFoundError):
    """Raised when a license template id is unknown."""

    entity = "License template"


class LicenseNotFoundError(NotFoundError):
    """Raised when a license token doesn't exist."""

    entity = "License"


class AssetNotFoundError(NotFoundError):
    """Raised when the asset catalog has no such asset."""

    entity = "Asset"


class PurchaseNotFoundError(NotFoundError):
    """Raised when a purchase receipt doesn't exist."""

    entity = "Purchase"


# ============================================================================
# State Conflict Errors
# ============================================================================


class StateConflictError(LicensingError):
    """Base class for operations rejected by the entity's current state."""

    pass


class InvalidStateError(StateConflictError):
    """Raised when an escrow transition is not allowed from its current status."""

    def __init__(self, escrow_id: str, current: EscrowStatus, attempted: str) -> None:
        self.escrow_id = escrow_id
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot {attempted} escrow {escrow_id} in status {current.value}")


class NotOwnedError(StateConflictError):
    """Raised when a license operation is attempted by someone who doesn't own the token."""

    def __init__(self, token_id: str, claimed_owner: str) -> None:
        self.token_id = token_id
        self.claimed_owner = claimed_owner
        super().__init__(f"License {token_id} not owned by {claimed_owner}")


class NotTransferableError(StateConflictError):
    """Raised when transferring a token whose template forbids transfer."""

    def __init__(self, token_id: str, template_id: str) -> None:
        self.token_id = token_id
        self.template_id = template_id
        super().__init__(f"License {token_id} ({template_id}) is not transferable")


# ============================================================================
# External Failures
# ============================================================================


class PaymentProviderError(LicensingError):
    """Raised when a settlement attempt fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class LicenseMintError(LicensingError):
    """Raised when the registry fails to mint a license token."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"License mint failed: {message}")


class BackendTimeoutError(LicensingError):
    """Raised when a backend call exceeds its timeout and the outcome cannot be resolved."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds}s")


class PurchaseFailedError(LicensingError):
    """
    Raised when a purchase orchestration fails after side effects began.

    Wraps the original error (also available as __cause__) and records
    whether the escrow refund compensation succeeded.
    """

    def __init__(
        self,
        stage: PurchaseStage,
        cause: Exception,
        escrow_id: str | None,
        compensated: bool,
        purchase_id: str | None = None,
    ) -> None:
        self.stage = stage
        self.cause = cause
        self.escrow_id = escrow_id
        self.compensated = compensated
        self.purchase_id = purchase_id
        if compensated:
            outcome = "escrow refunded"
        elif stage in (PurchaseStage.VALIDATION, PurchaseStage.ESCROW):
            outcome = "nothing to compensate"
        else:
            outcome = "escrow refund FAILED"
        super().__init__(f"Purchase failed at {stage.value} stage: {cause} ({outcome})")
