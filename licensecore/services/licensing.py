"""
License Registry - templates and license tokens.

Templates are a fixed catalog of usage-rights bundles. A minted token
snapshots its template's rights, so later template edits never change
tokens already issued. Expiry and usage are evaluated at call time against
the clock; there is no background sweep.
"""

import secrets
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Protocol

from structlog import get_logger

from licensecore.exceptions import (
    IdempotencyConflictError,
    LicenseNotFoundError,
    NotOwnedError,
    NotTransferableError,
    TemplateNotFoundError,
)
from licensecore.models.api import LicenseType, TokenMetadata, UsageOutcome
from licensecore.models.domain import (
    PERPETUAL,
    UNLIMITED,
    DurationDays,
    Expiry,
    LicenseAttribute,
    LicenseMetadata,
    LicenseTemplate,
    LicenseToken,
    LicenseVerification,
    UsageResult,
    UseLimit,
)
from licensecore.services.locks import KeyedLocks

logger = get_logger(__name__)

LICENSE_IMAGE_URI = "https://ipfs.io/ipfs/QmLicenseImage"

MESSAGE_USED = "License used successfully"
MESSAGE_INVALID = "Invalid license"
MESSAGE_EXPIRED = "License expired"
MESSAGE_EXHAUSTED = "No remaining uses"


DEFAULT_TEMPLATES: tuple[LicenseTemplate, ...] = (
    LicenseTemplate(
        template_id="standard",
        name="Standard License",
        description="Basic usage rights for personal projects",
        type=LicenseType.STANDARD,
        permissions=("view", "download", "personal-use"),
        restrictions=("no-commercial", "no-resale", "no-distribution"),
        duration_days=PERPETUAL,
        max_uses=1,
        is_transferable=False,
        is_resellable=False,
        price_multiplier=Decimal("1.0"),
    ),
    LicenseTemplate(
        template_id="extended",
        name="Extended License",
        description="Commercial usage rights for multiple projects",
        type=LicenseType.EXTENDED,
        permissions=("view", "download", "commercial-use", "multiple-projects"),
        restrictions=("no-resale", "no-distribution"),
        duration_days=365,
        max_uses=5,
        is_transferable=True,
        is_resellable=False,
        price_multiplier=Decimal("2.0"),
    ),
    LicenseTemplate(
        template_id="exclusive",
        name="Exclusive License",
        description="Full ownership rights with resale capability",
        type=LicenseType.EXCLUSIVE,
        permissions=(
            "view",
            "download",
            "commercial-use",
            "unlimited-projects",
            "resale",
            "distribution",
            "modification",
        ),
        restrictions=(),
        duration_days=PERPETUAL,
        max_uses=UNLIMITED,
        is_transferable=True,
        is_resellable=True,
        price_multiplier=Decimal("5.0"),
    ),
)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_token_id() -> str:
    """16 hex character token identifier."""
    return secrets.token_hex(8)


def token_uri(token_id: str) -> str:
    """Content URI of a license token."""
    return f"ipfs://QmLicense{token_id}"


def compute_expiry(minted_at: datetime, duration_days: DurationDays) -> Expiry:
    """Expiry timestamp for a duration, or PERPETUAL."""
    if duration_days is PERPETUAL:
        return PERPETUAL
    return minted_at + timedelta(days=duration_days)


def build_metadata(token: LicenseToken, template: LicenseTemplate | None) -> LicenseMetadata:
    """Display metadata derived from a token and its template."""
    if template is not None:
        license_type = template.name
    else:
        license_type = token.template_id

    if token.expires_at is PERPETUAL:
        duration = "Perpetual"
    else:
        duration = f"{(token.expires_at - token.minted_at).days} days"

    max_uses = "Unlimited" if token.max_uses is UNLIMITED else str(token.max_uses)
    commercial = "Yes" if "commercial-use" in token.permissions else "No"

    return LicenseMetadata(
        name=f"Digital License #{token.token_id[-6:]}",
        description=f"License for digital asset {token.asset_id}",
        image=LICENSE_IMAGE_URI,
        attributes=(
            LicenseAttribute(trait_type="License Type", value=license_type),
            LicenseAttribute(trait_type="Duration", value=duration),
            LicenseAttribute(trait_type="Max Uses", value=max_uses),
            LicenseAttribute(trait_type="Commercial Use", value=commercial),
        ),
    )


def evaluate_use(token: LicenseToken | None, user: str, now: datetime) -> UsageResult | None:
    """
    Check the preconditions of a use attempt.

    Returns the failure result, or None when the use may proceed. Checks run
    in order: validity for user, expiry, remaining uses.
    """
    if token is None or token.burned:
        return UsageResult(success=False, outcome=UsageOutcome.INVALID, message=MESSAGE_INVALID)
    if token.owner != user:
        return UsageResult(success=False, outcome=UsageOutcome.NOT_OWNER, message=MESSAGE_INVALID)
    if token.is_expired(now):
        return UsageResult(success=False, outcome=UsageOutcome.EXPIRED, message=MESSAGE_EXPIRED)
    if token.is_exhausted:
        return UsageResult(
            success=False,
            outcome=UsageOutcome.MAX_USES,
            message=MESSAGE_EXHAUSTED,
            remaining_uses=0,
        )
    return None


def verification_for(
    token: LicenseToken | None, token_id: str, expected_owner: str | None
) -> LicenseVerification:
    """Read-only verification snapshot of a token."""
    if token is None or token.burned:
        return LicenseVerification(is_valid=False, token_id=token_id)
    if expected_owner is not None and token.owner != expected_owner:
        return LicenseVerification(
            is_valid=False, token_id=token_id, owner=token.owner, asset_id=token.asset_id
        )
    return LicenseVerification(
        is_valid=True,
        token_id=token_id,
        owner=token.owner,
        asset_id=token.asset_id,
        license_type=token.template_id,
        expires_at=token.expires_at,
        remaining_uses=token.remaining_uses,
        permissions=token.permissions,
    )


class LicenseBackend(Protocol):
    """
    License registry capability.

    Any registry backend (in-memory, SQL ledger, NFT contract) must
    implement this interface.
    """

    async def list_templates(self) -> list[LicenseTemplate]:
        """All templates ordered by ascending price multiplier."""
        ...

    async def get_template(self, template_id: str) -> LicenseTemplate:
        """
        Get template by id.

        Raises:
            TemplateNotFoundError: Template doesn't exist
        """
        ...

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
        """
        Mint a token owned by purchaser.

        Raises:
            TemplateNotFoundError: Template doesn't exist
            IdempotencyConflictError: key reused for a different mint
            LicenseMintError: mint attempt failed
        """
        ...

    async def verify(self, token_id: str, expected_owner: str | None = None) -> LicenseVerification:
        """Verify a token without mutating it."""
        ...

    async def use(self, token_id: str, user: str) -> UsageResult:
        """Consume one use. Failures are reported in the result."""
        ...

    async def transfer(self, token_id: str, from_owner: str, to_owner: str) -> LicenseToken:
        """
        Move ownership of a token.

        Raises:
            LicenseNotFoundError: Token doesn't exist or is burned
            NotOwnedError: from_owner is not the current owner
            NotTransferableError: template forbids transfer
        """
        ...

    async def burn(self, token_id: str, owner: str) -> LicenseToken:
        """
        Remove a token from active ownership.

        Raises:
            LicenseNotFoundError: Token doesn't exist or is burned
            NotOwnedError: owner is not the current owner
        """
        ...

    async def get(self, token_id: str) -> LicenseToken:
        """
        Get token by id, burned tokens included.

        Raises:
            LicenseNotFoundError: Token doesn't exist
        """
        ...

    async def list_for_owner(self, owner: str) -> list[LicenseToken]:
        """Active tokens owned by owner, newest first."""
        ...

    async def list_for_asset(self, asset_id: str) -> list[LicenseToken]:
        """Active tokens bound to asset_id, newest first."""
        ...

    async def metadata(self, token_id: str) -> LicenseMetadata:
        """
        Display metadata of a token.

        Raises:
            LicenseNotFoundError: Token doesn't exist
        """
        ...

    async def lookup(self, idempotency_key: str) -> LicenseToken | None:
        """Find the token minted under an idempotency key, if any."""
        ...


class InMemoryLicenseRegistry:
    """
    Deterministic in-memory license registry.

    Mutations of one token are serialised; mints sharing an idempotency key
    are serialised on that key.
    """

    def __init__(
        self,
        contract_address: str,
        issuer_address: str,
        templates: Iterable[LicenseTemplate] = DEFAULT_TEMPLATES,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._contract_address = contract_address
        self._issuer_address = issuer_address
        self._templates = {template.template_id: template for template in templates}
        self._clock = clock
        self._tokens: dict[str, LicenseToken] = {}
        self._by_idempotency_key: dict[str, str] = {}
        self._fingerprints: dict[str, tuple] = {}
        self._locks = KeyedLocks()

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
        fingerprint = (
            asset_id,
            template_id,
            purchaser,
            duration_override,
            max_uses_override,
            metadata.model_dump_json(),
        )

        async with self._idempotent(idempotency_key, fingerprint) as existing:
            if existing is not None:
                return existing

            minted_at = self._clock()
            token_id = self._new_token_id()
            duration: DurationDays = duration_override or template.duration_days
            max_uses: UseLimit = max_uses_override or template.max_uses

            token = LicenseToken(
                token_id=token_id,
                contract_address=self._contract_address,
                asset_id=asset_id,
                template_id=template_id,
                owner=purchaser,
                creator=self._issuer_address,
                minted_at=minted_at,
                expires_at=compute_expiry(minted_at, duration),
                max_uses=max_uses,
                used_count=0,
                permissions=template.permissions,
                restrictions=template.restrictions,
                is_transferable=template.is_transferable,
                is_resellable=template.is_resellable,
                metadata=metadata,
                uri=token_uri(token_id),
                idempotency_key=idempotency_key,
            )
            self._tokens[token.token_id] = token
            if idempotency_key:
                self._by_idempotency_key[idempotency_key] = token.token_id
                self._fingerprints[idempotency_key] = fingerprint

        logger.info(
            "license_minted",
            token_id=token.token_id,
            asset_id=asset_id,
            template_id=template_id,
            owner=purchaser,
            expires_at=str(token.expires_at),
            max_uses=str(token.max_uses),
        )
        return token

    async def verify(self, token_id: str, expected_owner: str | None = None) -> LicenseVerification:
        """Verify a token without mutating it."""
        return verification_for(self._tokens.get(token_id), token_id, expected_owner)

    async def use(self, token_id: str, user: str) -> UsageResult:
        """Consume one use."""
        async with self._locks.hold(token_id):
            token = self._tokens.get(token_id)
            failure = evaluate_use(token, user, self._clock())
            if failure is not None:
                logger.info(
                    "license_use_rejected",
                    token_id=token_id,
                    user=user,
                    outcome=failure.outcome.value,
                )
                return failure

            used = replace(token, used_count=token.used_count + 1)
            self._tokens[token_id] = used

        logger.info("license_used", token_id=token_id, user=user, used_count=used.used_count)
        return UsageResult(
            success=True,
            outcome=UsageOutcome.USED,
            message=MESSAGE_USED,
            remaining_uses=used.remaining_uses,
        )

    async def transfer(self, token_id: str, from_owner: str, to_owner: str) -> LicenseToken:
        """Move ownership of a token."""
        async with self._locks.hold(token_id):
            token = self._require_active(token_id)
            if token.owner != from_owner:
                raise NotOwnedError(token_id, from_owner)
            if not token.is_transferable:
                raise NotTransferableError(token_id, token.template_id)

            transferred = replace(token, owner=to_owner)
            self._tokens[token_id] = transferred

        logger.info("license_transferred", token_id=token_id, from_owner=from_owner, to_owner=to_owner)
        return transferred

    async def burn(self, token_id: str, owner: str) -> LicenseToken:
        """Remove a token from active ownership."""
        async with self._locks.hold(token_id):
            token = self._require_active(token_id)
            if token.owner != owner:
                raise NotOwnedError(token_id, owner)

            burned = replace(token, burned=True)
            self._tokens[token_id] = burned

        logger.info("license_burned", token_id=token_id, owner=owner)
        return burned

    async def get(self, token_id: str) -> LicenseToken:
        """Get token by id."""
        token = self._tokens.get(token_id)
        if token is None:
            raise LicenseNotFoundError(token_id)
        return token

    async def list_for_owner(self, owner: str) -> list[LicenseToken]:
        """Active tokens owned by owner, newest first."""
        return self._active(lambda token: token.owner == owner)

    async def list_for_asset(self, asset_id: str) -> list[LicenseToken]:
        """Active tokens bound to asset_id, newest first."""
        return self._active(lambda token: token.asset_id == asset_id)

    async def metadata(self, token_id: str) -> LicenseMetadata:
        """Display metadata of a token."""
        token = await self.get(token_id)
        return build_metadata(token, self._templates.get(token.template_id))

    async def lookup(self, idempotency_key: str) -> LicenseToken | None:
        """Find the token minted under an idempotency key."""
        token_id = self._by_idempotency_key.get(idempotency_key)
        if token_id is None:
            return None
        return self._tokens[token_id]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _new_token_id(self) -> str:
        token_id = generate_token_id()
        while token_id in self._tokens:
            token_id = generate_token_id()
        return token_id

    def _require_active(self, token_id: str) -> LicenseToken:
        token = self._tokens.get(token_id)
        if token is None or token.burned:
            raise LicenseNotFoundError(token_id)
        return token

    def _active(self, predicate: Callable[[LicenseToken], bool]) -> list[LicenseToken]:
        # dicts keep insertion order, so reversing gives newest first
        return [
            token
            for token in reversed(self._tokens.values())
            if not token.burned and predicate(token)
        ]

    @asynccontextmanager
    async def _idempotent(
        self, idempotency_key: str | None, fingerprint: tuple
    ) -> AsyncIterator[LicenseToken | None]:
        """Yield the token already minted under the key, or None."""
        if idempotency_key is None:
            yield None
            return

        async with self._locks.hold(f"mint:{idempotency_key}"):
            existing = await self.lookup(idempotency_key)
            if existing is not None and self._fingerprints.get(idempotency_key) != fingerprint:
                raise IdempotencyConflictError(idempotency_key, existing.token_id)
            yield existing
