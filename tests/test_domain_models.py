"""
Tests for domain models and money helpers.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from licensecore.models.api import LicenseType, TokenMetadata
from licensecore.models.domain import (
    PERPETUAL,
    UNLIMITED,
    Asset,
    LicenseTemplate,
    LicenseToken,
    ReleaseConditions,
)
from licensecore.models.money import (
    from_minor,
    minor_unit,
    percentages_balanced,
    quantize,
    split_amounts,
    to_minor,
)

MINTED = datetime(2024, 1, 15, 12, 0, 0, tzinfo=UTC)


def _token(**overrides) -> LicenseToken:
    values = dict(
        token_id="a1b2c3d4e5f60718",
        contract_address="0xcontract",
        asset_id="asset_1",
        template_id="extended",
        owner="0xowner",
        creator="0xissuer",
        minted_at=MINTED,
        expires_at=MINTED + timedelta(days=365),
        max_uses=5,
        used_count=0,
        permissions=("view",),
        restrictions=(),
        is_transferable=True,
        is_resellable=False,
        metadata=TokenMetadata(),
        uri="ipfs://QmLicensea1b2c3d4e5f60718",
    )
    values.update(overrides)
    return LicenseToken(**values)


class TestLicenseToken:
    """Tests for LicenseToken domain model."""

    def test_used_count_cannot_exceed_max_uses(self):
        """A token never records more uses than allowed."""
        with pytest.raises(ValueError, match="exceeds max uses"):
            _token(used_count=6)

    def test_negative_used_count_rejected(self):
        """Counter is never negative."""
        with pytest.raises(ValueError):
            _token(used_count=-1)

    def test_unlimited_allows_any_count(self):
        """UNLIMITED tokens accept any usage count."""
        token = _token(max_uses=UNLIMITED, used_count=10_000)

        assert token.remaining_uses is UNLIMITED
        assert token.is_exhausted is False

    def test_remaining_and_exhausted(self):
        """Bounded tokens count down to exhaustion."""
        assert _token(used_count=3).remaining_uses == 2
        assert _token(used_count=5).is_exhausted is True

    def test_expiry_is_strictly_after(self):
        """A token is still valid at the exact expiry instant."""
        token = _token()

        assert token.is_expired(token.expires_at) is False
        assert token.is_expired(token.expires_at + timedelta(seconds=1)) is True

    def test_perpetual_never_expires(self):
        """PERPETUAL tokens are never expired."""
        token = _token(expires_at=PERPETUAL)
        assert token.is_expired(MINTED + timedelta(days=365 * 100)) is False


class TestLicenseTemplate:
    """Tests for LicenseTemplate invariants."""

    def _template(self, **overrides) -> LicenseTemplate:
        values = dict(
            template_id="custom",
            name="Custom",
            description="Custom terms",
            type=LicenseType.CUSTOM,
            permissions=("view",),
            restrictions=(),
            duration_days=30,
            max_uses=UNLIMITED,
            is_transferable=False,
            is_resellable=False,
            price_multiplier=Decimal("1.5"),
        )
        values.update(overrides)
        return LicenseTemplate(**values)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"price_multiplier": Decimal("0")},
            {"duration_days": 0},
            {"max_uses": 0},
        ],
    )
    def test_rejects_non_positive_limits(self, overrides: dict):
        """Multiplier, duration and max uses must be positive when bounded."""
        with pytest.raises(ValueError):
            self._template(**overrides)

    def test_perpetual_duration_allowed(self):
        """PERPETUAL is a valid duration."""
        assert self._template(duration_days=PERPETUAL).duration_days is PERPETUAL


class TestAssetAndConditions:
    """Tests for Asset and ReleaseConditions."""

    def test_asset_price_positive(self):
        with pytest.raises(ValueError):
            Asset("asset_1", "Photo", Decimal("0"), "USD", "0xseller")

    def test_asset_currency_code(self):
        with pytest.raises(ValueError):
            Asset("asset_1", "Photo", Decimal("1"), "DOLLAR", "0xseller")

    def test_release_conditions_defaults(self):
        """Defaults: rating 3, 24h time lock, no verification."""
        conditions = ReleaseConditions()

        assert conditions.min_rating == 3
        assert conditions.time_lock_seconds == 86400
        assert conditions.verification_required is False

    def test_negative_time_lock_rejected(self):
        with pytest.raises(ValueError):
            ReleaseConditions(time_lock_seconds=-1)


class TestMoney:
    """Tests for money helpers."""

    def test_round_half_up(self):
        """Halves round away from zero."""
        assert quantize(Decimal("0.005"), "USD") == Decimal("0.01")
        assert quantize(Decimal("2.5"), "JPY") == Decimal("3")

    def test_minor_units(self):
        """Minor units follow the currency exponent."""
        assert minor_unit("USD") == Decimal("0.01")
        assert to_minor(Decimal("25.00"), "USD") == 2500
        assert to_minor(Decimal("1"), "FIL") == 10**18
        assert from_minor(2500, "usd") == Decimal("25.00")

    def test_unknown_currency_uses_two_places(self):
        assert quantize(Decimal("1.234"), "XYZ") == Decimal("1.23")

    def test_percentages_balanced_tolerance(self):
        assert percentages_balanced([Decimal("50"), Decimal("49.99")]) is True
        assert percentages_balanced([Decimal("50"), Decimal("49.98")]) is False

    def test_split_residual_goes_to_largest(self):
        """Three-way split of 1.00: rounding leftovers land on the largest share."""
        shares = split_amounts(
            Decimal("1.00"), [Decimal("33.33"), Decimal("33.34"), Decimal("33.33")], "USD"
        )

        assert shares == [Decimal("0.33"), Decimal("0.34"), Decimal("0.33")]
        assert sum(shares) == Decimal("1.00")

    def test_split_empty(self):
        assert split_amounts(Decimal("1"), [], "USD") == []
