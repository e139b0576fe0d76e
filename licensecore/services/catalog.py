"""
Asset Catalog - read-only source of asset price and seller.

Search, filtering and taxonomy live in the external catalog service; the
licensing core only needs get_asset.
"""

from collections.abc import Iterable
from decimal import Decimal
from typing import Protocol

from structlog import get_logger

from licensecore.exceptions import AssetNotFoundError
from licensecore.models.domain import Asset

logger = get_logger(__name__)

DEMO_CREATOR = "0x1234567890abcdef1234567890abcdef12345678"
DEMO_STUDIO = "0x9876543210fedcba9876543210fedcba98765432"

DEMO_ASSETS: tuple[Asset, ...] = (
    Asset("asset_landscape_photo", "Beautiful Landscape Photo", Decimal("25.00"), "USD", DEMO_CREATOR),
    Asset("asset_video_template", "Corporate Video Template", Decimal("75.00"), "USD", DEMO_STUDIO),
    Asset("asset_ambient_music", "Ambient Music Collection", Decimal("15.00"), "USD", DEMO_CREATOR),
    Asset("asset_proposal_template", "Business Proposal Template", Decimal("10.00"), "USD", DEMO_STUDIO),
    Asset("asset_character_model", "3D Character Model", Decimal("120.00"), "USD", DEMO_CREATOR),
    Asset("asset_code_snippets", "Code Snippets Library", Decimal("35.00"), "USD", DEMO_STUDIO),
)


class AssetCatalog(Protocol):
    """Read-only asset lookup."""

    async def get_asset(self, asset_id: str) -> Asset:
        """
        Get asset by id.

        Raises:
            AssetNotFoundError: Asset doesn't exist
        """
        ...


class InMemoryAssetCatalog:
    """Asset catalog held in memory, optionally seeded with demo assets."""

    def __init__(self, assets: Iterable[Asset] = ()) -> None:
        self._assets: dict[str, Asset] = {asset.asset_id: asset for asset in assets}

    async def get_asset(self, asset_id: str) -> Asset:
        asset = self._assets.get(asset_id)
        if asset is None:
            raise AssetNotFoundError(asset_id)
        return asset

    def add(self, asset: Asset) -> None:
        """Register or replace an asset."""
        self._assets[asset.asset_id] = asset
        logger.debug("catalog_asset_added", asset_id=asset.asset_id, price=str(asset.price))

    def __len__(self) -> int:
        return len(self._assets)
