"""
Shared test helpers: addresses and a controllable clock.
"""

from datetime import datetime, timedelta

BUYER = "0xbuyer00000000000000000000000000000000001"
OTHER_USER = "0xother00000000000000000000000000000000002"
SELLER = "0xseller0000000000000000000000000000000003"
CONTRACT = "0xcontract000000000000000000000000000000004"
ISSUER = "0xissuer00000000000000000000000000000000005"


class FakeClock:
    """Deterministic clock; call it for now, advance() to move time."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)
