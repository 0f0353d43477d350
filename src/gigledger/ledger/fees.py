"""Platform fee computation.

    platform_fee = floor(price * fee_percent / 100)
    freelancer_amount = price - platform_fee

Integer arithmetic only, so the two parts always add back up to the
price. With the default 2% rate any price below 50 carries no fee.
"""

from __future__ import annotations

from gigledger.models.escrow import FeeSplit

DEFAULT_FEE_PERCENT = 2


def platform_fee(price: int, fee_percent: int = DEFAULT_FEE_PERCENT) -> int:
    """Return the platform's cut of ``price``."""
    if price < 0:
        raise ValueError(f"Price cannot be negative: {price}")
    if not 0 <= fee_percent <= 100:
        raise ValueError(f"Fee percent must be within [0, 100], got {fee_percent}")
    return price * fee_percent // 100


def split_price(price: int, fee_percent: int = DEFAULT_FEE_PERCENT) -> FeeSplit:
    """Divide ``price`` between the freelancer and the platform."""
    fee = platform_fee(price, fee_percent)
    return FeeSplit(
        price=price,
        fee_percent=fee_percent,
        platform_fee=fee,
        freelancer_amount=price - fee,
    )
