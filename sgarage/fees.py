"""
Buyer's fee estimates shown next to a bid amount.

The premium is tiered: each tier's rate applies only to the slice of the price
that falls inside it, so with the default schedule

  • up to ¥250,000            10%
  • ¥250,000 – ¥1,000,000     5% on the excess
  • above ¥1,000,000          2% on the excess

plus a flat documentation fee. Rates are kept in basis points and the premium
is rounded half-up to whole yen once, after all tiers are summed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sgarage.core import InvalidAmount
from sgarage.settings import FeesCfg

_BPS = 10_000


@dataclass(frozen=True)
class FeeEstimate:
    price: int
    buyers_premium: int
    documentation_fee: int
    total_fees: int
    total_with_fees: int

    def as_dict(self) -> dict:
        return {
            "price": self.price,
            "buyersPremium": self.buyers_premium,
            "documentationFee": self.documentation_fee,
            "totalFees": self.total_fees,
            "totalWithFees": self.total_with_fees,
            "total": self.total_with_fees,
        }


def parse_price(raw: Optional[str]) -> int:
    """Lenient query-string parsing: garbage and negatives become 0."""
    try:
        value = int(float(str(raw).strip()))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, value)


def _premium(price: int, cfg: FeesCfg) -> int:
    numerator = 0
    floor = 0
    for tier in cfg.tiers:
        ceiling = price if tier.up_to is None else min(price, tier.up_to)
        if ceiling > floor:
            numerator += (ceiling - floor) * tier.rate_bps
        if tier.up_to is None or price <= tier.up_to:
            break
        floor = tier.up_to
    return (numerator + _BPS // 2) // _BPS


def calc_fees(price: int, cfg: Optional[FeesCfg] = None) -> FeeEstimate:
    cfg = cfg or FeesCfg()
    if isinstance(price, bool) or not isinstance(price, int):
        raise InvalidAmount(price)
    price = max(0, price)
    premium = _premium(price, cfg)
    total_fees = premium + cfg.documentation_fee
    return FeeEstimate(
        price=price,
        buyers_premium=premium,
        documentation_fee=cfg.documentation_fee,
        total_fees=total_fees,
        total_with_fees=price + total_fees,
    )


def fee_structure(cfg: Optional[FeesCfg] = None) -> dict:
    cfg = cfg or FeesCfg()
    tiers = []
    floor = 0
    for tier in cfg.tiers:
        tiers.append(
            {
                "min": floor,
                "max": tier.up_to,
                "rate": tier.rate_bps / _BPS,
            }
        )
        if tier.up_to is None:
            break
        floor = tier.up_to
    return {
        "buyersPremium": {"tiers": tiers},
        "documentationFee": {"amount": cfg.documentation_fee},
    }
