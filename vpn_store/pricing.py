"""Pricing and reseller level rules.

Prices are whole rupiah. Reseller discounts and commissions depend on the
buyer's level, which is itself derived from the cumulative commission a
reseller has earned.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

COMMISSION_RATE = 0.1
RESELLER_UPGRADE_COST = 50000
BUNDLE_MULTIPLIER = 1.5
DURATIONS = (1, 3, 7, 10, 14, 30)

LEVEL_SILVER = "silver"
LEVEL_GOLD = "gold"
LEVEL_PLATINUM = "platinum"
LEVELS = (LEVEL_SILVER, LEVEL_GOLD, LEVEL_PLATINUM)

RESELLER_DISCOUNTS = {
    LEVEL_SILVER: 0.1,
    LEVEL_GOLD: 0.2,
    LEVEL_PLATINUM: 0.3,
}

GOLD_THRESHOLD = 50000
PLATINUM_THRESHOLD = 80000

ROLE_RESELLER = "reseller"
BUNDLE_PROTOCOL = "3in1"


@dataclass(frozen=True)
class Quote:
    unit_price: int
    total: int
    commission: int


def reseller_discount(role: Optional[str], level: Optional[str]) -> float:
    """Discount fraction for a buyer; plain users get none."""

    if role != ROLE_RESELLER:
        return 0.0
    return RESELLER_DISCOUNTS.get(level or LEVEL_SILVER, RESELLER_DISCOUNTS[LEVEL_SILVER])


def protocol_multiplier(protocol: str) -> float:
    return BUNDLE_MULTIPLIER if protocol == BUNDLE_PROTOCOL else 1.0


def unit_price(base_price: float, discount: float, multiplier: float) -> int:
    """Per-day price after discount and protocol multiplier, rounded down."""

    return int(math.floor(base_price * (1 - discount) * multiplier))


def commission_for(base_price: float, days: int, role: Optional[str]) -> int:
    """Commission is a flat share of the undiscounted base price."""

    if role != ROLE_RESELLER:
        return 0
    return int(math.floor(base_price * days * COMMISSION_RATE))


def quote(base_price: float, days: int, protocol: str, role: Optional[str], level: Optional[str]) -> Quote:
    """Price a purchase.

    Parameters
    ----------
    base_price : float
        Server price per day (``servers.harga``)
    days : int
        Selected duration
    protocol : str
        Protocol key; ``3in1`` is charged with the bundle multiplier
    role : str
        Buyer role
    level : str
        Buyer reseller level

    Returns
    -------
    Quote
        Unit price, total and commission earned by the buyer
    """
    unit = unit_price(base_price, reseller_discount(role, level), protocol_multiplier(protocol))
    return Quote(unit_price=unit, total=unit * days, commission=commission_for(base_price, days, role))


def level_for_commission(total_commission: float) -> str:
    if total_commission >= PLATINUM_THRESHOLD:
        return LEVEL_PLATINUM
    if total_commission >= GOLD_THRESHOLD:
        return LEVEL_GOLD
    return LEVEL_SILVER


def level_priority(level: Optional[str]) -> int:
    return {LEVEL_SILVER: 1, LEVEL_GOLD: 2, LEVEL_PLATINUM: 3}.get(level or "", 0)
