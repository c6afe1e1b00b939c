"""Tax and shipping rate tables."""
from decimal import Decimal
from typing import Dict, Optional, Tuple

from shared.money import ZERO, to_money

JAMAICA_PARISHES = (
    "Kingston",
    "St. Andrew",
    "St. Catherine",
    "St. Thomas",
    "Portland",
    "St. Mary",
    "St. Ann",
    "Trelawny",
    "St. James",
    "Hanover",
    "Westmoreland",
    "St. Elizabeth",
    "Manchester",
    "Clarendon",
)

DEFAULT_TAX_RATE = Decimal("0.13")
TAX_RATES: Dict[str, Decimal] = {parish: Decimal("0.13") for parish in JAMAICA_PARISHES}

LOCAL = "local"
GLOBAL = "global"

DEFAULT_SHIPPING_RATE: Tuple[Decimal, str] = (Decimal("35.00"), GLOBAL)
SHIPPING_RATES: Dict[str, Tuple[Decimal, str]] = {
    **{parish: (ZERO, LOCAL) for parish in JAMAICA_PARISHES},
    "USA": (Decimal("15.00"), GLOBAL),
    "Canada": (Decimal("15.00"), GLOBAL),
}

# Global shipments at or above this subtotal ship free
FREE_SHIPPING_THRESHOLD = Decimal("100.00")


def shipping_region(state: Optional[str], country: str) -> str:
    """Parish for local addresses, country otherwise."""
    if state and state.strip() in SHIPPING_RATES:
        return state.strip()
    return country.strip()


def calculate_tax(region: str, taxable_amount: Decimal) -> Decimal:
    rate = TAX_RATES.get(region.strip(), DEFAULT_TAX_RATE)
    return to_money(max(taxable_amount, ZERO) * rate)


def calculate_shipping(region: str, subtotal: Decimal) -> Decimal:
    rate, shipping_type = SHIPPING_RATES.get(region.strip(), DEFAULT_SHIPPING_RATE)
    if shipping_type == GLOBAL and subtotal >= FREE_SHIPPING_THRESHOLD:
        return ZERO
    return rate


def estimated_shipping_time(region: str) -> str:
    _, shipping_type = SHIPPING_RATES.get(region.strip(), DEFAULT_SHIPPING_RATE)
    if shipping_type == LOCAL:
        return "1-2 business days"
    if region.strip() in ("USA", "Canada"):
        return "3-5 business days"
    return "5-10 business days"
