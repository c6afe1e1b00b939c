"""Money helpers. Amounts are Decimals rounded half-up to cents."""
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """Coerce ``value`` to a cent-quantized Decimal (``None`` is zero)."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        # str() first so floats keep their printed value, not their binary one
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)
