from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce a price/amount to a Decimal rounded to the currency minor unit."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    # 25.00 -> 2500
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def format_amount(amount) -> str:
    return f"{to_money(amount):.2f}"
