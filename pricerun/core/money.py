from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal

MINOR_UNIT_QUANT = Decimal("1")
PERCENT = Decimal("100")

ROUNDING_MODES = {
    "none": ROUND_HALF_UP,
    "nearest": ROUND_HALF_UP,
    "up": ROUND_CEILING,
    "down": ROUND_FLOOR,
}


def to_minor_units(value: Decimal | int | float | str, *, mode: str = "none", precision: int = 2) -> int:
    """Round an amount already expressed in minor units (cents) to a whole unit.

    ``none`` rounds half up to the cent. ``up``, ``down`` and ``nearest`` snap to
    steps of ``10 ** (2 - precision)`` cents, so precision 0 gives whole major
    units. ``nearest_99`` keeps the major unit and ends the price in .99.
    """
    amount = Decimal(str(value))
    if mode == "nearest_99":
        return int((amount / PERCENT).to_integral_value(rounding=ROUND_FLOOR) * PERCENT) + 99
    if mode == "none":
        return int(amount.quantize(MINOR_UNIT_QUANT, rounding=ROUND_HALF_UP))
    step = Decimal(10) ** (2 - precision)
    return int((amount / step).to_integral_value(rounding=ROUNDING_MODES[mode]) * step)


def percent_change(amount: int, percent: Decimal | int | float | str) -> Decimal:
    return Decimal(amount) * (Decimal(1) + Decimal(str(percent)) / PERCENT)


def format_minor_units(amount: int, currency: str) -> str:
    major = (Decimal(amount) / PERCENT).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{major} {currency.upper()}"
