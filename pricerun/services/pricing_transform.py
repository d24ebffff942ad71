from dataclasses import dataclass
from decimal import Decimal

from pricerun.core.money import percent_change, to_minor_units
from pricerun.schemas.rule import TransformModel


@dataclass(frozen=True)
class TransformResult:
    amount: int | None
    skipped_reason: str | None = None


def _raw_amount(before: int, transform: TransformModel) -> Decimal:
    if transform.op == "percent":
        return percent_change(before, transform.value)
    if transform.op == "absolute":
        return Decimal(before + transform.value)
    if transform.op == "set":
        return Decimal(transform.value)
    return Decimal(before) * Decimal(str(transform.factor))


def apply_transform(before: int, transform: TransformModel) -> TransformResult:
    """Compute the new price in minor units.

    The raw result is rounded with the rule's rounding mode, then clamped to
    floor and then ceiling, so the bounds always hold.
    """
    amount = to_minor_units(_raw_amount(before, transform), mode=transform.round, precision=transform.precision)

    if transform.floor is not None and amount < transform.floor:
        amount = transform.floor
    if transform.ceiling is not None and amount > transform.ceiling:
        amount = transform.ceiling

    if amount < 0:
        return TransformResult(amount=None, skipped_reason="negative_price")
    return TransformResult(amount=amount)
