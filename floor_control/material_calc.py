from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

_HUNDRED = Decimal("100")
_KG_QUANT = Decimal("0.001")


class CalculationError(ValueError):
    def __init__(self, field: str, value: Any):
        super().__init__(f"Invalid {field}: {value!r}. Must be a non-negative number")
        self.field = field
        self.value = value


@dataclass(frozen=True)
class CalculatedComponent:
    material_name: str
    percentage: Decimal
    normalized_percent: Decimal
    calculated_kg: Decimal


def to_decimal(value: Any, field: str) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise CalculationError(field, value) from exc
    if not result.is_finite() or result < 0:
        raise CalculationError(field, value)
    return result


def _field(component: Any, name: str) -> Any:
    if isinstance(component, dict):
        return component.get(name)
    return getattr(component, name, None)


def calculate(components: Iterable[Any], base_weight_kg: Any) -> list[CalculatedComponent]:
    """Scale recipe percentages to kilograms for a batch of ``base_weight_kg``.

    Percentages are normalised so the whole set sums to 100 while keeping
    their ratios; weights are rounded to three decimals. A set whose
    percentages total zero yields zero weights.

    Components may be mappings or objects exposing ``material_name`` and
    ``percentage``. Always pass the complete set: normalisation depends on
    every component.
    """
    base = to_decimal(base_weight_kg, "base_weight_kg")
    parts = [
        (_field(c, "material_name"), to_decimal(_field(c, "percentage"), "percentage"))
        for c in components
    ]

    total = sum((pct for _, pct in parts), Decimal("0"))
    factor = _HUNDRED / total if total > 0 else Decimal("1")

    results: list[CalculatedComponent] = []
    for name, pct in parts:
        normalized = pct * factor
        kg = (normalized / _HUNDRED * base).quantize(_KG_QUANT, rounding=ROUND_HALF_UP)
        results.append(
            CalculatedComponent(
                material_name=name,
                percentage=pct,
                normalized_percent=normalized.quantize(_KG_QUANT, rounding=ROUND_HALF_UP),
                calculated_kg=kg,
            )
        )
    return results
