from decimal import Decimal

import pytest

from floor_control.material_calc import CalculationError, calculate


def test_calculate_scales_percentages_to_base_weight():
    result = calculate(
        [{"material_name": "A", "percentage": 60}, {"material_name": "B", "percentage": 40}], 50
    )
    assert [r.calculated_kg for r in result] == [Decimal("30.000"), Decimal("20.000")]
    assert [r.normalized_percent for r in result] == [Decimal("60.000"), Decimal("40.000")]


def test_calculate_normalises_when_total_is_not_100():
    parts = [{"material_name": name, "percentage": 30} for name in ("A", "B", "C")]
    result = calculate(parts, 90)
    assert all(r.normalized_percent == Decimal("33.333") for r in result)
    assert all(r.calculated_kg == Decimal("30.000") for r in result)
    assert sum(r.calculated_kg for r in result) == Decimal("90.000")


def test_calculate_rounds_to_three_decimals():
    parts = [{"material_name": name, "percentage": 1} for name in ("A", "B", "C")]
    result = calculate(parts, 10)
    assert all(r.calculated_kg == Decimal("3.333") for r in result)


def test_calculate_zero_total_yields_zero_weights():
    parts = [{"material_name": "A", "percentage": 0}, {"material_name": "B", "percentage": None}]
    result = calculate(parts, 100)
    assert [r.calculated_kg for r in result] == [Decimal("0.000"), Decimal("0.000")]


def test_calculate_accepts_objects():
    class Item:
        def __init__(self, material_name, percentage):
            self.material_name = material_name
            self.percentage = percentage

    result = calculate([Item("A", Decimal("75")), Item("B", Decimal("25"))], Decimal("8"))
    assert result[0].material_name == "A"
    assert result[0].calculated_kg == Decimal("6.000")
    assert result[1].calculated_kg == Decimal("2.000")


def test_calculate_empty_set():
    assert calculate([], 100) == []


def test_calculate_negative_percentage_raises():
    with pytest.raises(CalculationError) as exc_info:
        calculate([{"material_name": "A", "percentage": -5}], 10)
    assert exc_info.value.field == "percentage"


def test_calculate_negative_base_weight_raises():
    with pytest.raises(CalculationError):
        calculate([{"material_name": "A", "percentage": 100}], -1)


def test_calculate_non_numeric_raises():
    with pytest.raises(CalculationError):
        calculate([{"material_name": "A", "percentage": "lots"}], 10)
