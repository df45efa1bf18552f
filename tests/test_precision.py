from decimal import Decimal

import pytest

from grid_bot.connection.precision import (
    ceil_to_tick,
    floor_to_step,
    floor_to_tick,
    format_decimal,
    precision_from_unit,
    to_decimal,
    truncate,
)


@pytest.mark.parametrize(
    "unit, expected",
    [
        ("0.01000000", 2),
        ("0.00100000", 3),
        ("1.00000000", 0),
        ("10", 0),
        ("", 8),
        (None, 8),
    ],
)
def test_precision_from_unit(unit, expected):
    assert precision_from_unit(unit) == expected


def test_truncate_never_rounds_up():
    assert truncate(Decimal("1.23999"), 2) == Decimal("1.23")
    assert truncate(Decimal("-1.239"), 2) == Decimal("-1.23")


def test_floor_and_ceil_align_to_tick():
    tick = Decimal("0.01")
    assert floor_to_tick(Decimal("100.129"), tick, 2) == Decimal("100.12")
    assert ceil_to_tick(Decimal("100.121"), tick, 2) == Decimal("100.13")
    assert ceil_to_tick(Decimal("100.12"), tick, 2) == Decimal("100.12")


def test_non_positive_unit_falls_back_to_truncation():
    assert floor_to_step(Decimal("0.12345"), Decimal("0"), 3) == Decimal("0.123")
    assert ceil_to_tick(Decimal("0.12345"), Decimal("0"), 3) == Decimal("0.123")


def test_coarse_step_floors_to_whole_units():
    assert floor_to_step(Decimal("7.9"), Decimal("5"), 0) == Decimal("5")


def test_format_decimal_uses_plain_notation():
    assert format_decimal(Decimal("0.00100")) == "0.001"
    assert format_decimal(Decimal("1E+1")) == "10"
    assert format_decimal(Decimal("1E-8")) == "0.00000001"
    assert format_decimal(Decimal("0")) == "0"


def test_to_decimal_avoids_float_artefacts():
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal("600.12") == Decimal("600.12")
    assert to_decimal(3) == Decimal(3)
