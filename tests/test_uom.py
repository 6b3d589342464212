from decimal import Decimal
from itertools import product

import pytest

from bidtab.uom import UNIT_CLASSES, convert, is_known_unit, normalize_unit, unit_class


def test_yard_to_linear_foot():
    assert convert("YD", "LF") == Decimal("3")


def test_foot_and_linear_foot_are_interchangeable():
    assert convert("FT", "LF") == Decimal("1")
    assert convert("LF", "FT") == Decimal("1")


def test_cubic_yard_to_cubic_foot():
    assert convert("CY", "CF") == Decimal("27")


def test_units_are_case_and_whitespace_insensitive():
    assert convert(" yd ", "lf") == Decimal("3")
    assert normalize_unit("  sf ") == "SF"


@pytest.mark.parametrize("class_name", sorted(UNIT_CLASSES))
def test_round_trip_within_a_class_is_one(class_name):
    units = list(UNIT_CLASSES[class_name])
    for a, b in product(units, units):
        there = convert(a, b)
        back = convert(b, a)
        assert there is not None and back is not None
        assert abs(there * back - Decimal("1")) < Decimal("1e-20")


def test_units_from_different_classes_do_not_convert():
    for class_a, class_b in product(UNIT_CLASSES, UNIT_CLASSES):
        if class_a == class_b:
            continue
        for a, b in product(UNIT_CLASSES[class_a], UNIT_CLASSES[class_b]):
            assert convert(a, b) is None


def test_each_lump_sum_and_lot_are_separate():
    assert convert("EA", "LS") is None
    assert convert("LS", "LOT") is None


@pytest.mark.parametrize("a, b", [("LF", "BOX"), ("BOX", "LF"), (None, "LF"), ("LF", None), ("", "")])
def test_unknown_units_return_none(a, b):
    assert convert(a, b) is None


def test_unit_lookup_helpers():
    assert unit_class("m2") == "area"
    assert is_known_unit("TON")
    assert not is_known_unit("PALLET")
