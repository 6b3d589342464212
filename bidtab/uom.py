"""
Unit-of-measure conversion.

Units are grouped into disjoint convertibility classes. Each class maps its member
units to their ratio against the class base unit, so adding a unit is a table edit.

    convert("YD", "LF") -> Decimal("3")
    convert("LF", "CY") -> None     (different classes: cannot normalize)

No rounding happens here; factors stay Decimal all the way to display.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Optional

UNIT_CLASSES: Dict[str, Dict[str, Decimal]] = {
    # base: linear foot
    "length": {
        "LF": Decimal("1"),
        "FT": Decimal("1"),
        "IN": Decimal("1") / Decimal("12"),
        "YD": Decimal("3"),
        "M": Decimal("3.28084"),
    },
    # base: square foot
    "area": {
        "SF": Decimal("1"),
        "SY": Decimal("9"),
        "M2": Decimal("10.7639"),
    },
    # base: cubic foot
    "volume": {
        "CF": Decimal("1"),
        "CY": Decimal("27"),
        "M3": Decimal("35.3147"),
    },
    # base: pound
    "weight": {
        "LB": Decimal("1"),
        "TON": Decimal("2000"),
        "KG": Decimal("2.20462"),
    },
    # base: gallon
    "liquid": {
        "GAL": Decimal("1"),
        "L": Decimal("0.264172"),
    },
    # base: hour (8-hour workday, 40-hour week)
    "time": {
        "HR": Decimal("1"),
        "DAY": Decimal("8"),
        "WK": Decimal("40"),
    },
    # count / lump sum: never interchangeable with each other
    "each": {"EA": Decimal("1")},
    "lump_sum": {"LS": Decimal("1")},
    "lot": {"LOT": Decimal("1")},
}

_UNIT_INDEX: Dict[str, str] = {
    unit: class_name for class_name, members in UNIT_CLASSES.items() for unit in members
}

ALL_UNITS = tuple(sorted(_UNIT_INDEX))


def normalize_unit(unit: Optional[str]) -> Optional[str]:
    """Canonical spelling of a unit code (trimmed, upper case)."""
    if unit is None:
        return None
    cleaned = str(unit).strip().upper()
    return cleaned or None


def unit_class(unit: Optional[str]) -> Optional[str]:
    """Name of the convertibility class the unit belongs to, or None if unknown."""
    return _UNIT_INDEX.get(normalize_unit(unit) or "")


def is_known_unit(unit: Optional[str]) -> bool:
    return unit_class(unit) is not None


def convert(from_unit: Optional[str], to_unit: Optional[str]) -> Optional[Decimal]:
    """
    Ratio of `from_unit` to `to_unit` (how many `to_unit` make one `from_unit`).

    Returns None when either unit is unknown or the units belong to different
    classes. Callers must treat None as "cannot normalize", never as 1.
    """
    source = normalize_unit(from_unit)
    target = normalize_unit(to_unit)

    source_class = _UNIT_INDEX.get(source or "")
    if source_class is None or source_class != _UNIT_INDEX.get(target or ""):
        return None

    ratios = UNIT_CLASSES[source_class]
    return ratios[source] / ratios[target]
