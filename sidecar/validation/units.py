"""Unit conversion between display units and canonical storage units."""

from __future__ import annotations

import math
from enum import Enum
from typing import Optional

LB_TO_KG = 0.45359237
IN_TO_CM = 2.54
MMHG_TO_KPA = 0.133322
KPA_TO_MMHG = 7.50062
# 1 Wood unit = 80 dyn*s*cm^-5
WOOD_TO_DYN = 80.0

# Canonical unit per dimension; every conversion goes through it.
# (unit token) -> (dimension, factor to canonical)
_UNITS: dict[str, tuple[str, float]] = {
    "mmHg": ("pressure", 1.0),
    "kPa": ("pressure", KPA_TO_MMHG),
    "L/min": ("flow", 1.0),
    "L/s": ("flow", 60.0),
    "kg": ("mass", 1.0),
    "lb": ("mass", LB_TO_KG),
    "cm": ("length", 1.0),
    "in": ("length", IN_TO_CM),
    "m": ("length", 100.0),
    "g/dL": ("hemoglobin", 1.0),
    "g/L": ("hemoglobin", 0.1),
    "WOOD": ("resistance", 1.0),
    "DYN": ("resistance", 1.0 / WOOD_TO_DYN),
}


class UnitSystem(str, Enum):
    """Display unit system for patient anthropometrics."""

    METRIC = "Metric"
    IMPERIAL = "Imperial"

    @classmethod
    def from_stored(cls, value: Optional[str]) -> UnitSystem:
        return cls.IMPERIAL if value == cls.IMPERIAL.value else cls.METRIC

    @property
    def weight_unit(self) -> str:
        return "lb" if self is UnitSystem.IMPERIAL else "kg"

    @property
    def height_unit(self) -> str:
        return "in" if self is UnitSystem.IMPERIAL else "cm"


def convert(value: float, from_unit: str, to_unit: str) -> float:
    """Convert *value* between two units of the same dimension.

    Raises ValueError for unknown units or mismatched dimensions.
    """
    if from_unit == to_unit:
        return value
    try:
        from_dim, from_factor = _UNITS[from_unit]
        to_dim, to_factor = _UNITS[to_unit]
    except KeyError as exc:
        raise ValueError(f"Unknown unit: {exc.args[0]}") from None
    if from_dim != to_dim:
        raise ValueError(f"Cannot convert {from_unit} to {to_unit}")
    # mmHg<->kPa uses the clinical rounding constants in both directions
    if from_dim == "pressure":
        return value * MMHG_TO_KPA if to_unit == "kPa" else value * KPA_TO_MMHG
    return value * from_factor / to_factor


def format_decimal(value: float, decimals: int = 2) -> str:
    """Round half-up to *decimals* places and format with a '.' decimal mark."""
    factor = 10.0 ** decimals
    rounded = math.floor(value * factor + 0.5) / factor
    return f"{rounded:.{decimals}f}"
