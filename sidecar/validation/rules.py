"""
Numeric validation rules for hemodynamic calculator fields.

Each rule has a hard range (values outside it are rejected) and an optional
warning band (values outside it are accepted but flagged for a double check).
All rules are expressed in the canonical storage unit of the field.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class Severity(str, Enum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class ValidationResult:
    severity: Severity = Severity.OK
    message: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR


OK = ValidationResult()

MSG_REQUIRED = "Required"
MSG_INVALID_NUMBER = "Invalid number"
MSG_OUT_OF_RANGE = "Out of allowed range"
MSG_VERY_LOW = "Very low, please double check"
MSG_VERY_HIGH = "Very high, please double check"


@dataclass(frozen=True)
class NumericRule:
    required: bool = True
    hard_min: Optional[float] = None
    hard_max: Optional[float] = None
    warn_low: Optional[float] = None
    warn_high: Optional[float] = None
    unit: str = ""

    def optional(self) -> NumericRule:
        return replace(self, required=False)


def parse_double(text: str) -> Optional[float]:
    """Parse a user-typed number, accepting either ',' or '.' as decimal mark.

    When both separators appear, the one that occurs last is the decimal mark
    and the other is dropped as a thousands separator.
    """
    s = (text or "").strip()
    if not s:
        return None

    has_comma = "," in s
    has_dot = "." in s
    if has_comma and has_dot:
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif has_comma:
        s = s.replace(",", ".")

    try:
        value = float(s)
    except ValueError:
        return None
    # float() accepts "nan"/"inf" spellings; those are not user numbers
    if not math.isfinite(value):
        return None
    return value


def validate_value(value: Optional[float], rule: NumericRule) -> ValidationResult:
    """Classify an already-parsed value against *rule*."""
    if value is None:
        return ValidationResult(Severity.ERROR, MSG_REQUIRED) if rule.required else OK
    if not math.isfinite(value):
        return ValidationResult(Severity.ERROR, MSG_INVALID_NUMBER)

    if rule.hard_min is not None and value < rule.hard_min:
        return ValidationResult(Severity.ERROR, MSG_OUT_OF_RANGE)
    if rule.hard_max is not None and value > rule.hard_max:
        return ValidationResult(Severity.ERROR, MSG_OUT_OF_RANGE)

    if rule.warn_low is not None and value < rule.warn_low:
        return ValidationResult(Severity.WARNING, MSG_VERY_LOW)
    if rule.warn_high is not None and value > rule.warn_high:
        return ValidationResult(Severity.WARNING, MSG_VERY_HIGH)

    return OK


def validate_text(text: str, rule: NumericRule) -> ValidationResult:
    """Classify raw field text against *rule*."""
    raw = (text or "").strip()
    if not raw:
        return ValidationResult(Severity.ERROR, MSG_REQUIRED) if rule.required else OK
    value = parse_double(raw)
    if value is None:
        return ValidationResult(Severity.ERROR, MSG_INVALID_NUMBER)
    return validate_value(value, rule)


# --- Per-calculator rules (canonical units) ---

# Fick
SAO2_RULE = NumericRule(hard_min=0.0, hard_max=100.0, warn_low=80.0, unit="%")
SVO2_RULE = NumericRule(hard_min=0.0, hard_max=100.0, warn_low=30.0, warn_high=90.0, unit="%")
HB_RULE = NumericRule(hard_min=0.0001, hard_max=25.0, warn_low=5.0, warn_high=20.0, unit="g/dL")
HR_RULE = NumericRule(hard_min=0.0001, hard_max=300.0, warn_low=30.0, warn_high=180.0, unit="bpm")
WEIGHT_RULE = NumericRule(hard_min=0.0001, hard_max=300.0, warn_low=30.0, warn_high=250.0, unit="kg")
HEIGHT_RULE = NumericRule(hard_min=0.0001, hard_max=250.0, warn_low=120.0, warn_high=213.0, unit="cm")

# SVR
MAP_RULE = NumericRule(hard_min=0.0, hard_max=200.0, warn_low=50.0, warn_high=140.0, unit="mmHg")
CVP_RULE = NumericRule(hard_min=0.0, hard_max=50.0, warn_low=2.0, warn_high=20.0, unit="mmHg")
# CO must be strictly positive
CO_RULE = NumericRule(hard_min=0.0001, hard_max=25.0, warn_low=2.0, warn_high=12.0, unit="L/min")

# CPO
CPO_MAP_RULE = NumericRule(hard_min=0.0001, hard_max=200.0, warn_low=50.0, warn_high=140.0, unit="mmHg")
BSA_RULE = NumericRule(required=False, hard_min=0.5, hard_max=3.0, warn_low=1.2, warn_high=2.5, unit="m2")

# PVR
MPAP_RULE = NumericRule(hard_min=0.0, hard_max=120.0, warn_low=10.0, warn_high=50.0, unit="mmHg")
PAWP_RULE = NumericRule(hard_min=0.0, hard_max=50.0, warn_low=5.0, warn_high=25.0, unit="mmHg")

# PAPi
PASP_RULE = NumericRule(hard_min=0.0, hard_max=140.0, warn_low=10.0, warn_high=80.0, unit="mmHg")
PADP_RULE = NumericRule(hard_min=0.0, hard_max=80.0, warn_low=5.0, warn_high=40.0, unit="mmHg")
# RAP is a denominator in PAPi, zero is not accepted
RAP_RULE = NumericRule(hard_min=0.0001, hard_max=40.0, warn_low=1.0, warn_high=25.0, unit="mmHg")
