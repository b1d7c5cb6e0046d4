"""Field validation rules and unit conversion for calculator inputs."""

from validation.rules import (
    NumericRule,
    Severity,
    ValidationResult,
    parse_double,
    validate_text,
    validate_value,
)
from validation.units import UnitSystem, convert, format_decimal

__all__ = [
    "NumericRule",
    "Severity",
    "ValidationResult",
    "parse_double",
    "validate_text",
    "validate_value",
    "UnitSystem",
    "convert",
    "format_decimal",
]
