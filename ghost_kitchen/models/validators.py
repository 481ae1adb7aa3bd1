"""Model-level validation utilities for data integrity.

Reusable validators used from ``@validates`` hooks so invalid counters,
thresholds and JSON payloads never reach the database, whichever service
writes them.
"""

from decimal import Decimal


def non_negative(key: str, value):
    """Validate that a numeric value is >= 0."""
    if value is not None:
        v = Decimal(str(value)) if not isinstance(value, Decimal) else value
        if v < 0:
            raise ValueError(f"{key} cannot be negative, got {value}")
    return value


def positive(key: str, value):
    """Validate that a numeric value is > 0."""
    if value is not None:
        v = Decimal(str(value)) if not isinstance(value, Decimal) else value
        if v <= 0:
            raise ValueError(f"{key} must be positive, got {value}")
    return value


def percentage(key: str, value):
    """Validate that a value is between 0 and 100 inclusive."""
    if value is not None:
        v = float(value)
        if v < 0 or v > 100:
            raise ValueError(f"{key} must be between 0 and 100, got {value}")
    return value


def hour_of_day(key: str, value):
    """Validate that a value is an hour slot (0-24; 24 marks end of day)."""
    if value is not None and (value < 0 or value > 24):
        raise ValueError(f"{key} must be between 0 and 24, got {value}")
    return value


def unit_interval(key: str, value):
    """Validate that a score lies in [0, 1]."""
    if value is not None:
        v = float(value)
        if v < 0 or v > 1:
            raise ValueError(f"{key} must be between 0 and 1, got {value}")
    return value


def validate_list(key: str, value):
    """Validate that a JSON column value is a list (or None)."""
    if value is not None and not isinstance(value, list):
        raise ValueError(f"{key} must be a list, got {type(value).__name__}")
    return value


def validate_dict(key: str, value):
    """Validate that a JSON column value is a dict (or None)."""
    if value is not None and not isinstance(value, dict):
        raise ValueError(f"{key} must be a dict, got {type(value).__name__}")
    return value
