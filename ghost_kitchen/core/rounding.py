"""Half-up rounding helpers.

Python's round() uses banker's rounding (round(2.5) == 2); forecasts and
reports round halves upward so 12.5 covers becomes 13.
"""

import math


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def round_to(value: float, places: int = 2) -> float:
    """Round half-up to a fixed number of decimal places."""
    factor = 10 ** places
    return math.floor(value * factor + 0.5) / factor
