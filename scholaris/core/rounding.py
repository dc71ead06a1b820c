"""
Rounding used by the aggregators.

Rates and averages round halves up (2.5 -> 3), unlike the built-in round().
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Number = Union[int, float]


def round_half_up(value: Number, places: int = 0) -> Union[int, float]:
    """Round to ``places`` decimals with halves rounded up.

    Returns an int when ``places`` is 0.
    """
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP)
    if places == 0:
        return int(rounded)
    return float(rounded)
