from __future__ import annotations

from decimal import Decimal
from typing import Union

GRT = 10 ** 18
MIN_DEPOSIT = 2 * GRT
MAX_ADJUSTMENT = 10_000 * GRT


def grt_to_wei(value: Union[int, float, str, Decimal]) -> int:
    """Convert a GRT amount to integer wei, truncating below 1 wei."""
    if isinstance(value, float):
        value = Decimal(repr(value))
    return int(Decimal(value) * GRT)


def wei_to_grt(value: int) -> Decimal:
    return Decimal(value) / GRT
