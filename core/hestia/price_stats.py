"""
Price statistics for decision snapshots and logging.
"""

from decimal import Decimal

import numpy as np


def summarize(prices: list[Decimal]) -> dict[str, float]:
    """Mean/min/max/p90 (linear interpolation) of a price list.

    Returns an empty dict for an empty list.
    """
    if not prices:
        return {}

    values = np.array([float(p) for p in prices], dtype=float)
    return {
        "mean": round(float(np.mean(values)), 4),
        "min": round(float(np.min(values)), 4),
        "max": round(float(np.max(values)), 4),
        "p90": round(float(np.percentile(values, 90)), 4),
        "spread": round(float(np.ptp(values)), 4),
    }
