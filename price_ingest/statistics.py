"""
Price Statistics
================

Pure computation over stored samples. No I/O except price_deviation(),
which reads the window from a Store and delegates.
"""

from typing import Sequence

import numpy as np

from price_ingest.exceptions import InsufficientDataException
from price_ingest.models import Deviation, Sample

MAX_SAMPLES = 100

# Relative deviation (percent of mean) alert levels
DEVIATION_WARNING_PCT = 5.0
DEVIATION_CRITICAL_PCT = 10.0


def deviation(samples: Sequence[Sample]) -> Deviation:
    """
    Population standard deviation of price.

    Args:
        samples: Samples for one asset, newest first. Only the first
            MAX_SAMPLES are used.

    Returns:
        Deviation with value, sample_size and mean

    Raises:
        InsufficientDataException: If samples is empty
    """
    window = list(samples)[:MAX_SAMPLES]
    if not window:
        raise InsufficientDataException("No samples available for deviation")

    prices = np.array([s.price for s in window], dtype=float)
    mean = float(prices.mean())
    std = float(np.sqrt(np.mean((prices - mean) ** 2)))

    return Deviation(value=std, sample_size=len(window), mean=mean)


def price_deviation(store, asset_id: str, limit: int = MAX_SAMPLES) -> Deviation:
    """Deviation over the most recent samples held by `store` for one asset."""
    samples = store.recent_samples(asset_id, min(limit, MAX_SAMPLES))
    if not samples:
        raise InsufficientDataException(f"No data available for {asset_id}")
    return deviation(samples)


def deviation_level(result: Deviation) -> str:
    """Classify deviation relative to mean price: OK, WARNING or CRITICAL."""
    if result.mean <= 0:
        return "OK"

    pct = result.value / result.mean * 100.0
    if pct >= DEVIATION_CRITICAL_PCT:
        return "CRITICAL"
    if pct >= DEVIATION_WARNING_PCT:
        return "WARNING"
    return "OK"
