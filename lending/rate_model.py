"""
rate_model.py - Utilization-driven kinked interest rate curve

PURE FUNCTIONS - no MarketView, all inputs explicit.

Key Formulas (all values in basis points, BPS_SCALE == 1.0):
    utilization = borrowed * BPS / supplied            (0 if supplied == 0)
    rate        = base + u * multiplier / BPS          if u <= target
                = base + target * multiplier / BPS
                       + (u - target) * surge / BPS    otherwise
    supply_rate = rate * u * (BPS - protocol_fee) / BPS^2

The rate is periodic: it applies per unit of logical time.
"""

from __future__ import annotations
from typing import Tuple

import numpy as np

from .core import BPS_SCALE, PoolConfig, mul_div


def calculate_utilization(aggregate_supplied: int, aggregate_borrowed: int) -> int:
    """
    Return the pool utilization in basis points.

    Example:
        calculate_utilization(1000, 900) -> 9000
    """
    if aggregate_supplied <= 0:
        return 0
    return mul_div(aggregate_borrowed, BPS_SCALE, aggregate_supplied)


def calculate_lending_rate(config: PoolConfig, utilization: int) -> int:
    """
    Periodic borrow rate for a utilization, from the pool's kinked curve.

    Args:
        config: Pool configuration (base_rate, rate_multiplier,
                surge_multiplier, target_utilization)
        utilization: Utilization in basis points

    Returns:
        Rate in basis points per time unit.

    Example:
        # base 0, kink 80%, multiplier 2000, surge 50000, utilization 90%
        calculate_lending_rate(config, 9000)   # -> 1600 + 5000 = 6600
    """
    target = config.target_utilization
    if utilization <= target:
        return config.base_rate + mul_div(utilization, config.rate_multiplier, BPS_SCALE)
    return (
        config.base_rate
        + mul_div(target, config.rate_multiplier, BPS_SCALE)
        + mul_div(utilization - target, config.surge_multiplier, BPS_SCALE)
    )


def calculate_supply_rate(config: PoolConfig, utilization: int) -> int:
    """Periodic rate earned by depositors, net of the protocol fee."""
    borrow_rate = calculate_lending_rate(config, utilization)
    gross = mul_div(borrow_rate, utilization, BPS_SCALE)
    return mul_div(gross, BPS_SCALE - config.protocol_fee_factor, BPS_SCALE)


def sample_rate_curve(config: PoolConfig, points: int = 101) -> Tuple[np.ndarray, np.ndarray]:
    """
    Sample the borrow-rate curve over utilization 0..100%.

    Args:
        config: Pool configuration
        points: Number of evenly spaced utilization samples (>= 2)

    Returns:
        (utilizations, rates) as int64 arrays in basis points.
    """
    if points < 2:
        raise ValueError(f"points must be at least 2, got {points}")
    utilizations = np.rint(np.linspace(0, BPS_SCALE, points)).astype(np.int64)
    rates = np.fromiter(
        (calculate_lending_rate(config, int(u)) for u in utilizations),
        dtype=np.int64,
        count=points,
    )
    return utilizations, rates
