"""
registry.py - Pool and protocol configuration

Builders that validate administered configuration before the market stores
it. Nothing here touches market state; Market.register_pool() and friends
call these and record the result through Market._execute().
"""

from __future__ import annotations
from dataclasses import replace
from typing import Any, Dict, Optional

from .core import (
    BPS_SCALE, MAX_LIQUIDATION_BONUS, MAX_PROTOCOL_FEE,
    InvalidParameter, PoolConfig, PoolState, PriceEntry, ProtocolParams, ShareTokenInfo,
)


# PoolConfig fields an administrator may change after registration.
UPDATABLE_POOL_FIELDS = frozenset({
    "collateral_factor", "protocol_fee_factor", "liquidation_bonus",
    "base_rate", "rate_multiplier", "surge_multiplier", "target_utilization",
    "share_name", "share_symbol",
})


def _require_int(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{what} must be an integer, got {value!r}")
    return value


def _require_range(value: Any, what: str, low: int, high: int,
                   low_inclusive: bool = True, high_inclusive: bool = True) -> int:
    _require_int(value, what)
    too_low = value < low if low_inclusive else value <= low
    too_high = value > high if high_inclusive else value >= high
    if too_low or too_high:
        lo = "[" if low_inclusive else "("
        hi = "]" if high_inclusive else ")"
        raise InvalidParameter(f"{what} must be in {lo}{low}, {high}{hi}, got {value}")
    return value


def validate_pool_config(config: PoolConfig) -> PoolConfig:
    """
    Check every range of a pool configuration.

    Raises:
        InvalidParameter: empty name or asset, or a factor out of range
    """
    if not config.name or not config.name.strip():
        raise InvalidParameter("Pool name cannot be empty")
    if not config.asset or not config.asset.strip():
        raise InvalidParameter("Pool asset cannot be empty")
    _require_range(config.collateral_factor, "collateral_factor", 0, BPS_SCALE,
                   high_inclusive=False)
    _require_range(config.protocol_fee_factor, "protocol_fee_factor", 0, MAX_PROTOCOL_FEE)
    _require_range(config.liquidation_bonus, "liquidation_bonus", BPS_SCALE,
                   MAX_LIQUIDATION_BONUS, low_inclusive=False)
    _require_range(config.target_utilization, "target_utilization", 0, BPS_SCALE,
                   low_inclusive=False)
    for name in ("base_rate", "rate_multiplier", "surge_multiplier"):
        value = _require_int(getattr(config, name), name)
        if value < 0:
            raise InvalidParameter(f"{name} cannot be negative, got {value}")
    if _require_int(config.share_decimals, "share_decimals") < 0:
        raise InvalidParameter(f"share_decimals cannot be negative, got {config.share_decimals}")
    return config


def create_pool_config(
    pool_id: int,
    name: str,
    asset: str,
    collateral_factor: int,
    liquidation_bonus: int,
    base_rate: int,
    rate_multiplier: int,
    surge_multiplier: int,
    target_utilization: int,
    protocol_fee_factor: int,
    operational: bool = True,
    share_name: Optional[str] = None,
    share_symbol: Optional[str] = None,
    share_decimals: int = 0,
) -> PoolConfig:
    """
    Create a validated pool configuration.

    Args:
        pool_id: Identifier assigned by the market
        name: Unique pool name
        asset: Underlying asset reference
        collateral_factor: Weight of this pool's collateral, bps in [0, 10000)
        liquidation_bonus: Seizure price multiplier, bps in (10000, 20000]
        base_rate: Rate at zero utilization, bps per time unit
        rate_multiplier: Slope below the kink
        surge_multiplier: Slope above the kink
        target_utilization: Kink, bps in (0, 10000]
        protocol_fee_factor: Protocol share of accrued interest, bps in [0, 5000]
        operational: Whether deposits, withdrawals and borrows are accepted
        share_name: Share token name (default "<name> Pool Share")
        share_symbol: Share token symbol (default "s<asset>")
        share_decimals: Share token decimals

    Returns:
        PoolConfig

    Raises:
        InvalidParameter: if any field is out of range

    Example:
        config = create_pool_config(
            pool_id=1, name="USDC Pool", asset="USDC",
            collateral_factor=8000, liquidation_bonus=10500,
            base_rate=0, rate_multiplier=2000, surge_multiplier=50000,
            target_utilization=8000, protocol_fee_factor=1000,
        )
    """
    config = PoolConfig(
        pool_id=pool_id,
        name=name,
        asset=asset,
        operational=bool(operational),
        collateral_factor=collateral_factor,
        protocol_fee_factor=protocol_fee_factor,
        liquidation_bonus=liquidation_bonus,
        base_rate=base_rate,
        rate_multiplier=rate_multiplier,
        surge_multiplier=surge_multiplier,
        target_utilization=target_utilization,
        share_name=share_name if share_name is not None else f"{name} Pool Share",
        share_symbol=share_symbol if share_symbol is not None else f"s{asset}",
        share_decimals=share_decimals,
    )
    return validate_pool_config(config)


def update_pool_config(config: PoolConfig, changes: Dict[str, Any]) -> PoolConfig:
    """
    Apply administrative changes to a pool configuration.

    Raises:
        InvalidParameter: unknown or immutable field, or a value out of range
    """
    unknown = set(changes) - UPDATABLE_POOL_FIELDS
    if unknown:
        raise InvalidParameter(f"Cannot update pool fields: {sorted(unknown)}")
    return validate_pool_config(replace(config, **changes))


def validate_protocol_params(params: ProtocolParams) -> ProtocolParams:
    """
    Check the ranges of protocol-wide parameters.

    Raises:
        InvalidParameter: a factor out of range, or a penalty without recipient
    """
    _require_range(params.liquidation_penalty, "liquidation_penalty", 0, BPS_SCALE)
    _require_range(params.protocol_fee, "protocol_fee", 0, MAX_PROTOCOL_FEE)
    _require_range(params.liquidation_boundary, "liquidation_boundary", 0, BPS_SCALE,
                   low_inclusive=False)
    _require_range(params.close_factor, "close_factor", 0, BPS_SCALE, low_inclusive=False)
    if _require_int(params.min_health_factor, "min_health_factor") <= 0:
        raise InvalidParameter(f"min_health_factor must be positive, got {params.min_health_factor}")
    if _require_int(params.max_price_age, "max_price_age") < 0:
        raise InvalidParameter(f"max_price_age cannot be negative, got {params.max_price_age}")
    if params.liquidation_penalty and not params.fee_recipient:
        raise InvalidParameter("liquidation_penalty requires a fee_recipient")
    return params


def create_price_entry(feed: str, decimals: int) -> PriceEntry:
    """
    Create a pool's price binding with an empty cache.

    Raises:
        InvalidParameter: empty feed or negative decimals
    """
    if not feed or not feed.strip():
        raise InvalidParameter("Price feed cannot be empty")
    if _require_int(decimals, "decimals") < 0:
        raise InvalidParameter(f"decimals cannot be negative, got {decimals}")
    return PriceEntry(feed=feed, decimals=decimals)


def share_token_info(config: PoolConfig, state: PoolState) -> ShareTokenInfo:
    """Read model of a pool's share token."""
    return ShareTokenInfo(
        name=config.share_name,
        symbol=config.share_symbol,
        decimals=config.share_decimals,
        circulating_supply=state.share_supply,
    )
