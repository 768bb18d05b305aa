"""
conversion.py - Pool share <-> underlying unit conversion

    share_price = aggregate_supplied * INDEX_SCALE / share_supply
                  (exactly INDEX_SCALE while no shares exist)

    units  -> shares = units * INDEX_SCALE / share_price
    shares -> units  = shares * share_price / INDEX_SCALE

Call only on accrued pool state: accrual changes aggregate_supplied.
Rounding always favours the pool. Minted shares and redeemed units round
down; shares burned for a withdrawal or seized in a liquidation round up.
"""

from __future__ import annotations

from .core import INDEX_SCALE, InvalidState, PoolState, mul_div, mul_div_up


def share_price(state: PoolState) -> int:
    """Units per share, wad-scaled."""
    if state.share_supply == 0:
        return INDEX_SCALE
    price = mul_div(state.aggregate_supplied, INDEX_SCALE, state.share_supply)
    if price == 0:
        raise InvalidState(
            f"Share price is zero with {state.share_supply} shares outstanding"
        )
    return price


def units_to_shares(state: PoolState, units: int, round_up: bool = False) -> int:
    """Convert underlying units to pool shares at the current share price."""
    if state.share_supply == 0:
        return units
    price = share_price(state)
    if round_up:
        return mul_div_up(units, INDEX_SCALE, price)
    return mul_div(units, INDEX_SCALE, price)


def shares_to_units(state: PoolState, shares: int) -> int:
    """Convert pool shares to underlying units at the current share price (rounds down)."""
    return mul_div(shares, share_price(state), INDEX_SCALE)
