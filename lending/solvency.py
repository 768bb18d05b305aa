"""
solvency.py - Account valuation and health factor

ARCHITECTURE (Pure Function Pattern):

1. PURE CALCULATION FUNCTIONS (calculate_*):
   - calculate_value(units, entry)
   - calculate_health_factor(adjusted_collateral, debt_value, boundary)

2. CONVENIENCE FUNCTIONS (compute_*):
   - compute_account_liquidity(view, account, prices, ...) iterates every
     pool the account participates in, projecting accrual to the view's
     current time, and returns an AccountLiquidity.

Key Formulas (values are wad-scaled quote currency):
    value               = units * price * INDEX_SCALE / 10**decimals
    collateral_value    = sum(value(shares_to_units(balance))) over collateral-flagged pools
    adjusted_collateral = sum(value * collateral_factor / BPS) over the same pools
    debt_value          = sum(value(accrued_debt)) over pools with a loan
    health_factor       = adjusted_collateral * boundary * INDEX_SCALE / (debt_value * BPS)
                          (MAX_HEALTH_FACTOR when debt_value == 0)

Each pool's collateral is weighted by its own collateral factor before the
protocol-wide liquidation boundary is applied.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from .accrual import accrued_debt, project_pool_state
from .conversion import shares_to_units
from .core import (
    BPS_SCALE, INDEX_SCALE, MAX_HEALTH_FACTOR,
    MarketView, PriceEntry, PriceNotConfigured, PriceUnavailable,
    account_pools, get_deposit, get_loan, get_params, get_pool_config,
    mul_div, to_decimal,
)


# Type alias: pool_id -> price entry holding a resolved price
PriceMap = Mapping[int, PriceEntry]


@dataclass(frozen=True, slots=True)
class AccountLiquidity:
    """
    Immutable result of an account valuation.

    All values are wad-scaled quote currency; health_factor is wad-scaled.
    """
    collateral_value: int
    adjusted_collateral_value: int
    debt_value: int
    health_factor: int
    min_health_factor: int

    @property
    def liquidatable(self) -> bool:
        return self.health_factor < self.min_health_factor

    @property
    def health_factor_decimal(self) -> Decimal:
        """Health factor as a Decimal (Infinity when there is no debt)."""
        return to_decimal(self.health_factor, INDEX_SCALE)


def calculate_value(units: int, entry: PriceEntry) -> int:
    """
    Value of a quantity of an asset, wad-scaled.

    Raises:
        PriceUnavailable: if the entry carries no price
    """
    if entry.price is None:
        raise PriceUnavailable(f"No price for feed '{entry.feed}'")
    return mul_div(units * entry.price, INDEX_SCALE, entry.scale)


def calculate_health_factor(
    adjusted_collateral_value: int,
    debt_value: int,
    liquidation_boundary: int,
) -> int:
    """
    Health factor from aggregate values.

    PURE FUNCTION - All inputs explicit.

    Returns:
        Wad-scaled ratio, or MAX_HEALTH_FACTOR when debt_value is zero.
    """
    if debt_value <= 0:
        return MAX_HEALTH_FACTOR
    return mul_div(
        adjusted_collateral_value * liquidation_boundary,
        INDEX_SCALE,
        debt_value * BPS_SCALE,
    )


def require_price(prices: PriceMap, pool_id: int) -> PriceEntry:
    """The resolved price of a pool; PriceNotConfigured when none was resolved."""
    entry = prices.get(pool_id)
    if entry is None:
        raise PriceNotConfigured(f"No price resolved for pool {pool_id}")
    return entry


def compute_debt_value(view: MarketView, account: str, prices: PriceMap) -> int:
    """Total value of an account's accrued debt across all pools."""
    _, loan_pools = account_pools(view, account)
    total = 0
    for pool_id in sorted(loan_pools):
        debt = accrued_debt(get_loan(view, pool_id, account), project_pool_state(view, pool_id))
        if debt:
            total += calculate_value(debt, require_price(prices, pool_id))
    return total


def compute_account_liquidity(
    view: MarketView,
    account: str,
    prices: PriceMap,
    exclude_collateral: Optional[int] = None,
) -> AccountLiquidity:
    """
    Value an account across every pool it participates in.

    Args:
        view: Read-only market access (typically a StagedView carrying the
              operation's pending writes)
        account: Account to value
        prices: pool_id -> PriceEntry with a resolved price. Required for
                every pool the account owes; collateral pools missing
                from it are valued at zero.
        exclude_collateral: Pool whose collateral is ignored (used to test
                            whether a collateral flag may be switched off)

    Returns:
        AccountLiquidity. An account without debt reports MAX_HEALTH_FACTOR.
    """
    params = get_params(view)
    debt_value = compute_debt_value(view, account, prices)

    deposit_pools, _ = account_pools(view, account)
    collateral_value = 0
    adjusted_value = 0
    for pool_id in sorted(deposit_pools):
        if pool_id == exclude_collateral:
            continue
        position = get_deposit(view, pool_id, account)
        if position is None or not position.collateral_flag or position.share_balance == 0:
            continue
        if pool_id not in prices:
            continue
        units = shares_to_units(project_pool_state(view, pool_id), position.share_balance)
        value = calculate_value(units, prices[pool_id])
        collateral_value += value
        adjusted_value += mul_div(value, get_pool_config(view, pool_id).collateral_factor, BPS_SCALE)

    return AccountLiquidity(
        collateral_value=collateral_value,
        adjusted_collateral_value=adjusted_value,
        debt_value=debt_value,
        health_factor=calculate_health_factor(adjusted_value, debt_value,
                                              params.liquidation_boundary),
        min_health_factor=params.min_health_factor,
    )


def compute_health_factor(view: MarketView, account: str, prices: PriceMap) -> int:
    """Convenience: the account's current health factor."""
    return compute_account_liquidity(view, account, prices).health_factor


def is_liquidatable(view: MarketView, account: str, prices: PriceMap) -> bool:
    """True iff the account's health factor is below the protocol minimum."""
    return compute_account_liquidity(view, account, prices).liquidatable
