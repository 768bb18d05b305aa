"""
liquidation.py - Partial liquidation of insolvent accounts

A liquidator repays part of an unhealthy debtor's loan in one pool and
receives the debtor's pool shares in another pool, priced with that pool's
liquidation bonus.

Algorithm (one atomic operation):
    1. reject self-liquidation and non-positive amounts
    2. accrue the repay pool and the collateral pool
    3. require health_factor(debtor) < min_health_factor
    4. require the debtor's deposit in the collateral pool is flagged as collateral
    5. actual_repay = min(requested, close_factor * debt)
    6. seize_units  = actual_repay * price_repay * bonus / (price_collateral * BPS)
       seize_shares = units_to_shares(seize_units), rounded up
    7. require seize_shares <= debtor's share balance
    8. re-record the debtor's loan at debt - actual_repay, move the shares,
       routing the protocol's liquidation_penalty cut to the fee recipient
    9. pull actual_repay from the liquidator into custody

The solvency check and the balance mutation happen inside the same
operation; there is no "liquidation in progress" state.
"""

from __future__ import annotations
from dataclasses import dataclass, replace

from .accrual import accrued_debt, stage_accrual
from .conversion import units_to_shares
from .core import (
    BPS_SCALE, CUSTODY_ACCOUNT, INDEX_SCALE, OP_LIQUIDATE,
    AssetMismatch, CollateralNotEnabled, DepositPosition, InsufficientCollateral,
    LoanPosition, MarketView, NoBorrowBalance, NotLiquidatable, PendingOperation,
    PoolNotOperational, PoolState, PriceEntry, PriceUnavailable, SelfLiquidation,
    StagedView, Transfer,
    build_operation, deposit_key, get_deposit, get_loan, get_params, get_pool_config,
    get_pool_state, loan_key, mul_div, pool_key, require_account, require_amount,
)
from .solvency import PriceMap, calculate_value, compute_account_liquidity, require_price


@dataclass(frozen=True, slots=True)
class LiquidationQuote:
    """
    Immutable breakdown of a liquidation.

    seize_shares == liquidator_shares + protocol_shares.
    """
    debt: int
    max_repay: int
    repay_units: int
    seize_units: int
    seize_shares: int
    liquidator_shares: int
    protocol_shares: int


def calculate_max_repay(debt: int, close_factor: int) -> int:
    """
    Largest repayment one liquidation may apply.

    When the close-factor cap rounds down to zero the whole (dust) debt may
    be repaid, otherwise tiny loans could never be closed.
    """
    cap = mul_div(debt, close_factor, BPS_SCALE)
    return cap if cap > 0 else debt


def calculate_seize_units(
    repay_units: int,
    repay_price: PriceEntry,
    collateral_price: PriceEntry,
    liquidation_bonus: int,
) -> int:
    """
    Collateral units owed to the liquidator for a repayment.

    PURE FUNCTION - All inputs explicit.

    seize_units = repay_value * bonus / (collateral_unit_value * BPS)
    """
    if not collateral_price.price:
        raise PriceUnavailable(f"No usable price for feed '{collateral_price.feed}'")
    repay_value = calculate_value(repay_units, repay_price)
    return mul_div(
        repay_value * liquidation_bonus,
        collateral_price.scale,
        collateral_price.price * INDEX_SCALE * BPS_SCALE,
    )


def calculate_liquidation_quote(
    debt: int,
    requested_units: int,
    close_factor: int,
    repay_price: PriceEntry,
    collateral_price: PriceEntry,
    liquidation_bonus: int,
    collateral_state: PoolState,
    liquidation_penalty: int = 0,
) -> LiquidationQuote:
    """
    Size a liquidation from explicit inputs.

    PURE FUNCTION - no MarketView. collateral_state must already be accrued.
    """
    max_repay = calculate_max_repay(debt, close_factor)
    repay_units = min(requested_units, max_repay)
    seize_units = calculate_seize_units(repay_units, repay_price, collateral_price,
                                        liquidation_bonus)
    seize_shares = units_to_shares(collateral_state, seize_units, round_up=True)
    protocol_shares = mul_div(seize_shares, liquidation_penalty, BPS_SCALE)
    return LiquidationQuote(
        debt=debt,
        max_repay=max_repay,
        repay_units=repay_units,
        seize_units=seize_units,
        seize_shares=seize_shares,
        liquidator_shares=seize_shares - protocol_shares,
        protocol_shares=protocol_shares,
    )


def _credit_shares(draft: StagedView, pool_id: int, account: str, shares: int) -> None:
    position = get_deposit(draft, pool_id, account) or DepositPosition()
    draft.put(deposit_key(pool_id, account),
              replace(position, share_balance=position.share_balance + shares))


def compute_liquidation(
    view: MarketView,
    debtor: str,
    repay_pool: int,
    repay_asset: str,
    collateral_pool: int,
    units: int,
    caller: str,
    prices: PriceMap,
    custody: str = CUSTODY_ACCOUNT,
) -> PendingOperation:
    """
    Liquidate part of an unhealthy debtor's loan.

    Args:
        view: Read-only market access
        debtor: Account being liquidated
        repay_pool: Pool whose loan the caller repays
        repay_asset: Asset reference of repay_pool (must match)
        collateral_pool: Pool whose shares are seized
        units: Requested repayment (capped at close_factor * debt)
        caller: Liquidator
        prices: Resolved prices for repay_pool, collateral_pool and every pool
                the debtor owes; other collateral missing from it counts as zero

    Returns:
        PendingOperation whose result is the amount actually repaid.

    Raises:
        SelfLiquidation: debtor == caller
        PoolNotOperational: either pool is paused
        NotLiquidatable: the debtor's health factor meets the minimum
        CollateralNotEnabled: the debtor's collateral deposit is not flagged
        NoBorrowBalance: the debtor has no debt in repay_pool
        InsufficientCollateral: the seizure exceeds the debtor's shares; retry smaller
    """
    if debtor == caller:
        raise SelfLiquidation(f"{caller} cannot liquidate itself")
    require_amount(units, "repay amount")
    require_account(debtor, custody)
    require_account(caller, custody)
    repay_config = get_pool_config(view, repay_pool)
    if repay_asset != repay_config.asset:
        raise AssetMismatch(f"Pool {repay_pool} holds {repay_config.asset}, not {repay_asset}")
    collateral_config = get_pool_config(view, collateral_pool)
    for config in (repay_config, collateral_config):
        if not config.operational:
            raise PoolNotOperational(f"Pool {config.pool_id} ({config.name}) is not operational")
    params = get_params(view)

    draft = StagedView(view)
    stage_accrual(draft, repay_pool)
    if collateral_pool != repay_pool:
        stage_accrual(draft, collateral_pool)

    liquidity = compute_account_liquidity(draft, debtor, prices)
    if not liquidity.liquidatable:
        raise NotLiquidatable(
            f"{debtor} health factor {liquidity.health_factor_decimal:.6f} "
            f"meets the minimum"
        )

    position = get_deposit(draft, collateral_pool, debtor)
    if position is None or not position.collateral_flag:
        raise CollateralNotEnabled(
            f"{debtor} has no collateral-enabled deposit in pool {collateral_pool}"
        )

    repay_state = get_pool_state(draft, repay_pool)
    debt = accrued_debt(get_loan(draft, repay_pool, debtor), repay_state)
    if debt == 0:
        raise NoBorrowBalance(f"{debtor} has no loan in pool {repay_pool}")

    penalty = params.liquidation_penalty if params.fee_recipient else 0
    quote = calculate_liquidation_quote(
        debt=debt,
        requested_units=units,
        close_factor=params.close_factor,
        repay_price=require_price(prices, repay_pool),
        collateral_price=require_price(prices, collateral_pool),
        liquidation_bonus=collateral_config.liquidation_bonus,
        collateral_state=get_pool_state(draft, collateral_pool),
        liquidation_penalty=penalty,
    )
    if quote.seize_shares > position.share_balance:
        raise InsufficientCollateral(
            f"Seizing {quote.seize_shares} shares of pool {collateral_pool} exceeds "
            f"{debtor}'s {position.share_balance}; retry with a smaller amount"
        )

    draft.put(loan_key(repay_pool, debtor), LoanPosition(
        principal=debt - quote.repay_units,
        index_snapshot=repay_state.cumulative_index,
    ))
    # floor rounding leaves at most one unit of residue per loan settled
    draft.put(pool_key(repay_pool), replace(
        repay_state,
        aggregate_borrowed=max(repay_state.aggregate_borrowed - quote.repay_units, 0),
    ))
    draft.put(deposit_key(collateral_pool, debtor),
              replace(position, share_balance=position.share_balance - quote.seize_shares))
    _credit_shares(draft, collateral_pool, caller, quote.liquidator_shares)
    if quote.protocol_shares:
        _credit_shares(draft, collateral_pool, params.fee_recipient, quote.protocol_shares)

    return build_operation(
        draft, OP_LIQUIDATE, caller, quote.repay_units,
        transfers=[Transfer(quote.repay_units, repay_asset, caller, custody)],
        pools=tuple(dict.fromkeys((repay_pool, collateral_pool))),
    )
