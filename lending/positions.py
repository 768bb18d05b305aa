"""
positions.py - Deposit and loan positions

Each compute_* function takes a read-only MarketView and returns a
PendingOperation for Market._execute(). Nothing is written until execution;
every precondition is evaluated against a StagedView first, so a failing
check leaves the market untouched.

Every operation stages accrual of its pool before reading pool aggregates.

Operations:
    compute_deposit           units in  -> shares minted
    compute_withdraw          units out -> shares burned (rounded up)
    compute_toggle_collateral flips whether a deposit backs borrowing
    compute_borrow            units out -> loan principal grows
    compute_repay             units in  -> loan principal shrinks
"""

from __future__ import annotations
from dataclasses import replace

from .accrual import accrued_debt, stage_accrual
from .conversion import units_to_shares
from .core import (
    CUSTODY_ACCOUNT, INDEX_SCALE, OP_BORROW, OP_DEPOSIT, OP_REPAY, OP_TOGGLE_COLLATERAL, OP_WITHDRAW,
    AssetMismatch, DepositPosition, HealthFactorTooLow, InsufficientBalance,
    InsufficientLiquidity, InvalidAmount, LoanPosition, MarketView, NoBorrowBalance,
    NoSupplyBalance, PendingOperation, PoolConfig, PoolNotOperational, StagedView,
    Transfer, build_operation, deposit_key, get_deposit, get_loan, get_pool_config,
    get_pool_state, loan_key, pool_key, require_account, require_amount, to_decimal,
)
from .solvency import PriceMap, compute_account_liquidity


def _require_pool(view: MarketView, pool_id: int, asset: str,
                  require_operational: bool = True) -> PoolConfig:
    config = get_pool_config(view, pool_id)
    if asset != config.asset:
        raise AssetMismatch(
            f"Pool {pool_id} holds {config.asset}, not {asset}"
        )
    if require_operational and not config.operational:
        raise PoolNotOperational(f"Pool {pool_id} ({config.name}) is not operational")
    return config


def require_healthy(view: MarketView, account: str, prices: PriceMap, action: str) -> None:
    """
    Raise HealthFactorTooLow unless the account meets the minimum health factor.

    Evaluated on the view passed in, so callers pass a StagedView holding
    the post-operation records.
    """
    liquidity = compute_account_liquidity(view, account, prices)
    if liquidity.liquidatable:
        raise HealthFactorTooLow(
            f"{action} would leave {account} at health factor "
            f"{liquidity.health_factor_decimal:.6f} < "
            f"{to_decimal(liquidity.min_health_factor, INDEX_SCALE)}"
        )


def compute_deposit(
    view: MarketView,
    pool_id: int,
    account: str,
    asset: str,
    units: int,
    custody: str = CUSTODY_ACCOUNT,
) -> PendingOperation:
    """
    Deposit underlying units and mint pool shares.

    The first deposit into a pool without shares mints 1:1. A new position
    counts as collateral.

    Returns:
        PendingOperation whose result is the number of shares minted.

    Raises:
        InvalidAmount: units <= 0, or the deposit is too small to mint a share
        AssetMismatch, PoolNotFound, PoolNotOperational
    """
    require_amount(units, "deposit amount")
    require_account(account, custody)
    _require_pool(view, pool_id, asset)

    draft = StagedView(view)
    stage_accrual(draft, pool_id)
    state = get_pool_state(draft, pool_id)

    shares = units_to_shares(state, units)
    if shares == 0:
        raise InvalidAmount(f"Deposit of {units} units mints no shares")

    position = get_deposit(draft, pool_id, account) or DepositPosition()
    draft.put(pool_key(pool_id), replace(
        state,
        aggregate_supplied=state.aggregate_supplied + units,
        share_supply=state.share_supply + shares,
    ))
    draft.put(deposit_key(pool_id, account), replace(
        position, share_balance=position.share_balance + shares,
    ))

    return build_operation(
        draft, OP_DEPOSIT, account, shares,
        transfers=[Transfer(units, asset, account, custody)],
        pools=(pool_id,),
    )


def compute_withdraw(
    view: MarketView,
    pool_id: int,
    account: str,
    asset: str,
    units: int,
    prices: PriceMap,
    custody: str = CUSTODY_ACCOUNT,
) -> PendingOperation:
    """
    Redeem pool shares for underlying units.

    If the deposit is flagged as collateral, the account's health factor
    across all of its pools must still meet the minimum afterwards.

    Returns:
        PendingOperation whose result is the number of units paid out.

    Raises:
        NoSupplyBalance: the account never deposited into this pool
        InsufficientBalance: burning the shares would exceed the balance
        InsufficientLiquidity: the pool lent out the units requested
        HealthFactorTooLow: the withdrawal would make the account unhealthy
    """
    require_amount(units, "withdraw amount")
    require_account(account, custody)
    _require_pool(view, pool_id, asset)
    position = get_deposit(view, pool_id, account)
    if position is None:
        raise NoSupplyBalance(f"{account} has no deposit in pool {pool_id}")

    draft = StagedView(view)
    stage_accrual(draft, pool_id)
    state = get_pool_state(draft, pool_id)

    shares = units_to_shares(state, units, round_up=True)
    if shares > position.share_balance:
        raise InsufficientBalance(
            f"{account} holds {position.share_balance} shares of pool {pool_id}, "
            f"withdrawing {units} units needs {shares}"
        )
    if units > state.available_liquidity:
        raise InsufficientLiquidity(
            f"Pool {pool_id} has {state.available_liquidity} units available, requested {units}"
        )

    draft.put(pool_key(pool_id), replace(
        state,
        aggregate_supplied=state.aggregate_supplied - units,
        share_supply=state.share_supply - shares,
    ))
    draft.put(deposit_key(pool_id, account), replace(
        position, share_balance=position.share_balance - shares,
    ))
    if position.collateral_flag:
        require_healthy(draft, account, prices, "Withdrawal")

    return build_operation(
        draft, OP_WITHDRAW, account, units,
        transfers=[Transfer(units, asset, custody, account)],
        pools=(pool_id,),
    )


def compute_toggle_collateral(
    view: MarketView,
    pool_id: int,
    account: str,
    prices: PriceMap,
) -> PendingOperation:
    """
    Flip whether a deposit counts toward borrowing power.

    Switching collateral off while holding shares requires the account to
    stay healthy without this pool's collateral.

    Returns:
        PendingOperation whose result is the new flag value.
    """
    get_pool_config(view, pool_id)
    position = get_deposit(view, pool_id, account)
    if position is None:
        raise NoSupplyBalance(f"{account} has no deposit in pool {pool_id}")

    new_flag = not position.collateral_flag
    if not new_flag and position.share_balance > 0:
        liquidity = compute_account_liquidity(view, account, prices, exclude_collateral=pool_id)
        if liquidity.liquidatable:
            raise HealthFactorTooLow(
                f"{account} needs pool {pool_id} as collateral "
                f"(health factor without it: {liquidity.health_factor_decimal:.6f})"
            )

    draft = StagedView(view)
    draft.put(deposit_key(pool_id, account), replace(position, collateral_flag=new_flag))
    return build_operation(draft, OP_TOGGLE_COLLATERAL, account, new_flag, pools=(pool_id,))


def compute_borrow(
    view: MarketView,
    pool_id: int,
    account: str,
    asset: str,
    units: int,
    prices: PriceMap,
    custody: str = CUSTODY_ACCOUNT,
) -> PendingOperation:
    """
    Borrow underlying units against the account's collateral.

    The loan is re-recorded at (accrued debt + units) against the current
    index. The post-borrow health factor must meet the minimum.

    Returns:
        PendingOperation whose result is the number of units disbursed.

    Raises:
        InsufficientLiquidity: the pool does not hold enough idle units
        HealthFactorTooLow: the borrow would make the account unhealthy
    """
    require_amount(units, "borrow amount")
    require_account(account, custody)
    _require_pool(view, pool_id, asset)

    draft = StagedView(view)
    stage_accrual(draft, pool_id)
    state = get_pool_state(draft, pool_id)

    if units > state.available_liquidity:
        raise InsufficientLiquidity(
            f"Pool {pool_id} has {state.available_liquidity} units available, requested {units}"
        )

    debt = accrued_debt(get_loan(draft, pool_id, account), state)
    draft.put(loan_key(pool_id, account), LoanPosition(
        principal=debt + units,
        index_snapshot=state.cumulative_index,
    ))
    draft.put(pool_key(pool_id), replace(
        state, aggregate_borrowed=state.aggregate_borrowed + units,
    ))
    require_healthy(draft, account, prices, "Borrow")

    return build_operation(
        draft, OP_BORROW, account, units,
        transfers=[Transfer(units, asset, custody, account)],
        pools=(pool_id,),
    )


def compute_repay(
    view: MarketView,
    pool_id: int,
    account: str,
    asset: str,
    units: int,
    custody: str = CUSTODY_ACCOUNT,
) -> PendingOperation:
    """
    Repay up to `units` of the account's accrued debt.

    Repayment is accepted on pools that are not operational.

    Returns:
        PendingOperation whose result is the amount actually applied
        (min(units, accrued debt)).

    Raises:
        NoBorrowBalance: the account has no outstanding loan in the pool
    """
    require_amount(units, "repay amount")
    require_account(account, custody)
    _require_pool(view, pool_id, asset, require_operational=False)
    loan = get_loan(view, pool_id, account)
    if loan is None or loan.principal == 0:
        raise NoBorrowBalance(f"{account} has no loan in pool {pool_id}")

    draft = StagedView(view)
    stage_accrual(draft, pool_id)
    state = get_pool_state(draft, pool_id)

    debt = accrued_debt(loan, state)
    applied = min(units, debt)
    draft.put(loan_key(pool_id, account), LoanPosition(
        principal=debt - applied,
        index_snapshot=state.cumulative_index,
    ))
    # floor rounding leaves at most one unit of residue per loan settled
    draft.put(pool_key(pool_id), replace(
        state, aggregate_borrowed=max(state.aggregate_borrowed - applied, 0),
    ))

    return build_operation(
        draft, OP_REPAY, account, applied,
        transfers=[Transfer(applied, asset, account, custody)],
        pools=(pool_id,),
    )
