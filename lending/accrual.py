"""
accrual.py - Index-based interest accrual for pools

Interest is never applied to individual loans. Each pool keeps a cumulative
index; a loan stores its principal together with the index at the time the
principal was recorded, and its current debt is

    principal * cumulative_index / index_snapshot

Accruing a pool therefore only touches the pool record:

    elapsed   = now - last_accrual_time
    rate      = calculate_lending_rate(config, utilization)
    interest  = elapsed * rate * borrowed / BPS
    borrowed += interest
    supplied += interest - fee          (fee = interest * protocol_fee / BPS)
    reserves += fee
    index     = index * (1 + elapsed * rate / BPS)

ARCHITECTURE:
    calculate_accrual()   pure, explicit inputs
    stage_accrual()       applies it to a StagedView inside an operation
    project_pool_state()  read-only projection used by solvency reads
    compute_accrual()     convenience: PendingOperation for Market.accrue
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Optional

from .core import (
    BPS_SCALE, INDEX_SCALE, OP_ACCRUE,
    LoanPosition, MarketView, PendingOperation, PoolConfig, PoolState, StagedView,
    build_operation, get_pool_config, get_pool_state, mul_div, pool_key,
)
from .rate_model import calculate_lending_rate, calculate_utilization


@dataclass(frozen=True, slots=True)
class AccrualResult:
    """Outcome of accruing one pool up to a point in time."""
    state: PoolState
    rate: int
    elapsed: int
    interest: int
    protocol_fee: int


def calculate_accrual(config: PoolConfig, state: PoolState, now: int) -> AccrualResult:
    """
    Advance a pool's aggregates and index to time `now`.

    PURE FUNCTION - All inputs explicit, no hidden state.

    Args:
        config: Pool configuration (rate curve, protocol fee factor)
        state: Pool aggregates before accrual
        now: Current logical time

    Returns:
        AccrualResult; when no time elapsed the state is returned unchanged
        together with the pool's current rate.

    Raises:
        ValueError: if now is before the pool's last accrual time
    """
    elapsed = now - state.last_accrual_time
    if elapsed < 0:
        raise ValueError(
            f"Cannot accrue backwards: {now} < {state.last_accrual_time}"
        )
    if elapsed == 0:
        return AccrualResult(state=state, rate=state.current_rate, elapsed=0,
                             interest=0, protocol_fee=0)

    utilization = calculate_utilization(state.aggregate_supplied, state.aggregate_borrowed)
    rate = calculate_lending_rate(config, utilization)

    interest = mul_div(elapsed * rate, state.aggregate_borrowed, BPS_SCALE)
    fee = mul_div(interest, config.protocol_fee_factor, BPS_SCALE)

    growth = INDEX_SCALE + mul_div(elapsed * rate, INDEX_SCALE, BPS_SCALE)
    new_index = mul_div(state.cumulative_index, growth, INDEX_SCALE)

    new_state = replace(
        state,
        aggregate_borrowed=state.aggregate_borrowed + interest,
        aggregate_supplied=state.aggregate_supplied + interest - fee,
        reserves=state.reserves + fee,
        cumulative_index=new_index,
        current_rate=rate,
        last_accrual_time=now,
    )
    return AccrualResult(state=new_state, rate=rate, elapsed=elapsed,
                         interest=interest, protocol_fee=fee)


def accrued_debt(loan: Optional[LoanPosition], state: PoolState) -> int:
    """
    Current debt of a loan: principal * cumulative_index / index_snapshot.

    Returns 0 for a missing loan record.
    """
    if loan is None or loan.principal == 0:
        return 0
    return mul_div(loan.principal, state.cumulative_index, loan.index_snapshot)


def stage_accrual(draft: StagedView, pool_id: int) -> AccrualResult:
    """Accrue a pool inside an operation; later reads on draft see the result."""
    config = get_pool_config(draft, pool_id)
    result = calculate_accrual(config, get_pool_state(draft, pool_id), draft.current_time)
    if result.elapsed:
        draft.put(pool_key(pool_id), result.state)
    return result


def project_pool_state(view: MarketView, pool_id: int) -> PoolState:
    """
    Pool state as it would be after accruing to view.current_time.

    Read-only: nothing is staged or persisted. Solvency reads use this so
    that debt in pools the current operation does not touch still reflects
    interest up to now.
    """
    config = get_pool_config(view, pool_id)
    return calculate_accrual(config, get_pool_state(view, pool_id), view.current_time).state


def compute_accrual(view: MarketView, pool_id: int, account: str = "keeper") -> PendingOperation:
    """
    Accrue interest on a pool.

    Returns:
        PendingOperation whose result is the pool's current periodic rate.
        The operation is empty when no time has elapsed.
    """
    draft = StagedView(view)
    result = stage_accrual(draft, pool_id)
    return build_operation(draft, OP_ACCRUE, account, result.rate, pools=(pool_id,))
