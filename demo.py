#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Learn the Lending Market Step by Step

A pedagogical walk through a pooled lending market. Each step builds on the
previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Foundation   - The empty market, pools, price sources
  4-6:  Positions    - Deposits and shares, collateral, borrowing
  7-8:  Time         - Interest accrual, the rate curve
  9-10: Risk         - Price crash, partial liquidation
  11:   Audit        - Solvency invariants and the operation log

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from decimal import Decimal
import sys

from lending import (
    Market, AdminCapability, InMemoryCustody, StaticPriceOracle,
    HealthFactorTooLow, SelfLiquidation,
    BPS_SCALE, INDEX_SCALE, to_decimal,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    usdc_price: Decimal = Decimal("1")
    eth_price: Decimal = Decimal("2000")
    crash_price: Decimal = Decimal("1500")

    bob_usdc: int = 20_000
    alice_eth: int = 10
    carol_usdc: int = 50_000
    alice_borrow: int = 10_000


CONFIG = DemoConfig()

# Global state for interactive mode
QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def show_health(market: Market, account: str):
    liquidity = market.account_liquidity(account)
    print(f"{account}: collateral {to_decimal(liquidity.collateral_value, INDEX_SCALE)}, "
          f"debt {to_decimal(liquidity.debt_value, INDEX_SCALE)}, "
          f"health factor {liquidity.health_factor_decimal:.4f}"
          f"{'  << LIQUIDATABLE' if liquidity.liquidatable else ''}")


# ============================================================================
# PHASE 1: FOUNDATION (Steps 1-3)
# ============================================================================

def step_01_empty_market():
    """Create an empty market with its collaborators."""
    step_header(1, "The Empty Market",
        "Understand what a market owns and what it delegates.")

    print("""
    A market keeps the books of a set of lending pools. It delegates:

    1. CUSTODY - moving the actual tokens (here: an in-memory balance book)
    2. ORACLE  - quoting asset prices (here: static prices)

    Administrative actions require the AdminCapability the market was built with.
    """)

    admin = AdminCapability()
    custody = InMemoryCustody()
    oracle = StaticPriceOracle({"USDC/USD": CONFIG.usdc_price, "ETH/USD": CONFIG.eth_price})

    print(">>> market = Market('tutorial', admin, custody, oracle=oracle)")
    market = Market("tutorial", admin, custody, oracle=oracle, verbose=True)
    print(market)
    return market, admin, custody, oracle


def step_02_register_pools(market: Market, admin: AdminCapability):
    """Register one pool per asset."""
    step_header(2, "Registering Pools",
        "Each pool holds one asset and carries its own risk parameters.")

    usdc = market.register_pool(admin, "USDC Pool", "USDC", collateral_factor=8000,
                                liquidation_bonus=10500, base_rate=0, rate_multiplier=2000,
                                surge_multiplier=50000, target_utilization=8000)
    eth = market.register_pool(admin, "ETH Pool", "ETH", collateral_factor=7500,
                               liquidation_bonus=11000, base_rate=0, rate_multiplier=2000,
                               surge_multiplier=50000, target_utilization=8000)

    section_header("Pool Parameters")
    for pool_id in market.list_pools():
        info = market.pool_info(pool_id)
        print(f"Pool {pool_id}: {info['name']:<10} collateral factor "
              f"{to_decimal(info['collateral_factor'], BPS_SCALE)}, liquidation bonus "
              f"{to_decimal(info['liquidation_bonus'], BPS_SCALE)}")
    return usdc, eth


def step_03_price_sources(market: Market, admin: AdminCapability, usdc: int, eth: int):
    """Bind pools to oracle feeds."""
    step_header(3, "Price Sources",
        "A pool can be valued only once it is bound to an oracle feed.")

    market.set_price_source(admin, usdc, "USDC/USD", 8)
    market.set_price_source(admin, eth, "ETH/USD", 8)

    print("""
    Prices are fetched when an operation needs them and cached on the pool.
    Operations by accounts without debt never need a price.
    """)


# ============================================================================
# PHASE 2: POSITIONS (Steps 4-6)
# ============================================================================

def step_04_deposits(market: Market, custody: InMemoryCustody, usdc: int, eth: int):
    """Deposit assets and receive pool shares."""
    step_header(4, "Deposits and Shares",
        "A deposit moves tokens into custody and mints pool shares.")

    custody.mint("bob", "USDC", CONFIG.bob_usdc)
    custody.mint("alice", "ETH", CONFIG.alice_eth)
    custody.mint("carol", "USDC", CONFIG.carol_usdc)

    print(f">>> market.deposit(usdc, 'bob', 'USDC', {CONFIG.bob_usdc})")
    market.deposit(usdc, "bob", "USDC", CONFIG.bob_usdc)
    print(f">>> market.deposit(eth, 'alice', 'ETH', {CONFIG.alice_eth})")
    market.deposit(eth, "alice", "ETH", CONFIG.alice_eth)

    section_header("Share Tokens")
    for pool_id in (usdc, eth):
        token = market.share_token(pool_id)
        print(f"{token.symbol}: {token.circulating_supply} shares in circulation")


def step_05_collateral(market: Market, eth: int):
    """Deposits back borrowing unless their collateral flag is off."""
    step_header(5, "Collateral",
        "Every deposit counts as collateral until its flag is toggled off.")

    show_health(market, "alice")
    print("\nalice has no debt, so the health factor is unbounded.")


def step_06_borrow(market: Market, usdc: int):
    """Borrow against collateral."""
    step_header(6, "Borrowing",
        "Borrowing is allowed only while the health factor stays at or above 1.")

    print(f">>> market.borrow(usdc, 'alice', 'USDC', {CONFIG.alice_borrow})")
    market.borrow(usdc, "alice", "USDC", CONFIG.alice_borrow)
    show_health(market, "alice")

    section_header("Rejected Borrow")
    try:
        market.borrow(usdc, "alice", "USDC", 6_000)
    except HealthFactorTooLow as e:
        print(f"Rejected as expected: {e}")


# ============================================================================
# PHASE 3: TIME (Steps 7-8)
# ============================================================================

def step_07_accrual(market: Market, usdc: int):
    """Interest accrues through the pool's cumulative index."""
    step_header(7, "Interest Accrual",
        "Debt grows with the pool index; depositors earn the interest net of fees.")

    for t in (1, 2):
        market.advance_time(t)
        rates = market.rate_state(usdc)
        print(f"t={t}: index {to_decimal(rates['cumulative_index'], INDEX_SCALE)}, "
              f"alice owes {market.position(usdc, 'alice')['debt']}, "
              f"bob can withdraw {market.position(usdc, 'bob')['supplied_units']}")

    print("\n>>> market.accrue(usdc)   # persist the accrual")
    market.accrue(usdc)


def step_08_rate_curve(market: Market, usdc: int):
    """The borrow rate rises with utilization, steeply above the kink."""
    step_header(8, "The Rate Curve",
        "See how utilization drives the borrow rate.")

    utilizations, rates = market.rate_curve(usdc, points=11)
    for u, r in zip(utilizations, rates):
        bar = "#" * int(r // 200)
        print(f"  {to_decimal(int(u), BPS_SCALE):>5} | {int(r):>6} bps {bar}")


# ============================================================================
# PHASE 4: RISK (Steps 9-10)
# ============================================================================

def step_09_crash(market: Market, oracle: StaticPriceOracle):
    """A collateral price crash makes alice liquidatable."""
    step_header(9, "Price Crash",
        "A falling collateral price pushes the health factor below 1.")

    print(f">>> oracle.update_price('ETH/USD', {CONFIG.crash_price})")
    oracle.update_price("ETH/USD", CONFIG.crash_price)
    show_health(market, "alice")


def step_10_liquidation(market: Market, custody: InMemoryCustody, usdc: int, eth: int):
    """Repay part of alice's debt in exchange for her ETH shares."""
    step_header(10, "Partial Liquidation",
        "A liquidator repays at most close_factor of the debt and seizes collateral at a bonus.")

    debt = market.position(usdc, "alice")["debt"]
    print(f">>> market.liquidate('alice', usdc, 'USDC', eth, {debt}, 'carol')")
    repaid = market.liquidate("alice", usdc, "USDC", eth, debt, "carol")
    print(f"\ncarol repaid {repaid} of {debt} and received "
          f"{market.position(eth, 'carol')['deposit'].share_balance} ETH shares")
    show_health(market, "alice")

    section_header("Self-Liquidation")
    try:
        market.liquidate("alice", usdc, "USDC", eth, 100, "alice")
    except SelfLiquidation as e:
        print(f"Rejected as expected: {e}")


# ============================================================================
# PHASE 5: AUDIT (Step 11)
# ============================================================================

def step_11_audit(market: Market):
    """Verify the books."""
    step_header(11, "Solvency Invariants",
        "Custody cash must equal supplied - borrowed + reserves for every pool.")

    result = market.verify_solvency_invariants()
    print(f"valid: {result['valid']}")
    for discrepancy in result['discrepancies']:
        print(f"  {discrepancy}")

    section_header("Operation Log")
    for record in market.operation_log:
        print(f"  #{record.sequence_number:<3} t={record.timestamp:<3} "
              f"{record.op_type:<20} {record.account:<8} -> {record.result!r}")


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       LENDING MARKET - INTERACTIVE TUTORIAL")
    print("=" * 70)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")

    wait_for_enter()

    market, admin, custody, oracle = step_01_empty_market()
    wait_for_enter()

    usdc, eth = step_02_register_pools(market, admin)
    wait_for_enter()

    step_03_price_sources(market, admin, usdc, eth)
    wait_for_enter()

    step_04_deposits(market, custody, usdc, eth)
    wait_for_enter()

    step_05_collateral(market, eth)
    wait_for_enter()

    step_06_borrow(market, usdc)
    wait_for_enter()

    step_07_accrual(market, usdc)
    wait_for_enter()

    step_08_rate_curve(market, usdc)
    wait_for_enter()

    step_09_crash(market, oracle)
    wait_for_enter()

    step_10_liquidation(market, custody, usdc, eth)
    wait_for_enter()

    step_11_audit(market)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See lending/*.py for the pure compute functions
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
