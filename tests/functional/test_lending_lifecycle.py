"""
test_lending_lifecycle.py - End-to-end lending scenario tests

Tests complete market lifecycles:
- Supply, borrow, accrue, repay, withdraw
- Price crash followed by repeated partial liquidation
- Liquidation penalty routed to the fee recipient
- Cross-asset borrowing and collateral management
"""

import pytest
from decimal import Decimal

from lending import (
    INDEX_SCALE,
    AdminCapability,
    HealthFactorTooLow,
    InMemoryCustody,
    Market,
    NotLiquidatable,
    ProtocolParams,
    TimeSeriesPriceOracle,
)
from tests.market_setup import (
    ETH_FEED, USDC_FEED, build_market, fund_scenario, register_eth_pool, register_usdc_pool,
)


class TestInterestLifecycle:
    """Interest accrues on a time-series oracle and crosses into liquidation."""

    @pytest.fixture
    def scenario(self):
        admin = AdminCapability()
        custody = InMemoryCustody()
        oracle = TimeSeriesPriceOracle({
            USDC_FEED: [(0, Decimal("1"))],
            ETH_FEED: [(0, Decimal("2000")), (10, Decimal("1800"))],
        })
        market = Market("lifecycle", admin, custody, oracle=oracle, verbose=False)
        usdc = register_usdc_pool(market, admin)
        eth = register_eth_pool(market, admin)

        custody.mint("bob", "USDC", 20_000)
        custody.mint("alice", "ETH", 10)
        custody.mint("carol", "USDC", 50_000)
        market.deposit(usdc, "bob", "USDC", 20_000)
        market.deposit(eth, "alice", "ETH", 10)
        market.borrow(usdc, "alice", "USDC", 10_000)
        return market, custody, usdc, eth

    def test_debt_grows_with_time(self, scenario):
        market, _, usdc, _ = scenario
        # 50% utilization -> 1000 bps per time unit
        assert market.rate_state(usdc)["borrow_rate"] == 1000
        market.advance_time(1)
        assert market.position(usdc, "alice")["debt"] == 11_000
        liquidity = market.account_liquidity("alice")
        assert not liquidity.liquidatable
        assert liquidity.health_factor == INDEX_SCALE * 15_000 // 11_000

    def test_interest_and_price_drop_make_account_liquidatable(self, scenario):
        market, custody, usdc, eth = scenario
        market.advance_time(10)
        assert market.position(usdc, "alice")["debt"] == 20_000
        assert market.account_liquidity("alice").liquidatable

        repaid = market.liquidate("alice", usdc, "USDC", eth, 100_000, "carol")
        assert repaid == 10_000
        # 10,000 * 1.10 / 1,800 = 6.1 ETH
        assert market.position(eth, "carol")["deposit"].share_balance == 6
        assert market.position(eth, "alice")["deposit"].share_balance == 4
        assert market.position(usdc, "alice")["debt"] == 10_000
        assert custody.balance_of("carol", "USDC") == 40_000

    def test_depositor_exits_with_interest(self, scenario):
        market, custody, usdc, eth = scenario
        market.advance_time(10)
        market.liquidate("alice", usdc, "USDC", eth, 10_000, "carol")

        state = market.get_pool_state(usdc)
        assert state.aggregate_supplied == 29_000
        assert state.reserves == 1_000
        assert market.position(usdc, "bob")["supplied_units"] == 29_000

        assert market.withdraw(usdc, "bob", "USDC", 19_000) == 19_000
        assert custody.balance_of("bob", "USDC") == 19_000
        assert market.verify_solvency_invariants()['valid']


class TestLiquidationCascade:
    """A price crash liquidated in close-factor sized steps."""

    def test_repeated_liquidation_until_healthy(self):
        s = fund_scenario(build_market(ProtocolParams(fee_recipient="treasury",
                                                      liquidation_penalty=2000)))
        market = s.market
        market.borrow(s.usdc, "alice", "USDC", 15_000)
        s.oracle.update_price(ETH_FEED, Decimal("1500"))

        rounds = 0
        while market.account_liquidity("alice").liquidatable:
            debt = market.position(s.usdc, "alice")["debt"]
            market.liquidate("alice", s.usdc, "USDC", s.eth, debt, "carol")
            rounds += 1

        assert rounds == 3
        assert market.position(s.usdc, "alice")["debt"] == 1_875
        assert market.position(s.eth, "alice")["deposit"].share_balance == 2
        assert market.position(s.eth, "carol")["deposit"].share_balance == 7
        assert market.position(s.eth, "treasury")["deposit"].share_balance == 1
        assert s.custody.balance_of("carol", "USDC") == 50_000 - 7_500 - 3_750 - 1_875
        assert market.verify_solvency_invariants()['valid']

        with pytest.raises(NotLiquidatable):
            market.liquidate("alice", s.usdc, "USDC", s.eth, 100, "carol")

    def test_seized_collateral_can_be_withdrawn(self):
        s = fund_scenario(build_market())
        s.market.borrow(s.usdc, "alice", "USDC", 15_000)
        s.oracle.update_price(ETH_FEED, Decimal("1500"))
        s.market.liquidate("alice", s.usdc, "USDC", s.eth, 7_500, "carol")

        assert s.market.withdraw(s.eth, "carol", "ETH", 5) == 5
        assert s.custody.balance_of("carol", "ETH") == 5
        assert s.market.verify_solvency_invariants()['valid']


class TestCrossAssetBorrowing:
    """A USDC depositor borrows ETH against it."""

    def test_borrow_other_asset_and_release_collateral(self, funded):
        market = funded.market
        # capacity: 20,000 * 0.80 = 16,000 USDC = 8 ETH
        assert market.borrow(funded.eth, "bob", "ETH", 5) == 5
        assert funded.custody.balance_of("bob", "ETH") == 5

        with pytest.raises(HealthFactorTooLow):
            market.toggle_collateral(funded.usdc, "bob")
        with pytest.raises(HealthFactorTooLow):
            market.borrow(funded.eth, "bob", "ETH", 4)

        assert market.repay(funded.eth, "bob", "ETH", 5) == 5
        assert market.toggle_collateral(funded.usdc, "bob") is False
        assert market.account_liquidity("bob").collateral_value == 0
        assert market.verify_solvency_invariants()['valid']

    def test_each_pool_tracks_its_own_index(self, funded):
        market = funded.market
        market.borrow(funded.usdc, "alice", "USDC", 10_000)
        market.advance_time(1)
        market.accrue(funded.usdc)
        market.accrue(funded.eth)
        assert market.rate_state(funded.usdc)["cumulative_index"] == INDEX_SCALE * 11 // 10
        assert market.rate_state(funded.eth)["cumulative_index"] == INDEX_SCALE
