"""
Atomicity Conformance Tests

INVARIANT: Operations are all-or-nothing.

    ∀ operation O:
        O succeeds ⟹ every record change and its asset transfer are applied
        O fails    ⟹ no record, balance, price cache or log entry changes

Partial application is impossible by construction: compute functions only
stage writes, and Market._execute() performs the transfer before applying
any staged write.
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from lending import (
    HealthFactorTooLow,
    LendingError,
    NotLiquidatable,
    PriceUnavailable,
    TransferFailed,
)
from lending.core import price_key
from tests.market_setup import ETH_FEED, MarketSetup, build_market, fund_scenario


def balances(s: MarketSetup) -> dict:
    return {
        (account, asset): amount
        for account, assets in s.custody.balances.items()
        for asset, amount in assets.items()
        if amount
    }


def capture(s: MarketSetup):
    return s.market.snapshot(), balances(s), len(s.market.operation_log)


operation = st.tuples(
    st.sampled_from(["deposit", "withdraw", "borrow", "repay", "liquidate", "toggle"]),
    st.sampled_from(["alice", "bob", "carol", "dave"]),
    st.integers(min_value=1, max_value=100_000),
    st.integers(min_value=0, max_value=3),
)


class TestAtomicityProperties:
    """Property-based atomicity tests."""

    @given(st.lists(operation, min_size=1, max_size=15))
    @settings(max_examples=100, deadline=None)
    def test_rejected_operations_change_nothing(self, ops):
        """
        PROPERTY: Whenever an operation raises, market records, custody
        balances and the operation log are exactly as before.
        """
        s = fund_scenario(build_market())
        s.market.borrow(s.usdc, "alice", "USDC", 15_000)
        s.oracle.update_price(ETH_FEED, Decimal("1800"))

        for kind, account, amount, elapsed in ops:
            s.market.advance_time(s.market.current_time + elapsed)
            before = capture(s)
            try:
                if kind == "deposit":
                    s.market.deposit(s.usdc, account, "USDC", amount)
                elif kind == "withdraw":
                    s.market.withdraw(s.eth, account, "ETH", amount % 12 + 1)
                elif kind == "borrow":
                    s.market.borrow(s.usdc, account, "USDC", amount)
                elif kind == "repay":
                    s.market.repay(s.usdc, account, "USDC", amount)
                elif kind == "liquidate":
                    s.market.liquidate("alice", s.usdc, "USDC", s.eth, amount, account)
                elif kind == "toggle":
                    s.market.toggle_collateral(s.eth, account)
            except LendingError:
                assert capture(s) == before


class TestAtomicityExamples:
    """Explicit atomicity examples."""

    def test_failed_repay_transfer_discards_accrual(self, indebted):
        market = indebted.market
        indebted.custody.transfer("USDC", 15_000, "alice", "bob")
        market.advance_time(1)
        before = capture(indebted)
        with pytest.raises(TransferFailed):
            market.repay(indebted.usdc, "alice", "USDC", 100)
        assert capture(indebted) == before
        assert market.get_pool_state(indebted.usdc).last_accrual_time == 0

    def test_failed_liquidation_transfer_moves_no_shares(self, indebted):
        indebted.oracle.update_price(ETH_FEED, Decimal("1500"))
        before = capture(indebted)
        with pytest.raises(TransferFailed):
            indebted.market.liquidate("alice", indebted.usdc, "USDC", indebted.eth, 7500, "dave")
        assert capture(indebted) == before

    def test_price_refresh_discarded_with_rejected_borrow(self, indebted):
        indebted.oracle.update_price(ETH_FEED, Decimal("2100"))
        with pytest.raises(HealthFactorTooLow):
            indebted.market.borrow(indebted.usdc, "alice", "USDC", 2000)
        assert indebted.market.get_record(price_key(indebted.eth)).price == 2000 * 10 ** 8

    def test_price_refresh_kept_with_applied_operation(self, indebted):
        indebted.oracle.update_price(ETH_FEED, Decimal("2100"))
        indebted.market.borrow(indebted.usdc, "alice", "USDC", 100)
        assert indebted.market.get_record(price_key(indebted.eth)).price == 2100 * 10 ** 8
        changes = indebted.market.operation_log[-1].state_changes
        assert changes[0].key in (price_key(indebted.usdc), price_key(indebted.eth))

    def test_rejected_liquidation_leaves_debtor_intact(self, indebted):
        before = capture(indebted)
        with pytest.raises(NotLiquidatable):
            indebted.market.liquidate("alice", indebted.usdc, "USDC", indebted.eth, 7500, "carol")
        assert capture(indebted) == before

    def test_oracle_outage_rejects_before_any_change(self, indebted):
        indebted.oracle.remove_price(ETH_FEED)
        indebted.market.advance_time(1)
        before = capture(indebted)
        with pytest.raises(PriceUnavailable):
            indebted.market.withdraw(indebted.eth, "alice", "ETH", 1)
        assert capture(indebted) == before

    def test_unpriced_collateral_liquidation_applies_whole(self, indebted):
        market = indebted.market
        dai = market.register_pool(indebted.admin, "DAI Pool", "DAI",
                                   8000, 10500, 0, 2000, 50000, 8000)
        indebted.custody.mint("alice", "DAI", 1)
        market.deposit(dai, "alice", "DAI", 1)

        before = capture(indebted)
        with pytest.raises(NotLiquidatable):
            market.liquidate("alice", indebted.usdc, "USDC", indebted.eth, 7500, "carol")
        assert capture(indebted) == before

        indebted.oracle.update_price(ETH_FEED, Decimal("1500"))
        assert market.liquidate("alice", indebted.usdc, "USDC", indebted.eth, 7500, "carol") == 7500
        record = market.operation_log[-1]
        assert len(market.operation_log) == before[2] + 1
        assert all(change.key[1:2] != (dai,) for change in record.state_changes)
        assert indebted.custody.balance_of("carol", "USDC") == 42_500
