"""
test_market.py - Tests for the stateful Market

Tests:
- Administration: capability checks, pool registration, parameter updates
- _execute(): staleness detection, failed transfers, empty operations
- Price resolution and caching
- Read models: rate_state, pool_info, position, account_liquidity, rate_curve
- Verbose audit output
- verify_solvency_invariants
"""

import threading
from decimal import Decimal

import numpy as np
import pytest

from lending import (
    INDEX_SCALE,
    AdminCapability,
    DepositPosition,
    HealthFactorTooLow,
    InvalidParameter,
    LoanPosition,
    PoolAlreadyRegistered,
    PoolNotFound,
    PoolNotOperational,
    PriceEntry,
    PriceNotConfigured,
    PriceUnavailable,
    ProtocolParams,
    StaleState,
    TransferFailed,
    Unauthorized,
    compute_accrual,
    compute_deposit,
    OP_REGISTER_POOL,
)
from lending.core import get_params, price_key
from tests.market_setup import (
    ETH_FEED, USDC_FEED, MarketSetup, build_market, fund_scenario, register_usdc_pool,
)


def deposit_unpriced_dai(s: MarketSetup, account: str, units: int) -> int:
    """Register a DAI pool without a price source and deposit into it."""
    dai = s.market.register_pool(s.admin, "DAI Pool", "DAI", 8000, 10500, 0, 2000, 50000, 8000)
    s.custody.mint(account, "DAI", units)
    s.market.deposit(dai, account, "DAI", units)
    return dai


class TestAdministration:

    def test_pool_ids_are_sequential(self, setup):
        assert (setup.usdc, setup.eth) == (1, 2)
        assert setup.market.list_pools() == [1, 2]

    def test_registration_is_logged(self, setup):
        ops = [record.op_type for record in setup.market.operation_log]
        assert ops.count(OP_REGISTER_POOL) == 2

    def test_duplicate_name_rejected(self, setup):
        with pytest.raises(PoolAlreadyRegistered):
            register_usdc_pool(setup.market, setup.admin)

    def test_duplicate_asset_rejected(self, setup):
        with pytest.raises(PoolAlreadyRegistered):
            setup.market.register_pool(setup.admin, "Other", "USDC", 8000, 10500, 0, 2000, 50000, 8000)

    def test_foreign_capability_rejected(self, setup):
        intruder = AdminCapability("admin")
        with pytest.raises(Unauthorized):
            setup.market.register_pool(intruder, "DAI Pool", "DAI", 8000, 10500, 0, 2000, 50000, 8000)
        with pytest.raises(Unauthorized):
            setup.market.set_price_source(intruder, setup.usdc, "X", 8)
        with pytest.raises(Unauthorized):
            setup.market.set_protocol_params(intruder, close_factor=10_000)
        with pytest.raises(Unauthorized):
            setup.market.update_pool(intruder, setup.usdc, base_rate=1)
        with pytest.raises(Unauthorized):
            setup.market.set_pool_operational(intruder, setup.usdc, False)
        assert setup.market.list_pools() == [1, 2]

    def test_default_protocol_fee_factor(self):
        s = build_market(ProtocolParams(protocol_fee=2000))
        pool_id = s.market.register_pool(s.admin, "DAI Pool", "DAI", 8000, 10500, 0, 2000, 50000, 8000)
        assert s.market.get_pool_config(pool_id).protocol_fee_factor == 2000

    def test_invalid_pool_config_rejected(self, setup):
        with pytest.raises(InvalidParameter):
            setup.market.register_pool(setup.admin, "DAI Pool", "DAI", 10_000, 10500, 0, 2000, 50000, 8000)
        assert setup.market.list_pools() == [1, 2]

    def test_set_protocol_params_keeps_unspecified(self, setup):
        setup.market.set_protocol_params(setup.admin, close_factor=6000)
        setup.market.set_protocol_params(setup.admin, fee_recipient="treasury",
                                         liquidation_penalty=500)
        params = get_params(setup.market)
        assert params.close_factor == 6000
        assert params.fee_recipient == "treasury"
        assert params.liquidation_penalty == 500
        assert params.min_health_factor == INDEX_SCALE

    def test_invalid_protocol_params_leave_state(self, setup):
        with pytest.raises(InvalidParameter):
            setup.market.set_protocol_params(setup.admin, liquidation_penalty=100)
        assert get_params(setup.market) == ProtocolParams()

    def test_update_pool_accrues_first(self, indebted):
        indebted.market.advance_time(1)
        config = indebted.market.update_pool(indebted.admin, indebted.usdc, base_rate=100)
        state = indebted.market.get_pool_state(indebted.usdc)
        assert config.base_rate == 100
        assert state.last_accrual_time == 1
        assert state.aggregate_borrowed == 17_250

    def test_update_pool_immutable_field(self, setup):
        with pytest.raises(InvalidParameter):
            setup.market.update_pool(setup.admin, setup.usdc, asset="DAI")

    def test_paused_pool_still_accepts_repayment(self, indebted):
        indebted.market.set_pool_operational(indebted.admin, indebted.usdc, False)
        assert indebted.market.repay(indebted.usdc, "alice", "USDC", 100) == 100
        with pytest.raises(PoolNotOperational):
            indebted.market.deposit(indebted.usdc, "carol", "USDC", 100)
        indebted.market.set_pool_operational(indebted.admin, indebted.usdc, True)
        assert indebted.market.deposit(indebted.usdc, "carol", "USDC", 100) == 100

    def test_price_source_unknown_pool(self, setup):
        with pytest.raises(PoolNotFound):
            setup.market.set_price_source(setup.admin, 99, "X", 8)

    def test_price_source_resets_cache(self, indebted):
        assert indebted.market.get_record(price_key(indebted.eth)).price is not None
        indebted.market.set_price_source(indebted.admin, indebted.eth, "ETH/EUR", 6)
        assert indebted.market.get_record(price_key(indebted.eth)) == PriceEntry("ETH/EUR", 6)


class TestExecute:

    def test_stale_records_rejected(self, funded):
        funded.custody.mint("dave", "USDC", 100)
        pending = compute_deposit(funded.market, funded.usdc, "dave", "USDC", 100)
        funded.market.deposit(funded.usdc, "carol", "USDC", 100)
        with pytest.raises(StaleState):
            funded.market._execute(pending)
        assert funded.custody.balance_of("dave", "USDC") == 100

    def test_stale_time_rejected(self, funded):
        funded.custody.mint("dave", "USDC", 100)
        pending = compute_deposit(funded.market, funded.usdc, "dave", "USDC", 100)
        funded.market.advance_time(1)
        with pytest.raises(StaleState):
            funded.market._execute(pending)

    def test_failed_transfer_changes_nothing(self, funded):
        before = funded.market.snapshot()
        log_length = len(funded.market.operation_log)
        with pytest.raises(TransferFailed):
            funded.market.deposit(funded.eth, "carol", "ETH", 5)
        assert funded.market.snapshot() == before
        assert len(funded.market.operation_log) == log_length

    def test_empty_operation_not_logged(self, funded):
        log_length = len(funded.market.operation_log)
        pending = compute_accrual(funded.market, funded.usdc)
        assert pending.is_empty()
        funded.market._execute(pending)
        assert len(funded.market.operation_log) == log_length

    def test_no_public_execute(self, funded):
        assert not hasattr(funded.market, "execute")
        pending = compute_deposit(funded.market, funded.usdc, "dave", "USDC", 100)
        assert pending.state_changes
        assert funded.market.position(funded.usdc, "dave")["deposit"].share_balance == 0

    def test_sequence_numbers_increase(self, funded):
        sequence = [record.sequence_number for record in funded.market.operation_log]
        assert sequence == list(range(len(sequence)))

    def test_time_cannot_go_backwards(self, setup):
        setup.market.advance_time(5)
        with pytest.raises(ValueError):
            setup.market.advance_time(4)

    def test_concurrent_deposits_serialize(self, setup):
        accounts = [f"user_{i}" for i in range(8)]
        for account in accounts:
            setup.custody.mint(account, "USDC", 100)

        threads = [
            threading.Thread(target=setup.market.deposit, args=(setup.usdc, a, "USDC", 100))
            for a in accounts
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        state = setup.market.get_pool_state(setup.usdc)
        assert state.aggregate_supplied == 800
        assert state.share_supply == 800
        assert setup.market.verify_solvency_invariants()['valid']


class TestPrices:

    def test_debt_free_operations_skip_prices(self, funded):
        assert funded.market.get_record(price_key(funded.usdc)).price is None
        funded.oracle.remove_price(USDC_FEED)
        assert funded.market.withdraw(funded.usdc, "bob", "USDC", 100) == 100

    def test_borrow_caches_prices(self, indebted):
        usdc_entry = indebted.market.get_record(price_key(indebted.usdc))
        eth_entry = indebted.market.get_record(price_key(indebted.eth))
        assert usdc_entry.price == 10 ** 8
        assert eth_entry.price == 2000 * 10 ** 8
        assert eth_entry.updated_at == 0

    def test_rejected_operation_does_not_cache(self, funded):
        with pytest.raises(HealthFactorTooLow):
            funded.market.borrow(funded.usdc, "alice", "USDC", 20_000)
        assert funded.market.get_record(price_key(funded.eth)).price is None

    def test_outage_falls_back_within_max_age(self, funded):
        funded.market.borrow(funded.usdc, "alice", "USDC", 1000)
        funded.oracle.remove_price(ETH_FEED)
        funded.market.advance_time(1)
        with pytest.raises(PriceUnavailable):
            funded.market.borrow(funded.usdc, "alice", "USDC", 1000)

        funded.market.set_protocol_params(funded.admin, max_price_age=5)
        assert funded.market.borrow(funded.usdc, "alice", "USDC", 1000) == 1000

    def test_unpriced_pool_blocks_borrowing(self, funded):
        dai = funded.market.register_pool(funded.admin, "DAI Pool", "DAI",
                                          8000, 10500, 0, 2000, 50000, 8000)
        funded.custody.mint("dave", "DAI", 1000)
        funded.market.deposit(dai, "dave", "DAI", 1000)
        with pytest.raises(PriceNotConfigured):
            funded.market.borrow(dai, "alice", "DAI", 10)

    def test_unpriced_collateral_does_not_shield_from_liquidation(self, indebted):
        dai = deposit_unpriced_dai(indebted, "alice", 1)
        indebted.oracle.update_price(ETH_FEED, Decimal("1500"))
        assert indebted.market.liquidate("alice", indebted.usdc, "USDC", indebted.eth,
                                         7500, "carol") == 7500
        assert indebted.market.position(indebted.eth, "carol")["deposit"].share_balance == 5
        assert indebted.market.position(dai, "alice")["deposit"].share_balance == 1

    def test_unpriced_collateral_valued_at_zero(self, indebted):
        deposit_unpriced_dai(indebted, "alice", 1)
        liquidity = indebted.market.account_liquidity("alice")
        assert liquidity.collateral_value == 20_000 * INDEX_SCALE
        assert liquidity.health_factor == INDEX_SCALE

    def test_unpriced_collateral_can_be_released(self, indebted):
        dai = deposit_unpriced_dai(indebted, "alice", 1)
        assert indebted.market.toggle_collateral(dai, "alice") is False
        assert indebted.market.toggle_collateral(dai, "alice") is True
        assert indebted.market.withdraw(dai, "alice", "DAI", 1) == 1
        assert indebted.custody.balance_of("alice", "DAI") == 1

    def test_outage_does_not_block_non_collateral_withdrawal(self, indebted):
        market = indebted.market
        market.deposit(indebted.usdc, "alice", "USDC", 100)
        assert market.toggle_collateral(indebted.usdc, "alice") is False
        indebted.oracle.remove_price(ETH_FEED)
        market.advance_time(1)
        assert market.withdraw(indebted.usdc, "alice", "USDC", 50) == 50

    def test_outage_does_not_block_enabling_collateral(self, indebted):
        market = indebted.market
        market.deposit(indebted.usdc, "alice", "USDC", 100)
        market.toggle_collateral(indebted.usdc, "alice")
        indebted.oracle.remove_price(ETH_FEED)
        market.advance_time(1)
        assert market.toggle_collateral(indebted.usdc, "alice") is True
        with pytest.raises(PriceUnavailable):
            market.toggle_collateral(indebted.usdc, "alice")


class TestReads:

    def test_rate_state_projects_index(self, indebted):
        indebted.market.advance_time(1)
        rates = indebted.market.rate_state(indebted.usdc)
        assert rates["cumulative_index"] == INDEX_SCALE * 115 // 100
        assert rates["last_accrual_time"] == 0

    def test_rate_state_rates(self, indebted):
        rates = indebted.market.rate_state(indebted.usdc)
        assert rates["utilization"] == 7500
        assert rates["borrow_rate"] == 1500
        assert rates["supply_rate"] == 1012

    def test_pool_info(self, funded):
        info = funded.market.pool_info(funded.usdc)
        assert info["name"] == "USDC Pool"
        assert info["aggregate_supplied"] == 20_000
        assert info["available_liquidity"] == 20_000
        assert info["share_price"] == INDEX_SCALE
        assert info["price_source"] == PriceEntry(USDC_FEED, 8)

    def test_share_token(self, funded):
        token = funded.market.share_token(funded.usdc)
        assert token.symbol == "sUSDC"
        assert token.circulating_supply == 20_000

    def test_position_defaults_to_zero(self, funded):
        position = funded.market.position(funded.eth, "bob")
        assert position["deposit"] == DepositPosition()
        assert position["loan"] == LoanPosition()
        assert position["debt"] == 0

    def test_position_debt_accrues(self, indebted):
        assert indebted.market.position(indebted.usdc, "alice")["debt"] == 15_000
        indebted.market.advance_time(1)
        assert indebted.market.position(indebted.usdc, "alice")["debt"] == 17_250
        assert indebted.market.position(indebted.eth, "alice")["supplied_units"] == 10

    def test_account_liquidity(self, indebted):
        liquidity = indebted.market.account_liquidity("alice")
        assert liquidity.health_factor == INDEX_SCALE
        assert not liquidity.liquidatable

        indebted.oracle.update_price(ETH_FEED, Decimal("1500"))
        assert indebted.market.account_liquidity("alice").liquidatable
        # reads never refresh the cache
        assert indebted.market.get_record(price_key(indebted.eth)).price == 2000 * 10 ** 8

    def test_account_liquidity_skips_unpriced_without_debt(self, funded):
        dai = funded.market.register_pool(funded.admin, "DAI Pool", "DAI",
                                          8000, 10500, 0, 2000, 50000, 8000)
        funded.custody.mint("alice", "DAI", 1000)
        funded.market.deposit(dai, "alice", "DAI", 1000)
        liquidity = funded.market.account_liquidity("alice")
        assert liquidity.collateral_value == 20_000 * INDEX_SCALE

    def test_rate_curve(self, setup):
        utilizations, rates = setup.market.rate_curve(setup.usdc)
        assert len(utilizations) == 101
        assert rates[0] == 0
        assert rates[80] == 1600
        assert rates[-1] == 11_600
        assert np.all(np.diff(rates) >= 0)

    def test_snapshot_is_independent(self, funded):
        snap = funded.market.snapshot()
        funded.market.withdraw(funded.usdc, "bob", "USDC", 100)
        assert snap != funded.market.snapshot()

    def test_repr(self, funded):
        assert "2 pools" in repr(funded.market)


class TestVerboseOutput:

    def test_applied_operations_printed(self, capsys):
        build_market(verbose=True)
        out = capsys.readouterr().out
        assert "REGISTER_POOL #0 on test" in out
        assert "✓ APPLIED" in out

    def test_rejections_printed(self, capsys):
        s = build_market(verbose=True)
        capsys.readouterr()
        with pytest.raises(TransferFailed):
            s.market.deposit(s.usdc, "carol", "USDC", 5)
        assert "✗ REJECTED DEPOSIT by carol: TransferFailed" in capsys.readouterr().out

    def test_custody_account_rejection_printed(self, capsys):
        s = fund_scenario(build_market(verbose=True))
        capsys.readouterr()
        with pytest.raises(InvalidParameter):
            s.market.deposit(s.usdc, "custody", "USDC", 5)
        assert "✗ REJECTED DEPOSIT by custody: InvalidParameter" in capsys.readouterr().out

    def test_quiet_market_prints_nothing(self, capsys):
        build_market(verbose=False)
        assert capsys.readouterr().out == ""


class TestSolvencyInvariants:

    def test_valid_after_activity(self, indebted):
        indebted.market.advance_time(3)
        indebted.market.accrue(indebted.usdc)
        indebted.market.repay(indebted.usdc, "alice", "USDC", 5000)
        result = indebted.market.verify_solvency_invariants()
        assert result['valid'], result['discrepancies']

    def test_detects_custody_mismatch(self, funded):
        funded.custody.mint("custody", "USDC", 5)
        result = funded.market.verify_solvency_invariants()
        assert not result['valid']
        assert result['discrepancies'][0]['error'] == "custody cash mismatch"
        assert result['discrepancies'][0]['difference'] == 5
        assert funded.market.verify_solvency_invariants(tolerance=5)['valid']
