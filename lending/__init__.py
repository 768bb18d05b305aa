"""
lending - Pooled Lending Ledger

An accounting and risk engine for a pooled lending market: deposits, pool
shares, borrows, index-based interest accrual, health factors and partial
liquidation across one or more fungible-asset pools.

Usage:
    from decimal import Decimal
    from lending import Market, AdminCapability, InMemoryCustody, StaticPriceOracle

    admin = AdminCapability()
    custody = InMemoryCustody()
    oracle = StaticPriceOracle({"USDC/USD": Decimal("1"), "ETH/USD": Decimal("2000")})
    market = Market("main", admin, custody, oracle=oracle)

    usdc = market.register_pool(admin, "USDC Pool", "USDC", collateral_factor=8000,
                                liquidation_bonus=10500, base_rate=0,
                                rate_multiplier=2000, surge_multiplier=50000,
                                target_utilization=8000)
    market.set_price_source(admin, usdc, "USDC/USD", 8)

    custody.mint("alice", "USDC", 1_000)
    market.deposit(usdc, "alice", "USDC", 1_000)      # -> 1000 shares
    market.account_liquidity("alice").health_factor_decimal
"""

# Core types
from .core import (
    MarketView,
    StagedView,
    StateChange,
    Transfer,
    PendingOperation,
    OperationRecord,
    PoolConfig,
    PoolState,
    DepositPosition,
    LoanPosition,
    PriceEntry,
    ProtocolParams,
    ShareTokenInfo,
    AdminCapability,
    build_operation,
    mul_div,
    mul_div_up,
    bps_mul,
    to_decimal,
    BPS_SCALE,
    INDEX_SCALE,
    MAX_HEALTH_FACTOR,
    CUSTODY_ACCOUNT,
    DEFAULT_CLOSE_FACTOR,
    OP_DEPOSIT,
    OP_WITHDRAW,
    OP_BORROW,
    OP_REPAY,
    OP_LIQUIDATE,
    OP_ACCRUE,
    OP_TOGGLE_COLLATERAL,
    OP_REGISTER_POOL,
    OP_UPDATE_POOL,
    OP_SET_PRICE_SOURCE,
    OP_SET_PROTOCOL_PARAMS,
    # Exceptions
    LendingError,
    Unauthorized,
    ValidationError,
    InvalidAmount,
    InvalidParameter,
    AssetMismatch,
    SelfLiquidation,
    PoolAlreadyRegistered,
    PoolNotFound,
    StateError,
    PoolNotOperational,
    NoSupplyBalance,
    NoBorrowBalance,
    CollateralNotEnabled,
    PriceNotConfigured,
    StaleState,
    InvalidState,
    SolvencyError,
    HealthFactorTooLow,
    NotLiquidatable,
    InsufficientBalance,
    InsufficientLiquidity,
    InsufficientCollateral,
    ExternalFailure,
    TransferFailed,
    PriceUnavailable,
)

# Market
from .market import Market

# Rate model
from .rate_model import (
    calculate_utilization,
    calculate_lending_rate,
    calculate_supply_rate,
    sample_rate_curve,
)

# Accrual
from .accrual import (
    AccrualResult,
    calculate_accrual,
    accrued_debt,
    stage_accrual,
    project_pool_state,
    compute_accrual,
)

# Share conversion
from .conversion import (
    share_price,
    units_to_shares,
    shares_to_units,
)

# Positions
from .positions import (
    compute_deposit,
    compute_withdraw,
    compute_toggle_collateral,
    compute_borrow,
    compute_repay,
)

# Solvency
from .solvency import (
    AccountLiquidity,
    calculate_value,
    calculate_health_factor,
    compute_account_liquidity,
    compute_debt_value,
    compute_health_factor,
    is_liquidatable,
)

# Liquidation
from .liquidation import (
    LiquidationQuote,
    calculate_max_repay,
    calculate_seize_units,
    calculate_liquidation_quote,
    compute_liquidation,
)

# Registry
from .registry import (
    create_pool_config,
    update_pool_config,
    validate_pool_config,
    validate_protocol_params,
    create_price_entry,
    share_token_info,
)

# Price oracles
from .pricing_source import (
    PriceOracle,
    StaticPriceOracle,
    TimeSeriesPriceOracle,
    refresh_price_entry,
    scale_price,
)

# Custody
from .custody import (
    AssetTransfer,
    AssetBalances,
    InMemoryCustody,
)


__all__ = [
    # Core types
    'MarketView',
    'StagedView',
    'StateChange',
    'Transfer',
    'PendingOperation',
    'OperationRecord',
    'PoolConfig',
    'PoolState',
    'DepositPosition',
    'LoanPosition',
    'PriceEntry',
    'ProtocolParams',
    'ShareTokenInfo',
    'AdminCapability',
    'build_operation',
    'mul_div',
    'mul_div_up',
    'bps_mul',
    'to_decimal',
    'BPS_SCALE',
    'INDEX_SCALE',
    'MAX_HEALTH_FACTOR',
    'CUSTODY_ACCOUNT',
    'DEFAULT_CLOSE_FACTOR',
    'OP_DEPOSIT',
    'OP_WITHDRAW',
    'OP_BORROW',
    'OP_REPAY',
    'OP_LIQUIDATE',
    'OP_ACCRUE',
    'OP_TOGGLE_COLLATERAL',
    'OP_REGISTER_POOL',
    'OP_UPDATE_POOL',
    'OP_SET_PRICE_SOURCE',
    'OP_SET_PROTOCOL_PARAMS',
    # Exceptions
    'LendingError',
    'Unauthorized',
    'ValidationError',
    'InvalidAmount',
    'InvalidParameter',
    'AssetMismatch',
    'SelfLiquidation',
    'PoolAlreadyRegistered',
    'PoolNotFound',
    'StateError',
    'PoolNotOperational',
    'NoSupplyBalance',
    'NoBorrowBalance',
    'CollateralNotEnabled',
    'PriceNotConfigured',
    'StaleState',
    'InvalidState',
    'SolvencyError',
    'HealthFactorTooLow',
    'NotLiquidatable',
    'InsufficientBalance',
    'InsufficientLiquidity',
    'InsufficientCollateral',
    'ExternalFailure',
    'TransferFailed',
    'PriceUnavailable',
    # Market
    'Market',
    # Rate model
    'calculate_utilization',
    'calculate_lending_rate',
    'calculate_supply_rate',
    'sample_rate_curve',
    # Accrual
    'AccrualResult',
    'calculate_accrual',
    'accrued_debt',
    'stage_accrual',
    'project_pool_state',
    'compute_accrual',
    # Share conversion
    'share_price',
    'units_to_shares',
    'shares_to_units',
    # Positions
    'compute_deposit',
    'compute_withdraw',
    'compute_toggle_collateral',
    'compute_borrow',
    'compute_repay',
    # Solvency
    'AccountLiquidity',
    'calculate_value',
    'calculate_health_factor',
    'compute_account_liquidity',
    'compute_debt_value',
    'compute_health_factor',
    'is_liquidatable',
    # Liquidation
    'LiquidationQuote',
    'calculate_max_repay',
    'calculate_seize_units',
    'calculate_liquidation_quote',
    'compute_liquidation',
    # Registry
    'create_pool_config',
    'update_pool_config',
    'validate_pool_config',
    'validate_protocol_params',
    'create_price_entry',
    'share_token_info',
    # Price oracles
    'PriceOracle',
    'StaticPriceOracle',
    'TimeSeriesPriceOracle',
    'refresh_price_entry',
    'scale_price',
    # Custody
    'AssetTransfer',
    'AssetBalances',
    'InMemoryCustody',
]

__version__ = '1.0.0'
