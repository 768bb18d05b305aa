"""
Core types and pure helpers for the pooled lending ledger.

This module provides the foundational data structures and protocols:
1. Fixed-point scales and arithmetic helpers (basis points and wad)
2. Exceptions: LendingError and one branch per failure kind
3. Immutable records: PoolConfig, PoolState, DepositPosition, LoanPosition, ...
4. Protocols: MarketView for read-only market access
5. Staged writes: StagedView, StateChange, Transfer, PendingOperation

All functions in this module are pure and operate on read-only views.
No function can mutate market state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from typing import (
    Dict, List, Set, Optional, Any, Protocol, Tuple, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Ledger arithmetic is integer fixed-point. Decimal is only used to present
# fixed-point values to humans and to scale oracle prices, so it shares the
# deterministic context below.
#
_LENDING_DECIMAL_CONTEXT = getcontext()
_LENDING_DECIMAL_CONTEXT.prec = 50
_LENDING_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Scale for ratios, factors and periodic rates (1.0 == 10_000 bps).
BPS_SCALE = 10_000

# Scale for the cumulative interest index, share price, values and
# health factors (1.0 == 1e18).
INDEX_SCALE = 10 ** 18

# Health factor reported for accounts without debt.
MAX_HEALTH_FACTOR = 2 ** 128 - 1

# Protocol defaults.
DEFAULT_CLOSE_FACTOR = 5_000
DEFAULT_MIN_HEALTH_FACTOR = INDEX_SCALE
DEFAULT_LIQUIDATION_BOUNDARY = BPS_SCALE
MAX_PROTOCOL_FEE = BPS_SCALE // 2
MAX_LIQUIDATION_BONUS = 2 * BPS_SCALE

# Wallet that holds every pool's underlying assets.
CUSTODY_ACCOUNT = "custody"

# Operation type constants
OP_DEPOSIT = "DEPOSIT"
OP_WITHDRAW = "WITHDRAW"
OP_BORROW = "BORROW"
OP_REPAY = "REPAY"
OP_LIQUIDATE = "LIQUIDATE"
OP_ACCRUE = "ACCRUE"
OP_TOGGLE_COLLATERAL = "TOGGLE_COLLATERAL"
OP_REGISTER_POOL = "REGISTER_POOL"
OP_UPDATE_POOL = "UPDATE_POOL"
OP_SET_PRICE_SOURCE = "SET_PRICE_SOURCE"
OP_SET_PROTOCOL_PARAMS = "SET_PROTOCOL_PARAMS"


# ============================================================================
# FIXED-POINT ARITHMETIC
# ============================================================================

def mul_div(a: int, b: int, denominator: int) -> int:
    """Return floor(a * b / denominator) for non-negative integers."""
    if denominator <= 0:
        raise ZeroDivisionError("mul_div denominator must be positive")
    return (a * b) // denominator


def mul_div_up(a: int, b: int, denominator: int) -> int:
    """Return ceil(a * b / denominator) for non-negative integers."""
    if denominator <= 0:
        raise ZeroDivisionError("mul_div_up denominator must be positive")
    return -((-(a * b)) // denominator)


def bps_mul(value: int, bps: int) -> int:
    """Apply a basis-point factor to an integer quantity (rounds down)."""
    return mul_div(value, bps, BPS_SCALE)


def to_decimal(value: int, scale: int) -> Decimal:
    """
    Convert a fixed-point integer to a Decimal for display.

    Example:
        to_decimal(6600, BPS_SCALE)        -> Decimal("0.66")
        to_decimal(INDEX_SCALE, INDEX_SCALE) -> Decimal("1")
    """
    if value >= MAX_HEALTH_FACTOR:
        return Decimal("Infinity")
    return Decimal(value) / Decimal(scale)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LendingError(Exception):
    """Base exception for all lending-ledger errors."""
    pass


class Unauthorized(LendingError):
    """Raised when a privileged operation is called without the admin capability."""
    pass


# --- Validation -------------------------------------------------------------

class ValidationError(LendingError):
    """Malformed or out-of-range parameter."""
    pass


class InvalidAmount(ValidationError):
    """Raised for zero, negative or non-integer amounts."""
    pass


class InvalidParameter(ValidationError):
    """Raised when a configuration value is outside its allowed range."""
    pass


class AssetMismatch(ValidationError):
    """Raised when the asset reference does not match the pool's underlying asset."""
    pass


class SelfLiquidation(ValidationError):
    """Raised when an account tries to liquidate itself."""
    pass


class PoolAlreadyRegistered(ValidationError):
    """Raised when registering a pool whose name or asset is already in use."""
    pass


class PoolNotFound(ValidationError):
    """Raised when operating on a pool id that was never registered."""
    pass


# --- State ------------------------------------------------------------------

class StateError(LendingError):
    """Operation targets a pool or position in the wrong state."""
    pass


class PoolNotOperational(StateError):
    """Raised when a pool's operational flag is off."""
    pass


class NoSupplyBalance(StateError):
    """Raised when an account has no deposit position in the pool."""
    pass


class NoBorrowBalance(StateError):
    """Raised when an account has no outstanding loan in the pool."""
    pass


class CollateralNotEnabled(StateError):
    """Raised when seizing from a deposit that is not flagged as collateral."""
    pass


class PriceNotConfigured(StateError):
    """Raised when a pool has no price source but a valuation needs one."""
    pass


class StaleState(StateError):
    """Raised when a pending operation was computed against out-of-date records."""
    pass


class InvalidState(StateError):
    """Raised when pool aggregates are internally inconsistent."""
    pass


# --- Solvency ---------------------------------------------------------------

class SolvencyError(LendingError):
    """Action would breach, or fails to correct, a solvency threshold."""
    pass


class HealthFactorTooLow(SolvencyError):
    """Raised when an action would leave the account below the minimum health factor."""
    pass


class NotLiquidatable(SolvencyError):
    """Raised when liquidating an account whose health factor meets the minimum."""
    pass


class InsufficientBalance(SolvencyError):
    """Raised when burning more pool shares than the account holds."""
    pass


class InsufficientLiquidity(SolvencyError):
    """Raised when the pool does not hold enough idle units to pay out."""
    pass


class InsufficientCollateral(SolvencyError):
    """Raised when a liquidation would seize more shares than the debtor holds."""
    pass


# --- External ---------------------------------------------------------------

class ExternalFailure(LendingError):
    """An external collaborator (asset transfer, oracle) reported failure."""
    pass


class TransferFailed(ExternalFailure):
    """Raised by the asset-transfer collaborator when a transfer cannot complete."""
    pass


class PriceUnavailable(ExternalFailure):
    """Raised when no fresh or acceptably recent price exists for a feed."""
    pass


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class PoolConfig:
    """
    Administered configuration for one pool.

    All factors and rates are in basis points (BPS_SCALE == 1.0).
    Build instances through registry.create_pool_config(), which validates
    every range.
    """
    pool_id: int
    name: str
    asset: str
    operational: bool
    collateral_factor: int       # < 1.0, weight of this pool's collateral
    protocol_fee_factor: int     # <= 0.5, protocol share of accrued interest
    liquidation_bonus: int       # > 1.0, seizure price multiplier
    base_rate: int
    rate_multiplier: int
    surge_multiplier: int
    target_utilization: int      # kink of the rate curve
    share_name: str = ""
    share_symbol: str = ""
    share_decimals: int = 0


@dataclass(frozen=True, slots=True)
class PoolState:
    """Aggregates and rate-model state of one pool."""
    aggregate_supplied: int = 0
    aggregate_borrowed: int = 0
    share_supply: int = 0
    cumulative_index: int = INDEX_SCALE
    current_rate: int = 0
    last_accrual_time: int = 0
    reserves: int = 0

    @property
    def available_liquidity(self) -> int:
        """Units held in custody for this pool and not lent out."""
        return max(self.aggregate_supplied - self.aggregate_borrowed, 0)


@dataclass(frozen=True, slots=True)
class DepositPosition:
    """Pool shares held by one account and whether they back its borrowing."""
    share_balance: int = 0
    collateral_flag: bool = True


@dataclass(frozen=True, slots=True)
class LoanPosition:
    """
    Debt of one account in one pool.

    principal is the debt as last recorded (interest included up to then);
    index_snapshot is the pool's cumulative index at that moment.
    """
    principal: int = 0
    index_snapshot: int = INDEX_SCALE


@dataclass(frozen=True, slots=True)
class PriceEntry:
    """
    Price source binding for a pool.

    price is scaled by 10**decimals; updated_at is the logical time the
    cached price was read from the oracle.
    """
    feed: str
    decimals: int
    price: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def scale(self) -> int:
        return 10 ** self.decimals


@dataclass(frozen=True, slots=True)
class ProtocolParams:
    """Protocol-wide risk parameters."""
    fee_recipient: Optional[str] = None
    liquidation_penalty: int = 0
    protocol_fee: int = 1_000
    min_health_factor: int = DEFAULT_MIN_HEALTH_FACTOR
    liquidation_boundary: int = DEFAULT_LIQUIDATION_BOUNDARY
    close_factor: int = DEFAULT_CLOSE_FACTOR
    max_price_age: int = 0


@dataclass(frozen=True, slots=True)
class ShareTokenInfo:
    """Read model of a pool's share token."""
    name: str
    symbol: str
    decimals: int
    circulating_supply: int


class AdminCapability:
    """
    Opaque capability granting administrative rights over one Market.

    Holders pass it explicitly to privileged operations; the market compares
    it by identity.
    """

    def __init__(self, label: str = "admin"):
        self.label = label

    def __repr__(self) -> str:
        return f"AdminCapability({self.label})"


# ============================================================================
# STATE KEYS
# ============================================================================

# A state key addresses one record: ("pool", 1), ("deposit", 1, "alice"), ...
StateKey = Tuple[Any, ...]

CONFIG = "config"
POOL = "pool"
DEPOSIT = "deposit"
LOAN = "loan"
PRICE = "price"
PARAMS = "params"


def config_key(pool_id: int) -> StateKey:
    return (CONFIG, pool_id)


def pool_key(pool_id: int) -> StateKey:
    return (POOL, pool_id)


def deposit_key(pool_id: int, account: str) -> StateKey:
    return (DEPOSIT, pool_id, account)


def loan_key(pool_id: int, account: str) -> StateKey:
    return (LOAN, pool_id, account)


def price_key(pool_id: int) -> StateKey:
    return (PRICE, pool_id)


PARAMS_KEY: StateKey = (PARAMS,)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class MarketView(Protocol):
    """
    Read-only interface to market state.

    Pricing, solvency and position functions accept a MarketView to declare
    their read-only intent. Market implements it, StagedView layers pending
    writes on top of any view, and tests use FakeView.
    """

    @property
    def current_time(self) -> int:
        """Return the current logical time (block height or equivalent)."""
        ...

    def get_record(self, key: StateKey) -> Any:
        """Return the record stored under key, or None."""
        ...

    def keys_for_account(self, account: str) -> Set[StateKey]:
        """Return the deposit and loan keys held by an account."""
        ...

    def list_pools(self) -> List[int]:
        """Return all registered pool ids in registration order."""
        ...


def get_params(view: MarketView) -> ProtocolParams:
    """Protocol params of a view (defaults if none were ever set)."""
    params = view.get_record(PARAMS_KEY)
    return params if params is not None else ProtocolParams()


def get_pool_config(view: MarketView, pool_id: int) -> PoolConfig:
    """
    Return a pool's configuration.

    Raises:
        PoolNotFound: if the pool id was never registered
    """
    config = view.get_record(config_key(pool_id))
    if config is None:
        raise PoolNotFound(f"Pool {pool_id} not registered")
    return config


def get_pool_state(view: MarketView, pool_id: int) -> PoolState:
    """Return a pool's aggregates; raises PoolNotFound for unknown ids."""
    state = view.get_record(pool_key(pool_id))
    if state is None:
        raise PoolNotFound(f"Pool {pool_id} not registered")
    return state


def get_deposit(view: MarketView, pool_id: int, account: str) -> Optional[DepositPosition]:
    return view.get_record(deposit_key(pool_id, account))


def get_loan(view: MarketView, pool_id: int, account: str) -> Optional[LoanPosition]:
    return view.get_record(loan_key(pool_id, account))


def account_pools(view: MarketView, account: str) -> Tuple[Set[int], Set[int]]:
    """Return (pools with a deposit record, pools with a loan record) for an account."""
    deposits: Set[int] = set()
    loans: Set[int] = set()
    for key in view.keys_for_account(account):
        if key[0] == DEPOSIT:
            deposits.add(key[1])
        elif key[0] == LOAN:
            loans.add(key[1])
    return deposits, loans


def require_amount(amount: int, what: str = "amount") -> int:
    """Reject non-integer, boolean, zero or negative amounts."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"{what} must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise InvalidAmount(f"{what} must be positive, got {amount}")
    return amount


def require_account(account: str, custody: str = CUSTODY_ACCOUNT) -> str:
    """Reject empty account names and the custody account."""
    if not account or not account.strip():
        raise InvalidParameter("Account cannot be empty")
    if account == custody:
        raise InvalidParameter(f"'{account}' is the custody account")
    return account


# ============================================================================
# STAGED WRITES
# ============================================================================

@dataclass(frozen=True, slots=True)
class StateChange:
    """
    Record of one state change with complete before/after values.

    old is None when the record is created by the change.
    """
    key: StateKey
    old: Any
    new: Any

    def __repr__(self) -> str:
        return f"StateChange({self.key}: {self.old!r} -> {self.new!r})"


@dataclass(frozen=True, slots=True)
class Transfer:
    """
    A movement of underlying asset through the external transfer collaborator.

    Attributes:
        amount: Base units to move (positive)
        asset: Asset reference
        source: Sending account
        dest: Receiving account
    """
    amount: int
    asset: str
    source: str
    dest: str

    def __post_init__(self):
        if not self.asset or not self.asset.strip():
            raise ValueError("Transfer asset cannot be empty")
        if self.amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {self.amount}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Transfer({self.amount} {self.asset}: {self.source}→{self.dest})"


class StagedView:
    """
    A MarketView that layers uncommitted writes over another view.

    Compute functions stage every write here so later reads in the same
    operation see earlier writes, then turn the staged writes into
    StateChange records. The base view is never modified.

    Example:
        draft = StagedView(market)
        draft.put(pool_key(1), new_state)
        get_pool_state(draft, 1)      # -> new_state
        get_pool_state(market, 1)     # -> unchanged
        draft.changes()               # -> (StateChange(...),)
    """

    def __init__(self, base: MarketView):
        self._base = base
        self._writes: Dict[StateKey, Any] = {}

    @property
    def current_time(self) -> int:
        return self._base.current_time

    def get_record(self, key: StateKey) -> Any:
        if key in self._writes:
            return self._writes[key]
        return self._base.get_record(key)

    def keys_for_account(self, account: str) -> Set[StateKey]:
        keys = set(self._base.keys_for_account(account))
        for key in self._writes:
            if key[0] in (DEPOSIT, LOAN) and key[2] == account:
                keys.add(key)
        return keys

    def list_pools(self) -> List[int]:
        pools = list(self._base.list_pools())
        for key in self._writes:
            if key[0] == CONFIG and key[1] not in pools:
                pools.append(key[1])
        return pools

    def put(self, key: StateKey, record: Any) -> None:
        """Stage a write. Writing back the base value drops the staged entry."""
        if record == self._base.get_record(key):
            self._writes.pop(key, None)
        else:
            self._writes[key] = record

    def changes(self) -> Tuple[StateChange, ...]:
        """Return staged writes as StateChange records, in staging order."""
        return tuple(
            StateChange(key=key, old=self._base.get_record(key), new=new)
            for key, new in self._writes.items()
        )


@dataclass(frozen=True, slots=True)
class PendingOperation:
    """
    An operation before execution - represents INTENT.

    Created by compute_* functions and submitted to Market._execute().

    Attributes:
        op_type: One of the OP_* constants
        account: Account that initiated the operation
        state_changes: Record changes, each with old and new values
        transfers: External asset transfers (at most one)
        result: Value returned to the caller once applied
        timestamp: Logical time the operation was computed at
        pools: Pool ids the operation touches
    """
    op_type: str
    account: str
    state_changes: Tuple[StateChange, ...]
    transfers: Tuple[Transfer, ...]
    result: Any
    timestamp: int
    pools: Tuple[int, ...] = ()

    def __post_init__(self):
        if len(self.transfers) > 1:
            raise ValueError("An operation may carry at most one external transfer")

    def is_empty(self) -> bool:
        """Return True if there is nothing to apply."""
        return not self.state_changes and not self.transfers

    def __repr__(self) -> str:
        return (f"PendingOperation({self.op_type}, {len(self.state_changes)} changes, "
                f"{len(self.transfers)} transfers, result={self.result!r})")


def build_operation(
    draft: StagedView,
    op_type: str,
    account: str,
    result: Any,
    transfers: Optional[List[Transfer]] = None,
    pools: Tuple[int, ...] = (),
) -> PendingOperation:
    """
    Build a PendingOperation from the writes staged in a StagedView.

    This is the standard way for compute_* functions to return their work.
    """
    return PendingOperation(
        op_type=op_type,
        account=account,
        state_changes=draft.changes(),
        transfers=tuple(transfers or ()),
        result=result,
        timestamp=draft.current_time,
        pools=pools,
    )


@dataclass(frozen=True, slots=True)
class OperationRecord:
    """
    An executed, immutable record of an operation - represents FACT.

    Attributes:
        sequence_number: Monotonic position in the market's audit log
        op_type: One of the OP_* constants
        account: Initiating account
        timestamp: Logical time of execution
        state_changes: Applied record changes
        transfers: Completed external transfers
        result: Value returned to the caller
        market_name: Name of the market that executed this
    """
    sequence_number: int
    op_type: str
    account: str
    timestamp: int
    state_changes: Tuple[StateChange, ...]
    transfers: Tuple[Transfer, ...]
    result: Any
    market_name: str
    pools: Tuple[int, ...] = field(default=())

    def __repr__(self) -> str:
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w - 3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(f' {self.op_type} #{self.sequence_number} on {self.market_name}')}│",
            f"├{bar}┤",
            f"│{pad('   account   : ' + self.account)}│",
            f"│{pad('   time      : ' + str(self.timestamp))}│",
            f"│{pad('   pools     : ' + str(list(self.pools)))}│",
            f"│{pad('   result    : ' + repr(self.result))}│",
        ]
        if self.transfers:
            lines.append(f"├{bar}┤")
            for transfer in self.transfers:
                lines.append(f"│{pad('   ' + repr(transfer))}│")
        if self.state_changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' State Changes (' + str(len(self.state_changes)) + '):')}│")
            for sc in self.state_changes:
                lines.append(f"│{pad('   ' + str(sc.key))}│")
                lines.append(f"│{pad('      ' + repr(sc.new))}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)
