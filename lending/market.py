"""
market.py - Stateful pooled lending market

The Market class is the central state manager for the lending system.
It is the only module that mutates state, ensuring controlled and auditable changes.

Key responsibilities:
    - Implements MarketView protocol for safe read-only access by pure functions
    - Executes operations atomically (every record changes or none does)
    - Performs the single external asset transfer of an operation before
      applying its record changes, so a failed transfer leaves nothing behind
    - Resolves and caches oracle prices for the accounts an operation values
    - Serializes every operation behind one reentrant lock
    - Always validates and always logs - no exceptions
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
import threading

import numpy as np

from .accrual import accrued_debt, compute_accrual, project_pool_state, stage_accrual
from .conversion import share_price, shares_to_units
from .core import (
    # Types
    AdminCapability, DepositPosition, LoanPosition, OperationRecord,
    PendingOperation, PoolConfig, PoolState, PriceEntry, ProtocolParams,
    ShareTokenInfo, StagedView, StateChange, StateKey,
    # Constants
    CONFIG, CUSTODY_ACCOUNT, DEPOSIT, LOAN, PARAMS_KEY,
    OP_ACCRUE, OP_BORROW, OP_DEPOSIT, OP_LIQUIDATE, OP_REPAY, OP_TOGGLE_COLLATERAL,
    OP_WITHDRAW, OP_REGISTER_POOL, OP_SET_PRICE_SOURCE, OP_SET_PROTOCOL_PARAMS,
    OP_UPDATE_POOL,
    # Exceptions
    LendingError, PoolAlreadyRegistered, PriceNotConfigured, StaleState, Unauthorized,
    # Helpers
    account_pools, build_operation, config_key, get_deposit, get_loan, get_params,
    get_pool_config, get_pool_state, pool_key, price_key,
)
from .custody import AssetBalances, AssetTransfer
from .liquidation import compute_liquidation
from .positions import (
    compute_borrow, compute_deposit, compute_repay, compute_toggle_collateral,
    compute_withdraw,
)
from .pricing_source import PriceOracle, refresh_price_entry
from .rate_model import (
    calculate_lending_rate, calculate_supply_rate, calculate_utilization, sample_rate_curve,
)
from .registry import (
    create_pool_config, create_price_entry, share_token_info, update_pool_config,
    validate_protocol_params,
)
from .solvency import AccountLiquidity, PriceMap, compute_account_liquidity


class Market:
    """
    Pooled lending market with full validation and audit trail.

    Implements the MarketView protocol, allowing the market to be passed to
    pure compute_* functions that access only read-only methods.

    Design Principles:
        - Always validates: every operation is computed against a StagedView,
          so a failing precondition raises before anything is written.
        - Always logs: every applied operation is recorded in operation_log.

    Thread Safety:
        Every public operation and read runs under one reentrant lock, so no
        caller observes a partially applied operation.

    Example:
        admin = AdminCapability()
        custody = InMemoryCustody()
        market = Market("main", admin, custody, oracle=StaticPriceOracle({"USDC": Decimal("1")}))
        usdc = market.register_pool(admin, "USDC Pool", "USDC", collateral_factor=8000,
                                    liquidation_bonus=10500, base_rate=0,
                                    rate_multiplier=2000, surge_multiplier=50000,
                                    target_utilization=8000)
        market.set_price_source(admin, usdc, "USDC", 8)
        custody.mint("alice", "USDC", 1_000)
        market.deposit(usdc, "alice", "USDC", 1_000)     # -> 1000 shares
    """

    def __init__(
        self,
        name: str,
        admin: AdminCapability,
        custody: AssetTransfer,
        oracle: Optional[PriceOracle] = None,
        params: Optional[ProtocolParams] = None,
        initial_time: int = 0,
        verbose: bool = True,
        custody_account: str = CUSTODY_ACCOUNT,
    ):
        """
        Create a market.

        Args:
            name: Market identifier
            admin: Capability required by administrative operations
            custody: Asset transfer collaborator
            oracle: Price oracle (None: only cached prices are used)
            params: Protocol parameters (default: ProtocolParams())
            initial_time: Starting logical time
            verbose: Print every applied or rejected operation (default: True)
            custody_account: Account holding all pools' underlying assets
        """
        self.name = name
        self._admin = admin
        self.custody = custody
        self.oracle = oracle
        self.custody_account = custody_account
        self.verbose = verbose
        self._current_time: int = initial_time
        self._records: Dict[StateKey, Any] = {}
        self._pool_ids: List[int] = []
        # Inverted index account -> deposit/loan keys for cross-pool valuation
        self._account_keys: Dict[str, Set[StateKey]] = defaultdict(set)
        self.operation_log: List[OperationRecord] = []
        self._next_sequence: int = 0
        self._lock = threading.RLock()

        self._records[PARAMS_KEY] = validate_protocol_params(params or ProtocolParams())

    # ========================================================================
    # MarketView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> int:
        """Current logical time of the market."""
        return self._current_time

    def get_record(self, key: StateKey) -> Any:
        with self._lock:
            return self._records.get(key)

    def keys_for_account(self, account: str) -> Set[StateKey]:
        with self._lock:
            return set(self._account_keys.get(account, ()))

    def list_pools(self) -> List[int]:
        """List all registered pool ids in registration order."""
        with self._lock:
            return list(self._pool_ids)

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: int) -> None:
        """
        Advance the market's logical clock.

        Time can only move forward, never backward. Pools accrue lazily, on
        their next operation.

        Raises:
            ValueError: If new_time is before the current time
        """
        with self._lock:
            if new_time < self._current_time:
                raise ValueError(
                    f"Cannot move time backwards: {new_time} < {self._current_time}"
                )
            self._current_time = new_time

    # ========================================================================
    # OPERATION EXECUTION (Mutating)
    # ========================================================================

    def _execute(self, pending: PendingOperation) -> Any:
        """
        Apply a PendingOperation atomically.

        Only the public operations submit here, after their own
        precondition and capability checks.

        Steps, all under the market lock:
            1. every StateChange.old must equal the current record, and the
               operation must have been computed at the current time
            2. the external transfer (if any) is performed; a failure raises
               before any record changes
            3. all record changes are applied
            4. an OperationRecord is appended to operation_log

        Returns:
            pending.result

        Raises:
            StaleState: the operation was computed against out-of-date records
            TransferFailed: the asset transfer collaborator refused the transfer
        """
        with self._lock:
            if pending.is_empty():
                return pending.result

            if pending.timestamp != self._current_time:
                raise StaleState(
                    f"{pending.op_type} computed at time {pending.timestamp}, "
                    f"market is at {self._current_time}"
                )
            for sc in pending.state_changes:
                current = self._records.get(sc.key)
                if current != sc.old:
                    raise StaleState(
                        f"{pending.op_type}: {sc.key} expected {sc.old!r}, found {current!r}"
                    )

            for transfer in pending.transfers:
                self.custody.transfer(transfer.asset, transfer.amount,
                                      transfer.source, transfer.dest)

            for sc in pending.state_changes:
                self._apply_change(sc)

            record = OperationRecord(
                sequence_number=self._next_sequence,
                op_type=pending.op_type,
                account=pending.account,
                timestamp=self._current_time,
                state_changes=pending.state_changes,
                transfers=pending.transfers,
                result=pending.result,
                market_name=self.name,
                pools=pending.pools,
            )
            self._next_sequence += 1
            self.operation_log.append(record)

            if self.verbose:
                self._print_record(record)
            return pending.result

    def _apply_change(self, sc: StateChange) -> None:
        self._records[sc.key] = sc.new
        kind = sc.key[0]
        if kind in (DEPOSIT, LOAN):
            self._account_keys[sc.key[2]].add(sc.key)
        elif kind == CONFIG and sc.key[1] not in self._pool_ids:
            self._pool_ids.append(sc.key[1])

    def _print_record(self, record: OperationRecord) -> None:
        """Print an applied operation using OperationRecord.__repr__ plus a result line."""
        lines = repr(record).split("\n")
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w - 3] + "..."
            return text + " " * (w - len(text))

        lines[-1] = f"├{bar}┤"
        lines.append(f"│{pad(' ✓ APPLIED')}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    def _run(self, op_type: str, account: str, build: Callable[[], PendingOperation]) -> Any:
        """Compute and execute one operation under the lock, reporting rejections."""
        with self._lock:
            try:
                return self._execute(build())
            except LendingError as e:
                if self.verbose:
                    print(f"✗ REJECTED {op_type} by {account}: {type(e).__name__}: {e}")
                raise

    # ========================================================================
    # PRICES
    # ========================================================================

    def _debt_pools(self, account: str) -> Set[int]:
        _, loan_pools = account_pools(self, account)
        return {pid for pid in loan_pools if get_loan(self, pid, account).principal > 0}

    def _collateral_pools(self, account: str) -> Set[int]:
        deposit_pools, _ = account_pools(self, account)
        pools = set()
        for pid in deposit_pools:
            position = get_deposit(self, pid, account)
            if position.collateral_flag and position.share_balance > 0:
                pools.add(pid)
        return pools

    def _resolve_prices(
        self,
        required: Iterable[int],
        optional: Iterable[int] = (),
    ) -> Tuple[PriceMap, Tuple[StateChange, ...]]:
        """
        Resolve a usable price for each pool.

        Optional pools without a price source are left out of the result, so
        their collateral is valued at zero.

        Returns:
            (pool_id -> PriceEntry with a price, price-cache StateChanges)

        Raises:
            PriceNotConfigured: a required pool has no price source
            PriceUnavailable: no fresh or recent-enough price exists
        """
        params = get_params(self)
        required = set(required)
        prices: Dict[int, PriceEntry] = {}
        changes: List[StateChange] = []
        for pool_id in sorted(required | set(optional)):
            entry = self._records.get(price_key(pool_id))
            if entry is None:
                if pool_id in required:
                    raise PriceNotConfigured(f"Pool {pool_id} has no price source")
                continue
            resolved = refresh_price_entry(entry, self.oracle, self._current_time,
                                           params.max_price_age)
            if resolved != entry:
                changes.append(StateChange(key=price_key(pool_id), old=entry, new=resolved))
            prices[pool_id] = resolved
        return prices, tuple(changes)

    def _prices_for(self, account: str, extra_pools: Iterable[int] = (),
                    force: bool = False,
                    exclude_collateral: Optional[int] = None) -> Tuple[PriceMap, Tuple[StateChange, ...]]:
        """
        Prices an operation on `account` needs; none when it cannot affect solvency.

        Debt pools and `extra_pools` must be priced. Collateral pools are
        priced when they have a source; `exclude_collateral` is not priced.
        """
        debt_pools = self._debt_pools(account)
        if not force and not debt_pools:
            return {}, ()
        collateral = self._collateral_pools(account)
        collateral.discard(exclude_collateral)
        return self._resolve_prices(debt_pools | set(extra_pools), collateral)

    @staticmethod
    def _with_price_updates(pending: PendingOperation,
                            price_changes: Tuple[StateChange, ...]) -> PendingOperation:
        """Attach price-cache refreshes so they persist only if the operation applies."""
        if not price_changes or pending.is_empty():
            return pending
        return PendingOperation(
            op_type=pending.op_type,
            account=pending.account,
            state_changes=price_changes + pending.state_changes,
            transfers=pending.transfers,
            result=pending.result,
            timestamp=pending.timestamp,
            pools=pending.pools,
        )

    # ========================================================================
    # POSITION OPERATIONS
    # ========================================================================

    def deposit(self, pool_id: int, account: str, asset: str, units: int) -> int:
        """Deposit units into a pool. Returns the shares minted."""
        return self._run(OP_DEPOSIT, account, lambda: compute_deposit(
            self, pool_id, account, asset, units, self.custody_account))

    def withdraw(self, pool_id: int, account: str, asset: str, units: int) -> int:
        """Withdraw units from a pool. Returns the units paid out."""
        def build():
            position = get_deposit(self, pool_id, account)
            if position is not None and position.collateral_flag:
                prices, updates = self._prices_for(account)
            else:
                prices, updates = {}, ()
            pending = compute_withdraw(self, pool_id, account, asset, units, prices,
                                       self.custody_account)
            return self._with_price_updates(pending, updates)
        return self._run(OP_WITHDRAW, account, build)

    def toggle_collateral(self, pool_id: int, account: str) -> bool:
        """Flip a deposit's collateral flag. Returns the new flag."""
        def build():
            position = get_deposit(self, pool_id, account)
            if position is not None and position.collateral_flag and position.share_balance > 0:
                prices, updates = self._prices_for(account, exclude_collateral=pool_id)
            else:
                prices, updates = {}, ()
            pending = compute_toggle_collateral(self, pool_id, account, prices)
            return self._with_price_updates(pending, updates)
        return self._run(OP_TOGGLE_COLLATERAL, account, build)

    def borrow(self, pool_id: int, account: str, asset: str, units: int) -> int:
        """Borrow units from a pool. Returns the units disbursed."""
        def build():
            prices, updates = self._prices_for(account, extra_pools=(pool_id,), force=True)
            pending = compute_borrow(self, pool_id, account, asset, units, prices,
                                     self.custody_account)
            return self._with_price_updates(pending, updates)
        return self._run(OP_BORROW, account, build)

    def repay(self, pool_id: int, account: str, asset: str, units: int) -> int:
        """Repay a loan. Returns the amount actually applied."""
        return self._run(OP_REPAY, account, lambda: compute_repay(
            self, pool_id, account, asset, units, self.custody_account))

    def liquidate(
        self,
        debtor: str,
        repay_pool: int,
        repay_asset: str,
        collateral_pool: int,
        units: int,
        caller: str,
    ) -> int:
        """Liquidate part of an unhealthy account. Returns the amount actually repaid."""
        def build():
            prices, updates = self._prices_for(
                debtor, extra_pools=(repay_pool, collateral_pool), force=True)
            pending = compute_liquidation(self, debtor, repay_pool, repay_asset,
                                          collateral_pool, units, caller, prices,
                                          self.custody_account)
            return self._with_price_updates(pending, updates)
        return self._run(OP_LIQUIDATE, caller, build)

    def accrue(self, pool_id: int, account: str = "keeper") -> int:
        """Accrue a pool's interest up to now. Returns the pool's current rate."""
        return self._run(OP_ACCRUE, account, lambda: compute_accrual(self, pool_id, account))

    # ========================================================================
    # ADMINISTRATION (Mutating, capability-gated)
    # ========================================================================

    def _require_admin(self, cap: AdminCapability) -> None:
        if cap is not self._admin:
            raise Unauthorized(f"{cap!r} is not the admin capability of market {self.name}")

    def register_pool(
        self,
        cap: AdminCapability,
        name: str,
        asset: str,
        collateral_factor: int,
        liquidation_bonus: int,
        base_rate: int,
        rate_multiplier: int,
        surge_multiplier: int,
        target_utilization: int,
        protocol_fee_factor: Optional[int] = None,
        operational: bool = True,
        share_name: Optional[str] = None,
        share_symbol: Optional[str] = None,
        share_decimals: int = 0,
    ) -> int:
        """
        Register a new pool.

        protocol_fee_factor defaults to ProtocolParams.protocol_fee.

        Returns:
            The new pool id (sequential, starting at 1)

        Raises:
            Unauthorized: cap is not this market's admin capability
            PoolAlreadyRegistered: another pool uses the same name or asset
            InvalidParameter: a configuration value is out of range
        """
        def build():
            self._require_admin(cap)
            for existing in self._pool_ids:
                config = get_pool_config(self, existing)
                if config.name == name or config.asset == asset:
                    raise PoolAlreadyRegistered(
                        f"Pool {existing} already uses name '{config.name}' / asset '{config.asset}'"
                    )
            pool_id = len(self._pool_ids) + 1
            fee = protocol_fee_factor if protocol_fee_factor is not None else get_params(self).protocol_fee
            config = create_pool_config(
                pool_id=pool_id, name=name, asset=asset,
                collateral_factor=collateral_factor, liquidation_bonus=liquidation_bonus,
                base_rate=base_rate, rate_multiplier=rate_multiplier,
                surge_multiplier=surge_multiplier, target_utilization=target_utilization,
                protocol_fee_factor=fee, operational=operational,
                share_name=share_name, share_symbol=share_symbol,
                share_decimals=share_decimals,
            )
            draft = StagedView(self)
            draft.put(config_key(pool_id), config)
            draft.put(pool_key(pool_id), PoolState(last_accrual_time=self._current_time))
            return build_operation(draft, OP_REGISTER_POOL, cap.label, pool_id, pools=(pool_id,))
        return self._run(OP_REGISTER_POOL, cap.label, build)

    def set_price_source(self, cap: AdminCapability, pool_id: int, feed: str, decimals: int) -> None:
        """
        Bind a pool to an oracle feed. The cached price is reset.

        Raises:
            Unauthorized, PoolNotFound, InvalidParameter
        """
        def build():
            self._require_admin(cap)
            get_pool_config(self, pool_id)
            draft = StagedView(self)
            draft.put(price_key(pool_id), create_price_entry(feed, decimals))
            return build_operation(draft, OP_SET_PRICE_SOURCE, cap.label, None, pools=(pool_id,))
        self._run(OP_SET_PRICE_SOURCE, cap.label, build)

    def set_protocol_params(
        self,
        cap: AdminCapability,
        fee_recipient: Optional[str] = None,
        liquidation_penalty: Optional[int] = None,
        protocol_fee: Optional[int] = None,
        min_health_factor: Optional[int] = None,
        liquidation_boundary: Optional[int] = None,
        close_factor: Optional[int] = None,
        max_price_age: Optional[int] = None,
    ) -> None:
        """
        Update protocol-wide parameters. Arguments left as None keep their value.

        Raises:
            Unauthorized, InvalidParameter
        """
        def build():
            self._require_admin(cap)
            current = get_params(self)
            given = {
                "fee_recipient": fee_recipient,
                "liquidation_penalty": liquidation_penalty,
                "protocol_fee": protocol_fee,
                "min_health_factor": min_health_factor,
                "liquidation_boundary": liquidation_boundary,
                "close_factor": close_factor,
                "max_price_age": max_price_age,
            }
            params = ProtocolParams(**{
                field_name: value if value is not None else getattr(current, field_name)
                for field_name, value in given.items()
            })
            draft = StagedView(self)
            draft.put(PARAMS_KEY, validate_protocol_params(params))
            return build_operation(draft, OP_SET_PROTOCOL_PARAMS, cap.label, None)
        self._run(OP_SET_PROTOCOL_PARAMS, cap.label, build)

    def _reconfigure_pool(self, cap: AdminCapability, pool_id: int,
                          reconfigure: Callable[[PoolConfig], PoolConfig]) -> PoolConfig:
        """Accrue a pool, then store the configuration `reconfigure` derives from the old one."""
        def build():
            self._require_admin(cap)
            config = get_pool_config(self, pool_id)
            draft = StagedView(self)
            stage_accrual(draft, pool_id)
            new_config = reconfigure(config)
            draft.put(config_key(pool_id), new_config)
            return build_operation(draft, OP_UPDATE_POOL, cap.label, new_config, pools=(pool_id,))
        return self._run(OP_UPDATE_POOL, cap.label, build)

    def set_pool_operational(self, cap: AdminCapability, pool_id: int, operational: bool) -> None:
        """
        Pause or resume a pool.

        A paused pool rejects deposits, withdrawals, borrows and liquidations;
        repayment stays open.
        """
        self._reconfigure_pool(cap, pool_id,
                               lambda config: replace(config, operational=bool(operational)))

    def update_pool(self, cap: AdminCapability, pool_id: int, **changes: Any) -> PoolConfig:
        """
        Change a pool's risk or rate parameters.

        The pool accrues first, so elapsed time is charged at the old curve.

        Returns:
            The new PoolConfig

        Raises:
            Unauthorized, PoolNotFound, InvalidParameter
        """
        return self._reconfigure_pool(cap, pool_id,
                                      lambda config: update_pool_config(config, changes))

    # ========================================================================
    # READS
    # ========================================================================

    def get_pool_config(self, pool_id: int) -> PoolConfig:
        """Stored configuration of a pool (PoolNotFound for unknown ids)."""
        return get_pool_config(self, pool_id)

    def get_pool_state(self, pool_id: int) -> PoolState:
        """Stored aggregates of a pool, as of its last accrual."""
        return get_pool_state(self, pool_id)

    def rate_state(self, pool_id: int) -> Dict[str, int]:
        """
        Rate-model state of a pool projected to the current time.

        Returns:
            Dict with cumulative_index, current_rate, last_accrual_time (stored),
            utilization, borrow_rate and supply_rate (bps, at current aggregates)
        """
        with self._lock:
            config = get_pool_config(self, pool_id)
            stored = get_pool_state(self, pool_id)
            state = project_pool_state(self, pool_id)
            utilization = calculate_utilization(state.aggregate_supplied, state.aggregate_borrowed)
            return {
                "cumulative_index": state.cumulative_index,
                "current_rate": stored.current_rate,
                "last_accrual_time": stored.last_accrual_time,
                "utilization": utilization,
                "borrow_rate": calculate_lending_rate(config, utilization),
                "supply_rate": calculate_supply_rate(config, utilization),
            }

    def pool_info(self, pool_id: int) -> Dict[str, Any]:
        """
        Configuration and aggregates of a pool, projected to the current time.
        """
        with self._lock:
            config = get_pool_config(self, pool_id)
            state = project_pool_state(self, pool_id)
            return {
                "pool_id": config.pool_id,
                "name": config.name,
                "asset": config.asset,
                "operational": config.operational,
                "collateral_factor": config.collateral_factor,
                "protocol_fee_factor": config.protocol_fee_factor,
                "liquidation_bonus": config.liquidation_bonus,
                "aggregate_supplied": state.aggregate_supplied,
                "aggregate_borrowed": state.aggregate_borrowed,
                "available_liquidity": state.available_liquidity,
                "reserves": state.reserves,
                "share_supply": state.share_supply,
                "share_price": share_price(state),
                "price_source": self._records.get(price_key(pool_id)),
            }

    def share_token(self, pool_id: int) -> ShareTokenInfo:
        """Share token metadata and circulating supply of a pool."""
        with self._lock:
            return share_token_info(get_pool_config(self, pool_id), get_pool_state(self, pool_id))

    def position(self, pool_id: int, account: str) -> Dict[str, Any]:
        """
        An account's deposit and loan in one pool.

        Positions not yet created are reported as zero positions.
        """
        with self._lock:
            get_pool_config(self, pool_id)
            state = project_pool_state(self, pool_id)
            deposit = get_deposit(self, pool_id, account) or DepositPosition()
            loan = get_loan(self, pool_id, account) or LoanPosition()
            return {
                "deposit": deposit,
                "loan": loan,
                "supplied_units": shares_to_units(state, deposit.share_balance),
                "debt": accrued_debt(loan, state),
            }

    def account_liquidity(self, account: str) -> AccountLiquidity:
        """
        Aggregate valuation and health factor of an account.

        Prices are read from the oracle but not cached. Collateral in pools
        that have no price source is valued at zero.
        """
        with self._lock:
            prices, _ = self._resolve_prices(self._debt_pools(account),
                                             self._collateral_pools(account))
            return compute_account_liquidity(self, account, prices)

    def rate_curve(self, pool_id: int, points: int = 101) -> Tuple[np.ndarray, np.ndarray]:
        """Sample a pool's borrow-rate curve: (utilizations, rates) in bps."""
        return sample_rate_curve(get_pool_config(self, pool_id), points)

    def snapshot(self) -> Dict[StateKey, Any]:
        """
        Copy of every record, keyed by state key.

        Records are immutable, so the copy is independent of later operations.
        """
        with self._lock:
            return dict(self._records)

    def verify_solvency_invariants(self, tolerance: int = 0) -> Dict[str, Any]:
        """
        Verify the accounting invariants of every pool.

        Checks:
            - no negative aggregate, reserve or balance
            - sum of account share balances == share supply
            - custody cash == supplied - borrowed + reserves (within tolerance),
              when the custody collaborator can report balances

        Returns:
            Dict with keys:
            - 'valid': bool - True if every invariant holds
            - 'discrepancies': List[Dict] - one entry per violation

        Example:
            result = market.verify_solvency_invariants()
            assert result['valid'], result['discrepancies']
        """
        with self._lock:
            discrepancies: List[Dict[str, Any]] = []
            share_totals: Dict[int, int] = defaultdict(int)
            for key, record in self._records.items():
                if key[0] == DEPOSIT:
                    share_totals[key[1]] += record.share_balance
                    if record.share_balance < 0:
                        discrepancies.append({"key": key, "error": "negative share balance"})
                elif key[0] == LOAN and record.principal < 0:
                    discrepancies.append({"key": key, "error": "negative principal"})

            for pool_id in self._pool_ids:
                config = get_pool_config(self, pool_id)
                state = get_pool_state(self, pool_id)
                for field_name in ("aggregate_supplied", "aggregate_borrowed", "reserves",
                                   "share_supply"):
                    if getattr(state, field_name) < 0:
                        discrepancies.append({"pool": pool_id, "error": f"negative {field_name}"})
                if share_totals[pool_id] != state.share_supply:
                    discrepancies.append({
                        "pool": pool_id,
                        "error": "share supply mismatch",
                        "expected": state.share_supply,
                        "actual": share_totals[pool_id],
                    })
                if isinstance(self.custody, AssetBalances):
                    expected = state.aggregate_supplied - state.aggregate_borrowed + state.reserves
                    actual = self.custody.balance_of(self.custody_account, config.asset)
                    if abs(actual - expected) > tolerance:
                        discrepancies.append({
                            "pool": pool_id,
                            "error": "custody cash mismatch",
                            "expected": expected,
                            "actual": actual,
                            "difference": actual - expected,
                        })

            return {
                "valid": len(discrepancies) == 0,
                "discrepancies": discrepancies,
            }

    def __repr__(self):
        return (f"Market({self.name}, {len(self._pool_ids)} pools, "
                f"{len(self.operation_log)} operations, t={self._current_time})")
