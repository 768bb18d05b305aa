"""
pricing_source.py - Price oracles for pool valuation

Provides the price feeds the solvency and liquidation engines consume.

Classes:
- PriceOracle: Protocol defining the oracle interface
- StaticPriceOracle: Time-independent prices
- TimeSeriesPriceOracle: Time-varying prices with historical data

Oracles quote prices as Decimals in the market's quote currency. The market
caches each pool's price as an integer scaled by 10**decimals of the pool's
PriceEntry; refresh_price_entry() performs that conversion and enforces the
staleness contract.
"""

from dataclasses import replace
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Set, Optional, List, Tuple, Protocol, runtime_checkable
from bisect import bisect_right

from .core import PriceEntry, PriceUnavailable


@runtime_checkable
class PriceOracle(Protocol):
    """
    Protocol for price oracles.

    An oracle answers the price of a feed at a logical time, or None when it
    has no observation at or before that time.
    """

    def get_price(self, feed: str, at_time: int) -> Optional[Decimal]:
        """Get the price of a feed at a specific logical time."""
        ...


class StaticPriceOracle:
    """
    Oracle with static prices (time-independent).

    Prices remain constant regardless of the time asked for until updated.
    """

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        """
        Initialize with a static price map.

        Args:
            prices: Dictionary mapping feed references to prices
        """
        self.prices: Dict[str, Decimal] = dict(prices or {})

    def get_price(self, feed: str, at_time: int) -> Optional[Decimal]:
        """Get static price (at_time is ignored)."""
        return self.prices.get(feed)

    def get_prices(self, feeds: Set[str], at_time: int) -> Dict[str, Decimal]:
        """Get prices for multiple feeds."""
        return {feed: self.prices[feed] for feed in feeds if feed in self.prices}

    def update_price(self, feed: str, price: Decimal):
        """Update the price of a feed."""
        self.prices[feed] = Decimal(price)

    def remove_price(self, feed: str):
        """Stop answering for a feed (simulates an oracle outage)."""
        self.prices.pop(feed, None)

    def __repr__(self):
        return f"StaticPriceOracle({len(self.prices)} feeds)"


class TimeSeriesPriceOracle:
    """
    Oracle with time-varying prices.

    Stores price observations per feed and answers with the most recent
    observation at or before the requested time.
    """

    def __init__(self, price_paths: Optional[Dict[str, List[Tuple[int, Decimal]]]] = None):
        """
        Initialize the oracle.

        Args:
            price_paths: Optional dict mapping feeds to lists of (time, price) tuples.

        Examples:
            oracle = TimeSeriesPriceOracle()
            oracle.add_price('ETH/USD', 10, Decimal('2000'))

            oracle = TimeSeriesPriceOracle({
                'ETH/USD': [(0, Decimal('2000')), (100, Decimal('1500'))],
            })
        """
        self.price_history: Dict[str, List[Tuple[int, Decimal]]] = {}

        if price_paths:
            for feed, path in price_paths.items():
                if not path:
                    continue
                self.price_history[feed] = sorted(path, key=lambda x: x[0])

    def add_price(self, feed: str, at_time: int, price: Decimal):
        """Add a price observation for a feed at a specific time."""
        history = self.price_history.setdefault(feed, [])
        history.append((at_time, Decimal(price)))
        history.sort(key=lambda x: x[0])

    def get_price(self, feed: str, at_time: int) -> Optional[Decimal]:
        """
        Get the most recent price at or before at_time.

        Returns None if the feed has no observation before at_time.
        """
        history = self.price_history.get(feed)
        if not history:
            return None

        times = [t for t, _ in history]
        idx = bisect_right(times, at_time)
        if idx == 0:
            return None
        return history[idx - 1][1]

    def get_all_times(self, feed: Optional[str] = None) -> List[int]:
        """Sorted observation times for one feed, or for all feeds."""
        if feed:
            return [t for t, _ in self.price_history.get(feed, [])]

        all_times: Set[int] = set()
        for path in self.price_history.values():
            all_times.update(t for t, _ in path)
        return sorted(all_times)

    def __repr__(self):
        total_observations = sum(len(history) for history in self.price_history.values())
        return f"TimeSeriesPriceOracle({len(self.price_history)} feeds, {total_observations} observations)"


def scale_price(price: Decimal, decimals: int) -> int:
    """Convert an oracle Decimal to the integer scaled by 10**decimals (rounds down)."""
    return int((Decimal(price) * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


def refresh_price_entry(
    entry: PriceEntry,
    oracle: Optional[PriceOracle],
    now: int,
    max_age: int = 0,
) -> PriceEntry:
    """
    Resolve a usable price for a pool's price entry.

    Asks the oracle first. When the oracle has no price, the cached price is
    used as long as it is at most max_age time units old.

    Args:
        entry: The pool's price binding
        oracle: Price oracle (None behaves like an oracle with no prices)
        now: Current logical time
        max_age: Age up to which a cached price stays valid

    Returns:
        A PriceEntry with price set. It equals `entry` when the cache was used.

    Raises:
        PriceUnavailable: the oracle has no price, or a non-positive one, and
                          the cache is empty or too old
    """
    fresh = oracle.get_price(entry.feed, now) if oracle is not None else None
    if fresh is not None:
        scaled = scale_price(fresh, entry.decimals)
        if scaled <= 0:
            raise PriceUnavailable(f"Oracle returned non-positive price {fresh} for '{entry.feed}'")
        return replace(entry, price=scaled, updated_at=now)

    if entry.price is not None and entry.updated_at is not None and now - entry.updated_at <= max_age:
        return entry
    raise PriceUnavailable(
        f"No price for feed '{entry.feed}' at time {now} "
        f"(cached at {entry.updated_at}, max age {max_age})"
    )
