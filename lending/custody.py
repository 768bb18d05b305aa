"""
custody.py - External asset transfer collaborator

The market never holds token balances itself. Every movement of underlying
assets between accounts and the custody account goes through an
AssetTransfer, which either moves the full amount or raises TransferFailed
without moving anything.

InMemoryCustody is a wallet balance book used by tests, the demo and
simulations.
"""

from __future__ import annotations
from collections import defaultdict
from typing import Dict, Protocol, runtime_checkable

from .core import TransferFailed


@runtime_checkable
class AssetTransfer(Protocol):
    """Moves underlying assets between accounts, atomically or not at all."""

    def transfer(self, asset: str, amount: int, sender: str, recipient: str) -> None:
        """Move `amount` base units of `asset`; raise TransferFailed on failure."""
        ...


@runtime_checkable
class AssetBalances(Protocol):
    """A transfer collaborator that can also report balances."""

    def balance_of(self, account: str, asset: str) -> int:
        ...


class InMemoryCustody:
    """
    Integer balance book keyed by (account, asset).

    Example:
        custody = InMemoryCustody()
        custody.mint("alice", "USDC", 1_000)
        custody.transfer("USDC", 400, "alice", "custody")
        custody.balance_of("alice", "USDC")    # -> 600
    """

    def __init__(self):
        self.balances: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))

    def mint(self, account: str, asset: str, amount: int) -> None:
        """Credit an account with newly issued units (test and demo funding)."""
        if amount <= 0:
            raise ValueError(f"Mint amount must be positive, got {amount}")
        self.balances[account][asset] += amount

    def balance_of(self, account: str, asset: str) -> int:
        if account not in self.balances:
            return 0
        return self.balances[account].get(asset, 0)

    def total_supply(self, asset: str) -> int:
        """Sum of one asset across all accounts."""
        return sum(bals.get(asset, 0) for _, bals in sorted(self.balances.items()))

    def transfer(self, asset: str, amount: int, sender: str, recipient: str) -> None:
        """
        Move units from sender to recipient.

        Raises:
            TransferFailed: non-positive amount, or sender balance too low
        """
        if amount <= 0:
            raise TransferFailed(f"Transfer amount must be positive, got {amount}")
        available = self.balance_of(sender, asset)
        if available < amount:
            raise TransferFailed(
                f"{sender} holds {available} {asset}, cannot send {amount} to {recipient}"
            )
        self.balances[sender][asset] = available - amount
        self.balances[recipient][asset] += amount

    def __repr__(self):
        return f"InMemoryCustody({len(self.balances)} accounts)"
