"""
conftest.py - Shared pytest fixtures for lending tests

Provides common fixtures used across unit, functional and conformance tests:
- An empty market with custody and a static oracle
- A two-pool market (USDC, ETH) with prices configured
- A funded scenario: bob supplies USDC, alice supplies ETH
"""

import pytest

from lending import Market, AdminCapability, InMemoryCustody
from tests.market_setup import build_market, default_oracle, fund_scenario


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def admin():
    return AdminCapability()


@pytest.fixture
def custody():
    return InMemoryCustody()


@pytest.fixture
def oracle():
    return default_oracle()


@pytest.fixture
def empty_market(admin, custody, oracle):
    """Market with no pools."""
    return Market("test", admin, custody, oracle=oracle, verbose=False)


@pytest.fixture
def setup():
    """Two pools (USDC id 1, ETH id 2) with price sources, no positions."""
    return build_market()


@pytest.fixture
def funded(setup):
    """setup plus deposits: bob 20,000 USDC, alice 10 ETH."""
    return fund_scenario(setup)


@pytest.fixture
def indebted(funded):
    """funded, plus alice borrowing her full 15,000 USDC capacity (health factor 1.0)."""
    funded.market.borrow(funded.usdc, "alice", "USDC", 15_000)
    return funded
