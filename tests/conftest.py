"""
Pytest configuration and fixtures for portfolio-agent tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from tests.helpers import (
    FIXED_NOW,
    FixedClock,
    StaticMarketDataFeed,
    make_agent_config,
    make_asset,
    make_portfolio,
)


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    """Mutable clock pinned to a weekday inside New York trading hours"""
    return FixedClock(FIXED_NOW)


@pytest.fixture
def portfolio():
    """Three-bond portfolio worth 3.5M with no single asset above 50%"""
    return make_portfolio(
        make_asset("UST10", price=100.0, quantity=15_000, security_type="TREASURY",
                   sector="Government", rating="AAA", yield_rate=0.043),
        make_asset("IGCORP", price=100.0, quantity=10_000, sector="Financials",
                   rating="A", yield_rate=0.055),
        make_asset("AGMBS", price=100.0, quantity=10_000, security_type="MBS",
                   sector="Real Estate", rating="AA", yield_rate=0.051),
    )


@pytest.fixture
def feed(clock):
    return StaticMarketDataFeed(clock=clock)


@pytest.fixture
def full_auto_config():
    return make_agent_config(autonomy_level="FULL_AUTO")
