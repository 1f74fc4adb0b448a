"""Test helpers for the portfolio-agent test suite"""

from tests.helpers.stubs import (
    FIXED_NOW,
    FixedClock,
    StaticAnalyzer,
    StaticMarketDataFeed,
    StaticRecommendationSource,
    make_agent_config,
    make_asset,
    make_decision,
    make_execution_details,
    make_pipeline,
    make_portfolio,
    make_recommendation,
    make_simulator,
    sell_item,
)

__all__ = [
    "FIXED_NOW",
    "FixedClock",
    "StaticAnalyzer",
    "StaticMarketDataFeed",
    "StaticRecommendationSource",
    "make_agent_config",
    "make_asset",
    "make_decision",
    "make_execution_details",
    "make_pipeline",
    "make_portfolio",
    "make_recommendation",
    "make_simulator",
    "sell_item",
]
