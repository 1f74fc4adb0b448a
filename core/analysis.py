"""
Portfolio Agent Core: Portfolio Analysis

Risk figures the agent checks its limits against. The formulas are a
deliberately simple default; any object with `analyze(portfolio)` can be
plugged into an agent instead.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from core.market_data import class_profile
from core.models import MarketData, Portfolio

logger = logging.getLogger(__name__)

# One-tailed 95% z-score
VAR_Z_SCORE = 1.645
TRADING_DAYS = 252
LIQUID_SCORE_THRESHOLD = 0.7


@dataclass(frozen=True)
class PortfolioAnalysis:
    portfolio: Portfolio
    value_at_risk: float
    volatility: float
    single_asset_max: float
    sector_concentration: Dict[str, float] = field(default_factory=dict)
    liquidity_ratio: float = 1.0
    weighted_yield: float = 0.0

    @property
    def largest_sector(self) -> Optional[str]:
        if not self.sector_concentration:
            return None
        return max(self.sector_concentration, key=self.sector_concentration.get)


class PortfolioAnalyzer(Protocol):
    def analyze(self, portfolio: Portfolio, market_data: Optional[MarketData] = None) -> PortfolioAnalysis:
        ...


class BasicPortfolioAnalyzer:
    """
    Weighted-volatility parametric VaR.

    VaR = total value x weighted annual volatility x sqrt(1/252) x 1.645.
    Per-asset volatility and liquidity come from market data when present,
    otherwise from the asset's class profile.
    """

    def analyze(self, portfolio: Portfolio, market_data: Optional[MarketData] = None) -> PortfolioAnalysis:
        volatilities = market_data.volatilities if market_data else {}
        liquidity_scores = market_data.liquidity_scores if market_data else {}

        weighted_vol = 0.0
        liquid_weight = 0.0
        weighted_yield = 0.0
        sectors: Dict[str, float] = {}

        for asset in portfolio.assets:
            profile = class_profile(asset.liquidity_class)
            vol = volatilities.get(asset.id, profile["volatility"])
            weighted_vol += asset.weight * vol

            if liquidity_scores.get(asset.id, profile["liquidity"]) >= LIQUID_SCORE_THRESHOLD:
                liquid_weight += asset.weight

            if asset.yield_rate is not None:
                weighted_yield += asset.weight * asset.yield_rate

            sector = asset.sector or "Unclassified"
            sectors[sector] = sectors.get(sector, 0.0) + asset.weight

        var = portfolio.total_value * weighted_vol * math.sqrt(1 / TRADING_DAYS) * VAR_Z_SCORE
        largest = portfolio.largest_position()

        return PortfolioAnalysis(
            portfolio=portfolio,
            value_at_risk=var,
            volatility=weighted_vol,
            single_asset_max=largest.weight if largest else 0.0,
            sector_concentration=sectors,
            liquidity_ratio=liquid_weight if portfolio.assets else 1.0,
            weighted_yield=weighted_yield,
        )
