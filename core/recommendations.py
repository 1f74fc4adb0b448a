"""
Portfolio Agent Core: Recommendation Source

The agent consumes recommendations through `generate(analysis)`. The
rule-based source here covers concentration, sector diversification, credit
quality and yield; richer allocation engines plug in behind the same method.
"""

import logging
from typing import List, Protocol

from core.analysis import PortfolioAnalysis
from core.models import (
    ActionItem,
    ActionKind,
    AssetType,
    Impact,
    Priority,
    Recommendation,
    RecommendationType,
    new_id,
)

logger = logging.getLogger(__name__)

_PRIORITY_RANK = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}

_INVESTMENT_GRADE = ("AAA", "AA+", "AA", "AA-", "A+", "A", "A-", "BBB+", "BBB", "BBB-")


def rank_recommendations(recommendations: List[Recommendation]) -> List[Recommendation]:
    """Highest priority first; stable within a priority."""
    return sorted(recommendations, key=lambda r: _PRIORITY_RANK[r.priority], reverse=True)


class RecommendationSource(Protocol):
    def generate(self, analysis: PortfolioAnalysis) -> List[Recommendation]:
        ...


class RuleBasedRecommendationSource:
    """Threshold rules over a PortfolioAnalysis."""

    def __init__(self, max_single_asset_weight: float = 0.20, target_single_asset_weight: float = 0.15,
                 max_sector_weight: float = 0.25, max_sub_investment_grade: float = 0.15,
                 min_portfolio_yield: float = 0.04):
        self.max_single_asset_weight = max_single_asset_weight
        self.target_single_asset_weight = target_single_asset_weight
        self.max_sector_weight = max_sector_weight
        self.max_sub_investment_grade = max_sub_investment_grade
        self.min_portfolio_yield = min_portfolio_yield

    def generate(self, analysis: PortfolioAnalysis) -> List[Recommendation]:
        recommendations: List[Recommendation] = []
        for rule in (self._concentration, self._sector, self._credit_quality, self._yield):
            recommendation = rule(analysis)
            if recommendation is not None:
                recommendations.append(recommendation)

        ranked = rank_recommendations(recommendations)
        logger.debug("Generated %d recommendation(s) for %s", len(ranked), analysis.portfolio.id)
        return ranked

    def _concentration(self, analysis: PortfolioAnalysis):
        largest = analysis.portfolio.largest_position()
        if largest is None or largest.weight <= self.max_single_asset_weight:
            return None

        target = self.target_single_asset_weight
        reduce_fraction = min(max((largest.weight - target) / largest.weight, 0.0), 1.0)
        return Recommendation(
            id=new_id("concentration"),
            type=RecommendationType.REDUCE_CONCENTRATION,
            priority=Priority.HIGH,
            title="Single Asset Concentration Risk",
            description=f"Largest single asset represents {largest.weight:.1%} of portfolio",
            reasoning=(
                f"Single asset positions above {self.max_single_asset_weight:.0%} create concentration "
                "risk and reduce diversification benefits"
            ),
            action_items=(
                ActionItem(
                    action=ActionKind.REDUCE,
                    asset=largest,
                    percentage=reduce_fraction,
                    target_weight=target,
                    rationale=f"Reduce {largest.name} from {largest.weight:.1%} to {target:.0%}",
                ),
            ),
            impact=Impact(risk_reduction=0.25, diversification_improvement=0.35, timeframe="1-2 weeks"),
        )

    def _sector(self, analysis: PortfolioAnalysis):
        crowded = {
            sector: weight for sector, weight in analysis.sector_concentration.items()
            if weight > self.max_sector_weight
        }
        if not crowded:
            return None

        items = tuple(
            ActionItem(
                action=ActionKind.REDUCE,
                percentage=0.3,
                rationale=f"Reduce {sector} sector exposure from {weight:.1%} to improve diversification",
            )
            for sector, weight in sorted(crowded.items())
        )
        return Recommendation(
            id=new_id("sector"),
            type=RecommendationType.IMPROVE_DIVERSIFICATION,
            priority=Priority.MEDIUM,
            title="Sector Concentration Risk",
            description=f"High concentration in {len(crowded)} sector(s)",
            reasoning=(
                f"Sector concentrations above {self.max_sector_weight:.0%} increase vulnerability "
                "to sector-specific shocks"
            ),
            action_items=items,
            impact=Impact(risk_reduction=0.20, diversification_improvement=0.30, timeframe="2-3 weeks"),
        )

    def _credit_quality(self, analysis: PortfolioAnalysis):
        weak = [
            asset for asset in analysis.portfolio.assets
            if asset.credit_rating and asset.credit_rating.upper() not in _INVESTMENT_GRADE
        ]
        weak_weight = sum(asset.weight for asset in weak)
        if weak_weight <= self.max_sub_investment_grade:
            return None

        return Recommendation(
            id=new_id("credit"),
            type=RecommendationType.CREDIT_RISK_MITIGATION,
            priority=Priority.HIGH,
            title="Credit Quality Deterioration",
            description=f"{weak_weight:.1%} of the portfolio is rated below investment grade",
            reasoning="Sub-investment-grade exposure raises expected credit losses in a downturn",
            action_items=tuple(
                ActionItem(
                    action=ActionKind.SELL,
                    asset=asset,
                    percentage=0.25,
                    rationale=f"Trim {asset.name} ({asset.credit_rating})",
                )
                for asset in weak
            ),
            impact=Impact(risk_reduction=0.30, timeframe="2-3 weeks"),
        )

    def _yield(self, analysis: PortfolioAnalysis):
        if not analysis.portfolio.assets or analysis.weighted_yield >= self.min_portfolio_yield:
            return None

        low_yield = [
            asset for asset in analysis.portfolio.assets
            if asset.yield_rate is not None and asset.yield_rate < 0.03
        ]
        items = [
            ActionItem(
                action=ActionKind.SELL,
                asset=asset,
                percentage=0.5,
                rationale=f"Consider replacing {asset.name} with higher-yielding alternatives",
            )
            for asset in low_yield[:3]
        ]
        items.append(
            ActionItem(
                action=ActionKind.BUY,
                asset_type=AssetType.SECURITY,
                percentage=0.10,
                rationale="Add higher-yielding securities to improve income",
            )
        )
        return Recommendation(
            id=new_id("yield"),
            type=RecommendationType.YIELD_ENHANCEMENT,
            priority=Priority.MEDIUM,
            title="Yield Enhancement Opportunity",
            description=f"Current portfolio yield of {analysis.weighted_yield:.2%} may be optimized",
            reasoning="Low yield environments require active management to maintain income",
            action_items=tuple(items),
            impact=Impact(yield_improvement=0.015, timeframe="3-4 weeks"),
        )
