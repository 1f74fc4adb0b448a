"""
Portfolio Agent Core: Decision Reasoning

Plain-text explanation attached to every Decision. The template generator
assembles it from the recommendation, the portfolio and current market
conditions; a language-model backed generator can replace it through the
same `generate_reasoning` call.
"""

import logging
from typing import List, Optional, Protocol

from core.models import MarketData, Portfolio, Recommendation, RecommendationType, Volatility

logger = logging.getLogger(__name__)

_STRATEGIC_RATIONALE = {
    RecommendationType.REBALANCE: (
        "Portfolio has deviated from target allocation, requiring rebalancing to maintain its risk-return profile"
    ),
    RecommendationType.CREDIT_RISK_MITIGATION: (
        "Elevated credit risk exposure threatens portfolio stability and requires attention"
    ),
    RecommendationType.YIELD_ENHANCEMENT: (
        "Current yield below optimal levels presents an opportunity to improve income generation"
    ),
    RecommendationType.REDUCE_CONCENTRATION: (
        "Concentration in single assets or sectors creates vulnerability to idiosyncratic shocks"
    ),
    RecommendationType.HEDGE: "Risk limits are breached and exposure must be reduced immediately",
}


class ReasoningGenerator(Protocol):
    def generate_reasoning(self, recommendation: Recommendation, portfolio: Portfolio,
                           market_data: Optional[MarketData] = None) -> str:
        ...


class TemplateReasoningGenerator:
    """Section-per-line reasoning text built from fixed templates."""

    def generate_reasoning(self, recommendation: Recommendation, portfolio: Portfolio,
                           market_data: Optional[MarketData] = None) -> str:
        sections = [
            ("Strategic Rationale", self._strategic(recommendation)),
            ("Risk Considerations", self._risk(recommendation, portfolio)),
            ("Market Alignment", self._market(market_data)),
            ("Expected Outcome", self._outcome(recommendation)),
            ("Timing", recommendation.impact.timeframe),
        ]
        return "\n\n".join(f"{title}: {text}" for title, text in sections)

    @staticmethod
    def _strategic(recommendation: Recommendation) -> str:
        base = _STRATEGIC_RATIONALE.get(recommendation.type, recommendation.title)
        if recommendation.reasoning:
            return f"{base}. {recommendation.reasoning}"
        return base

    @staticmethod
    def _risk(recommendation: Recommendation, portfolio: Portfolio) -> str:
        notes: List[str] = []
        for item in recommendation.action_items:
            if item.asset is None:
                continue
            held = portfolio.get_asset(item.asset.id)
            if held is not None and held.weight > 0.20:
                notes.append(f"{held.name} is {held.weight:.1%} of the portfolio")
        estimated = recommendation.impact.estimated_cost
        if estimated and portfolio.total_value > 0:
            notes.append(f"estimated cost is {estimated / portfolio.total_value:.2%} of portfolio value")
        return "; ".join(notes) if notes else "No material execution risks identified"

    @staticmethod
    def _market(market_data: Optional[MarketData]) -> str:
        if market_data is None:
            return "No current market snapshot available"
        sentiment = market_data.sentiment
        text = (
            f"{sentiment.overall.lower()} sentiment, credit markets {sentiment.credit_markets.lower()}, "
            f"rates {sentiment.interest_rates.lower()}"
        )
        if sentiment.volatility == Volatility.HIGH:
            text += "; elevated volatility argues for deferring execution"
        return text

    @staticmethod
    def _outcome(recommendation: Recommendation) -> str:
        impact = recommendation.impact
        parts = []
        if impact.risk_reduction:
            parts.append(f"risk reduction of {impact.risk_reduction:.0%}")
        if impact.yield_improvement:
            parts.append(f"yield improvement of {impact.yield_improvement:.2%}")
        if impact.diversification_improvement:
            parts.append(f"diversification improvement of {impact.diversification_improvement:.0%}")
        return ", ".join(parts) if parts else "Maintains current risk-return profile"
