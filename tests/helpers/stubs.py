"""
Test helpers for agent, pipeline and supervisor tests.

Provides deterministic stand-ins for the pluggable collaborators (market data
feed, analyzer, recommendation source) and factories for domain records, so
tests pin every input of a decision cycle.
"""

import random
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence

from core.analysis import PortfolioAnalysis
from core.config import AgentConfig
from core.decision_pipeline import DecisionPipeline
from core.exceptions import MarketDataUnavailable
from core.execution import TradeExecutionSimulator
from core.market_data import MarketDataCache
from core.models import (
    ActionItem,
    ActionKind,
    Asset,
    AssetType,
    Decision,
    DecisionStatus,
    DecisionType,
    ExecutionDetails,
    ExpectedOutcome,
    Impact,
    LoanType,
    MarketData,
    MarketSentiment,
    Portfolio,
    Priority,
    Recommendation,
    RecommendationType,
    SecurityType,
    Volatility,
    new_id,
)
from core.reasoning import TemplateReasoningGenerator

# Wednesday 2026-10-14 11:00 in New York
FIXED_NOW = datetime(2026, 10, 14, 15, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when a test advances it"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ===== Domain factories =====

def make_asset(
    asset_id: str,
    price: float = 100.0,
    quantity: float = 1_000,
    asset_type: str = "SECURITY",
    security_type: Optional[str] = "BOND",
    loan_type: Optional[str] = None,
    sector: Optional[str] = "Financials",
    rating: Optional[str] = "A",
    yield_rate: Optional[float] = 0.05,
) -> Asset:
    is_loan = asset_type == "LOAN"
    return Asset(
        id=asset_id,
        symbol=asset_id,
        name=asset_id,
        asset_type=AssetType(asset_type),
        current_price=price,
        quantity=quantity,
        market_value=price * quantity,
        security_type=None if is_loan or security_type is None else SecurityType(security_type),
        loan_type=LoanType(loan_type) if loan_type else None,
        sector=sector,
        credit_rating=rating,
        yield_rate=yield_rate,
        last_updated=FIXED_NOW,
    )


def make_portfolio(*assets: Asset, portfolio_id: str = "pf-test") -> Portfolio:
    return Portfolio.from_assets(portfolio_id, "Test Portfolio", assets, as_of=FIXED_NOW)


def make_agent_config(agent_id: str = "agent-1", **overrides) -> AgentConfig:
    data = {"id": agent_id, "name": f"Test Agent {agent_id}"}
    data.update(overrides)
    return AgentConfig.model_validate(data)


def make_recommendation(
    priority: Priority = Priority.HIGH,
    rec_type: RecommendationType = RecommendationType.REDUCE_CONCENTRATION,
    items: Sequence[ActionItem] = (),
    risk_reduction: Optional[float] = None,
    yield_improvement: Optional[float] = None,
    title: str = "Test recommendation",
) -> Recommendation:
    return Recommendation(
        id=new_id("rec"),
        type=rec_type,
        priority=priority,
        title=title,
        action_items=tuple(items),
        impact=Impact(risk_reduction=risk_reduction, yield_improvement=yield_improvement),
    )


def sell_item(asset: Asset, percentage: float = 0.1, action: ActionKind = ActionKind.REDUCE) -> ActionItem:
    return ActionItem(action=action, asset=asset, percentage=percentage, rationale=f"Trim {asset.id}")


def make_decision(
    status: DecisionStatus = DecisionStatus.COMPLETED,
    confidence: float = 0.9,
    timestamp: datetime = FIXED_NOW,
    priority: Priority = Priority.HIGH,
    execution_details: Optional[ExecutionDetails] = None,
    yield_improvement: Optional[float] = None,
) -> Decision:
    recommendation = make_recommendation(priority=priority, yield_improvement=yield_improvement)
    return Decision(
        id=new_id("decision"),
        timestamp=timestamp,
        decision_type=DecisionType.RISK_MITIGATION,
        recommendation=recommendation,
        reasoning="test",
        confidence=confidence,
        risk_assessment="Low risk",
        expected_outcome=ExpectedOutcome(
            cost_estimate=0.0, timeframe="1-2 days", yield_improvement=yield_improvement,
        ),
        status=status,
        execution_details=execution_details,
    )


def make_execution_details(total_cost: float = 0.0, transaction_cost: float = 0.0,
                           execution_time_ms: float = 10.0) -> ExecutionDetails:
    return ExecutionDetails(
        trades=(),
        total_cost=total_cost,
        transaction_cost=transaction_cost,
        execution_time_ms=execution_time_ms,
        slippage=0.0,
        success=True,
    )


# ===== Collaborator stubs =====

class StaticMarketDataFeed:
    """Feed that returns fixed prices; set `fail = True` to simulate an outage"""

    def __init__(self, prices: Optional[dict] = None, volatility: Volatility = Volatility.MEDIUM,
                 clock=None):
        self.prices = dict(prices or {})
        self.volatility = volatility
        self.fail = False
        self.calls = 0
        self._clock = clock or (lambda: FIXED_NOW)

    def get_current(self) -> MarketData:
        self.calls += 1
        if self.fail:
            raise MarketDataUnavailable("static-feed", RuntimeError("feed down"))
        return MarketData(
            timestamp=self._clock(),
            prices=dict(self.prices),
            sentiment=MarketSentiment(volatility=self.volatility),
        )


class StaticAnalyzer:
    """Analyzer returning benign figures unless a field is overridden"""

    def __init__(self, **overrides):
        self.overrides = overrides

    def analyze(self, portfolio: Portfolio, market_data: Optional[MarketData] = None) -> PortfolioAnalysis:
        analysis = PortfolioAnalysis(
            portfolio=portfolio,
            value_at_risk=10_000.0,
            volatility=0.05,
            single_asset_max=0.10,
            sector_concentration={},
            liquidity_ratio=1.0,
            weighted_yield=0.05,
        )
        return replace(analysis, **self.overrides)


class StaticRecommendationSource:
    """Returns the same recommendations every cycle"""

    def __init__(self, recommendations: Iterable[Recommendation] = ()):
        self.recommendations: List[Recommendation] = list(recommendations)
        self.calls = 0

    def generate(self, analysis: PortfolioAnalysis) -> List[Recommendation]:
        self.calls += 1
        return list(self.recommendations)


def make_simulator(clock=None, failure_probability: float = 0.0, seed: int = 7,
                   metrics=None) -> TradeExecutionSimulator:
    """Simulator with no latency and (by default) no random failures"""
    return TradeExecutionSimulator(
        rng=random.Random(seed),
        failure_probability=failure_probability,
        execution_delay_seconds=0.0,
        clock=clock or (lambda: FIXED_NOW),
        sleep=lambda _: None,
        metrics=metrics,
    )


def make_pipeline(feed=None, analyzer=None, source=None, simulator=None, clock=None) -> DecisionPipeline:
    clock = clock or (lambda: FIXED_NOW)
    return DecisionPipeline(
        MarketDataCache(feed or StaticMarketDataFeed(clock=clock), freshness_seconds=60, clock=clock),
        analyzer or StaticAnalyzer(),
        source or StaticRecommendationSource(),
        TemplateReasoningGenerator(),
        simulator or make_simulator(clock),
    )
