"""
Decision Pipeline - Per-Cycle Core Logic

Implements one agent cycle:
1. Fetch market data (last-known-good on failure)
2. Re-price the portfolio
3. Analyze and request recommendations (CRITICAL/HIGH become candidates)
4. Build a Decision for every candidate
5. Autonomy policy + eligibility gate, then execute approved decisions
6. Hand finalized decisions back to the agent for recording
7. Risk-limit checks, including the emergency hedge on a VaR breach

The pipeline holds no agent state. It receives the agent's config and
portfolio and returns a CycleResult that the agent commits under its lock.
Exceptions propagate to the agent, which moves to ERROR.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from core.analysis import PortfolioAnalysis, PortfolioAnalyzer
from core.config import AgentConfig
from core.execution import TradeExecutionSimulator
from core.market_data import MarketDataCache
from core.models import (
    ActionItem,
    ActionKind,
    Alert,
    AlertType,
    AutonomyLevel,
    Decision,
    DecisionStatus,
    DecisionType,
    ExecutionDetails,
    ExpectedOutcome,
    Impact,
    MarketData,
    OrderType,
    Portfolio,
    Priority,
    Recommendation,
    RecommendationType,
    TradeAction,
    TradeExecution,
    TradeOrder,
    new_id,
)
from core.reasoning import ReasoningGenerator
from core.recommendations import RecommendationSource
from core.risk import RiskEngine
from core.trade_limits import TradeLimits
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = {
    Priority.CRITICAL: 0.9,
    Priority.HIGH: 0.8,
    Priority.MEDIUM: 0.7,
    Priority.LOW: 0.6,
}

DECISION_TYPES = {
    RecommendationType.REBALANCE: DecisionType.AUTO_REBALANCE,
    RecommendationType.CREDIT_RISK_MITIGATION: DecisionType.RISK_MITIGATION,
    RecommendationType.REDUCE_CONCENTRATION: DecisionType.RISK_MITIGATION,
    RecommendationType.YIELD_ENHANCEMENT: DecisionType.YIELD_OPTIMIZATION,
    RecommendationType.HEDGE: DecisionType.EMERGENCY_HEDGE,
}

CANDIDATE_PRIORITIES = (Priority.CRITICAL, Priority.HIGH)
EMERGENCY_HEDGE_FRACTION = 0.30


# ===== Decision building blocks =====

def calculate_confidence(recommendation: Recommendation) -> float:
    confidence = BASE_CONFIDENCE.get(recommendation.priority, 0.7)
    risk_reduction = recommendation.impact.risk_reduction
    if risk_reduction is not None and risk_reduction > 0.2:
        confidence += 0.1
    return min(max(confidence, 0.0), 1.0)


def map_decision_type(recommendation_type: RecommendationType) -> DecisionType:
    return DECISION_TYPES.get(recommendation_type, DecisionType.OPPORTUNISTIC_TRADE)


def should_auto_execute(decision: Decision, config: AgentConfig) -> bool:
    """
    Autonomy policy. First match wins.

    - ADVISORY_ONLY, simulation mode or confirmation required: never
    - confidence < 0.7: never
    - emergency hedge, or CRITICAL with confidence > 0.8: FULL_AUTO only
    - HIGH with confidence > 0.85: FULL_AUTO only
    - otherwise: FULL_AUTO, priority not LOW and confidence > 0.9
    """
    settings = config.execution_settings
    full_auto = config.autonomy_level == AutonomyLevel.FULL_AUTO
    priority = decision.recommendation.priority

    if config.autonomy_level == AutonomyLevel.ADVISORY_ONLY or settings.simulation_mode:
        return False
    if settings.require_confirmation:
        return False
    if decision.confidence < 0.7:
        return False
    if decision.decision_type == DecisionType.EMERGENCY_HEDGE or (
        priority == Priority.CRITICAL and decision.confidence > 0.8
    ):
        return full_auto
    if priority == Priority.HIGH and decision.confidence > 0.85:
        return full_auto
    return full_auto and priority != Priority.LOW and decision.confidence > 0.9


def assess_decision_risk(recommendation: Recommendation, portfolio_value: float) -> str:
    factors = []
    estimated_cost = recommendation.impact.estimated_cost
    if estimated_cost and estimated_cost > portfolio_value * 0.02:
        factors.append("High transaction costs")
    if recommendation.type in (RecommendationType.SELL, RecommendationType.REDUCE_CONCENTRATION):
        factors.append("Liquidity risk")
    if recommendation.priority == Priority.LOW:
        factors.append("Low priority action")
    return ", ".join(factors) if factors else "Low risk"


def calculate_expected_outcome(recommendation: Recommendation, portfolio_value: float) -> ExpectedOutcome:
    impact = recommendation.impact
    return ExpectedOutcome(
        risk_reduction=impact.risk_reduction,
        yield_improvement=impact.yield_improvement,
        liquidity_improvement=impact.diversification_improvement,
        cost_estimate=impact.estimated_cost if impact.estimated_cost else portfolio_value * 0.001,
        timeframe=impact.timeframe or "1-2 days",
    )


def build_emergency_hedge(portfolio: Portfolio) -> Recommendation:
    """CRITICAL hedge: a 30% overlay plus a 30% cut of the largest position."""
    items = [
        ActionItem(
            action=ActionKind.HEDGE,
            percentage=EMERGENCY_HEDGE_FRACTION,
            rationale="Emergency hedge overlay to reduce portfolio risk exposure",
        )
    ]
    largest = portfolio.largest_position()
    if largest is not None:
        items.append(
            ActionItem(
                action=ActionKind.REDUCE,
                asset=largest,
                percentage=EMERGENCY_HEDGE_FRACTION,
                rationale=f"Cut largest position {largest.name} ({largest.weight:.1%}) by 30%",
            )
        )

    return Recommendation(
        id=new_id("emergency"),
        type=RecommendationType.HEDGE,
        priority=Priority.CRITICAL,
        title="Emergency Risk Hedging",
        description="Automated emergency response to risk limit breach",
        reasoning="VaR exceeded maximum threshold, implementing immediate hedging strategy",
        action_items=tuple(items),
        impact=Impact(risk_reduction=0.50, timeframe="immediate"),
    )


def build_orders(recommendation: Recommendation, config: AgentConfig) -> List[TradeOrder]:
    """One order per action item that names a concrete asset."""
    settings = config.execution_settings
    orders = []
    for item in recommendation.action_items:
        if item.asset is None:
            continue
        action = item.trade_action
        limit_price = None
        if settings.order_type == OrderType.LIMIT:
            direction = 1 if action == TradeAction.BUY else -1
            limit_price = round(item.asset.current_price * (1 + direction * settings.slippage_tolerance), 4)
        orders.append(
            TradeOrder(
                asset=item.asset,
                action=action,
                quantity=item.trade_quantity(),
                order_type=settings.order_type,
                slippage_tolerance=settings.slippage_tolerance,
                limit_price=limit_price,
            )
        )
    return orders


def summarize_executions(trades: List[TradeExecution], elapsed_ms: float) -> ExecutionDetails:
    errors = []
    for trade in trades:
        if trade.executed:
            continue
        reason = "; ".join(trade.errors) if trade.errors else trade.status.value
        errors.append(f"Failed to execute trade for {trade.asset.name}: {reason}")

    return ExecutionDetails(
        trades=tuple(trades),
        total_cost=sum(t.notional for t in trades),
        transaction_cost=sum(t.transaction_cost for t in trades),
        execution_time_ms=elapsed_ms,
        slippage=sum(t.slippage for t in trades) / len(trades) if trades else 0.0,
        success=not errors,
        errors=tuple(errors),
    )


# ===== Pipeline =====

@dataclass
class CycleResult:
    """Result of one decision cycle, committed by the owning agent"""
    portfolio: Portfolio
    analysis: Optional[PortfolioAnalysis]
    market_data: Optional[MarketData]
    market_data_stale: bool = False
    decisions: List[Decision] = field(default_factory=list)
    advisory: List[Recommendation] = field(default_factory=list)
    alerts: List[Alert] = field(default_factory=list)
    executions: List[TradeExecution] = field(default_factory=list)
    hedge_triggered: bool = False

    @property
    def candidate_count(self) -> int:
        return len(self.decisions)

    @property
    def executed_count(self) -> int:
        return sum(1 for d in self.decisions if d.status in (DecisionStatus.COMPLETED, DecisionStatus.FAILED))


class DecisionPipeline:
    """
    Reusable per-agent decision cycle.

    Collaborators are injected so tests can pin market data, analysis,
    recommendations and fills.
    """

    def __init__(self,
                 market_data: MarketDataCache,
                 analyzer: PortfolioAnalyzer,
                 recommendation_source: RecommendationSource,
                 reasoning: ReasoningGenerator,
                 simulator: TradeExecutionSimulator):
        self.market_data = market_data
        self.analyzer = analyzer
        self.recommendation_source = recommendation_source
        self.reasoning = reasoning
        self.simulator = simulator

    def execute_cycle(self,
                      config: AgentConfig,
                      portfolio: Portfolio,
                      trade_limits: TradeLimits,
                      current_time: datetime,
                      drawdown: float = 0.0) -> CycleResult:
        now = current_time

        # Step 1: market data
        snapshot = self.market_data.get()
        alerts: List[Alert] = []
        if snapshot.error:
            fallback = "serving last-known-good snapshot" if snapshot.available else "no snapshot available"
            alerts.append(Alert.create(
                AlertSeverity.HIGH if not snapshot.available else AlertSeverity.MEDIUM,
                AlertType.DATA_QUALITY_ISSUE,
                f"Market data fetch failed ({snapshot.error}); {fallback}",
                timestamp=now,
            ))
        market_data = snapshot.data

        # Step 2: re-price
        if market_data is not None:
            portfolio = portfolio.reprice(market_data.prices, as_of=now)

        result = CycleResult(
            portfolio=portfolio,
            analysis=None,
            market_data=market_data,
            market_data_stale=snapshot.stale,
            alerts=alerts,
        )

        # Step 3: analysis and recommendations
        analysis = self.analyzer.analyze(portfolio, market_data)
        result.analysis = analysis
        recommendations = self.recommendation_source.generate(analysis)
        candidates = [r for r in recommendations if r.priority in CANDIDATE_PRIORITIES]
        result.advisory = [r for r in recommendations if r.priority not in CANDIDATE_PRIORITIES]
        logger.debug(
            f"Agent {config.id}: {len(candidates)} candidate(s), {len(result.advisory)} advisory"
        )

        # Steps 4-5: decide and execute
        for recommendation in candidates:
            self._decide(recommendation, config, trade_limits, result, now, gated=True)

        # Step 7: risk limits against the freshly priced portfolio
        risk = RiskEngine(config.risk_limits).check_portfolio(analysis, drawdown=drawdown)
        for breach in risk.breaches:
            result.alerts.append(Alert.create(breach.severity, breach.alert_type, breach.message, timestamp=now))

        if risk.var_breached and config.autonomy_level == AutonomyLevel.FULL_AUTO:
            result.hedge_triggered = True
            result.alerts.append(Alert.create(
                AlertSeverity.HIGH, AlertType.RISK_LIMIT_BREACH, "Initiating emergency hedging", timestamp=now,
            ))
            logger.warning(f"Agent {config.id}: VaR breach, initiating emergency hedge")
            hedge = build_emergency_hedge(result.portfolio)
            self._decide(hedge, config, trade_limits, result, now, gated=False)

        return result

    def _decide(self, recommendation: Recommendation, config: AgentConfig, trade_limits: TradeLimits,
                result: CycleResult, now: datetime, gated: bool) -> Decision:
        portfolio = result.portfolio
        decision = self.build_decision(recommendation, portfolio, result.market_data, now)

        if should_auto_execute(decision, config):
            # Emergency hedges skip the eligibility gate; their fills still count against the ledger
            gate = trade_limits.check_all(recommendation, result.market_data, now) if gated else None
            if gate is not None and not gate.approved:
                decision = decision.with_status(DecisionStatus.REJECTED, rejection_reason=gate.reason)
            else:
                decision, trades = self._execute(decision.with_status(DecisionStatus.APPROVED), config)
                result.executions.extend(trades)
                trade_limits.record_trades(trades, now)
                result.portfolio = result.portfolio.apply_fills(trades, as_of=now)
                if decision.status == DecisionStatus.FAILED:
                    result.alerts.append(Alert.create(
                        AlertSeverity.HIGH,
                        AlertType.EXECUTION_FAILURE,
                        f"Decision {decision.id} failed: " + "; ".join(decision.execution_details.errors),
                        timestamp=now,
                    ))

        logger.info(
            f"Decision {decision.id} [{decision.decision_type.value}] {recommendation.title}: "
            f"{decision.status.value} (confidence={decision.confidence:.2f})"
            + (f" - {decision.rejection_reason}" if decision.rejection_reason else "")
        )
        result.decisions.append(decision)
        return decision

    def build_decision(self, recommendation: Recommendation, portfolio: Portfolio,
                       market_data: Optional[MarketData], now: datetime) -> Decision:
        return Decision(
            id=new_id("decision"),
            timestamp=now,
            decision_type=map_decision_type(recommendation.type),
            recommendation=recommendation,
            reasoning=self.reasoning.generate_reasoning(recommendation, portfolio, market_data),
            confidence=calculate_confidence(recommendation),
            risk_assessment=assess_decision_risk(recommendation, portfolio.total_value),
            expected_outcome=calculate_expected_outcome(recommendation, portfolio.total_value),
        )

    def _execute(self, decision: Decision, config: AgentConfig) -> Tuple[Decision, List[TradeExecution]]:
        started = time.monotonic()
        decision = decision.with_status(DecisionStatus.EXECUTING)
        trades = self.simulator.execute_batch(build_orders(decision.recommendation, config))
        details = summarize_executions(trades, (time.monotonic() - started) * 1000)
        status = DecisionStatus.COMPLETED if details.success else DecisionStatus.FAILED
        return decision.with_status(status, execution_details=details), trades
