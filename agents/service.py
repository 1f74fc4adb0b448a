"""
Portfolio Agent: Service Facade

Single entry point for callers outside the agent package (runner, operators,
tests). Owns the AgentMonitor and builds one DecisionPipeline per agent from
shared collaborators: market-data cache, execution simulator, analyzer and
reasoning generator.

Unknown agent ids never raise here: reads return None, control returns False.
"""

import logging
import random
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

from agents.portfolio_agent import PortfolioAgent
from agents.supervisor import AgentMonitor, SystemStatus
from core.analysis import BasicPortfolioAnalyzer
from core.audit_log import AuditLogger
from core.config import AgentConfig, AppConfig, MonitoringConfig
from core.decision_pipeline import CycleResult, DecisionPipeline
from core.exceptions import AgentNotFoundError
from core.execution import TradeExecutionSimulator
from core.market_data import MarketDataCache, SimulatedMarketDataFeed
from core.models import AgentStateSnapshot, Decision, OverrideAction, Portfolio
from core.reasoning import TemplateReasoningGenerator
from core.recommendations import RuleBasedRecommendationSource
from infra.alerting import NotificationService, NotificationSink
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[AgentConfig, Portfolio], DecisionPipeline]


class AgentService:
    """Create, inspect and control portfolio agents."""

    def __init__(self,
                 monitor: AgentMonitor,
                 pipeline_factory: PipelineFactory,
                 clock: Optional[Callable[[], datetime]] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 audit: Optional[AuditLogger] = None):
        self.monitor = monitor
        self._pipeline_factory = pipeline_factory
        self._clock = clock
        self._metrics = metrics
        self._audit = audit

    @property
    def metrics(self) -> Optional[MetricsRecorder]:
        return self._metrics

    @classmethod
    def from_config(cls,
                    app_config: AppConfig,
                    monitoring_config: MonitoringConfig,
                    notifier: Optional[NotificationSink] = None,
                    clock: Optional[Callable[[], datetime]] = None) -> "AgentService":
        """Wire the default simulated stack from validated configuration."""
        metrics = MetricsRecorder(enabled=app_config.metrics.enabled, port=app_config.metrics.port)
        audit = AuditLogger(app_config.audit_log_file) if app_config.audit_log_file else None
        if notifier is None:
            notifier = NotificationService.from_config(app_config.notifications.model_dump())

        feed = SimulatedMarketDataFeed(rng=random.Random(app_config.market_data.seed), clock=clock)
        cache = MarketDataCache(feed, freshness_seconds=app_config.market_data.freshness_seconds, clock=clock)
        simulator = TradeExecutionSimulator(
            rng=random.Random(app_config.simulator.seed),
            failure_probability=app_config.simulator.failure_probability,
            execution_delay_seconds=app_config.simulator.execution_delay_seconds,
            max_order_history=app_config.simulator.max_order_history,
            clock=clock,
            metrics=metrics,
        )
        analyzer = BasicPortfolioAnalyzer()
        reasoning = TemplateReasoningGenerator()

        def build_pipeline(config: AgentConfig, portfolio: Portfolio) -> DecisionPipeline:
            feed.track(portfolio)
            source = RuleBasedRecommendationSource(
                max_single_asset_weight=config.risk_limits.max_single_asset_weight,
            )
            return DecisionPipeline(cache, analyzer, source, reasoning, simulator)

        monitor = AgentMonitor(monitoring_config, notifier, clock=clock, metrics=metrics, audit=audit)
        return cls(monitor, build_pipeline, clock=clock, metrics=metrics, audit=audit)

    # ===== Agents =====

    def create(self, config: AgentConfig, portfolio: Portfolio) -> PortfolioAgent:
        """Build and register an agent. It starts STOPPED."""
        if self.monitor.get_agent(config.id) is not None:
            raise ValueError(f"Agent {config.id} already exists")

        agent = PortfolioAgent(
            config,
            portfolio,
            self._pipeline_factory(config, portfolio),
            clock=self._clock,
            metrics=self._metrics,
            audit=self._audit,
        )
        self.monitor.register_agent(agent)
        logger.info(
            f"Created agent {config.id} ({config.autonomy_level.value}) "
            f"for portfolio {portfolio.id} valued at {portfolio.total_value:,.0f}"
        )
        return agent

    def remove(self, agent_id: str) -> bool:
        agent = self.monitor.get_agent(agent_id)
        if agent is None:
            return False
        agent.stop()
        return self.monitor.unregister_agent(agent_id)

    def require_agent(self, agent_id: str) -> PortfolioAgent:
        agent = self.monitor.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def agent_ids(self) -> List[str]:
        return [agent.id for agent in self.monitor.agents()]

    # ===== Reads =====

    def get_state(self, agent_id: str) -> Optional[AgentStateSnapshot]:
        agent = self.monitor.get_agent(agent_id)
        return agent.get_state() if agent is not None else None

    def get_decision_history(self, agent_id: str) -> Optional[Tuple[Decision, ...]]:
        agent = self.monitor.get_agent(agent_id)
        return agent.get_decision_history() if agent is not None else None

    def system_status(self) -> SystemStatus:
        return self.monitor.get_system_status()

    # ===== Control =====

    def control(self, agent_id: str, action: Union[OverrideAction, str]) -> bool:
        return self.monitor.override_agent(agent_id, action)

    def acknowledge_alert(self, agent_id: str, alert_id: str) -> bool:
        return self.monitor.acknowledge_alert(agent_id, alert_id)

    def update_config(self, agent_id: str, **changes) -> Optional[AgentConfig]:
        agent = self.monitor.get_agent(agent_id)
        if agent is None:
            return None
        return agent.update_config(**changes)

    def emergency_shutdown(self, reason: str) -> bool:
        return self.monitor.emergency_shutdown(reason)

    def start_all(self) -> int:
        """Start every agent and the monitor sweep; returns agents started."""
        started = sum(1 for agent in self.monitor.agents() if self.control(agent.id, OverrideAction.START))
        self.monitor.start_monitoring()
        return started

    def stop_all(self) -> None:
        self.monitor.stop_monitoring()
        for agent in self.monitor.agents():
            agent.stop()

    def run_once(self) -> List[CycleResult]:
        """One synchronous cycle per agent followed by one monitor sweep."""
        results = []
        for agent in self.monitor.agents():
            result = agent.run_cycle()
            if result is not None:
                results.append(result)
        self.monitor.run_sweep()
        return results
