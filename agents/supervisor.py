"""
Portfolio Agent: Supervisor

AgentMonitor owns the agent registry and runs an independent sweep thread
that reads agent snapshots, raises findings, auto-pauses misbehaving agents
and fires the system-wide emergency shutdown when a trigger is breached.

The monitor never touches agent internals: it reads `get_state()` /
`get_decision_history()` snapshots and calls the public control surface.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Union

from agents.portfolio_agent import PortfolioAgent
from core.audit_log import AuditLogger
from core.config import MonitoringConfig
from core.models import (
    AgentPerformance,
    AgentStateSnapshot,
    AgentStatus,
    Alert,
    Decision,
    DecisionStatus,
    OverrideAction,
    Priority,
)
from infra.alerting import AlertSeverity, NotificationSink
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

RECENT_DECISION_WINDOW = 5


# ===== Pure metrics over decision history =====

def count_consecutive_failures(decisions: Sequence[Decision], window: int = RECENT_DECISION_WINDOW) -> int:
    """Trailing FAILED decisions within the most recent `window`."""
    count = 0
    for decision in reversed(list(decisions)[-window:]):
        if decision.status != DecisionStatus.FAILED:
            break
        count += 1
    return count


def calculate_daily_loss(decisions: Sequence[Decision], day: date) -> float:
    """
    Realized cost of today's COMPLETED decisions net of expected yield.

    Per decision: max(0, transaction cost - yield improvement x traded notional).
    """
    loss = 0.0
    for decision in decisions:
        details = decision.execution_details
        if decision.status != DecisionStatus.COMPLETED or details is None:
            continue
        if decision.timestamp.astimezone(timezone.utc).date() != day:
            continue
        expected = (decision.expected_outcome.yield_improvement or 0.0) * details.total_cost
        loss += max(0.0, details.transaction_cost - expected)
    return loss


# ===== Reports =====

@dataclass
class SweepReport:
    """What one sweep observed and did"""
    findings: List[str] = field(default_factory=list)
    paused: List[str] = field(default_factory=list)
    shutdown_reason: Optional[str] = None


@dataclass
class AgentSummary:
    id: str
    status: AgentStatus
    last_decision: Optional[datetime]
    total_decisions: int
    success_rate: float
    alert_count: int
    performance: AgentPerformance


@dataclass
class SystemStatus:
    monitoring_active: bool
    emergency_shutdown_active: bool
    shutdown_reason: Optional[str]
    agent_count: int
    agents: List[AgentSummary]
    system_health: str


@dataclass
class DecisionRiskMetrics:
    total_decisions: int = 0
    average_confidence: float = 0.0
    priority_distribution: Dict[str, int] = field(
        default_factory=lambda: {p.value: 0 for p in Priority}
    )
    average_execution_time_ms: float = 0.0


@dataclass
class AgentPerformanceReport:
    performance: AgentPerformance
    recent_decisions: List[Decision]
    risk_metrics: DecisionRiskMetrics
    unacknowledged_alerts: List[Alert]


def calculate_system_health(summaries: Sequence[AgentSummary]) -> str:
    if not summaries:
        return "CRITICAL"

    active = sum(1 for s in summaries if s.status == AgentStatus.ACTIVE)
    errored = sum(1 for s in summaries if s.status == AgentStatus.ERROR)
    avg_success = sum(s.success_rate for s in summaries) / len(summaries)

    if errored > 0 or avg_success < 0.7:
        return "CRITICAL"
    if active < len(summaries) * 0.8 or avg_success < 0.85:
        return "WARNING"
    return "HEALTHY"


def calculate_decision_risk_metrics(decisions: Sequence[Decision]) -> DecisionRiskMetrics:
    completed = [d for d in decisions if d.status == DecisionStatus.COMPLETED]
    metrics = DecisionRiskMetrics()
    if not completed:
        return metrics

    metrics.total_decisions = len(completed)
    metrics.average_confidence = sum(d.confidence for d in completed) / len(completed)
    for decision in completed:
        metrics.priority_distribution[decision.recommendation.priority.value] += 1
    metrics.average_execution_time_ms = sum(
        d.execution_details.execution_time_ms for d in completed if d.execution_details
    ) / len(completed)
    return metrics


# ===== Monitor =====

class AgentMonitor:
    """
    Registry, periodic sweep and emergency shutdown for all agents.

    Concurrency:
    - `_registry_lock` guards the agent map
    - `_shutdown_lock` guards the one-shot emergency shutdown flag
    - the sweep runs on its own daemon thread every `check_interval_seconds`
    """

    def __init__(self,
                 config: MonitoringConfig,
                 notifier: NotificationSink,
                 clock: Optional[Callable[[], datetime]] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 audit: Optional[AuditLogger] = None):
        self.config = config
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._metrics = metrics
        self._audit = audit

        self._agents: Dict[str, PortfolioAgent] = {}
        self._registry_lock = threading.Lock()

        self._shutdown_lock = threading.Lock()
        self._shutdown_active = False
        self._shutdown_reason: Optional[str] = None

        self._sweep_stop = threading.Event()
        self._sweep_thread: Optional[threading.Thread] = None

    # ===== Registry =====

    def register_agent(self, agent: PortfolioAgent) -> None:
        with self._registry_lock:
            self._agents[agent.id] = agent
        logger.info(f"Agent {agent.id} registered for monitoring")

    def unregister_agent(self, agent_id: str) -> bool:
        with self._registry_lock:
            removed = self._agents.pop(agent_id, None)
        if removed is not None:
            logger.info(f"Agent {agent_id} unregistered from monitoring")
        return removed is not None

    def get_agent(self, agent_id: str) -> Optional[PortfolioAgent]:
        with self._registry_lock:
            return self._agents.get(agent_id)

    def agents(self) -> List[PortfolioAgent]:
        with self._registry_lock:
            return list(self._agents.values())

    @property
    def shutdown_active(self) -> bool:
        return self._shutdown_active

    # ===== Sweep thread =====

    def start_monitoring(self) -> bool:
        if self._shutdown_active:
            logger.warning("Refusing to start monitoring after emergency shutdown")
            return False
        if self._sweep_thread is not None and self._sweep_thread.is_alive():
            return True

        self._sweep_stop = threading.Event()
        self._sweep_thread = threading.Thread(
            target=self._run_sweeps,
            args=(self._sweep_stop,),
            name="agent-monitor",
            daemon=True,
        )
        self._sweep_thread.start()
        logger.info(f"Agent monitoring started (every {self.config.check_interval_seconds:.0f}s)")
        return True

    def stop_monitoring(self) -> None:
        self._sweep_stop.set()
        thread = self._sweep_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        logger.info("Agent monitoring stopped")

    @property
    def monitoring_active(self) -> bool:
        thread = self._sweep_thread
        return thread is not None and thread.is_alive() and not self._sweep_stop.is_set()

    def _run_sweeps(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.config.check_interval_seconds):
            self.run_sweep()

    def run_sweep(self) -> SweepReport:
        """Evaluate every registered agent once."""
        report = SweepReport()
        if self._shutdown_active:
            return report

        for agent in self.agents():
            try:
                self._monitor_agent(agent, report)
            except Exception as e:
                logger.error(f"Error monitoring agent {agent.id}: {e}", exc_info=True)
            if report.shutdown_reason is not None:
                break
        return report

    def _monitor_agent(self, agent: PortfolioAgent, report: SweepReport) -> None:
        state = agent.get_state()
        decisions = agent.get_decision_history()

        self._check_performance(agent, state, decisions, report)
        self._check_risk(agent, state, report)
        self._check_health(state, report)
        self._check_shutdown_triggers(state, decisions, report)

    def _check_performance(self, agent: PortfolioAgent, state: AgentStateSnapshot,
                           decisions: Sequence[Decision], report: SweepReport) -> None:
        thresholds = self.config.alert_thresholds

        if state.success_rate < thresholds.min_success_rate:
            self._finding(report, logging.WARNING, f"Agent {state.id}: Low success rate {state.success_rate:.1%}")

        failures = count_consecutive_failures(decisions)
        if failures >= thresholds.max_consecutive_failures:
            self._finding(report, logging.WARNING,
                          f"Agent {state.id}: {failures} consecutive failures detected")
            self._auto_pause(agent, "consecutive_failures", report)

        if state.performance.max_drawdown > thresholds.max_drawdown:
            self._finding(report, logging.WARNING,
                          f"Agent {state.id}: Excessive drawdown {state.performance.max_drawdown:.1%}")

    def _check_risk(self, agent: PortfolioAgent, state: AgentStateSnapshot, report: SweepReport) -> None:
        critical = state.unacknowledged_alerts(AlertSeverity.CRITICAL)
        if not critical:
            return

        self._finding(report, logging.ERROR,
                      f"Agent {state.id}: {len(critical)} unacknowledged critical alerts")
        if len(critical) >= self.config.alert_thresholds.critical_alert_pause_count:
            self._auto_pause(agent, "critical_alerts", report)

    def _check_health(self, state: AgentStateSnapshot, report: SweepReport) -> None:
        if state.status == AgentStatus.ACTIVE:
            reference = state.last_decision or state.started_at
            if reference is not None:
                idle = self._clock() - reference
                if idle > timedelta(minutes=self.config.alert_thresholds.stale_activity_minutes):
                    self._finding(report, logging.WARNING,
                                  f"Agent {state.id}: No activity for {idle.total_seconds() / 60:.0f} minutes")

        if state.status == AgentStatus.ERROR:
            self._finding(report, logging.ERROR, f"Agent {state.id}: In error state")

    def _check_shutdown_triggers(self, state: AgentStateSnapshot, decisions: Sequence[Decision],
                                 report: SweepReport) -> None:
        for trigger in self.config.shutdown_triggers:
            if trigger.condition == "daily_loss":
                value = calculate_daily_loss(decisions, self._clock().astimezone(timezone.utc).date())
            elif trigger.condition == "max_drawdown":
                value = state.performance.max_drawdown
            else:
                value = state.success_rate

            if trigger.is_breached(value):
                reason = (
                    f"{trigger.description or trigger.condition}: {value:.4f} "
                    f"(threshold: {trigger.threshold}) on agent {state.id}"
                )
                report.shutdown_reason = reason
                self.emergency_shutdown(reason)
                return

    def _auto_pause(self, agent: PortfolioAgent, reason: str, report: SweepReport) -> None:
        if agent.pause():
            report.paused.append(agent.id)
            logger.warning(f"Agent {agent.id} auto-paused ({reason})")
            if self._metrics is not None:
                self._metrics.record_auto_pause(reason)

    @staticmethod
    def _finding(report: SweepReport, level: int, message: str) -> None:
        report.findings.append(message)
        logger.log(level, message)

    # ===== Emergency shutdown =====

    def emergency_shutdown(self, reason: str) -> bool:
        """
        Stop every agent, notify contacts and halt the sweep. Runs at most once.

        Returns False if a shutdown already ran or is in progress.
        """
        with self._shutdown_lock:
            if self._shutdown_active:
                return False
            self._shutdown_active = True
            self._shutdown_reason = reason

        logger.error("=" * 80)
        logger.error(f"🚨 EMERGENCY SHUTDOWN INITIATED: {reason}")
        logger.error("=" * 80)

        stopped: List[str] = []
        failed: List[str] = []
        for agent in self.agents():
            try:
                agent.stop()
                stopped.append(agent.id)
                logger.info(f"Agent {agent.id} stopped")
            except Exception as e:
                failed.append(agent.id)
                logger.error(f"Failed to stop agent {agent.id}: {e}", exc_info=True)

        self._send_emergency_notification(reason)

        if self._audit is not None:
            self._audit.log_shutdown(self._clock(), reason, stopped, failed)
        if self._metrics is not None:
            self._metrics.record_emergency_shutdown()

        self.stop_monitoring()
        return True

    def _send_emergency_notification(self, reason: str) -> None:
        message = (
            "EMERGENCY SHUTDOWN: Portfolio Agent System\n"
            f"Reason: {reason}\n"
            f"Time: {self._clock().isoformat()}"
        )
        for contact in self.config.emergency_contacts:
            try:
                self._notifier.notify(contact, message)
            except Exception as e:
                logger.error(f"Failed to notify {contact}: {e}")

    # ===== Overrides =====

    def override_agent(self, agent_id: str, action: Union[OverrideAction, str]) -> bool:
        agent = self.get_agent(agent_id)
        if agent is None:
            return False

        try:
            action = OverrideAction(action)
        except ValueError:
            logger.warning(f"Unknown override action {action!r} for agent {agent_id}")
            return False

        if action in (OverrideAction.RESUME, OverrideAction.START) and self._shutdown_active:
            logger.warning(f"Refusing {action.value} for agent {agent_id}: emergency shutdown active")
            return False

        try:
            if action == OverrideAction.PAUSE:
                ok = agent.pause()
            elif action == OverrideAction.STOP:
                ok = agent.stop()
            else:
                ok = agent.start()
        except Exception as e:
            logger.error(f"Failed to {action.value} agent {agent_id}: {e}", exc_info=True)
            return False

        logger.info(f"Agent {agent_id} {action.value} override {'executed' if ok else 'refused'}")
        return ok

    def acknowledge_alert(self, agent_id: str, alert_id: str) -> bool:
        agent = self.get_agent(agent_id)
        if agent is None:
            return False
        return agent.acknowledge_alert(alert_id)

    # ===== Status =====

    def get_system_status(self) -> SystemStatus:
        summaries = []
        for agent in self.agents():
            state = agent.get_state()
            summaries.append(AgentSummary(
                id=state.id,
                status=state.status,
                last_decision=state.last_decision,
                total_decisions=state.total_decisions,
                success_rate=state.success_rate,
                alert_count=len(state.alerts),
                performance=state.performance,
            ))

        return SystemStatus(
            monitoring_active=self.monitoring_active,
            emergency_shutdown_active=self._shutdown_active,
            shutdown_reason=self._shutdown_reason,
            agent_count=len(summaries),
            agents=summaries,
            system_health=calculate_system_health(summaries),
        )

    def get_agent_performance(self, agent_id: str) -> Optional[AgentPerformanceReport]:
        agent = self.get_agent(agent_id)
        if agent is None:
            return None

        state = agent.get_state()
        decisions = agent.get_decision_history()
        return AgentPerformanceReport(
            performance=state.performance,
            recent_decisions=list(decisions[-10:]),
            risk_metrics=calculate_decision_risk_metrics(decisions),
            unacknowledged_alerts=state.unacknowledged_alerts(),
        )
