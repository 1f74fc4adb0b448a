"""
Portfolio Agent: State Machine and Timer-Driven Cycle

One PortfolioAgent owns one portfolio. It runs the decision pipeline on a
dedicated daemon thread every `cycle_interval_seconds` and is the only writer
of its own state.

States: STOPPED (initial), ACTIVE, PAUSED, ERROR.
- start(): STOPPED/PAUSED/ERROR -> ACTIVE when the config is enabled
- pause(): ACTIVE -> PAUSED (timer keeps ticking, cycles are skipped)
- stop(): any -> STOPPED, cancels the timer
- unhandled cycle failure: ACTIVE -> ERROR (operator must start() again)

Concurrency:
- `_lock` (RLock) serializes cycles with every control call
- `_cycle_guard` (non-blocking Lock) makes an overlapping tick skip
- readers get frozen snapshots, never live references
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from core.audit_log import AuditLogger
from core.config import AgentConfig
from core.decision_pipeline import CycleResult, DecisionPipeline
from core.models import (
    Alert,
    AlertType,
    AgentPerformance,
    AgentStateSnapshot,
    AgentStatus,
    Decision,
    DecisionStatus,
    Portfolio,
    Recommendation,
)
from core.trade_limits import TradeLimits
from infra.alerting import AlertSeverity
from infra.metrics import CycleStats, MetricsRecorder

logger = logging.getLogger(__name__)

ALERT_LOG_CAP = 100
ALERT_LOG_KEEP = 50

_ALERT_LOG_LEVELS = {
    AlertSeverity.LOW: logging.INFO,
    AlertSeverity.MEDIUM: logging.WARNING,
    AlertSeverity.HIGH: logging.WARNING,
    AlertSeverity.CRITICAL: logging.ERROR,
}


class PortfolioAgent:
    """Autonomous decision-and-execution loop for one portfolio."""

    def __init__(self,
                 config: AgentConfig,
                 portfolio: Portfolio,
                 pipeline: DecisionPipeline,
                 clock: Optional[Callable[[], datetime]] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 audit: Optional[AuditLogger] = None):
        self._config = config
        self._pipeline = pipeline
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._metrics = metrics
        self._audit = audit
        self._trade_limits = TradeLimits(config.trading_limits)

        self._lock = threading.RLock()
        self._cycle_guard = threading.Lock()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

        self._status = AgentStatus.STOPPED
        self._portfolio = portfolio
        self._alerts: List[Alert] = []
        self._history: List[Decision] = []
        self._advisory: Tuple[Recommendation, ...] = ()
        self._total_decisions = 0
        self._last_decision: Optional[datetime] = None
        self._started_at: Optional[datetime] = None
        self._cycle_count = 0
        self._last_market_data_at: Optional[datetime] = None
        self._market_data_stale = False

        self._completed = 0
        self._failed = 0
        self._trades_submitted = 0
        self._trades_filled = 0
        self._decision_time_total_ms = 0.0
        self._timed_decisions = 0

        self._initial_value = portfolio.total_value
        self._peak_value = portfolio.total_value
        self._max_drawdown = 0.0

    # ===== Properties =====

    @property
    def id(self) -> str:
        return self._config.id

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def status(self) -> AgentStatus:
        return self._status

    # ===== Lifecycle =====

    def start(self) -> bool:
        with self._lock:
            if not self._config.enabled:
                self._add_alert(AlertSeverity.HIGH, AlertType.SYSTEM_ERROR,
                                "Cannot start agent: configuration disabled")
                return False

            if self._status == AgentStatus.ACTIVE:
                return True

            previous = self._status
            self._set_status(AgentStatus.ACTIVE)
            if self._started_at is None or previous in (AgentStatus.STOPPED, AgentStatus.ERROR):
                self._started_at = self._clock()
            self._add_alert(AlertSeverity.LOW, AlertType.SYSTEM_ERROR,
                            "Portfolio Agent started" if previous != AgentStatus.PAUSED
                            else "Portfolio Agent resumed")
            self._ensure_worker()
            return True

    def pause(self) -> bool:
        with self._lock:
            if self._status != AgentStatus.ACTIVE:
                return False
            self._set_status(AgentStatus.PAUSED)
            self._add_alert(AlertSeverity.LOW, AlertType.SYSTEM_ERROR, "Portfolio Agent paused")
            return True

    def stop(self) -> bool:
        with self._lock:
            # Event and worker are swapped together in _ensure_worker, under the same lock
            self._stop_event.set()
            worker = self._worker
            self._worker = None
            if self._status != AgentStatus.STOPPED:
                self._set_status(AgentStatus.STOPPED)
                self._add_alert(AlertSeverity.LOW, AlertType.SYSTEM_ERROR, "Portfolio Agent stopped")

        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=5.0)
        return True

    def _ensure_worker(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop_event = threading.Event()
        self._worker = threading.Thread(
            target=self._run_timer,
            args=(self._stop_event,),
            name=f"agent-{self.id}",
            daemon=True,
        )
        self._worker.start()

    def _run_timer(self, stop_event: threading.Event) -> None:
        logger.info(f"Agent {self.id}: cycle timer started ({self._config.cycle_interval_seconds:.0f}s)")
        while not stop_event.wait(self._config.cycle_interval_seconds):
            self.run_cycle()
        logger.info(f"Agent {self.id}: cycle timer stopped")

    # ===== Cycle =====

    def run_cycle(self) -> Optional[CycleResult]:
        """
        Run one decision cycle if the agent is ACTIVE.

        Returns None when skipped (not ACTIVE, or a cycle is already running).
        Any exception moves the agent to ERROR with a CRITICAL alert.
        """
        if not self._cycle_guard.acquire(blocking=False):
            logger.debug(f"Agent {self.id}: cycle already in progress, skipping tick")
            return None

        try:
            with self._lock:
                if self._status != AgentStatus.ACTIVE:
                    return None

                started = time.monotonic()
                now = self._clock()
                try:
                    result = self._pipeline.execute_cycle(
                        self._config,
                        self._portfolio,
                        self._trade_limits,
                        now,
                        drawdown=self._current_drawdown(),
                    )
                    self._commit(result, (time.monotonic() - started) * 1000)
                except Exception as e:
                    logger.error(f"Agent {self.id}: cycle failed: {e}", exc_info=True)
                    self._set_status(AgentStatus.ERROR)
                    self._add_alert(AlertSeverity.CRITICAL, AlertType.SYSTEM_ERROR, f"Execution cycle failed: {e}")
                    self._observe_cycle("error", None, time.monotonic() - started)
                    return None

                self._observe_cycle("ok", result, time.monotonic() - started)
                return result
        finally:
            self._cycle_guard.release()

    def _commit(self, result: CycleResult, elapsed_ms: float) -> None:
        self._cycle_count += 1
        self._portfolio = result.portfolio
        self._advisory = tuple(result.advisory)
        self._market_data_stale = result.market_data_stale
        if result.market_data is not None:
            self._last_market_data_at = result.market_data.timestamp

        for decision in result.decisions:
            self._record_decision(decision)

        if result.decisions:
            self._decision_time_total_ms += elapsed_ms
            self._timed_decisions += len(result.decisions)

        for alert in result.alerts:
            self._append_alert(alert)

        self._update_valuation()
        if self._metrics is not None:
            self._metrics.record_portfolio_value(self.id, self._portfolio.total_value)

    def _record_decision(self, decision: Decision) -> None:
        self._history.append(decision)
        self._total_decisions += 1
        self._last_decision = decision.timestamp

        if decision.status == DecisionStatus.COMPLETED:
            self._completed += 1
        elif decision.status == DecisionStatus.FAILED:
            self._failed += 1

        if decision.execution_details is not None:
            trades = decision.execution_details.trades
            self._trades_submitted += len(trades)
            self._trades_filled += sum(1 for t in trades if t.executed)

        if self._audit is not None:
            self._audit.log_decision(self.id, decision)
        if self._metrics is not None:
            self._metrics.record_decision(self.id, decision.status.value)

    def _update_valuation(self) -> None:
        value = self._portfolio.total_value
        self._peak_value = max(self._peak_value, value)
        self._max_drawdown = max(self._max_drawdown, self._current_drawdown())

    def _current_drawdown(self) -> float:
        if self._peak_value <= 0:
            return 0.0
        return max((self._peak_value - self._portfolio.total_value) / self._peak_value, 0.0)

    def _observe_cycle(self, status: str, result: Optional[CycleResult], duration: float) -> None:
        if self._metrics is None:
            return
        self._metrics.observe_cycle(CycleStats(
            agent_id=self.id,
            status=status,
            candidates=result.candidate_count if result else 0,
            decisions=len(result.decisions) if result else 0,
            executed=result.executed_count if result else 0,
            duration_seconds=duration,
        ))

    # ===== Alerts =====

    def _add_alert(self, severity: AlertSeverity, alert_type: AlertType, message: str) -> Alert:
        alert = Alert.create(severity, alert_type, message, timestamp=self._clock())
        self._append_alert(alert)
        return alert

    def _append_alert(self, alert: Alert) -> None:
        self._alerts.append(alert)
        if len(self._alerts) > ALERT_LOG_CAP:
            self._alerts = self._alerts[-ALERT_LOG_KEEP:]

        logger.log(
            _ALERT_LOG_LEVELS[alert.severity],
            f"Agent {self.id} alert [{alert.severity.name}/{alert.type.value}]: {alert.message}",
        )
        if self._metrics is not None:
            self._metrics.record_alert(alert.severity.name, alert.type.value)

    def acknowledge_alert(self, alert_id: str) -> bool:
        with self._lock:
            for idx, alert in enumerate(self._alerts):
                if alert.id == alert_id:
                    if not alert.acknowledged:
                        self._alerts[idx] = alert.acknowledge()
                    return True
            return False

    # ===== Config =====

    def update_config(self, **changes) -> AgentConfig:
        """Replace the config with a validated copy. Raises on invalid values."""
        with self._lock:
            updated = self._config.with_changes(**changes)
            if updated.id != self._config.id:
                raise ValueError("Agent id cannot be changed")
            self._config = updated
            self._trade_limits = self._trade_limits.with_limits(updated.trading_limits)
            logger.info(f"Agent {self.id}: config updated ({', '.join(sorted(changes))})")
            return updated

    # ===== Reads =====

    def get_state(self) -> AgentStateSnapshot:
        with self._lock:
            return AgentStateSnapshot(
                id=self.id,
                status=self._status,
                last_decision=self._last_decision,
                total_decisions=self._total_decisions,
                success_rate=self._success_rate(),
                portfolio=self._portfolio,
                alerts=tuple(self._alerts),
                performance=self._performance(),
                advisory_recommendations=self._advisory,
                started_at=self._started_at,
                cycle_count=self._cycle_count,
                last_market_data_at=self._last_market_data_at,
                market_data_stale=self._market_data_stale,
            )

    def get_decision_history(self) -> Tuple[Decision, ...]:
        with self._lock:
            return tuple(self._history)

    def _success_rate(self) -> float:
        executed = self._completed + self._failed
        if executed == 0:
            return 1.0
        return self._completed / executed

    def _performance(self) -> AgentPerformance:
        total_return = 0.0
        if self._initial_value > 0:
            total_return = self._portfolio.total_value / self._initial_value - 1
        return AgentPerformance(
            total_return=total_return,
            max_drawdown=self._max_drawdown,
            win_rate=self._trades_filled / self._trades_submitted if self._trades_submitted else 0.0,
            avg_decision_time_ms=(
                self._decision_time_total_ms / self._timed_decisions if self._timed_decisions else 0.0
            ),
        )

    def _set_status(self, status: AgentStatus) -> None:
        if status != self._status:
            logger.info(f"Agent {self.id}: {self._status.value} -> {status.value}")
        self._status = status
        if self._metrics is not None:
            self._metrics.record_agent_status(self.id, status.value)
