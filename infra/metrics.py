"""Prometheus-backed metrics hooks for agent cycles, decisions and execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "portfolio_agent_"

_STATUS_CODES = {
    "STOPPED": 0,
    "ACTIVE": 1,
    "PAUSED": 2,
    "ERROR": 3,
}


@dataclass
class CycleStats:
    agent_id: str
    status: str
    candidates: int
    decisions: int
    executed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose agent and monitor stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Dict[str, CycleStats] = {}

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._decision_counter = None
            self._trade_counter = None
            self._slippage_summary = None
            self._alert_counter = None
            self._auto_pause_counter = None
            self._shutdown_counter = None
            self._agent_status_gauge = None
            self._portfolio_value_gauge = None
            return

        self._cycle_summary = Summary(
            f"{_METRIC_PREFIX}cycle_duration_seconds",
            "Duration of a full agent decision cycle",
            labelnames=("agent",),
        )
        self._cycle_counter = Counter(
            f"{_METRIC_PREFIX}cycle_total",
            "Total agent cycles by outcome",
            labelnames=("agent", "status"),
        )
        self._decision_counter = Counter(
            f"{_METRIC_PREFIX}decisions_total",
            "Decisions recorded, by final status",
            labelnames=("agent", "status"),
        )
        self._trade_counter = Counter(
            f"{_METRIC_PREFIX}trades_total",
            "Simulated trade executions, by status",
            labelnames=("status",),
        )
        self._slippage_summary = Summary(
            f"{_METRIC_PREFIX}trade_slippage_ratio",
            "Realized slippage plus market impact per trade",
        )
        self._alert_counter = Counter(
            f"{_METRIC_PREFIX}alerts_total",
            "Agent alerts raised, by severity and type",
            labelnames=("severity", "type"),
        )
        self._auto_pause_counter = Counter(
            f"{_METRIC_PREFIX}auto_pause_total",
            "Agents paused automatically by the monitor",
            labelnames=("reason",),
        )
        self._shutdown_counter = Counter(
            f"{_METRIC_PREFIX}emergency_shutdown_total",
            "System-wide emergency shutdowns",
        )
        self._agent_status_gauge = Gauge(
            f"{_METRIC_PREFIX}status",
            "Agent status code (0=stopped, 1=active, 2=paused, 3=error)",
            labelnames=("agent",),
        )
        self._portfolio_value_gauge = Gauge(
            f"{_METRIC_PREFIX}portfolio_value",
            "Current portfolio market value",
            labelnames=("agent",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            collectors_to_remove = []
            for collector, names in list(REGISTRY._collector_to_names.items()):
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)

            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        start_http_server(self._port)
        self._started = True
        logger.info("Prometheus metrics exporter listening on :%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        self._last_cycle_stats[stats.agent_id] = stats
        if not self._enabled:
            return
        self._cycle_summary.labels(agent=stats.agent_id).observe(stats.duration_seconds)
        self._cycle_counter.labels(agent=stats.agent_id, status=stats.status).inc()

    def last_cycle(self, agent_id: str) -> Optional[CycleStats]:
        return self._last_cycle_stats.get(agent_id)

    def record_decision(self, agent_id: str, status: str) -> None:
        if not self._enabled:
            return
        self._decision_counter.labels(agent=agent_id, status=status).inc()

    def record_trade(self, status: str, slippage: float = 0.0) -> None:
        if not self._enabled:
            return
        self._trade_counter.labels(status=status).inc()
        if slippage > 0:
            self._slippage_summary.observe(slippage)

    def record_alert(self, severity: str, alert_type: str) -> None:
        if not self._enabled:
            return
        self._alert_counter.labels(severity=severity, type=alert_type).inc()

    def record_auto_pause(self, reason: str) -> None:
        if not self._enabled:
            return
        self._auto_pause_counter.labels(reason=reason).inc()

    def record_emergency_shutdown(self) -> None:
        if not self._enabled:
            return
        self._shutdown_counter.inc()

    def record_agent_status(self, agent_id: str, status: str) -> None:
        if not self._enabled:
            return
        self._agent_status_gauge.labels(agent=agent_id).set(_STATUS_CODES.get(status, -1))

    def record_portfolio_value(self, agent_id: str, value: float) -> None:
        if not self._enabled:
            return
        self._portfolio_value_gauge.labels(agent=agent_id).set(value)


__all__ = ["MetricsRecorder", "CycleStats"]
