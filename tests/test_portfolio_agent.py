"""
Tests for PortfolioAgent lifecycle, cycle commit and state reads.

Coverage:
- STOPPED/ACTIVE/PAUSED/ERROR transitions and their alerts
- Cycles run only while ACTIVE; overlapping ticks skip
- Pipeline exceptions move the agent to ERROR with a CRITICAL alert
- Decision history, success rate and trade-derived performance
- Alert log cap, acknowledgement and validated config updates
- Audit and metrics hooks
- Control calls wait for an in-flight cycle; racing start/stop leaves no timer behind
"""

import threading
from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from agents.portfolio_agent import ALERT_LOG_CAP, ALERT_LOG_KEEP, PortfolioAgent
from core.decision_pipeline import CycleResult
from core.models import AgentStatus, AlertType, DecisionStatus, Priority
from infra.alerting import AlertSeverity
from tests.helpers import (
    StaticRecommendationSource,
    make_agent_config,
    make_decision,
    make_pipeline,
    make_recommendation,
    make_simulator,
    sell_item,
)


@pytest.fixture
def agents():
    """Tracks created agents so their timer threads are always stopped"""
    created = []
    yield created
    for agent in created:
        agent.stop()


@pytest.fixture
def make_agent(agents, portfolio, clock):
    def factory(config=None, pipeline=None, **kwargs):
        agent = PortfolioAgent(
            config or make_agent_config(cycle_interval_seconds=3600),
            portfolio,
            pipeline or make_pipeline(clock=clock),
            clock=clock,
            **kwargs,
        )
        agents.append(agent)
        return agent
    return factory


def _critical_sell(portfolio, asset_id="IGCORP", fraction=0.01):
    return make_recommendation(priority=Priority.CRITICAL, risk_reduction=0.3,
                               items=[sell_item(portfolio.get_asset(asset_id), fraction)])


class TestLifecycle:
    """State transitions"""

    def test_initial_state_stopped(self, make_agent):
        agent = make_agent()
        state = agent.get_state()
        assert state.status == AgentStatus.STOPPED
        assert state.total_decisions == 0
        assert state.success_rate == 1.0
        assert state.started_at is None

    def test_start_pause_resume_stop(self, make_agent, clock):
        agent = make_agent()

        assert agent.start()
        assert agent.status == AgentStatus.ACTIVE
        assert agent.get_state().started_at == clock()

        assert agent.pause()
        assert agent.status == AgentStatus.PAUSED
        assert not agent.pause()

        assert agent.start()
        assert agent.status == AgentStatus.ACTIVE

        assert agent.stop()
        assert agent.status == AgentStatus.STOPPED

        messages = [a.message for a in agent.get_state().alerts]
        assert messages == [
            "Portfolio Agent started",
            "Portfolio Agent paused",
            "Portfolio Agent resumed",
            "Portfolio Agent stopped",
        ]

    def test_start_is_idempotent(self, make_agent):
        agent = make_agent()
        agent.start()
        assert agent.start()
        assert len(agent.get_state().alerts) == 1

    def test_disabled_agent_refuses_to_start(self, make_agent):
        agent = make_agent(make_agent_config(enabled=False))

        assert not agent.start()
        assert agent.status == AgentStatus.STOPPED
        alert = agent.get_state().alerts[-1]
        assert alert.severity == AlertSeverity.HIGH
        assert "configuration disabled" in alert.message

    def test_stop_from_stopped_adds_no_alert(self, make_agent):
        agent = make_agent()
        assert agent.stop()
        assert agent.get_state().alerts == ()

    def test_timer_thread_runs_cycles(self, make_agent):
        ran = threading.Event()

        def tick(*args, **kwargs):
            ran.set()
            raise RuntimeError("stop here")

        pipeline = Mock()
        pipeline.execute_cycle.side_effect = tick
        agent = make_agent(make_agent_config(cycle_interval_seconds=0.01), pipeline=pipeline)

        agent.start()

        assert ran.wait(timeout=2.0)


class TestRunCycle:
    """Cycle gating and commit"""

    def test_skipped_unless_active(self, make_agent):
        pipeline = Mock()
        agent = make_agent(pipeline=pipeline)

        assert agent.run_cycle() is None
        agent.start()
        agent.pause()
        assert agent.run_cycle() is None
        pipeline.execute_cycle.assert_not_called()

    def test_overlapping_tick_skipped(self, make_agent):
        pipeline = Mock()
        agent = make_agent(pipeline=pipeline)
        agent.start()
        agent._cycle_guard.acquire()
        try:
            assert agent.run_cycle() is None
        finally:
            agent._cycle_guard.release()
        pipeline.execute_cycle.assert_not_called()

    def test_cycle_commits_decisions_and_portfolio(self, make_agent, portfolio, clock):
        pipeline = make_pipeline(source=StaticRecommendationSource([_critical_sell(portfolio)]), clock=clock)
        agent = make_agent(make_agent_config(autonomy_level="FULL_AUTO"), pipeline=pipeline)
        agent.start()

        result = agent.run_cycle()

        assert result is not None
        state = agent.get_state()
        assert state.cycle_count == 1
        assert state.total_decisions == 1
        assert state.last_decision == clock()
        assert state.success_rate == 1.0
        assert state.portfolio.get_asset("IGCORP").quantity == pytest.approx(9_900)
        assert state.performance.win_rate == 1.0
        assert agent.get_decision_history()[0].status == DecisionStatus.COMPLETED

    def test_trade_limits_persist_across_cycles(self, make_agent, portfolio, clock):
        config = make_agent_config(
            autonomy_level="FULL_AUTO",
            trading_limits={"max_trades_per_hour": 1, "max_trades_per_day": 10},
        )
        pipeline = make_pipeline(source=StaticRecommendationSource([_critical_sell(portfolio)]), clock=clock)
        agent = make_agent(config, pipeline=pipeline)
        agent.start()

        agent.run_cycle()
        clock.advance(minutes=5)
        agent.run_cycle()

        statuses = [d.status for d in agent.get_decision_history()]
        assert statuses == [DecisionStatus.COMPLETED, DecisionStatus.REJECTED]

    def test_failed_decision_lowers_success_rate(self, make_agent, portfolio, clock):
        pipeline = make_pipeline(
            source=StaticRecommendationSource([_critical_sell(portfolio)]),
            simulator=make_simulator(clock, failure_probability=1.0),
            clock=clock,
        )
        agent = make_agent(make_agent_config(autonomy_level="FULL_AUTO"), pipeline=pipeline)
        agent.start()

        agent.run_cycle()

        state = agent.get_state()
        assert state.success_rate == 0.0
        assert state.performance.win_rate == 0.0
        assert any(a.type == AlertType.EXECUTION_FAILURE for a in state.alerts)

    def test_pipeline_exception_moves_to_error(self, make_agent):
        pipeline = Mock()
        pipeline.execute_cycle.side_effect = RuntimeError("analyzer exploded")
        agent = make_agent(pipeline=pipeline)
        agent.start()

        assert agent.run_cycle() is None

        state = agent.get_state()
        assert state.status == AgentStatus.ERROR
        alert = state.alerts[-1]
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.message == "Execution cycle failed: analyzer exploded"

        # ERROR requires an explicit start
        assert agent.run_cycle() is None
        assert pipeline.execute_cycle.call_count == 1
        assert agent.start()
        assert agent.status == AgentStatus.ACTIVE


class TestAlerts:
    def test_alert_log_trimmed(self, make_agent):
        agent = make_agent()
        for _ in range(ALERT_LOG_CAP // 2 + 1):
            agent.start()
            agent.pause()

        alerts = agent.get_state().alerts
        assert len(alerts) <= ALERT_LOG_CAP
        assert len(alerts) >= ALERT_LOG_KEEP
        assert alerts[-1].message == "Portfolio Agent paused"

    def test_acknowledge_alert(self, make_agent):
        agent = make_agent()
        agent.start()
        alert_id = agent.get_state().alerts[0].id

        assert agent.acknowledge_alert(alert_id)
        assert agent.get_state().alerts[0].acknowledged
        assert agent.acknowledge_alert(alert_id)
        assert not agent.acknowledge_alert("missing")


class TestConfigUpdates:
    def test_update_applies_validated_copy(self, make_agent):
        agent = make_agent()

        updated = agent.update_config(autonomy_level="FULL_AUTO")

        assert agent.config is updated
        assert agent.config.autonomy_level.value == "FULL_AUTO"

    def test_invalid_update_keeps_old_config(self, make_agent):
        agent = make_agent()
        before = agent.config

        with pytest.raises(ValidationError):
            agent.update_config(cycle_interval_seconds=-5)
        assert agent.config is before

    def test_id_cannot_change(self, make_agent):
        with pytest.raises(ValueError, match="id cannot be changed"):
            make_agent().update_config(id="other")

    def test_trading_limit_update_keeps_ledger(self, make_agent):
        agent = make_agent()
        ledger = agent._trade_limits.ledger

        agent.update_config(trading_limits={"max_trades_per_day": 5, "max_trades_per_hour": 5})

        assert agent._trade_limits.ledger is ledger
        assert agent._trade_limits.limits.max_trades_per_day == 5


class TestSnapshots:
    def test_snapshot_not_affected_by_later_cycles(self, make_agent, portfolio, clock):
        pipeline = make_pipeline(source=StaticRecommendationSource([_critical_sell(portfolio)]), clock=clock)
        agent = make_agent(make_agent_config(autonomy_level="FULL_AUTO"), pipeline=pipeline)
        agent.start()
        before = agent.get_state()
        history = agent.get_decision_history()

        agent.run_cycle()

        assert before.total_decisions == 0
        assert before.portfolio.get_asset("IGCORP").quantity == 10_000
        assert history == ()


class TestHooks:
    def test_audit_and_metrics_called(self, make_agent, portfolio, clock):
        audit = Mock()
        metrics = Mock()
        pipeline = make_pipeline(source=StaticRecommendationSource([_critical_sell(portfolio)]), clock=clock)
        agent = make_agent(make_agent_config(autonomy_level="FULL_AUTO"), pipeline=pipeline,
                           audit=audit, metrics=metrics)
        agent.start()

        agent.run_cycle()

        audit.log_decision.assert_called_once()
        assert audit.log_decision.call_args[0][0] == "agent-1"
        metrics.record_decision.assert_called_once_with("agent-1", "COMPLETED")
        metrics.record_agent_status.assert_called_with("agent-1", "ACTIVE")
        metrics.observe_cycle.assert_called_once()
        assert metrics.observe_cycle.call_args[0][0].status == "ok"
        metrics.record_portfolio_value.assert_called_once()


class TestConcurrency:
    """Control calls against in-flight cycles and each other"""

    @pytest.fixture
    def blocked_cycle(self, make_agent):
        """ACTIVE agent whose cycle is parked inside the pipeline until released"""
        entered = threading.Event()
        release = threading.Event()
        decision = make_decision(status=DecisionStatus.PENDING)

        def execute_cycle(config, portfolio, trade_limits, now, drawdown=0.0):
            entered.set()
            release.wait(5)
            return CycleResult(portfolio=portfolio, analysis=None, market_data=None, decisions=[decision])

        pipeline = Mock()
        pipeline.execute_cycle.side_effect = execute_cycle
        agent = make_agent(pipeline=pipeline)
        agent.start()
        alert_id = agent.get_state().alerts[0].id

        cycle = threading.Thread(target=agent.run_cycle)
        cycle.start()
        assert entered.wait(5)
        yield agent, decision, release, alert_id
        release.set()
        cycle.join(5)

    @pytest.mark.parametrize("call", ["stop", "pause", "acknowledge_alert"])
    def test_control_waits_for_in_flight_cycle(self, blocked_cycle, call):
        agent, decision, release, alert_id = blocked_cycle
        args = (alert_id,) if call == "acknowledge_alert" else ()
        returned = []

        def control():
            returned.append(getattr(agent, call)(*args))

        caller = threading.Thread(target=control)
        caller.start()
        caller.join(0.2)

        assert caller.is_alive()
        assert returned == []

        release.set()
        caller.join(5)

        assert returned == [True]
        assert agent.get_decision_history() == (decision,)
        state = agent.get_state()
        assert state.cycle_count == 1
        assert state.total_decisions == 1

    def test_stop_after_cycle_records_status(self, blocked_cycle):
        agent, _, release, _ = blocked_cycle
        stopper = threading.Thread(target=agent.stop)
        stopper.start()

        release.set()
        stopper.join(5)

        assert agent.status == AgentStatus.STOPPED
        messages = [a.message for a in agent.get_state().alerts]
        assert messages[-1] == "Portfolio Agent stopped"

    def test_concurrent_start_stop_leaves_no_orphan_timer(self, make_agent):
        agent = make_agent(make_agent_config("race-agent", cycle_interval_seconds=3600))

        def race(barrier, op):
            barrier.wait()
            op()

        for _ in range(50):
            barrier = threading.Barrier(2)
            threads = [threading.Thread(target=race, args=(barrier, op)) for op in (agent.start, agent.stop)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(10)

        agent.stop()

        timers = [t for t in threading.enumerate() if t.name == "agent-race-agent"]
        for t in timers:
            t.join(2)
        assert not any(t.is_alive() for t in timers)
