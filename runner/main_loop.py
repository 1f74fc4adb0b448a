"""
Portfolio Agent Runner: Main Loop

Process entrypoint for the agent system.

Flow:
1. Validate every YAML file under the config directory
2. Configure logging from app.yaml
3. Build the AgentService and one agent per agents.yaml entry
4. Start agents and the monitor sweep (or run one synchronous cycle with --once)
5. On SIGINT/SIGTERM stop the monitor and every agent
"""

import logging
import signal
import threading
from pathlib import Path
from typing import List, Optional

from agents.service import AgentService
from core.config import load_agent_definitions, load_app_config, load_monitoring_config
from core.decision_pipeline import CycleResult

logger = logging.getLogger(__name__)

STATUS_LOG_INTERVAL_SECONDS = 60.0


class AgentRunner:
    """
    Process-level orchestrator.

    Responsibilities:
    - Refuse to start on invalid configuration
    - Build agents from config
    - Keep the process alive while agents run on their own threads
    - Log a periodic system status line
    - Handle shutdown signals gracefully
    """

    def __init__(self, config_dir: str = "config", interval_seconds: Optional[float] = None):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = load_app_config(self.config_dir)
        self.monitoring_config = load_monitoring_config(self.config_dir)

        logging.basicConfig(
            level=getattr(logging, self.app_config.log_level),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        self.service = AgentService.from_config(self.app_config, self.monitoring_config)
        for definition in load_agent_definitions(self.config_dir):
            config = definition.config
            if interval_seconds is not None:
                config = config.with_changes(cycle_interval_seconds=interval_seconds)
            self.service.create(config, definition.portfolio.to_portfolio())

        if self.service.metrics is not None:
            self.service.metrics.start()

        self._stop_event = threading.Event()
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized AgentRunner with {len(self.service.agent_ids())} agent(s)")

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - Initiating graceful shutdown")
        logger.warning("=" * 80)
        self._stop_event.set()

    def run_once(self) -> List[CycleResult]:
        """Start agents without waiting for their timers, run one cycle each, then stop."""
        for agent_id in self.service.agent_ids():
            self.service.control(agent_id, "START")
        try:
            results = self.service.run_once()
        finally:
            self.service.stop_all()
        self._log_status()
        return results

    def run_forever(self) -> None:
        started = self.service.start_all()
        logger.info(f"Started {started} agent(s); monitoring active")

        while not self._stop_event.wait(STATUS_LOG_INTERVAL_SECONDS):
            self._log_status()
            if self.service.monitor.shutdown_active:
                logger.error("Emergency shutdown active, exiting main loop")
                break

        self.service.stop_all()
        logger.info("Agent runner stopped cleanly.")

    def _log_status(self) -> None:
        status = self.service.system_status()
        logger.info(
            f"System {status.system_health}: {status.agent_count} agent(s), "
            f"monitoring={'on' if status.monitoring_active else 'off'}"
            + (f", shutdown: {status.shutdown_reason}" if status.emergency_shutdown_active else "")
        )
        for summary in status.agents:
            logger.info(
                f"  {summary.id}: {summary.status.value} decisions={summary.total_decisions} "
                f"success={summary.success_rate:.1%} alerts={summary.alert_count} "
                f"drawdown={summary.performance.max_drawdown:.2%}"
            )


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Autonomous portfolio agent runner")
    parser.add_argument("--once", action="store_true", help="Run one cycle per agent and exit")
    parser.add_argument("--interval", type=float, default=None,
                        help="Override every agent's cycle interval in seconds")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    runner = AgentRunner(config_dir=args.config_dir, interval_seconds=args.interval)

    if args.once:
        runner.run_once()
    else:
        runner.run_forever()


if __name__ == "__main__":
    main()
