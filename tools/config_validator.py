"""
Configuration Validation Module

Validates app.yaml, agents.yaml and monitor.yaml against the Pydantic schemas
in core.config. Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from core.config import AgentsFile, AppConfig, MonitoringConfig, format_validation_errors, load_yaml
from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ===== Validation Functions =====
def _validate_file(config_dir: Path, filename: str, schema: type, section: Optional[str] = None,
                   required: bool = True) -> List[str]:
    path = config_dir / filename
    if not required and not path.exists():
        logger.info("%s not present, defaults apply", filename)
        return []

    errors: List[str] = []
    try:
        config = load_yaml(path)
        if section is not None and section in config:
            config = config[section]
        schema.model_validate(config)
        logger.info("✅ %s validation passed", filename)
    except ConfigurationError as e:
        errors.extend(f"{filename}: {message}" for message in e.errors)
    except ValidationError as e:
        errors.extend(f"{filename}: {message}" for message in format_validation_errors(e))
    return errors


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppConfig, required=False)


def validate_agents(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "agents.yaml", AgentsFile)


def validate_monitor(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "monitor.yaml", MonitoringConfig, section="monitoring")


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Perform logical consistency checks across configuration files.

    Detects:
    - Monitor drawdown alert looser than an agent's own drawdown limit
    - Restricted assets that are also held in the agent's initial portfolio
    - Single-trade size above the hourly notional budget
    - Shutdown triggers that would fire before the matching alert threshold
    """
    errors: List[str] = []

    agents = AgentsFile.model_validate(load_yaml(config_dir / "agents.yaml"))
    monitor_raw = load_yaml(config_dir / "monitor.yaml")
    monitor = MonitoringConfig.model_validate(monitor_raw.get("monitoring", monitor_raw))
    thresholds = monitor.alert_thresholds

    for definition in agents.agents:
        config = definition.config
        limits = config.trading_limits

        if limits.max_single_trade_size > limits.max_hourly_trade_volume:
            errors.append(
                f"agents.yaml: {config.id}: max_single_trade_size ({limits.max_single_trade_size:,.0f}) "
                f"exceeds max_hourly_trade_volume ({limits.max_hourly_trade_volume:,.0f})"
            )

        held = {asset.id for asset in definition.portfolio.assets}
        for restricted in limits.restricted_assets:
            if restricted in held:
                logger.warning(
                    "agents.yaml: %s holds restricted asset %s; it can be reported on but never traded",
                    config.id, restricted,
                )

        if thresholds.max_drawdown > config.risk_limits.max_drawdown * 2:
            logger.warning(
                "monitor.yaml: drawdown alert %.0f%% is more than twice agent %s limit %.0f%%",
                thresholds.max_drawdown * 100, config.id, config.risk_limits.max_drawdown * 100,
            )

    for trigger in monitor.shutdown_triggers:
        if trigger.condition == "max_drawdown" and trigger.threshold < thresholds.max_drawdown:
            errors.append(
                f"monitor.yaml: max_drawdown shutdown trigger ({trigger.threshold:.2%}) is tighter than "
                f"the drawdown alert threshold ({thresholds.max_drawdown:.2%})"
            )
        if trigger.condition == "success_rate" and trigger.threshold > thresholds.min_success_rate:
            errors.append(
                f"monitor.yaml: success_rate shutdown trigger ({trigger.threshold:.2%}) is above "
                f"min_success_rate alert ({thresholds.min_success_rate:.2%})"
            )

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors: List[str] = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_agents(config_path))
    all_errors.extend(validate_monitor(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
