"""
Portfolio Agent Core: Configuration

Pydantic schemas for agent, monitor and application settings plus the YAML
loaders that build them. Models are frozen; an agent's config is replaced
wholesale via `AgentConfig.with_changes`, never edited in place.
"""

import logging
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError
from core.models import (
    Asset,
    AssetType,
    AutonomyLevel,
    LoanType,
    OrderType,
    Portfolio,
    SecurityType,
)

logger = logging.getLogger(__name__)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ===== Agent schema =====

class TradingHours(_Frozen):
    """Window during which automatic execution is allowed (local to `timezone`)."""
    start: time = Field(default=time(9, 0), description="Window open (HH:MM)")
    end: time = Field(default=time(16, 0), description="Window close (HH:MM)")
    timezone: str = Field(default="America/New_York", min_length=1, description="IANA zone name")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def validate_window(self) -> "TradingHours":
        if self.end <= self.start:
            raise ValueError(f"trading_hours.end ({self.end}) must be after start ({self.start})")
        return self


class RiskLimits(_Frozen):
    max_single_asset_weight: float = Field(default=0.20, gt=0, le=1, description="Max weight of one holding")
    max_sector_concentration: float = Field(default=0.40, gt=0, le=1, description="Max weight of one sector")
    max_daily_var: float = Field(default=500_000.0, gt=0, description="Max 1-day VaR (currency)")
    max_drawdown: float = Field(default=0.10, gt=0, le=1, description="Max drawdown from peak")
    min_liquidity_ratio: float = Field(default=0.10, ge=0, le=1, description="Min share of liquid holdings")


class TradingLimits(_Frozen):
    max_daily_trade_volume: float = Field(default=10_000_000.0, gt=0, description="Notional per day")
    max_hourly_trade_volume: float = Field(default=2_000_000.0, gt=0, description="Notional per hour")
    max_trades_per_day: int = Field(default=50, gt=0, description="Executed trades per day")
    max_trades_per_hour: int = Field(default=10, gt=0, description="Executed trades per hour")
    max_single_trade_size: float = Field(default=1_000_000.0, gt=0, description="Max notional per order")
    trading_hours: TradingHours = Field(default_factory=TradingHours)
    exclude_weekends: bool = True
    exclude_holidays: bool = True
    holidays: Tuple[date, ...] = ()
    allowed_asset_types: Tuple[AssetType, ...] = (AssetType.LOAN, AssetType.SECURITY)
    restricted_assets: Tuple[str, ...] = ()

    @field_validator("max_hourly_trade_volume")
    @classmethod
    def validate_hourly_volume(cls, v: float, info) -> float:
        daily = info.data.get("max_daily_trade_volume")
        if daily is not None and v > daily:
            raise ValueError(f"max_hourly_trade_volume ({v}) must be <= max_daily_trade_volume ({daily})")
        return v

    @field_validator("max_trades_per_hour")
    @classmethod
    def validate_hourly_count(cls, v: int, info) -> int:
        daily = info.data.get("max_trades_per_day")
        if daily is not None and v > daily:
            raise ValueError(f"max_trades_per_hour ({v}) must be <= max_trades_per_day ({daily})")
        return v


class ExecutionSettings(_Frozen):
    slippage_tolerance: float = Field(default=0.005, ge=0, le=0.10, description="Max slippage fraction")
    order_type: OrderType = OrderType.SMART
    simulation_mode: bool = Field(default=False, description="Record decisions but never auto-execute")
    require_confirmation: bool = False


class AgentConfig(_Frozen):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    enabled: bool = True
    autonomy_level: AutonomyLevel = AutonomyLevel.SEMI_AUTO
    risk_limits: RiskLimits = Field(default_factory=RiskLimits)
    trading_limits: TradingLimits = Field(default_factory=TradingLimits)
    execution_settings: ExecutionSettings = Field(default_factory=ExecutionSettings)
    cycle_interval_seconds: float = Field(default=60.0, gt=0)

    def with_changes(self, **changes: Any) -> "AgentConfig":
        """Validated copy with top-level fields replaced."""
        data = self.model_dump()
        for key, value in changes.items():
            if key not in type(self).model_fields:
                raise ValueError(f"Unknown agent config field: {key}")
            data[key] = value.model_dump() if isinstance(value, BaseModel) else value
        return AgentConfig.model_validate(data)


# ===== Monitor schema =====

class AlertThresholds(_Frozen):
    min_success_rate: float = Field(default=0.80, ge=0, le=1)
    max_consecutive_failures: int = Field(default=3, ge=1, le=5)
    max_drawdown: float = Field(default=0.10, gt=0, le=1)
    max_daily_loss: float = Field(default=1_000_000.0, gt=0)
    critical_alert_pause_count: int = Field(default=3, ge=1)
    stale_activity_minutes: float = Field(default=30.0, gt=0)


class ShutdownTrigger(_Frozen):
    condition: str = Field(pattern="^(daily_loss|max_drawdown|success_rate)$")
    threshold: float
    description: str = ""

    def is_breached(self, value: float) -> bool:
        if self.condition == "success_rate":
            return value < self.threshold
        return value > self.threshold


class MonitoringConfig(_Frozen):
    check_interval_seconds: float = Field(default=30.0, gt=0)
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    shutdown_triggers: Tuple[ShutdownTrigger, ...] = ()
    emergency_contacts: Tuple[str, ...] = ()


# ===== Application schema =====

class NotificationsConfig(_Frozen):
    dry_run: bool = True
    timeout_seconds: float = Field(default=5.0, gt=0)
    webhook_token_env: Optional[str] = None
    webhook_headers: Dict[str, str] = Field(default_factory=dict)


class MetricsConfig(_Frozen):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class MarketDataConfig(_Frozen):
    freshness_seconds: float = Field(default=60.0, gt=0)
    seed: Optional[int] = None


class SimulatorConfig(_Frozen):
    execution_delay_seconds: float = Field(default=1.0, ge=0)
    failure_probability: float = Field(default=0.05, ge=0, le=1)
    seed: Optional[int] = None
    max_order_history: int = Field(default=1000, ge=1, description="Executions kept for status lookup")


class AppConfig(_Frozen):
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    audit_log_file: Optional[str] = "logs/decisions.jsonl"
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    simulator: SimulatorConfig = Field(default_factory=SimulatorConfig)


# ===== Initial portfolio schema =====

class AssetSpec(_Frozen):
    id: str = Field(min_length=1)
    symbol: str = Field(min_length=1)
    name: str = ""
    asset_type: AssetType
    security_type: Optional[SecurityType] = None
    loan_type: Optional[LoanType] = None
    sector: Optional[str] = None
    credit_rating: Optional[str] = None
    yield_rate: Optional[float] = None
    price: float = Field(gt=0)
    quantity: float = Field(ge=0)

    @model_validator(mode="after")
    def validate_subtype(self) -> "AssetSpec":
        if self.asset_type == AssetType.SECURITY and self.loan_type is not None:
            raise ValueError(f"Asset {self.id}: securities cannot carry a loan_type")
        if self.asset_type == AssetType.LOAN and self.security_type is not None:
            raise ValueError(f"Asset {self.id}: loans cannot carry a security_type")
        return self

    def to_asset(self) -> Asset:
        return Asset(
            id=self.id,
            symbol=self.symbol,
            name=self.name or self.symbol,
            asset_type=self.asset_type,
            security_type=self.security_type,
            loan_type=self.loan_type,
            sector=self.sector,
            credit_rating=self.credit_rating,
            yield_rate=self.yield_rate,
            current_price=self.price,
            quantity=self.quantity,
        )


class PortfolioSpec(_Frozen):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    assets: Tuple[AssetSpec, ...] = Field(min_length=1)

    @field_validator("assets")
    @classmethod
    def validate_unique_ids(cls, v: Tuple[AssetSpec, ...]) -> Tuple[AssetSpec, ...]:
        seen = set()
        for asset in v:
            if asset.id in seen:
                raise ValueError(f"Duplicate asset id: {asset.id}")
            seen.add(asset.id)
        return v

    def to_portfolio(self, as_of: Optional[datetime] = None) -> Portfolio:
        return Portfolio.from_assets(self.id, self.name, (a.to_asset() for a in self.assets), as_of=as_of)


class AgentDefinition(_Frozen):
    """One entry of agents.yaml: a config plus its initial portfolio."""
    config: AgentConfig
    portfolio: PortfolioSpec


class AgentsFile(_Frozen):
    agents: Tuple[AgentDefinition, ...] = Field(min_length=1)

    @field_validator("agents")
    @classmethod
    def validate_unique_agent_ids(cls, v: Tuple[AgentDefinition, ...]) -> Tuple[AgentDefinition, ...]:
        ids = [definition.config.id for definition in v]
        duplicates = sorted({agent_id for agent_id in ids if ids.count(agent_id) > 1})
        if duplicates:
            raise ValueError(f"Duplicate agent ids: {', '.join(duplicates)}")
        return v


# ===== Loaders =====

def format_validation_errors(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in item["loc"])
        messages.append(f"{field}: {item['msg']}" if field else item["msg"])
    return messages


def format_yaml_error(path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return str(error)

    problem = getattr(error, "problem", str(error))
    lines = path.read_text().splitlines()
    start = max(mark.line - 2, 0)
    end = min(mark.line + 3, len(lines))
    snippet = "\n".join(
        f"{'>' if idx == mark.line else ' '} {idx + 1:04d} | {lines[idx]}"
        for idx in range(start, end)
    )
    return f"line {mark.line + 1}, column {mark.column + 1}: {problem}\nContext:\n{snippet}"


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML mapping.

    Raises:
        ConfigurationError: missing file, malformed YAML or a non-mapping document
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(str(path), ["file not found"])
    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(str(path), [f"Invalid YAML - {format_yaml_error(path, e)}"]) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), ["top-level YAML value must be a mapping"])
    return data


def _parse(model, data: Dict[str, Any], source: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(source, format_validation_errors(e)) from e


def load_app_config(config_dir: Union[str, Path] = "config") -> AppConfig:
    path = Path(config_dir) / "app.yaml"
    if not path.exists():
        logger.info("No app.yaml in %s, using defaults", config_dir)
        return AppConfig()
    return _parse(AppConfig, load_yaml(path), str(path))


def load_monitoring_config(config_dir: Union[str, Path] = "config") -> MonitoringConfig:
    path = Path(config_dir) / "monitor.yaml"
    data = load_yaml(path)
    return _parse(MonitoringConfig, data.get("monitoring", data), str(path))


def load_agent_definitions(config_dir: Union[str, Path] = "config") -> List[AgentDefinition]:
    path = Path(config_dir) / "agents.yaml"
    parsed = _parse(AgentsFile, load_yaml(path), str(path))
    logger.info("Loaded %d agent definition(s) from %s", len(parsed.agents), path)
    return list(parsed.agents)
